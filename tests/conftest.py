import pytest
import sys
import os
import threading
import time
from datetime import datetime, timedelta, timezone

# Add project root to sys.path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from container_driver import ContainerDriver, ExecResult
from command_proxy import CommandProxy
from lab_catalog import LabCatalog
from port_allocator import PortAllocator, PortRange
from session_errors import ContainerNotFound, NameConflict, PullFailed, RuntimeUnavailable
from session_manager import SessionLifecycleManager
from session_registry import SessionRegistry

LAB_RANGE = PortRange(20000, 100)
WORKSTATION_RANGE = PortRange(30000, 100)
ADMIN_KEY = 'test-admin-key'

TEST_LABS = {
    'R1': {'image': 'img:tag', 'port': 80, 'name': 'Target One'},
    'R2': {'image': None, 'name': 'Theory Room'},
    'R3': {'image': 'other:latest', 'port': 3000},
    'R4': {'image': 'noport:1'},
}


class FakeContainer:
    def __init__(self, name, image, host_port, internal_port, command=None, labels=None, init=False):
        self.name = name
        self.image = image
        self.host_port = host_port
        self.internal_port = internal_port
        self.command = command
        self.labels = labels or {}
        self.init = init
        self.running = True
        self.logs = "container booted\n"


class FakeDriver(ContainerDriver):
    """In-memory container runtime recording every call"""

    def __init__(self):
        super().__init__()
        self.images = {'img:tag', 'other:latest', 'noport:1', 'alpine:3.19'}
        self.unpullable = set()
        self.containers = {}
        self.calls = []
        self.failures = {}
        self.exec_results = {}
        self.available = True
        self.exit_on_start = False
        self.run_delay = 0
        self.exec_delay = 0
        self._lock = threading.Lock()

    def _record(self, op, *args):
        with self._lock:
            self.calls.append((op,) + args)
        if op in self.failures:
            raise self.failures[op]

    def count(self, op):
        return len([c for c in self.calls if c[0] == op])

    def ops(self):
        return [c[0] for c in self.calls]

    def add_container(self, name, image='alpine:3.19', host_port=None, internal_port=22, running=True):
        container = FakeContainer(name, image, host_port, internal_port)
        container.running = running
        self.containers[name] = container
        return container

    def ping(self, timeout=None):
        self._record('ping')
        if not self.available:
            raise RuntimeUnavailable("Cannot connect to Docker", details="dial unix /var/run/docker.sock")

    def image_exists(self, image, timeout=None):
        self._record('image_exists', image)
        return image in self.images

    def pull_image(self, image, timeout=None):
        self._record('pull_image', image)
        if image in self.unpullable:
            raise PullFailed("docker pull failed", details=f"pull access denied for {image}")
        self.images.add(image)

    def run_detached(self, name, image, host_port, internal_port, command=None,
                     labels=None, init=False, timeout=None):
        self._record('run_detached', name, image, host_port, internal_port)
        if self.run_delay:
            time.sleep(self.run_delay)
        with self._lock:
            if name in self.containers:
                raise NameConflict("Container name already in use", details=name)
            container = FakeContainer(name, image, host_port, internal_port, command, labels, init)
            container.running = not self.exit_on_start
            if self.exit_on_start:
                container.logs = "fatal: cannot bind port\n"
            self.containers[name] = container
        return f"cid-{name}"

    def remove(self, name, timeout=None):
        self._record('remove', name)
        with self._lock:
            self.containers.pop(name, None)

    def _get(self, name):
        container = self.containers.get(name)
        if container is None:
            raise ContainerNotFound("Container not found", details=f"No such container: {name}")
        return container

    def inspect_running(self, name, timeout=None):
        self._record('inspect_running', name)
        return self._get(name).running

    def inspect_state(self, name, timeout=None):
        self._record('inspect_state', name)
        container = self._get(name)
        if container.running:
            return {'Status': 'running', 'Running': True, 'ExitCode': 0}
        return {'Status': 'exited', 'Running': False, 'ExitCode': 1, 'OOMKilled': False}

    def published_ports(self, name, timeout=None):
        self._record('published_ports', name)
        container = self._get(name)
        return [container.host_port] if container.host_port else []

    def exec(self, name, command, timeout=None):
        self._record('exec', name, command)
        container = self._get(name)
        if not container.running:
            raise ContainerNotFound("Container is not running", details=f"container {name} is not running")
        if self.exec_delay:
            time.sleep(self.exec_delay)
        if command in self.exec_results:
            return self.exec_results[command]
        if command.startswith('echo '):
            return ExecResult(command[len('echo '):] + "\n", "", 0)
        program = command.split()[0]
        return ExecResult("", f"/bin/sh: {program}: not found\n", 127)

    def logs(self, name, tail_lines=100, timeout=None):
        self._record('logs', name, tail_lines)
        return self._get(name).logs


class FakeClock:
    """Settable clock returning aware UTC datetimes"""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def fake_driver():
    return FakeDriver()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry():
    """A fresh registry per test"""
    return SessionRegistry()


@pytest.fixture
def catalog():
    return LabCatalog(labs=TEST_LABS, default_internal_port=80)


@pytest.fixture
def allocator():
    return PortAllocator(lab_range=LAB_RANGE, workstation_range=WORKSTATION_RANGE)


@pytest.fixture
def manager(fake_driver, catalog, registry, allocator, clock):
    return SessionLifecycleManager(
        driver=fake_driver,
        catalog=catalog,
        registry=registry,
        allocator=allocator,
        startup_grace_seconds=0,
        clock=clock
    )


@pytest.fixture
def proxy(manager):
    return CommandProxy(manager)


@pytest.fixture
def app(fake_driver):
    """Create and configure a new app instance for each test."""
    from main import create_app

    app = create_app(
        overrides={
            'REAPER_ENABLED': False,
            'ADMIN_KEY': ADMIN_KEY,
            'STARTUP_GRACE_SECONDS': 0,
            'LAB_PORT_BASE': LAB_RANGE.base,
            'LAB_PORT_SPAN': LAB_RANGE.span,
            'WORKSTATION_PORT_BASE': WORKSTATION_RANGE.base,
            'WORKSTATION_PORT_SPAN': WORKSTATION_RANGE.span,
        },
        driver=fake_driver
    )
    app.config['TESTING'] = True
    catalog = app.extensions['lab_sessions']['catalog']
    for resource_id, data in TEST_LABS.items():
        catalog.add(resource_id, data)
    yield app


@pytest.fixture
def client(app):
    """A test client for the app."""
    return app.test_client()


@pytest.fixture
def auth_header():
    """Identity headers as forwarded by the upstream auth layer"""
    return {'X-User-ID': 'U1'}
