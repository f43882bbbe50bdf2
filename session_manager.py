"""
Session Lifecycle Manager - The Magic Engine 🐳
Starts, stops, inspects and recovers lab and workstation containers,
one session per (user, resource) pair.

Stop and Status never fail from the caller's point of view: runtime errors on
those paths are logged through the 'SessionManager' logger and discarded.
"""

import logging
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterator, List, Optional

from container_driver import ContainerDriver
from lab_catalog import CatalogEntry, LabCatalog, WORKSTATION_RESOURCE_ID
from port_allocator import PortAllocator
from session_errors import (
    ContainerNotFound,
    NotContainerized,
    RuntimeTimeout,
    RuntimeUnavailable,
    SessionNotRunning,
    StartFailed,
)
from session_registry import (
    KIND_LAB,
    KIND_WORKSTATION,
    STATUS_FAILED,
    STATUS_RUNNING,
    STATUS_STOPPED,
    STATUS_STOPPING,
    Session,
    SessionKey,
    SessionRegistry,
    container_name_for,
    utcnow,
)

logger = logging.getLogger('SessionManager')

LOG_TAIL_ON_FAILURE = 80


class _KeyLock:
    __slots__ = ('lock', 'users')

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


class SessionLifecycleManager:
    """
    Orchestrates the container driver, port allocator and session registry.

    All work on a given key runs under that key's lock, so a Start, a Stop
    and a reaper sweep for the same session never interleave.
    """

    def __init__(
        self,
        driver: ContainerDriver,
        catalog: LabCatalog,
        registry: Optional[SessionRegistry] = None,
        allocator: Optional[PortAllocator] = None,
        container_prefix: str = 'edusec',
        public_host: str = 'localhost',
        startup_grace_seconds: float = 2,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.driver = driver
        self.catalog = catalog
        self.registry = registry if registry is not None else SessionRegistry()
        self.allocator = allocator or PortAllocator()
        self.container_prefix = container_prefix
        self.public_host = public_host
        self.startup_grace_seconds = startup_grace_seconds
        self.clock = clock
        self._sleep = sleep

        self._key_locks: Dict[SessionKey, _KeyLock] = {}
        self._key_locks_guard = threading.Lock()

    @classmethod
    def from_config(cls, config, driver: ContainerDriver, catalog: LabCatalog,
                    registry: Optional[SessionRegistry] = None) -> 'SessionLifecycleManager':
        return cls(
            driver=driver,
            catalog=catalog,
            registry=registry,
            allocator=PortAllocator.from_config(config),
            container_prefix=config.CONTAINER_PREFIX,
            public_host=config.PUBLIC_HOST,
            startup_grace_seconds=config.STARTUP_GRACE_SECONDS
        )

    # ==================== HELPERS ====================

    @contextmanager
    def key_lock(self, key: SessionKey) -> Iterator[None]:
        """
        Hold the lock of ``key`` for the duration of the block.

        Locks are reference counted and dropped once nobody holds or waits
        for them, so the map only ever contains keys in active use.
        """
        with self._key_locks_guard:
            entry = self._key_locks.get(key)
            if entry is None:
                entry = self._key_locks[key] = _KeyLock()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._key_locks_guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._key_locks[key]

    def make_key(self, owner_id, resource_id=None, kind: str = KIND_LAB) -> SessionKey:
        # One workstation per owner, whatever resource the caller is looking at
        if kind == KIND_WORKSTATION:
            resource_id = WORKSTATION_RESOURCE_ID
        return SessionKey.create(owner_id, resource_id, kind)

    def container_name(self, key: SessionKey) -> str:
        return container_name_for(key, self.container_prefix)

    def _entry_for(self, key: SessionKey) -> CatalogEntry:
        if key.kind == KIND_WORKSTATION:
            return self.catalog.workstation()
        return self.catalog.get(key.resource_id)

    def access_url(self, session: Session) -> Optional[str]:
        if not session.host_port:
            return None
        return f"http://{self.public_host}:{session.host_port}"

    def describe(self, session: Session) -> Dict[str, Any]:
        details = session.to_dict()
        details['accessUrl'] = self.access_url(session)
        return details

    def _allocate_for(self, kind: str) -> Callable[[List[Session]], int]:
        return lambda others: self.allocator.allocate(others, kind)

    def _adopt_port(self, container_name: str, observed: List[int], kind: str) -> Callable[[List[Session]], int]:
        """Prefer a port the container already publishes, unless another session holds it"""
        def allocate(others: List[Session]) -> int:
            taken = {s.host_port for s in others if s.host_port}
            for port in observed:
                if port not in taken:
                    return port
            if observed:
                logger.warning(f"Ports {observed} of {container_name} are already tracked, allocating a new one")
            return self.allocator.allocate(others, kind)
        return allocate

    def _is_running(self, container_name: str) -> bool:
        try:
            return self.driver.inspect_running(container_name)
        except ContainerNotFound:
            return False

    def _remove_quietly(self, container_name: str) -> None:
        try:
            self.driver.remove(container_name)
        except Exception as e:
            logger.warning(f"Could not remove container {container_name}: {e}")

    # ==================== START ====================

    def start(self, owner_id, resource_id=None, kind: str = KIND_LAB) -> Dict[str, Any]:
        """
        Start (or reuse) the session for an owner and a resource.

        This is the main function that:
        1. Returns the existing session if the runtime confirms it is running
        2. Makes sure the image is present locally, pulling it on a miss
        3. Removes any leftover container with the same deterministic name
        4. Allocates a free host port and records a 'requested' session
        5. Runs the container detached and verifies it stays up
        6. Returns connection info (containerName, hostPort, accessUrl)

        Raises:
            ResourceNotFound, NotContainerized, RuntimeUnavailable, RuntimeTimeout,
            PullFailed, StartFailed, PortExhausted
        """
        key = self.make_key(owner_id, resource_id, kind)
        entry = self._entry_for(key)
        if not entry.is_containerized:
            raise NotContainerized(f"Lab {key.resource_id} is not containerized or has no image")

        with self.key_lock(key):
            existing = self.registry.get(key)
            if existing is not None:
                if existing.status == STATUS_RUNNING and self._is_running(existing.container_name):
                    logger.info(f"♻️ Reusing running session {existing.container_name} on port {existing.host_port}")
                    return self.describe(existing)
                logger.warning(f"Dropping stale session record {existing}")
                self.registry.remove(key)

            return self._provision(key, entry)

    def _provision(self, key: SessionKey, entry: CatalogEntry) -> Dict[str, Any]:
        logger.info(f"🚀 Starting {key.kind} session for user {key.owner_id}, image: {entry.image}")

        self.driver.ping()
        self._ensure_image(entry.image)

        container_name = self.container_name(key)
        # A container from a previous process may still hold the name
        self._remove_quietly(container_name)

        now = self.clock()
        session = Session(
            key=key,
            container_name=container_name,
            image=entry.image,
            internal_port=entry.internal_port,
            started_at=now,
            last_activity_at=now
        )
        self.registry.reserve(session, self._allocate_for(key.kind))
        logger.info(f"📍 Allocated port {session.host_port} for {container_name}")

        try:
            session.container_id = self.driver.run_detached(
                name=container_name,
                image=entry.image,
                host_port=session.host_port,
                internal_port=entry.internal_port,
                command=entry.command,
                labels=self._labels(key, now),
                init=entry.init
            )
            self._verify_started(session)
        except Exception as e:
            self._fail(session, e)
            raise

        session.status = STATUS_RUNNING
        session.touch(self.clock())
        self.registry.upsert(session)

        logger.info(f"✅ Session ready for user {key.owner_id}: {self.access_url(session)}")
        return self.describe(session)

    def _ensure_image(self, image: str) -> None:
        if self.driver.image_exists(image):
            return
        logger.info(f"Image {image} not present locally")
        self.driver.pull_image(image)

    def _labels(self, key: SessionKey, created_at: datetime) -> Dict[str, str]:
        prefix = self.container_prefix
        return {
            f"{prefix}.owner": key.owner_id,
            f"{prefix}.resource": key.resource_id,
            f"{prefix}.kind": key.kind,
            f"{prefix}.created_at": created_at.isoformat(),
        }

    def _verify_started(self, session: Session) -> None:
        """Give the container a moment, then make sure it did not exit right away"""
        if self.startup_grace_seconds:
            self._sleep(self.startup_grace_seconds)

        if self._is_running(session.container_name):
            return

        diag = ''
        try:
            state = self.driver.inspect_state(session.container_name)
            diag = (
                f"Status={state.get('Status')}; ExitCode={state.get('ExitCode')}; "
                f"OOMKilled={state.get('OOMKilled')}; Error={state.get('Error') or 'n/a'}"
            )
        except Exception as e:
            logger.debug(f"inspect failed while diagnosing {session.container_name}: {e}")

        logs = ''
        try:
            logs = self.driver.logs(session.container_name, tail_lines=LOG_TAIL_ON_FAILURE)
        except Exception as e:
            logger.debug(f"logs failed while diagnosing {session.container_name}: {e}")

        message = "Container was created but failed to start."
        if diag:
            message += f" Inspect: {diag}."
        raise StartFailed(message, details=logs or 'no logs available')

    def _fail(self, session: Session, error: Exception) -> None:
        session.status = STATUS_FAILED
        self.registry.upsert(session)
        logger.error(f"❌ Failed to start {session.container_name}: {error}")
        details = getattr(error, 'details', None)
        if details:
            logger.error(f"Runtime output: {details}")

        self._remove_quietly(session.container_name)
        # Forget the failed record so a retry provisions from scratch
        self.registry.remove(session.key)

    # ==================== STOP ====================

    def stop(self, owner_id, resource_id=None, kind: str = KIND_LAB) -> Dict[str, Any]:
        """Remove the session's container and forget it. Never fails."""
        key = self.make_key(owner_id, resource_id, kind)
        with self.key_lock(key):
            self._stop_locked(key)
        return {'success': True}

    def _stop_locked(self, key: SessionKey) -> None:
        session = self.registry.get(key)
        container_name = session.container_name if session else self.container_name(key)

        if session is not None:
            session.status = STATUS_STOPPING
            self.registry.upsert(session)

        try:
            self.driver.remove(container_name)
            logger.info(f"🛑 Stopped {container_name}")
        except Exception as e:
            logger.warning(f"Error removing container {container_name}: {e}")
        finally:
            self.registry.remove(key)

    def stop_if_idle(self, key: SessionKey, idle_threshold: timedelta, now: Optional[datetime] = None) -> bool:
        """
        Stop the session when it has been idle longer than ``idle_threshold``.

        The idle check is repeated under the key lock so activity that lands
        after a reaper scan keeps the session alive.
        """
        with self.key_lock(key):
            session = self.registry.get(key)
            if session is None:
                return False
            now = now or self.clock()
            idle_for = now - session.last_activity_at
            if idle_for <= idle_threshold:
                return False
            logger.info(f"⏰ Session {session.container_name} idle for {int(idle_for.total_seconds())}s, stopping")
            self._stop_locked(key)
            return True

    # ==================== STATUS ====================

    def status(self, owner_id, resource_id=None, kind: str = KIND_LAB) -> Dict[str, Any]:
        """
        Report whether the session is running. Never fails.

        Untracked workstation sessions are reconciled against the runtime first.
        """
        key = self.make_key(owner_id, resource_id, kind)
        with self.key_lock(key):
            session = self.registry.get(key)
            if session is None:
                recovered = self._reconcile_locked(key)
                if recovered is not None:
                    return self.describe(recovered)
                return {'status': STATUS_STOPPED}

            try:
                running = self.driver.inspect_running(session.container_name)
            except ContainerNotFound as e:
                logger.warning(f"Container {session.container_name} vanished ({e}), pruning session")
                self.registry.remove(key)
                return {'status': STATUS_STOPPED}
            except Exception as e:
                # The container may still hold its port, keep the record
                logger.warning(f"Could not inspect {session.container_name}: {e}")
                return {'status': STATUS_STOPPED}

            if not running:
                logger.info(f"Container {session.container_name} is no longer running, pruning session")
                self.registry.remove(key)
                session.status = STATUS_STOPPED
                return self.describe(session)

            session.status = STATUS_RUNNING
            session.touch(self.clock())
            self.registry.upsert(session)
            return self.describe(session)

    # ==================== RECONCILE ====================

    def reconcile(self, owner_id) -> Optional[Dict[str, Any]]:
        """Rebuild a forgotten workstation session from the runtime, if it is running"""
        key = self.make_key(owner_id, kind=KIND_WORKSTATION)
        with self.key_lock(key):
            tracked = self.registry.get(key)
            if tracked is not None:
                return self.describe(tracked)
            session = self._reconcile_locked(key)
            return self.describe(session) if session else None

    def _reconcile_locked(self, key: SessionKey) -> Optional[Session]:
        if key.kind != KIND_WORKSTATION:
            return None

        container_name = self.container_name(key)
        try:
            running = self.driver.inspect_running(container_name)
        except ContainerNotFound:
            return None
        except Exception as e:
            logger.warning(f"Reconcile of {container_name} failed: {e}")
            return None

        try:
            if not running:
                logger.info(f"🧹 Removing stopped leftover container {container_name}")
                self.driver.remove(container_name)
                return None

            entry = self.catalog.workstation()
            now = self.clock()
            session = Session(
                key=key,
                container_name=container_name,
                image=entry.image,
                internal_port=entry.internal_port,
                status=STATUS_RUNNING,
                started_at=now,
                last_activity_at=now
            )
            ports = self.driver.published_ports(container_name)
            self.registry.reserve(session, self._adopt_port(container_name, ports, key.kind))

            logger.info(f"♻️ Recovered session {container_name} on port {session.host_port}")
            return session
        except Exception as e:
            logger.warning(f"Reconcile of {container_name} failed: {e}")
            return None

    # ==================== EXTRAS ====================

    def logs(self, owner_id, resource_id=None, kind: str = KIND_LAB, tail_lines: int = 100) -> str:
        key = self.make_key(owner_id, resource_id, kind)
        session = self.registry.get(key)
        if session is None or session.status != STATUS_RUNNING:
            raise SessionNotRunning(f"No running session for {key}")
        return self.driver.logs(session.container_name, tail_lines=tail_lines)

    def list_sessions(self) -> List[Dict[str, Any]]:
        """All tracked sessions (admin view)"""
        return [self.describe(session) for session in self.registry.snapshot()]

    def runtime_health(self) -> Dict[str, Any]:
        try:
            self.driver.ping()
            return {'healthy': True, 'message': 'Docker is running'}
        except (RuntimeUnavailable, RuntimeTimeout) as e:
            logger.warning(f"⚠ Docker not available: {e}")
            return {'healthy': False, 'message': e.user_message}

    # Workstation shortcuts

    def start_workstation(self, owner_id) -> Dict[str, Any]:
        return self.start(owner_id, kind=KIND_WORKSTATION)

    def stop_workstation(self, owner_id) -> Dict[str, Any]:
        return self.stop(owner_id, kind=KIND_WORKSTATION)

    def workstation_status(self, owner_id) -> Dict[str, Any]:
        return self.status(owner_id, kind=KIND_WORKSTATION)
