"""
Container Driver - the only code that talks to the container runtime 🐳

Two interchangeable implementations:
    DockerCliDriver  shells out to the docker binary (subprocess)
    DockerSdkDriver  uses the docker SDK for Python

Every operation is blocking and takes an optional per-call timeout. Runtime
failures are classified into the session error taxonomy and keep the
runtime's raw diagnostic text in ``details``.
"""

import json
import logging
import os
import shutil
import subprocess
import sys
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from typing import Any, Dict, List, NamedTuple, Optional

import docker
import requests

from session_errors import (
    ContainerNotFound,
    NameConflict,
    PullFailed,
    RuntimeTimeout,
    RuntimeUnavailable,
    SessionError,
    StartFailed,
)

logger = logging.getLogger('ContainerDriver')

DEFAULT_TIMEOUTS = {
    'pull': 300,
    'run': 8,
    'inspect': 5,
    'remove': 5,
    'exec': 30,
    'logs': 10,
}

DEFAULT_MAX_OUTPUT = 10 * 1024 * 1024

# Substrings of docker CLI stderr meaning the daemon itself is unreachable
UNAVAILABLE_MARKERS = (
    'cannot connect to the docker daemon',
    'is the docker daemon running',
    'error during connect',
    'dockerdesktoplinuxengine',
    '//./pipe/',
)


class ExecResult(NamedTuple):
    stdout: str
    stderr: str
    exit_code: int


def resolve_docker_binary() -> str:
    """Find the docker binary: PATH first, then Docker Desktop install dirs on Windows"""
    found = shutil.which('docker')
    if found:
        return found

    if sys.platform == 'win32':
        program_files = os.environ.get('ProgramFiles')
        if program_files:
            candidates = [
                os.path.join(program_files, 'Docker', 'Docker', 'resources', 'bin', 'docker.exe'),
                os.path.join(program_files, 'Docker', 'Docker', 'resources', 'docker.exe'),
                os.path.join(program_files, 'Docker', 'Docker', 'bin', 'docker.exe'),
            ]
            for candidate in candidates:
                if os.path.exists(candidate):
                    return candidate

    return 'docker'


def parse_port_bindings(ports: Optional[Dict[str, Any]]) -> List[int]:
    """
    Extract published host ports from a docker ``NetworkSettings.Ports`` mapping.

    Example input: {"22/tcp": [{"HostIp": "0.0.0.0", "HostPort": "22345"}], "80/tcp": null}
    """
    host_ports: List[int] = []
    for bindings in (ports or {}).values():
        for binding in bindings or []:
            try:
                port = int(binding.get('HostPort'))
            except (TypeError, ValueError):
                continue
            if port not in host_ports:
                host_ports.append(port)
    return host_ports


def _truncate(text: str, limit: int) -> str:
    if limit and len(text) > limit:
        return text[:limit] + "\n[output truncated]\n"
    return text


class ContainerDriver:
    """
    Contract for container runtime access.

    Implementations must be safe to call from several threads at once.
    """

    def __init__(self, timeouts: Optional[Dict[str, float]] = None, max_output: int = DEFAULT_MAX_OUTPUT):
        self.timeouts = dict(DEFAULT_TIMEOUTS)
        if timeouts:
            self.timeouts.update(timeouts)
        self.max_output = max_output

    def _timeout(self, op: str, override: Optional[float]) -> float:
        return override if override is not None else self.timeouts[op]

    def ping(self, timeout: Optional[float] = None) -> None:
        """Raise RuntimeUnavailable unless the runtime answers"""
        raise NotImplementedError

    def image_exists(self, image: str, timeout: Optional[float] = None) -> bool:
        raise NotImplementedError

    def pull_image(self, image: str, timeout: Optional[float] = None) -> None:
        raise NotImplementedError

    def run_detached(
        self,
        name: str,
        image: str,
        host_port: int,
        internal_port: int,
        command: Optional[List[str]] = None,
        labels: Optional[Dict[str, str]] = None,
        init: bool = False,
        timeout: Optional[float] = None
    ) -> str:
        """Start a container in the background and return its id"""
        raise NotImplementedError

    def remove(self, name: str, timeout: Optional[float] = None) -> None:
        """Force-remove a container; a missing container is not an error"""
        raise NotImplementedError

    def inspect_running(self, name: str, timeout: Optional[float] = None) -> bool:
        """Return the container's running flag, raise ContainerNotFound if absent"""
        raise NotImplementedError

    def inspect_state(self, name: str, timeout: Optional[float] = None) -> Dict[str, Any]:
        """Return the raw ``State`` block of the container"""
        raise NotImplementedError

    def published_ports(self, name: str, timeout: Optional[float] = None) -> List[int]:
        raise NotImplementedError

    def exec(self, name: str, command: str, timeout: Optional[float] = None) -> ExecResult:
        """Run ``/bin/sh -c command`` inside the container"""
        raise NotImplementedError

    def logs(self, name: str, tail_lines: int = 100, timeout: Optional[float] = None) -> str:
        raise NotImplementedError


# ==================== DOCKER CLI ====================

class DockerCliDriver(ContainerDriver):
    """Drives the docker command line client through subprocess"""

    def __init__(self, docker_bin: Optional[str] = None, **kwargs):
        super().__init__(**kwargs)
        self.docker_bin = docker_bin or resolve_docker_binary()

    def _run(self, args: List[str], op: str, timeout: float) -> subprocess.CompletedProcess:
        cmd = [self.docker_bin] + args
        logger.debug(f"$ {' '.join(cmd)}")
        try:
            return subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                encoding='utf-8',
                errors='replace',
                timeout=timeout
            )
        except FileNotFoundError as e:
            raise RuntimeUnavailable(f"Docker binary not found: {self.docker_bin}", details=str(e))
        except subprocess.TimeoutExpired:
            raise RuntimeTimeout(f"docker {op} timed out after {timeout}s")

    @staticmethod
    def _classify(stderr: str, op: str, failure_cls=SessionError) -> SessionError:
        lowered = stderr.lower()
        if any(marker in lowered for marker in UNAVAILABLE_MARKERS):
            return RuntimeUnavailable(f"Cannot connect to Docker during {op}", details=stderr)
        if 'no such container' in lowered or 'no such object' in lowered:
            return ContainerNotFound(f"Container not found during {op}", details=stderr)
        if 'is already in use' in lowered:
            return NameConflict("Container name already in use", details=stderr)
        return failure_cls(f"docker {op} failed", details=stderr)

    def ping(self, timeout: Optional[float] = None) -> None:
        result = self._run(['version', '--format', '{{.Server.Version}}'], 'ping',
                           self._timeout('inspect', timeout))
        if result.returncode != 0:
            raise RuntimeUnavailable("Cannot connect to Docker", details=(result.stderr or '').strip())

    def image_exists(self, image: str, timeout: Optional[float] = None) -> bool:
        result = self._run(['image', 'inspect', image], 'image inspect',
                           self._timeout('inspect', timeout))
        if result.returncode == 0:
            return True
        error = self._classify((result.stderr or '').strip(), 'image inspect')
        if isinstance(error, RuntimeUnavailable):
            raise error
        return False

    def pull_image(self, image: str, timeout: Optional[float] = None) -> None:
        logger.info(f"⬇️ Pulling image {image}...")
        result = self._run(['pull', image], 'pull', self._timeout('pull', timeout))
        if result.returncode != 0:
            raise self._classify((result.stderr or '').strip(), 'pull', PullFailed)

    def run_detached(self, name, image, host_port, internal_port, command=None,
                     labels=None, init=False, timeout=None) -> str:
        args = ['run', '-d', '--name', name, '-p', f'{host_port}:{internal_port}', '--restart=no']
        if init:
            args.append('--init')
        for key, value in (labels or {}).items():
            args += ['--label', f'{key}={value}']
        args.append(image)
        args += list(command or [])

        result = self._run(args, 'run', self._timeout('run', timeout))
        if result.returncode != 0:
            raise self._classify((result.stderr or '').strip(), 'run', StartFailed)
        # docker sometimes writes warnings to stderr on success
        if result.stderr and result.stderr.strip():
            logger.debug(f"docker run stderr: {result.stderr.strip()}")
        return result.stdout.strip()

    def remove(self, name: str, timeout: Optional[float] = None) -> None:
        result = self._run(['rm', '-f', name], 'rm', self._timeout('remove', timeout))
        if result.returncode == 0:
            return
        error = self._classify((result.stderr or '').strip(), 'rm')
        if isinstance(error, ContainerNotFound):
            return
        raise error

    def inspect_running(self, name: str, timeout: Optional[float] = None) -> bool:
        result = self._run(['inspect', '-f', '{{.State.Running}}', name], 'inspect',
                           self._timeout('inspect', timeout))
        if result.returncode != 0:
            raise self._classify((result.stderr or '').strip(), 'inspect')
        return result.stdout.strip().strip("'").lower() == 'true'

    def inspect_state(self, name: str, timeout: Optional[float] = None) -> Dict[str, Any]:
        result = self._run(['inspect', '-f', '{{json .State}}', name], 'inspect',
                           self._timeout('inspect', timeout))
        if result.returncode != 0:
            raise self._classify((result.stderr or '').strip(), 'inspect')
        try:
            return json.loads(result.stdout.strip() or '{}') or {}
        except ValueError:
            return {}

    def published_ports(self, name: str, timeout: Optional[float] = None) -> List[int]:
        result = self._run(['inspect', '-f', '{{json .NetworkSettings.Ports}}', name], 'inspect',
                           self._timeout('inspect', timeout))
        if result.returncode != 0:
            raise self._classify((result.stderr or '').strip(), 'inspect')
        try:
            ports = json.loads(result.stdout.strip() or 'null')
        except ValueError:
            return []
        return parse_port_bindings(ports)

    def exec(self, name: str, command: str, timeout: Optional[float] = None) -> ExecResult:
        result = self._run(['exec', name, '/bin/sh', '-c', command], 'exec',
                           self._timeout('exec', timeout))
        stderr = result.stderr or ''
        # Failures of docker itself (not of the user's command)
        if result.returncode != 0 and (
            stderr.startswith('Error response from daemon')
            or any(marker in stderr.lower() for marker in UNAVAILABLE_MARKERS)
        ):
            error = self._classify(stderr.strip(), 'exec', ContainerNotFound)
            raise error
        return ExecResult(
            stdout=_truncate(result.stdout or '', self.max_output),
            stderr=_truncate(stderr, self.max_output),
            exit_code=result.returncode
        )

    def logs(self, name: str, tail_lines: int = 100, timeout: Optional[float] = None) -> str:
        result = self._run(['logs', '--tail', str(tail_lines), name], 'logs',
                           self._timeout('logs', timeout))
        if result.returncode != 0:
            raise self._classify((result.stderr or '').strip(), 'logs')
        # docker logs replays the container's stderr on our stderr
        return (result.stdout or '') + (result.stderr or '')


# ==================== DOCKER SDK ====================

class DockerSdkDriver(ContainerDriver):
    """
    Drives the Docker Engine API through the docker SDK.

    SDK calls run on a small worker pool so the caller can stop waiting after
    the timeout; the call itself is not interrupted.
    """

    def __init__(self, docker_host: Optional[str] = None, client=None, max_workers: int = 8, **kwargs):
        super().__init__(**kwargs)
        self.docker_host = docker_host
        self._client = client
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix='docker-sdk')

    @property
    def client(self):
        if self._client is None:
            try:
                if self.docker_host:
                    self._client = docker.DockerClient(base_url=self.docker_host)
                else:
                    self._client = docker.from_env()
            except docker.errors.DockerException as e:
                raise RuntimeUnavailable(f"Docker not available: {e}", details=str(e))
        return self._client

    def _call(self, op: str, timeout: float, fn, *args, **kwargs):
        future = self._executor.submit(fn, *args, **kwargs)
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError:
            raise RuntimeTimeout(f"docker {op} timed out after {timeout}s")

    @staticmethod
    def _translate(exc: Exception, op: str, failure_cls=SessionError) -> SessionError:
        if isinstance(exc, docker.errors.NotFound):
            return ContainerNotFound(f"Container not found during {op}", details=str(exc))
        if isinstance(exc, docker.errors.APIError):
            if exc.status_code == 409 and op == 'run':
                return NameConflict("Container name already in use", details=str(exc.explanation or exc))
            return failure_cls(f"docker {op} failed", details=str(exc.explanation or exc))
        if isinstance(exc, (docker.errors.DockerException, requests.exceptions.ConnectionError)):
            return RuntimeUnavailable(f"Cannot connect to Docker during {op}", details=str(exc))
        return failure_cls(f"docker {op} failed: {exc}", details=str(exc))

    def _get(self, name: str):
        return self.client.containers.get(name)

    def ping(self, timeout: Optional[float] = None) -> None:
        try:
            self._call('ping', self._timeout('inspect', timeout), self.client.ping)
        except (docker.errors.DockerException, requests.exceptions.ConnectionError) as e:
            raise RuntimeUnavailable("Cannot connect to Docker", details=str(e))

    def image_exists(self, image: str, timeout: Optional[float] = None) -> bool:
        try:
            self._call('image inspect', self._timeout('inspect', timeout), self.client.images.get, image)
            return True
        except docker.errors.ImageNotFound:
            return False
        except (docker.errors.DockerException, requests.exceptions.ConnectionError) as e:
            raise self._translate(e, 'image inspect')

    def pull_image(self, image: str, timeout: Optional[float] = None) -> None:
        repository, tag = docker.utils.parse_repository_tag(image)
        logger.info(f"⬇️ Pulling image {image}...")
        try:
            self._call('pull', self._timeout('pull', timeout),
                       self.client.images.pull, repository, tag=tag or 'latest')
        except docker.errors.NotFound as e:
            raise PullFailed("docker pull failed", details=str(e))
        except (docker.errors.DockerException, requests.exceptions.ConnectionError) as e:
            raise self._translate(e, 'pull', PullFailed)

    def run_detached(self, name, image, host_port, internal_port, command=None,
                     labels=None, init=False, timeout=None) -> str:
        def _run():
            return self.client.containers.run(
                image=image,
                command=command,
                name=name,
                detach=True,
                remove=False,
                ports={f"{internal_port}/tcp": host_port},
                labels=labels or {},
                init=init or None,
                restart_policy={"Name": "no"}
            )

        try:
            container = self._call('run', self._timeout('run', timeout), _run)
        except docker.errors.ImageNotFound as e:
            raise StartFailed(f"Docker image not found: {image}", details=str(e))
        except (docker.errors.DockerException, requests.exceptions.ConnectionError) as e:
            raise self._translate(e, 'run', StartFailed)
        return container.id

    def remove(self, name: str, timeout: Optional[float] = None) -> None:
        def _remove():
            self._get(name).remove(force=True)

        try:
            self._call('rm', self._timeout('remove', timeout), _remove)
        except docker.errors.NotFound:
            return
        except (docker.errors.DockerException, requests.exceptions.ConnectionError) as e:
            raise self._translate(e, 'rm')

    def inspect_state(self, name: str, timeout: Optional[float] = None) -> Dict[str, Any]:
        try:
            container = self._call('inspect', self._timeout('inspect', timeout), self._get, name)
        except (docker.errors.DockerException, requests.exceptions.ConnectionError) as e:
            raise self._translate(e, 'inspect')
        return container.attrs.get('State', {}) or {}

    def inspect_running(self, name: str, timeout: Optional[float] = None) -> bool:
        return bool(self.inspect_state(name, timeout=timeout).get('Running'))

    def published_ports(self, name: str, timeout: Optional[float] = None) -> List[int]:
        try:
            container = self._call('inspect', self._timeout('inspect', timeout), self._get, name)
        except (docker.errors.DockerException, requests.exceptions.ConnectionError) as e:
            raise self._translate(e, 'inspect')
        return parse_port_bindings(container.ports)

    def exec(self, name: str, command: str, timeout: Optional[float] = None) -> ExecResult:
        def _exec():
            return self._get(name).exec_run(["/bin/sh", "-c", command], demux=True)

        try:
            exec_log = self._call('exec', self._timeout('exec', timeout), _exec)
        except (docker.errors.DockerException, requests.exceptions.ConnectionError) as e:
            raise self._translate(e, 'exec', ContainerNotFound)

        stdout_raw, stderr_raw = exec_log.output or (None, None)
        stdout = stdout_raw.decode('utf-8', errors='replace') if stdout_raw else ""
        stderr = stderr_raw.decode('utf-8', errors='replace') if stderr_raw else ""
        return ExecResult(
            stdout=_truncate(stdout, self.max_output),
            stderr=_truncate(stderr, self.max_output),
            exit_code=exec_log.exit_code if exec_log.exit_code is not None else 0
        )

    def logs(self, name: str, tail_lines: int = 100, timeout: Optional[float] = None) -> str:
        def _logs():
            return self._get(name).logs(tail=tail_lines)

        try:
            raw = self._call('logs', self._timeout('logs', timeout), _logs)
        except (docker.errors.DockerException, requests.exceptions.ConnectionError) as e:
            raise self._translate(e, 'logs')
        return raw.decode('utf-8', errors='replace')


def create_driver(config) -> ContainerDriver:
    """Build the driver selected by ``config.CONTAINER_DRIVER``"""
    kwargs = {'timeouts': config.timeouts, 'max_output': config.EXEC_MAX_OUTPUT}
    if config.CONTAINER_DRIVER == 'sdk':
        logger.info("Using docker SDK driver")
        return DockerSdkDriver(docker_host=config.DOCKER_HOST, **kwargs)
    if config.CONTAINER_DRIVER == 'cli':
        driver = DockerCliDriver(docker_bin=config.DOCKER_BIN, **kwargs)
        logger.info(f"Using docker CLI driver ({driver.docker_bin})")
        return driver
    raise ValueError(f"Unknown CONTAINER_DRIVER: {config.CONTAINER_DRIVER!r}")
