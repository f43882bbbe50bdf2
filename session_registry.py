"""
Session Registry - authoritative in-memory map of active sessions

One Session per (owner, resource, kind) key. Every method is atomic and works
on copies, so nothing outside the registry can mutate a tracked Session.
"""

import copy
import re
import threading
from datetime import datetime, timezone
from typing import Callable, Dict, List, NamedTuple, Optional

# Session kinds
KIND_LAB = 'lab'
KIND_WORKSTATION = 'workstation'

# Session states
STATUS_REQUESTED = 'requested'
STATUS_RUNNING = 'running'
STATUS_STOPPING = 'stopping'
STATUS_STOPPED = 'stopped'
STATUS_FAILED = 'failed'

# Characters docker accepts in container names
_NAME_SANITIZER = re.compile(r'[^a-zA-Z0-9_.-]')


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionKey(NamedTuple):
    owner_id: str
    resource_id: str
    kind: str

    @classmethod
    def create(cls, owner_id, resource_id, kind: str = KIND_LAB) -> 'SessionKey':
        if kind not in (KIND_LAB, KIND_WORKSTATION):
            raise ValueError(f"Unknown session kind: {kind}")
        return cls(str(owner_id), str(resource_id), kind)

    def __str__(self):
        return f"{self.kind}:{self.owner_id}:{self.resource_id}"


def container_name_for(key: SessionKey, prefix: str = 'edusec') -> str:
    """Deterministic container name, also used to rediscover forgotten containers"""
    raw = f"{prefix}_{key.kind}_{key.resource_id}_{key.owner_id}"
    return _NAME_SANITIZER.sub('_', raw)


class Session:
    """One provisioned container for an owner and a resource"""

    def __init__(
        self,
        key: SessionKey,
        container_name: str,
        image: str,
        internal_port: int,
        host_port: Optional[int] = None,
        status: str = STATUS_REQUESTED,
        started_at: Optional[datetime] = None,
        last_activity_at: Optional[datetime] = None,
        container_id: Optional[str] = None
    ):
        self.key = key
        self.container_name = container_name
        self.image = image
        self.internal_port = internal_port
        self.host_port = host_port
        self.status = status
        self.started_at = started_at or utcnow()
        self.last_activity_at = last_activity_at or self.started_at
        self.container_id = container_id

    @property
    def owner_id(self) -> str:
        return self.key.owner_id

    @property
    def resource_id(self) -> str:
        return self.key.resource_id

    @property
    def kind(self) -> str:
        return self.key.kind

    def touch(self, now: Optional[datetime] = None) -> None:
        self.last_activity_at = now or utcnow()

    def copy(self) -> 'Session':
        return copy.copy(self)

    def to_dict(self) -> dict:
        return {
            'kind': self.kind,
            'ownerId': self.owner_id,
            'resourceId': self.resource_id,
            'containerName': self.container_name,
            'containerId': self.container_id,
            'image': self.image,
            'hostPort': self.host_port,
            'internalPort': self.internal_port,
            'status': self.status,
            'startedAt': self.started_at.isoformat(),
            'lastActivityAt': self.last_activity_at.isoformat(),
        }

    def __repr__(self):
        return f"<Session {self.key} {self.container_name} port={self.host_port} {self.status}>"


class SessionRegistry:
    """Thread-safe map of SessionKey -> Session"""

    def __init__(self):
        self._sessions: Dict[SessionKey, Session] = {}
        self._lock = threading.RLock()

    def get(self, key: SessionKey) -> Optional[Session]:
        with self._lock:
            session = self._sessions.get(key)
            return session.copy() if session else None

    def upsert(self, session: Session) -> Session:
        with self._lock:
            self._sessions[session.key] = session.copy()
            return session

    def remove(self, key: SessionKey) -> Optional[Session]:
        with self._lock:
            return self._sessions.pop(key, None)

    def snapshot(self) -> List[Session]:
        """Point-in-time copy for iterating without holding the lock"""
        with self._lock:
            return [session.copy() for session in self._sessions.values()]

    def reserve(self, session: Session, allocate: Callable[[List[Session]], int]) -> Session:
        """
        Allocate a host port and record the session in one atomic step.

        ``allocate`` receives every other tracked session and returns a port
        none of them holds.
        """
        with self._lock:
            others = [s for k, s in self._sessions.items() if k != session.key]
            session.host_port = allocate(others)
            self._sessions[session.key] = session.copy()
            return session

    def __contains__(self, key) -> bool:
        with self._lock:
            return key in self._sessions

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
