"""
Port Allocator - picks host ports for new sessions

A candidate is drawn at random inside the configured range, then probed
upward (wrapping at the end of the range) until it collides with no port held
by an active session. There is no reservation table: callers must hold the
registry lock from allocation until the session is recorded.
"""

import random
import socket
import logging
from contextlib import closing
from typing import Iterable, NamedTuple, Optional

from session_errors import PortExhausted
from session_registry import KIND_LAB, KIND_WORKSTATION

logger = logging.getLogger('PortAllocator')


class PortRange(NamedTuple):
    base: int
    span: int

    @property
    def end(self) -> int:
        return self.base + self.span

    def __contains__(self, port) -> bool:
        return self.base <= port < self.end


class PortAllocator:
    """Allocates host ports from one range per session kind"""

    def __init__(
        self,
        lab_range: PortRange = PortRange(8082, 1000),
        workstation_range: PortRange = PortRange(22220, 1000),
        probe_host: bool = False,
        rng: Optional[random.Random] = None
    ):
        if lab_range.span <= 0 or workstation_range.span <= 0:
            raise ValueError("Port ranges must contain at least one port")
        self.ranges = {
            KIND_LAB: lab_range,
            KIND_WORKSTATION: workstation_range,
        }
        self.probe_host = probe_host
        self._rng = rng or random.Random()

    @classmethod
    def from_config(cls, config) -> 'PortAllocator':
        return cls(
            lab_range=PortRange(config.LAB_PORT_BASE, config.LAB_PORT_SPAN),
            workstation_range=PortRange(config.WORKSTATION_PORT_BASE, config.WORKSTATION_PORT_SPAN),
            probe_host=config.PROBE_HOST_PORTS
        )

    def range_for(self, kind: str) -> PortRange:
        try:
            return self.ranges[kind]
        except KeyError:
            raise ValueError(f"Unknown session kind: {kind}")

    def allocate(self, active_sessions: Iterable, kind: str) -> int:
        """
        Find a free port for a session of ``kind``.

        Args:
            active_sessions: sessions currently holding ports (any kind)
            kind: 'lab' or 'workstation'

        Raises:
            PortExhausted: every port in the range is taken
        """
        port_range = self.range_for(kind)
        taken = {s.host_port for s in active_sessions if s.host_port}

        candidate = port_range.base + self._rng.randrange(port_range.span)
        for _ in range(port_range.span):
            if candidate not in taken and self._is_port_available(candidate):
                return candidate
            candidate += 1
            if candidate >= port_range.end:
                candidate = port_range.base

        raise PortExhausted(
            f"No free port available in range {port_range.base}-{port_range.end - 1}"
        )

    def _is_port_available(self, port: int) -> bool:
        """Check if a port is available for binding (only when probing is enabled)"""
        if not self.probe_host:
            return True
        with closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as sock:
            try:
                sock.bind(('', port))
                return True
            except OSError:
                logger.debug(f"Port {port} is busy on the host, skipping")
                return False
