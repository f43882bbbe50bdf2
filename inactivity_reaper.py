"""
Inactivity Reaper
Background sweep that stops sessions nobody has used for a while
"""

import logging
import threading
from datetime import timedelta
from typing import List, Optional

from session_manager import SessionLifecycleManager
from session_registry import SessionKey

logger = logging.getLogger('InactivityReaper')


class InactivityReaper:
    """Periodically stops sessions idle longer than ``idle_threshold``"""

    def __init__(
        self,
        manager: SessionLifecycleManager,
        idle_threshold: timedelta = timedelta(minutes=30),
        interval_seconds: float = 300
    ):
        self.manager = manager
        self.idle_threshold = idle_threshold
        self.interval_seconds = interval_seconds
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @classmethod
    def from_config(cls, config, manager: SessionLifecycleManager) -> 'InactivityReaper':
        return cls(
            manager,
            idle_threshold=timedelta(minutes=config.IDLE_TIMEOUT_MINUTES),
            interval_seconds=config.REAPER_INTERVAL_SECONDS
        )

    def sweep(self) -> List[SessionKey]:
        """Stop every idle session once, returns the keys that were stopped"""
        now = self.manager.clock()
        stopped = []

        for session in self.manager.registry.snapshot():
            if now - session.last_activity_at <= self.idle_threshold:
                continue
            try:
                if self.manager.stop_if_idle(session.key, self.idle_threshold, now=now):
                    stopped.append(session.key)
            except Exception as e:
                logger.error(f"Error reaping {session.container_name}: {e}")

        if stopped:
            logger.info(f"♻️ Reaper stopped {len(stopped)} idle session(s)")
        return stopped

    def start(self) -> None:
        """Start the background thread (no-op if it is already running)"""
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()

        def run_sweeps():
            while not self._stop_event.wait(self.interval_seconds):
                try:
                    self.sweep()
                except Exception as e:
                    logger.error(f"Error in background sweep: {e}")

        self._thread = threading.Thread(target=run_sweeps, name='inactivity-reaper', daemon=True)
        self._thread.start()
        logger.info(
            f"♻️ Inactivity reaper started (idle > {int(self.idle_threshold.total_seconds())}s, "
            f"every {self.interval_seconds}s)"
        )

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None

    @property
    def is_running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())
