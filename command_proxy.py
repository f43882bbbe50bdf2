"""
Command Execution Proxy
Runs a terminal command inside a user's running session container
"""

import logging
from typing import Any, Dict

from session_errors import SessionError, SessionNotRunning
from session_manager import SessionLifecycleManager
from session_registry import KIND_LAB, STATUS_RUNNING

logger = logging.getLogger('CommandProxy')

EMPTY_OUTPUT = '(no output)\r\n'


class CommandProxy:
    """
    Routes commands into session containers.

    A command that fails (non-zero exit, or the exec call itself failing) is
    a normal result with ``success: False``: users run arbitrary commands in
    their own sandbox and the terminal shows whatever came back.
    """

    def __init__(self, manager: SessionLifecycleManager):
        self.manager = manager

    def execute(self, owner_id, resource_id, command, kind: str = KIND_LAB) -> Dict[str, Any]:
        """
        Execute ``command`` with ``/bin/sh -c`` in the session for (owner, resource).

        Returns:
            {"success": bool, "output": str, "exitCode": int or None}

        Raises:
            ValueError: command is empty or not a string
            SessionNotRunning: no running session is tracked for the key
        """
        if not isinstance(command, str) or not command.strip():
            raise ValueError("Command is required")

        manager = self.manager
        key = manager.make_key(owner_id, resource_id, kind)

        with manager.key_lock(key):
            session = manager.registry.get(key)
            if session is None or session.status != STATUS_RUNNING:
                raise SessionNotRunning(f"No running session for {key}")

        # Runs without the key lock: Status, Stop and the reaper must not
        # wait behind a long command
        try:
            result = manager.driver.exec(session.container_name, command)
        except SessionError as e:
            logger.warning(f"Exec in {session.container_name} failed: {e}")
            return {
                'success': False,
                'output': e.details or e.message or 'Command execution failed',
                'exitCode': None
            }

        # The terminal does not distinguish the two streams
        output = result.stdout + result.stderr
        success = result.exit_code == 0
        if success:
            self._record_activity(key, session)

        return {
            'success': success,
            'output': output or EMPTY_OUTPUT,
            'exitCode': result.exit_code
        }

    def _record_activity(self, key, session) -> None:
        """Touch the session, unless it was stopped or replaced while the command ran"""
        manager = self.manager
        with manager.key_lock(key):
            current = manager.registry.get(key)
            if (
                current is None
                or current.status != STATUS_RUNNING
                or current.container_name != session.container_name
                or current.started_at != session.started_at
            ):
                return
            current.touch(manager.clock())
            manager.registry.upsert(current)
