"""Exception hierarchy for the bridge.

Frame parse failures are not represented here: a line that is not JSON is
dropped where it is read. Answers for unknown control requests are reported
as a ``False`` result by the registry rather than raised.
"""

from __future__ import annotations


class BridgeError(Exception):
    """Base exception for all bridge errors."""


class SessionNotFoundError(BridgeError):
    """The session does not exist (or was deleted)."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class SessionBusyError(BridgeError):
    """A turn is already running for the session."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Session {session_id} already has a turn in progress")


class InvalidPromptError(BridgeError):
    """The prompt request carried no usable text."""


class SpawnError(BridgeError):
    """The agent subprocess could not be started."""

    def __init__(self, command: str, reason: str) -> None:
        self.command = command
        self.reason = reason
        super().__init__(f"Failed to spawn {command}: {reason}")


class PersistenceError(BridgeError):
    """A store write failed. In-memory state is kept regardless."""

    def __init__(self, operation: str, reason: str) -> None:
        self.operation = operation
        self.reason = reason
        super().__init__(f"Persistence failed during {operation}: {reason}")
