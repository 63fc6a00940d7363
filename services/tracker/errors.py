"""Exceptions raised by the tracker core."""


class TrackerError(Exception):
    """Base class for tracker errors."""


class TailError(TrackerError):
    """The log file exists but could not be read this poll."""

    def __init__(self, path: str, error: OSError):
        super().__init__(f"Cannot read {path}: {error}")
        self.path = path
        self.error = error


class SessionConflictError(TrackerError):
    """A start was requested while a session is active and overlap is rejected."""

    def __init__(self, active_id: str):
        super().__init__(f"Session {active_id} is still active")
        self.active_id = active_id


class NoActiveSessionError(TrackerError):
    """An operation needs an active session and there is none."""


class PersistenceError(TrackerError):
    """A closed session could not be handed to its sink."""

    def __init__(self, session_id: str, reason: str):
        super().__init__(f"Failed to persist session {session_id}: {reason}")
        self.session_id = session_id
        self.reason = reason
