"""Shared error types for the ralph package."""


class RalphError(Exception):
    """Base exception for ralph errors.

    Use this for user-facing errors that should have actionable messages.
    """

    pass


class SessionNotFoundError(RalphError):
    """Raised when a session id does not name an existing session."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session '{session_id}' does not exist")
        self.session_id = session_id


class SessionExistsError(RalphError):
    """Raised when creating a session whose id is already taken."""

    def __init__(self, session_id: str) -> None:
        super().__init__(
            f"Session '{session_id}' already exists. "
            "Wait a second and try again, or choose a different name."
        )
        self.session_id = session_id


class InvalidTransitionError(RalphError):
    """Raised when the phase machine is asked for an undefined transition."""

    pass


class RuleSetError(RalphError):
    """Raised when an error-rule table cannot be loaded or compiled."""

    pass


class AgentError(RalphError):
    """Raised when the external agent cannot be prepared or launched."""

    pass


class SessionLockedError(RalphError):
    """Raised when a session is already being run by a live process."""

    def __init__(self, session_id: str, pid: int | None) -> None:
        super().__init__(f"Session '{session_id}' is already running (PID: {pid})")
        self.session_id = session_id
        self.pid = pid
