"""
Exception hierarchy for Cardsmith.

Capability failures are recoverable and never escape the execution loop;
everything else here is raised to the caller that can act on it.
"""


class CardsmithError(Exception):
    """Base class for all Cardsmith errors."""


class NotFoundError(CardsmithError):
    """A referenced work item does not exist."""


class TaskNotFoundError(NotFoundError):
    def __init__(self, task_id: str):
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class GoalNotFoundError(NotFoundError):
    def __init__(self, goal_id: str):
        super().__init__(f"Goal not found: {goal_id}")
        self.goal_id = goal_id


class UnknownCapabilityError(CardsmithError):
    """No tool is registered for a capability name."""

    def __init__(self, capability: str, available: list[str] | None = None):
        message = f"Unknown capability: {capability}"
        if available:
            message += f" (available: {', '.join(sorted(available))})"
        super().__init__(message)
        self.capability = capability


class ThinkingError(CardsmithError):
    """A model response could not be turned into a structured decision."""


class ToolExecutionError(CardsmithError):
    """A capability could not complete its work."""


class SessionNotFoundError(CardsmithError):
    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class SessionConflictError(CardsmithError):
    """The stored session changed since it was loaded."""

    def __init__(self, session_id: str, expected_version: int, actual_version: int):
        super().__init__(
            f"Session {session_id} was modified concurrently "
            f"(expected version {expected_version}, found {actual_version})"
        )
        self.session_id = session_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class SessionCancelledError(CardsmithError):
    """Raised inside a capability when the session has been cancelled."""


class ConfigurationError(CardsmithError):
    """Invalid or incomplete configuration."""
