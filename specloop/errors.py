"""Shared error types for the specloop package.

Structural errors (malformed or missing specs, archiving too early) are
raised to the caller immediately. Transient agent failures are handled by
the runner and never escape an iteration.
"""


class SpecLoopError(Exception):
    """Base exception for specloop errors.

    Use this for user-facing errors that should have actionable messages.

    Attributes:
        message: Human-readable error message
        suggestion: Optional hint for how to fix the problem
    """

    def __init__(self, message: str, suggestion: str | None = None) -> None:
        self.message = message
        self.suggestion = suggestion
        super().__init__(message)


# --- Spec structure ---


class MalformedSpecError(SpecLoopError):
    """A spec document is structurally invalid."""

    def __init__(
        self,
        message: str,
        task_id: str | None = None,
        suggestion: str | None = None,
    ) -> None:
        self.task_id = task_id
        super().__init__(message, suggestion)


class LegacySpecFormatError(MalformedSpecError):
    """A spec uses the old checkbox task format instead of task IDs."""


class UnknownTaskError(SpecLoopError):
    """A task id does not exist in the spec."""


# --- Spec location ---


class NoActiveSpecError(SpecLoopError):
    """No spec document exists in the active location."""


class MigrationRequiredError(NoActiveSpecError):
    """Only a legacy spec layout was found; the project must be migrated."""


class AmbiguousSpecError(SpecLoopError):
    """More than one spec document exists in the active location."""

    def __init__(self, message: str, candidates: list[str]) -> None:
        self.candidates = candidates
        super().__init__(
            message, suggestion="Move all but one spec out of the active directory."
        )


# --- Lifecycle ---


class SpecNotCompleteError(SpecLoopError):
    """Archiving was requested while tasks are still pending or in progress."""


class LockHeldError(SpecLoopError):
    """Another specloop process already holds the project lock."""

    def __init__(self, holder_pid: int | None) -> None:
        self.holder_pid = holder_pid
        super().__init__(f"specloop already running (PID: {holder_pid})")


# --- Agent ---


class AgentError(SpecLoopError):
    """The coding agent process could not be started or failed to respond."""
