from __future__ import annotations


class RelayError(RuntimeError):
    """Base class for errors reported to the command line."""


class PlanError(RelayError):
    """Raised when a plan document cannot be parsed or is inconsistent."""


class StateError(RelayError):
    """Raised when shared-state operations fail."""


class TrackerError(RelayError):
    """Raised when the task tracker rejects a command."""

    def __init__(self, message: str, *, exit_code: int | None = None) -> None:
        super().__init__(message)
        self.exit_code = exit_code


class SkillNotFoundError(RelayError, LookupError):
    def __init__(self, name: str, suggestions: list[str] | None = None) -> None:
        message = f"Unknown skill: {name}"
        if suggestions:
            message += f" (did you mean: {', '.join(suggestions)}?)"
        super().__init__(message)
        self.name = name
        self.suggestions = list(suggestions or [])
