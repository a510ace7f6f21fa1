from __future__ import annotations


class InputValidationError(ValueError):
    """Raised for user input that can never succeed as given (shown inline, not retried)."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class RequestFailure(RuntimeError):
    """Raised when the planner, executor or data store cannot be reached or reports an error."""


class InvalidTransitionError(RuntimeError):
    pass


class ExecutionStepError(RuntimeError):
    def __init__(self, message: str, step_numbers: list[int] | None = None) -> None:
        super().__init__(message)
        self.step_numbers = list(step_numbers or [])


class StallTimeout(RuntimeError):
    """Synthetic timeout: every step is terminal but the run never finished."""

    def __init__(self, message: str, has_step_errors: bool) -> None:
        super().__init__(message)
        self.has_step_errors = has_step_errors
