from __future__ import annotations

from typing import Sequence


class PlanflowError(RuntimeError):
    """Base class for planning and execution failures."""


class GenerationError(PlanflowError):
    """Raised when a plan cannot be built from the selected template."""


class TemplateNotFoundError(GenerationError):
    """Raised when no workflow template is registered for a query type."""


class TaskNotFoundError(GenerationError):
    """Raised when a template references a task that is missing or disabled in the catalog."""


class PlanValidationError(PlanflowError):
    """Raised when a plan fails validation and must not be executed."""

    def __init__(self, message: str, *, errors: Sequence[str] | None = None) -> None:
        super().__init__(message)
        self.errors: list[str] = list(errors or [])


class StageExecutionError(PlanflowError):
    """Raised when a stage task invocation fails."""


class StageTimeoutError(StageExecutionError):
    """Raised when a stage is cancelled because the plan deadline elapsed."""


class ResilienceError(PlanflowError):
    """Base class for failures raised by the resilience layer."""


class CircuitBreakerOpenError(ResilienceError):
    """Raised when the circuit breaker short-circuits a call and no fallback is configured."""
