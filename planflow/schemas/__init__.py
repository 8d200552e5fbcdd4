from .execution import (
    EstimateComparison,
    ExecutionCosts,
    PlanExecutionResult,
    SkipReason,
    StageError,
    StageExecutionResult,
    StageStatus,
)
from .plan import (
    ConditionSet,
    ExecutionPlan,
    PlanContext,
    PlanEstimates,
    PlanPriority,
    PlanStage,
    PlanValidationResult,
    StagePriority,
)

__all__ = [
    "ConditionSet",
    "EstimateComparison",
    "ExecutionCosts",
    "ExecutionPlan",
    "PlanContext",
    "PlanEstimates",
    "PlanExecutionResult",
    "PlanPriority",
    "PlanStage",
    "PlanValidationResult",
    "SkipReason",
    "StageError",
    "StageExecutionResult",
    "StagePriority",
    "StageStatus",
]
