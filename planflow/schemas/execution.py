from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class StageStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class SkipReason(str, Enum):
    SKIP_CONDITIONS_MET = "skip_conditions_met"
    CONTINUE_CONDITIONS_UNMET = "continue_conditions_unmet"
    UPSTREAM_ABORTED = "upstream_aborted"
    PLAN_TIMEOUT = "plan_timeout"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class StageExecutionResult:
    stage_id: str
    task_id: str
    status: StageStatus
    started_at: datetime = field(default_factory=utcnow)
    completed_at: datetime = field(default_factory=utcnow)
    duration_ms: int = 0
    produced_fields: list[str] = field(default_factory=list)
    error: str | None = None
    skip_reason: SkipReason | None = None
    degraded: bool = False
    attempts: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "stageId": self.stage_id,
            "taskId": self.task_id,
            "status": self.status.value,
            "startedAt": self.started_at.isoformat(),
            "completedAt": self.completed_at.isoformat(),
            "durationMs": self.duration_ms,
            "producedFields": list(self.produced_fields),
            "error": self.error,
            "skipReason": self.skip_reason.value if self.skip_reason else None,
            "degraded": self.degraded,
            "attempts": self.attempts,
        }


@dataclass(slots=True)
class ExecutionCosts:
    llm_calls: int = 0
    api_calls: int = 0
    actual_cost_usd: float = 0.0


@dataclass(slots=True)
class StageError:
    stage_id: str
    task_id: str
    error: str
    recoverable: bool
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class EstimateComparison:
    duration_diff_ms: int = 0
    cost_diff_usd: float = 0.0
    accuracy_percent: int = 0


@dataclass(slots=True)
class PlanExecutionResult:
    """Outcome of one plan execution.

    ``final_state`` is the caller's state object, mutated in place as stages
    complete, so it reflects whatever prefix of the plan actually ran.
    """

    plan_id: str
    success: bool = False
    started_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None
    duration_ms: int = 0
    stages_completed: list[str] = field(default_factory=list)
    stages_failed: list[str] = field(default_factory=list)
    stages_skipped: list[str] = field(default_factory=list)
    stage_results: list[StageExecutionResult] = field(default_factory=list)
    final_state: dict[str, Any] = field(default_factory=dict)
    costs: ExecutionCosts = field(default_factory=ExecutionCosts)
    errors: list[StageError] = field(default_factory=list)
    vs_estimates: EstimateComparison = field(default_factory=EstimateComparison)
    timed_out: bool = False

    def result_for(self, stage_id: str) -> StageExecutionResult | None:
        for result in self.stage_results:
            if result.stage_id == stage_id:
                return result
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "planId": self.plan_id,
            "success": self.success,
            "startedAt": self.started_at.isoformat(),
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "durationMs": self.duration_ms,
            "stagesCompleted": list(self.stages_completed),
            "stagesFailed": list(self.stages_failed),
            "stagesSkipped": list(self.stages_skipped),
            "stageResults": [result.to_dict() for result in self.stage_results],
            "costs": {
                "llmCalls": self.costs.llm_calls,
                "apiCalls": self.costs.api_calls,
                "actualCostUSD": round(self.costs.actual_cost_usd, 6),
            },
            "errors": [
                {
                    "stageId": error.stage_id,
                    "taskId": error.task_id,
                    "error": error.error,
                    "recoverable": error.recoverable,
                    "timestamp": error.timestamp.isoformat(),
                }
                for error in self.errors
            ],
            "vsEstimates": {
                "durationDiffMs": self.vs_estimates.duration_diff_ms,
                "costDiffUSD": round(self.vs_estimates.cost_diff_usd, 6),
                "accuracyPercent": self.vs_estimates.accuracy_percent,
            },
            "timedOut": self.timed_out,
        }
