from __future__ import annotations

from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Deque, Iterable

from ..catalog.tasks import TaskCatalog
from ..core import metrics
from ..core.config import MonitoringSettings
from ..core.logging import get_logger
from ..schemas.execution import PlanExecutionResult, SkipReason, StageExecutionResult, StageStatus, utcnow
from ..schemas.plan import ExecutionPlan, PlanStage
from .engine import accuracy_percent

logger = get_logger(name=__name__)


@dataclass(slots=True)
class StageMetrics:
    plan_id: str
    stage_id: str
    task_id: str
    status: StageStatus
    duration_ms: int
    estimated_duration_ms: int
    skip_reason: SkipReason | None = None
    degraded: bool = False
    attempts: int = 0
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class PlanMetrics:
    plan_id: str
    query_type: str
    workflow_id: str
    success: bool
    timed_out: bool
    is_fallback: bool
    stage_count: int
    stages_completed: int
    stages_failed: int
    stages_skipped: int
    degraded_stages: int
    estimated_duration_ms: int
    actual_duration_ms: int
    duration_accuracy_percent: int
    estimated_cost_usd: float
    actual_cost_usd: float
    cost_accuracy_percent: int
    llm_calls: int
    api_calls: int
    stage_statuses: dict[str, str] = field(default_factory=dict)
    stage_tasks: dict[str, str] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class BreakdownMetrics:
    count: int = 0
    success_rate: float = 0.0
    average_duration_ms: float = 0.0


@dataclass(slots=True)
class AggregateMetrics:
    total_plans: int = 0
    success_rate: float = 0.0
    fallback_rate: float = 0.0
    average_duration_ms: float = 0.0
    average_cost_usd: float = 0.0
    average_duration_accuracy_percent: float = 0.0
    average_cost_accuracy_percent: float = 0.0
    average_llm_calls: float = 0.0
    average_api_calls: float = 0.0
    degraded_stages: int = 0
    stage_success_rates: dict[str, float] = field(default_factory=dict)
    by_workflow: dict[str, BreakdownMetrics] = field(default_factory=dict)
    by_query_type: dict[str, BreakdownMetrics] = field(default_factory=dict)


class PlanMonitor:
    """Keeps per-plan metrics in a bounded ring buffer and derives aggregates from it.

    When a task catalog is supplied, every attempted stage is folded into the
    task's execution statistics so later plans estimate durations from observed
    behaviour.
    """

    def __init__(
        self,
        *,
        settings: MonitoringSettings | None = None,
        tasks: TaskCatalog | None = None,
    ) -> None:
        self._settings = settings or MonitoringSettings()
        self._tasks = tasks
        self._plans: Deque[PlanMetrics] = deque(maxlen=self._settings.max_stored_metrics)
        self._stages: Deque[StageMetrics] = deque(maxlen=self._settings.max_stored_metrics * 10)

    def track_execution(self, plan: ExecutionPlan, result: PlanExecutionResult) -> PlanMetrics:
        for stage_result in result.stage_results:
            stage = plan.stage(stage_result.stage_id)
            if stage is not None:
                self.track_stage(plan.plan_id, stage, stage_result)

        record = PlanMetrics(
            plan_id=plan.plan_id,
            query_type=plan.query_type,
            workflow_id=plan.workflow_id,
            success=result.success,
            timed_out=result.timed_out,
            is_fallback=plan.is_fallback,
            stage_count=len(plan.stages),
            stages_completed=len(result.stages_completed),
            stages_failed=len(result.stages_failed),
            stages_skipped=len(result.stages_skipped),
            degraded_stages=sum(1 for item in result.stage_results if item.degraded),
            estimated_duration_ms=plan.estimates.estimated_duration_ms,
            actual_duration_ms=result.duration_ms,
            duration_accuracy_percent=accuracy_percent(result.duration_ms, plan.estimates.estimated_duration_ms),
            estimated_cost_usd=plan.estimates.estimated_cost_usd,
            actual_cost_usd=round(result.costs.actual_cost_usd, 6),
            cost_accuracy_percent=accuracy_percent(result.costs.actual_cost_usd, plan.estimates.estimated_cost_usd),
            llm_calls=result.costs.llm_calls,
            api_calls=result.costs.api_calls,
            stage_statuses={item.stage_id: item.status.value for item in result.stage_results},
            stage_tasks={item.stage_id: item.task_id for item in result.stage_results},
        )
        self._plans.append(record)
        metrics.set_plan_success_rate(self._success_rate(self._plans))
        logger.info(
            "plan_metrics_recorded",
            plan_id=record.plan_id,
            workflow_id=record.workflow_id,
            success=record.success,
            duration_accuracy_percent=record.duration_accuracy_percent,
            cost_accuracy_percent=record.cost_accuracy_percent,
        )
        return record

    def track_stage(self, plan_id: str, stage: PlanStage, result: StageExecutionResult) -> StageMetrics:
        record = StageMetrics(
            plan_id=plan_id,
            stage_id=stage.stage_id,
            task_id=stage.task_id,
            status=result.status,
            duration_ms=result.duration_ms,
            estimated_duration_ms=stage.estimated_duration_ms,
            skip_reason=result.skip_reason,
            degraded=result.degraded,
            attempts=result.attempts,
        )
        self._stages.append(record)
        if (
            self._tasks is not None
            and self._settings.update_catalog_metrics
            and result.status is not StageStatus.SKIPPED
        ):
            self._tasks.record_execution(
                stage.task_id,
                success=result.status is StageStatus.SUCCESS,
                duration_ms=result.duration_ms,
            )
        return record

    def aggregate(self) -> AggregateMetrics:
        plans = list(self._plans)
        if not plans:
            return AggregateMetrics()
        total = len(plans)
        return AggregateMetrics(
            total_plans=total,
            success_rate=self._success_rate(plans),
            fallback_rate=sum(1 for item in plans if item.is_fallback) / total,
            average_duration_ms=_mean(item.actual_duration_ms for item in plans),
            average_cost_usd=_mean(item.actual_cost_usd for item in plans),
            average_duration_accuracy_percent=_mean(item.duration_accuracy_percent for item in plans),
            average_cost_accuracy_percent=_mean(item.cost_accuracy_percent for item in plans),
            average_llm_calls=_mean(item.llm_calls for item in plans),
            average_api_calls=_mean(item.api_calls for item in plans),
            degraded_stages=sum(item.degraded_stages for item in plans),
            stage_success_rates=self._stage_success_rates(plans),
            by_workflow=_breakdown(plans, key="workflow_id"),
            by_query_type=_breakdown(plans, key="query_type"),
        )

    def recent(self, limit: int | None = None) -> list[PlanMetrics]:
        count = limit if limit is not None else self._settings.recent_limit
        if count <= 0:
            return []
        return list(self._plans)[-count:]

    def stage_history(self, task_id: str | None = None) -> list[StageMetrics]:
        return [item for item in self._stages if task_id is None or item.task_id == task_id]

    def generate_report(self, plan: ExecutionPlan, result: PlanExecutionResult) -> str:
        status = "SUCCESS" if result.success else ("TIMEOUT" if result.timed_out else "FAILED")
        lines = [
            f"Plan {plan.plan_id} ({plan.workflow_id} v{plan.workflow_version}, query type {plan.query_type})",
            f"Status: {status}",
            (
                f"Stages: {len(result.stages_completed)} completed, {len(result.stages_failed)} failed, "
                f"{len(result.stages_skipped)} skipped of {len(plan.stages)}"
            ),
            (
                f"Duration: {result.duration_ms} ms (estimated {plan.estimates.estimated_duration_ms} ms, "
                f"accuracy {accuracy_percent(result.duration_ms, plan.estimates.estimated_duration_ms)}%)"
            ),
            (
                f"Cost: ${result.costs.actual_cost_usd:.4f} (estimated ${plan.estimates.estimated_cost_usd:.4f}); "
                f"{result.costs.llm_calls} LLM calls, {result.costs.api_calls} API calls"
            ),
            "",
            "Stages:",
        ]
        for stage_result in result.stage_results:
            detail = ""
            if stage_result.skip_reason is not None:
                detail = f" [{stage_result.skip_reason.value}]"
            elif stage_result.error:
                detail = f" [{stage_result.error}]"
            elif stage_result.degraded:
                detail = " [degraded]"
            lines.append(
                f"  - {stage_result.stage_id}: {stage_result.status.value} in {stage_result.duration_ms} ms{detail}"
            )
        if result.errors:
            lines.append("")
            lines.append("Errors:")
            for error in result.errors:
                kind = "recoverable" if error.recoverable else "fatal"
                lines.append(f"  - {error.stage_id} ({kind}): {error.error}")
        return "\n".join(lines)

    def generate_summary(self, plan: ExecutionPlan, result: PlanExecutionResult) -> str:
        status = "succeeded" if result.success else "failed"
        return (
            f"Plan {plan.workflow_id} {status}: {len(result.stages_completed)}/{len(plan.stages)} stages completed "
            f"in {result.duration_ms} ms, ${result.costs.actual_cost_usd:.4f}"
        )

    def clear(self) -> None:
        self._plans.clear()
        self._stages.clear()

    def __len__(self) -> int:
        return len(self._plans)

    @staticmethod
    def _success_rate(plans: Iterable[PlanMetrics]) -> float:
        items = list(plans)
        if not items:
            return 0.0
        return sum(1 for item in items if item.success) / len(items)

    @staticmethod
    def _stage_success_rates(plans: Iterable[PlanMetrics]) -> dict[str, float]:
        attempted: dict[str, int] = defaultdict(int)
        succeeded: dict[str, int] = defaultdict(int)
        for record in plans:
            for stage_id, status in record.stage_statuses.items():
                if status == StageStatus.SKIPPED.value:
                    continue
                task_id = record.stage_tasks.get(stage_id, stage_id)
                attempted[task_id] += 1
                if status == StageStatus.SUCCESS.value:
                    succeeded[task_id] += 1
        return {task_id: succeeded[task_id] / count for task_id, count in sorted(attempted.items())}


def _mean(values: Iterable[float]) -> float:
    items: list[Any] = list(values)
    if not items:
        return 0.0
    return sum(items) / len(items)


def _breakdown(plans: Iterable[PlanMetrics], *, key: str) -> dict[str, BreakdownMetrics]:
    grouped: dict[str, list[PlanMetrics]] = defaultdict(list)
    for record in plans:
        grouped[getattr(record, key)].append(record)
    return {
        name: BreakdownMetrics(
            count=len(records),
            success_rate=sum(1 for item in records if item.success) / len(records),
            average_duration_ms=_mean(item.actual_duration_ms for item in records),
        )
        for name, records in sorted(grouped.items())
    }
