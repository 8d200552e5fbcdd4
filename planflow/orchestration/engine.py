"""Executes validated plans group by group with bounded parallelism and resilient task calls."""

from __future__ import annotations

import asyncio
import hashlib
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Collection, Mapping, Sequence

from ..catalog.capabilities import CapabilityCatalog, CostClass
from ..catalog.tasks import TaskCatalog, TaskDefinition
from ..core import metrics
from ..core.config import CostSettings, SchedulingSettings
from ..core.exceptions import PlanValidationError, StageExecutionError, StageTimeoutError
from ..core.logging import bind_correlation_id, get_logger, reset_correlation_id
from ..resilience.layer import ResilienceLayer
from ..schemas.execution import (
    EstimateComparison,
    ExecutionCosts,
    PlanExecutionResult,
    SkipReason,
    StageError,
    StageExecutionResult,
    StageStatus,
    utcnow,
)
from ..schemas.plan import ExecutionPlan, PlanStage
from .predicates import conditions_hold, failing_checks

logger = get_logger(name=__name__)

StageEventHook = Callable[[str, PlanStage, dict[str, Any]], Awaitable[None]]


@dataclass(slots=True)
class ExecutionOptions:
    continue_on_error: bool | None = None
    enable_parallel: bool | None = None


class WorkflowEngine:
    """Runs an :class:`ExecutionPlan` against a shared, mutable state mapping.

    Stages are grouped by ``order`` and groups run strictly one after another.
    Each task receives a copy of the state and returns a partial update that is
    merged into the shared state as soon as the stage completes.
    """

    def __init__(
        self,
        *,
        tasks: TaskCatalog,
        capabilities: CapabilityCatalog,
        resilience: ResilienceLayer | None = None,
        settings: SchedulingSettings | None = None,
        costs: CostSettings | None = None,
        on_event: StageEventHook | None = None,
    ) -> None:
        self._tasks = tasks
        self._capabilities = capabilities
        self._resilience = resilience or ResilienceLayer()
        self._settings = settings or SchedulingSettings()
        self._costs = costs or CostSettings()
        self._on_event = on_event

    async def execute(
        self,
        plan: ExecutionPlan,
        state: dict[str, Any] | None = None,
        options: ExecutionOptions | None = None,
    ) -> PlanExecutionResult:
        if plan.validation is not None and not plan.validation.valid:
            raise PlanValidationError(
                f"Refusing to execute invalid plan '{plan.plan_id}'",
                errors=plan.validation.errors,
            )
        options = options or ExecutionOptions()
        continue_on_error = (
            self._settings.continue_on_error if options.continue_on_error is None else options.continue_on_error
        )
        enable_parallel = self._settings.enable_parallel if options.enable_parallel is None else options.enable_parallel
        shared_state: dict[str, Any] = state if state is not None else {}

        result = PlanExecutionResult(plan_id=plan.plan_id, final_state=shared_state)
        run = _RunContext(
            plan=plan,
            state=shared_state,
            result=result,
            deadline=time.monotonic() + plan.context.timeout_ms / 1000.0,
            semaphore=asyncio.Semaphore(self._settings.max_concurrency),
        )

        tokens = bind_correlation_id(plan.context.correlation_id)
        try:
            return await self._run_plan(run, continue_on_error, enable_parallel)
        finally:
            reset_correlation_id(tokens)

    async def _run_plan(self, run: "_RunContext", continue_on_error: bool, enable_parallel: bool) -> PlanExecutionResult:
        plan, result = run.plan, run.result
        metrics.mark_plan_execution_started()
        started = time.monotonic()
        logger.info(
            "plan_execution_started",
            plan_id=plan.plan_id,
            workflow_id=plan.workflow_id,
            stages=len(plan.stages),
            timeout_ms=plan.context.timeout_ms,
        )

        status = "failed"
        try:
            aborted = False
            for order, group in plan.stage_groups():
                if aborted or result.timed_out:
                    reason = SkipReason.PLAN_TIMEOUT if result.timed_out else SkipReason.UPSTREAM_ABORTED
                    for stage in group:
                        await self._record_skip(run, stage, reason)
                    continue
                if run.remaining() <= 0:
                    result.timed_out = True
                    for stage in group:
                        await self._record_skip(run, stage, SkipReason.PLAN_TIMEOUT)
                    continue

                eligible = sum(1 for stage in group if stage.can_run_in_parallel)
                if enable_parallel and len(group) > 1 and eligible > 1:
                    logger.debug("stage_group_parallel", plan_id=plan.plan_id, order=order, stages=len(group))
                    await self._run_concurrent(run, group)
                else:
                    await self._run_sequential(run, group, continue_on_error)

                if run.required_failures and not continue_on_error:
                    aborted = True
                    logger.warning(
                        "plan_execution_aborted",
                        plan_id=plan.plan_id,
                        order=order,
                        failed=sorted(run.required_failures),
                    )

            result.success = not run.required_failures and not result.timed_out
            status = "success" if result.success else ("timeout" if result.timed_out else "failed")
        finally:
            elapsed = time.monotonic() - started
            result.completed_at = utcnow()
            result.duration_ms = int(elapsed * 1000)
            result.vs_estimates = compare_to_estimates(plan, result)
            metrics.mark_plan_execution_completed(workflow_id=plan.workflow_id, status=status, latency=elapsed)
            metrics.observe_plan_cost(workflow_id=plan.workflow_id, cost_usd=result.costs.actual_cost_usd)

        logger.info(
            "plan_execution_completed",
            plan_id=plan.plan_id,
            success=result.success,
            duration_ms=result.duration_ms,
            completed=len(result.stages_completed),
            failed=len(result.stages_failed),
            skipped=len(result.stages_skipped),
            timed_out=result.timed_out,
            cost_usd=round(result.costs.actual_cost_usd, 6),
        )
        return result

    async def _run_sequential(self, run: "_RunContext", group: Sequence[PlanStage], continue_on_error: bool) -> None:
        for index, stage in enumerate(group):
            remaining = run.remaining()
            if remaining <= 0:
                run.result.timed_out = True
            if run.result.timed_out:
                for pending in group[index:]:
                    await self._record_skip(run, pending, SkipReason.PLAN_TIMEOUT)
                return
            try:
                stage_result = await asyncio.wait_for(self._execute_stage(run, stage), timeout=remaining)
            except asyncio.TimeoutError:
                run.result.timed_out = True
                stage_result = self._timeout_result(run, stage)
            await self._record(run, stage, stage_result)
            if run.result.timed_out:
                continue
            if stage.required and stage_result.status is StageStatus.FAILED and not continue_on_error:
                for pending in group[index + 1 :]:
                    await self._record_skip(run, pending, SkipReason.UPSTREAM_ABORTED)
                return

    async def _run_concurrent(self, run: "_RunContext", group: Sequence[PlanStage]) -> None:
        async def _bounded(stage: PlanStage) -> StageExecutionResult:
            async with run.semaphore:
                return await self._execute_stage(run, stage)

        tasks = {stage.stage_id: asyncio.create_task(_bounded(stage)) for stage in group}
        _, pending = await asyncio.wait(tasks.values(), timeout=max(0.0, run.remaining()))
        if pending:
            run.result.timed_out = True
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        for stage in group:
            task = tasks[stage.stage_id]
            if task in pending:
                stage_result = self._timeout_result(run, stage)
            else:
                stage_result = task.result()
            await self._record(run, stage, stage_result)

    async def _execute_stage(self, run: "_RunContext", stage: PlanStage) -> StageExecutionResult:
        started_at = utcnow()
        started = time.monotonic()

        def _finish(status: StageStatus, **extra: Any) -> StageExecutionResult:
            return StageExecutionResult(
                stage_id=stage.stage_id,
                task_id=stage.task_id,
                status=status,
                started_at=started_at,
                completed_at=utcnow(),
                duration_ms=int((time.monotonic() - started) * 1000),
                **extra,
            )

        if conditions_hold(stage.skip_conditions, run.state):
            return _finish(StageStatus.SKIPPED, skip_reason=SkipReason.SKIP_CONDITIONS_MET)
        unmet = failing_checks(stage.continue_conditions, run.state)
        if unmet:
            return _finish(
                StageStatus.SKIPPED,
                skip_reason=SkipReason.CONTINUE_CONDITIONS_UNMET,
                error=f"Continue conditions not met: {', '.join(unmet)}",
            )

        task = self._tasks.get(stage.task_id)
        if task is None or task.invoke is None:
            return _finish(StageStatus.FAILED, error=f"Task '{stage.task_id}' is not executable")

        await self._emit("stage_started", stage, {"order": stage.order})
        snapshot = dict(run.state)
        try:
            outcome = await self._resilience.call(
                task.task_id,
                task.invoke,
                snapshot,
                dependency_type=task.dependency_type,
                cache_key=_input_key(stage, snapshot),
                fallback=lambda payload: _degraded_update(stage, payload),
            )
            update = outcome.value if outcome.value is not None else {}
            if not isinstance(update, Mapping):
                raise StageExecutionError(
                    f"Task '{task.task_id}' returned {type(update).__name__}; expected a mapping of state updates"
                )
        except Exception as exc:
            logger.warning(
                "stage_failed",
                plan_id=run.plan.plan_id,
                stage_id=stage.stage_id,
                task_id=stage.task_id,
                required=stage.required,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return _finish(StageStatus.FAILED, error=str(exc) or type(exc).__name__)

        run.state.update(update)
        if not outcome.degraded:
            self._track_costs(run.result.costs, stage, task)
        produced = [name for name in stage.provides if run.state.get(name) is not None]
        return _finish(
            StageStatus.SUCCESS,
            produced_fields=produced,
            degraded=outcome.degraded,
            attempts=outcome.attempts,
        )

    def _timeout_result(self, run: "_RunContext", stage: PlanStage) -> StageExecutionResult:
        error = StageTimeoutError(
            f"Stage '{stage.stage_id}' cancelled: plan timeout of {run.plan.context.timeout_ms} ms exceeded"
        )
        logger.warning("stage_timeout", plan_id=run.plan.plan_id, stage_id=stage.stage_id, task_id=stage.task_id)
        return StageExecutionResult(
            stage_id=stage.stage_id,
            task_id=stage.task_id,
            status=StageStatus.FAILED,
            error=str(error),
        )

    async def _record_skip(self, run: "_RunContext", stage: PlanStage, reason: SkipReason) -> None:
        await self._record(
            run,
            stage,
            StageExecutionResult(
                stage_id=stage.stage_id,
                task_id=stage.task_id,
                status=StageStatus.SKIPPED,
                skip_reason=reason,
            ),
        )

    async def _record(self, run: "_RunContext", stage: PlanStage, stage_result: StageExecutionResult) -> None:
        result = run.result
        result.stage_results.append(stage_result)
        latency = stage_result.duration_ms / 1000.0
        if stage_result.status is StageStatus.SUCCESS:
            result.stages_completed.append(stage.stage_id)
            metrics.record_stage_outcome(task_id=stage.task_id, status="success", latency=latency)
            await self._emit("stage_completed", stage, {"result": stage_result})
        elif stage_result.status is StageStatus.FAILED:
            result.stages_failed.append(stage.stage_id)
            result.errors.append(
                StageError(
                    stage_id=stage.stage_id,
                    task_id=stage.task_id,
                    error=stage_result.error or "unknown error",
                    recoverable=not stage.required,
                )
            )
            if stage.required:
                run.required_failures.add(stage.stage_id)
            metrics.record_stage_outcome(task_id=stage.task_id, status="failed", latency=latency)
            await self._emit("stage_failed", stage, {"result": stage_result})
        else:
            result.stages_skipped.append(stage.stage_id)
            metrics.record_stage_outcome(task_id=stage.task_id, status="skipped")
            logger.info(
                "stage_skipped",
                plan_id=run.plan.plan_id,
                stage_id=stage.stage_id,
                reason=stage_result.skip_reason.value if stage_result.skip_reason else None,
            )
            await self._emit("stage_skipped", stage, {"result": stage_result})

    def _track_costs(self, costs: ExecutionCosts, stage: PlanStage, task: TaskDefinition) -> None:
        if task.uses_llm:
            costs.llm_calls += 1
            costs.actual_cost_usd += (task.llm_max_tokens or 0) * self._costs.llm_cost_per_token_usd
        for tool in stage.tools_needed:
            cost_class = self._capabilities.cost_class(tool)
            if cost_class is CostClass.API_CALL:
                costs.api_calls += 1
                costs.actual_cost_usd += self._costs.api_call_cost_usd
            elif cost_class is CostClass.EXPENSIVE:
                costs.api_calls += 1
                costs.actual_cost_usd += self._costs.expensive_call_cost_usd

    async def _emit(self, event: str, stage: PlanStage, payload: dict[str, Any]) -> None:
        if self._on_event is not None:
            await self._on_event(event, stage, payload)


@dataclass(slots=True)
class _RunContext:
    plan: ExecutionPlan
    state: dict[str, Any]
    result: PlanExecutionResult
    deadline: float
    semaphore: asyncio.Semaphore
    required_failures: set[str] = field(default_factory=set)

    def remaining(self) -> float:
        return self.deadline - time.monotonic()


def compare_to_estimates(plan: ExecutionPlan, result: PlanExecutionResult) -> EstimateComparison:
    estimated_ms = plan.estimates.estimated_duration_ms
    return EstimateComparison(
        duration_diff_ms=result.duration_ms - estimated_ms,
        cost_diff_usd=round(result.costs.actual_cost_usd - plan.estimates.estimated_cost_usd, 6),
        accuracy_percent=accuracy_percent(result.duration_ms, estimated_ms),
    )


def accuracy_percent(actual: float, estimated: float) -> int:
    if not estimated:
        return 0
    return round((1 - abs(actual - estimated) / estimated) * 100)


def next_stage(plan: ExecutionPlan, completed: Collection[str]) -> PlanStage | None:
    """First stage (by order) not yet completed whose dependencies all are."""
    done = set(completed)
    for stage in sorted(plan.stages, key=lambda item: item.order):
        if stage.stage_id in done:
            continue
        if all(dependency in done for dependency in stage.depends_on):
            return stage
    return None


def is_complete(plan: ExecutionPlan, completed: Collection[str]) -> bool:
    done = set(completed)
    return all(stage.stage_id in done for stage in plan.stages)


def _degraded_update(stage: PlanStage, payload: Mapping[str, Any]) -> dict[str, Any]:
    if stage.provides and all(name in payload for name in stage.provides):
        return {name: payload[name] for name in stage.provides}
    return {name: payload for name in stage.provides}


def _input_key(stage: PlanStage, snapshot: Mapping[str, Any]) -> str:
    material = "|".join(f"{name}={snapshot.get(name)!r}" for name in sorted(stage.requires))
    return hashlib.sha1(f"{stage.task_id}:{material}".encode("utf-8")).hexdigest()
