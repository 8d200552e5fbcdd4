from __future__ import annotations

from datetime import datetime, timezone

import pytest

from planflow.core.config import MonitoringSettings
from planflow.orchestration import PlanMonitor
from planflow.schemas import (
    ExecutionCosts,
    ExecutionPlan,
    PlanEstimates,
    PlanExecutionResult,
    PlanStage,
    SkipReason,
    StageError,
    StageExecutionResult,
    StageStatus,
)
from tests.helpers.stubs import voyage_catalog


def _plan(workflow_id: str = "voyage_planning", query_type: str = "bunker_planning", **kwargs) -> ExecutionPlan:
    return ExecutionPlan(
        query_type=query_type,
        workflow_id=workflow_id,
        stages=[
            PlanStage(stage_id="route_agent_stage", order=1, task_id="route_agent", estimated_duration_ms=5_000),
            PlanStage(stage_id="weather_agent_stage", order=2, task_id="weather_agent", estimated_duration_ms=5_000),
        ],
        estimates=PlanEstimates(stage_count=2, estimated_duration_ms=10_000, estimated_cost_usd=0.002),
        **kwargs,
    )


def _result(plan: ExecutionPlan, *, success: bool = True, duration_ms: int = 9_000) -> PlanExecutionResult:
    weather_status = StageStatus.SUCCESS if success else StageStatus.FAILED
    return PlanExecutionResult(
        plan_id=plan.plan_id,
        success=success,
        completed_at=datetime.now(timezone.utc),
        duration_ms=duration_ms,
        stages_completed=["route_agent_stage"] + (["weather_agent_stage"] if success else []),
        stages_failed=[] if success else ["weather_agent_stage"],
        stage_results=[
            StageExecutionResult("route_agent_stage", "route_agent", StageStatus.SUCCESS, duration_ms=4_000, attempts=1),
            StageExecutionResult(
                "weather_agent_stage",
                "weather_agent",
                weather_status,
                duration_ms=5_000,
                attempts=1,
                error=None if success else "feed down",
            ),
        ],
        costs=ExecutionCosts(api_calls=2, actual_cost_usd=0.0015),
        errors=[] if success else [StageError("weather_agent_stage", "weather_agent", "feed down", recoverable=False)],
    )


def test_track_execution_computes_accuracy() -> None:
    monitor = PlanMonitor()
    plan = _plan()

    metrics = monitor.track_execution(plan, _result(plan))

    assert metrics.success is True
    assert metrics.stage_count == 2
    assert metrics.stages_completed == 2
    assert metrics.duration_accuracy_percent == 90
    assert metrics.cost_accuracy_percent == 75
    assert metrics.api_calls == 2
    assert metrics.stage_statuses == {"route_agent_stage": "success", "weather_agent_stage": "success"}
    assert metrics.stage_tasks == {"route_agent_stage": "route_agent", "weather_agent_stage": "weather_agent"}
    assert len(monitor) == 1


def test_stage_metrics_feed_task_statistics() -> None:
    tasks = voyage_catalog()
    monitor = PlanMonitor(tasks=tasks)
    plan = _plan()

    monitor.track_execution(plan, _result(plan, success=False))

    route_stats = tasks.get("route_agent").stats
    weather_stats = tasks.get("weather_agent").stats
    assert route_stats.total_executions == 1
    assert route_stats.avg_execution_time_ms == pytest.approx(4_000)
    assert weather_stats.failed_executions == 1
    assert weather_stats.success_rate == 0.0
    assert [item.task_id for item in monitor.stage_history("weather_agent")] == ["weather_agent"]


def test_skipped_stages_do_not_touch_task_statistics() -> None:
    tasks = voyage_catalog()
    monitor = PlanMonitor(tasks=tasks)
    plan = _plan()
    stage = plan.stage("route_agent_stage")

    record = monitor.track_stage(
        plan.plan_id,
        stage,
        StageExecutionResult(
            "route_agent_stage", "route_agent", StageStatus.SKIPPED, skip_reason=SkipReason.SKIP_CONDITIONS_MET
        ),
    )

    assert record.skip_reason is SkipReason.SKIP_CONDITIONS_MET
    assert tasks.get("route_agent").stats.total_executions == 0


def test_aggregate_breaks_down_by_workflow_and_query_type() -> None:
    monitor = PlanMonitor()
    voyage = _plan()
    weather = _plan(workflow_id="weather_analysis", query_type="weather_analysis", is_fallback=True)

    monitor.track_execution(voyage, _result(voyage, duration_ms=10_000))
    monitor.track_execution(voyage, _result(voyage, success=False, duration_ms=8_000))
    monitor.track_execution(weather, _result(weather, duration_ms=6_000))

    aggregate = monitor.aggregate()

    assert aggregate.total_plans == 3
    assert aggregate.success_rate == pytest.approx(2 / 3)
    assert aggregate.fallback_rate == pytest.approx(1 / 3)
    assert aggregate.average_duration_ms == pytest.approx(8_000)
    assert aggregate.by_workflow["voyage_planning"].count == 2
    assert aggregate.by_workflow["voyage_planning"].success_rate == pytest.approx(0.5)
    assert aggregate.by_query_type["weather_analysis"].average_duration_ms == pytest.approx(6_000)
    assert aggregate.stage_success_rates == {"route_agent": 1.0, "weather_agent": pytest.approx(2 / 3)}


def test_repeated_task_stages_are_tracked_separately() -> None:
    monitor = PlanMonitor()
    plan = ExecutionPlan(
        query_type="route_calculation",
        workflow_id="round_trip",
        stages=[
            PlanStage(stage_id="route_agent_stage", order=1, task_id="route_agent"),
            PlanStage(stage_id="route_agent_stage_2", order=2, task_id="route_agent"),
        ],
    )
    result = PlanExecutionResult(
        plan_id=plan.plan_id,
        success=False,
        stages_completed=["route_agent_stage"],
        stages_failed=["route_agent_stage_2"],
        stage_results=[
            StageExecutionResult("route_agent_stage", "route_agent", StageStatus.SUCCESS, attempts=1),
            StageExecutionResult("route_agent_stage_2", "route_agent", StageStatus.FAILED, attempts=1, error="no path"),
        ],
    )

    metrics = monitor.track_execution(plan, result)

    assert metrics.stage_statuses == {"route_agent_stage": "success", "route_agent_stage_2": "failed"}
    assert monitor.aggregate().stage_success_rates == {"route_agent": pytest.approx(0.5)}


def test_empty_monitor_aggregates_to_zero() -> None:
    aggregate = PlanMonitor().aggregate()

    assert aggregate.total_plans == 0
    assert aggregate.success_rate == 0.0
    assert aggregate.by_workflow == {}


def test_ring_buffer_keeps_most_recent_plans() -> None:
    monitor = PlanMonitor(settings=MonitoringSettings(max_stored_metrics=2, recent_limit=1))
    plans = [_plan() for _ in range(3)]
    for plan in plans:
        monitor.track_execution(plan, _result(plan))

    assert len(monitor) == 2
    assert [item.plan_id for item in monitor.recent()] == [plans[2].plan_id]
    assert [item.plan_id for item in monitor.recent(5)] == [plans[1].plan_id, plans[2].plan_id]

    monitor.clear()
    assert monitor.recent() == []


def test_report_lists_status_stages_and_errors() -> None:
    monitor = PlanMonitor()
    plan = _plan()
    result = _result(plan, success=False)

    report = monitor.generate_report(plan, result)
    summary = monitor.generate_summary(plan, result)

    assert "Status: FAILED" in report
    assert "Stages: 1 completed, 1 failed, 0 skipped of 2" in report
    assert "accuracy 90%" in report
    assert "  - weather_agent_stage: failed in 5000 ms [feed down]" in report
    assert "  - weather_agent_stage (fatal): feed down" in report
    assert summary == "Plan voyage_planning failed: 1/2 stages completed in 9000 ms, $0.0015"
