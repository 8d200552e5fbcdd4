from __future__ import annotations

import asyncio
from typing import Any

import pytest
import structlog

from planflow.catalog import TaskCatalog, TemplateRegistry, TemplateStage, WorkflowTemplate
from planflow.core.config import CircuitBreakerSettings, PlanningSettings
from planflow.core.exceptions import PlanValidationError
from planflow.orchestration import ExecutionOptions, GenerationOptions, PlanGenerator, WorkflowEngine
from planflow.orchestration.engine import accuracy_percent, is_complete, next_stage
from planflow.resilience import ResilienceLayer
from planflow.schemas import ConditionSet, ExecutionPlan, PlanValidationResult, SkipReason, StageStatus
from tests.helpers.stubs import (
    StubTask,
    TransientError,
    build_capabilities,
    instant_resilience,
    make_task,
    voyage_catalog,
    voyage_registry,
)


def _plan(
    tasks: TaskCatalog,
    templates: TemplateRegistry | None = None,
    state: dict[str, Any] | None = None,
    **options: Any,
) -> ExecutionPlan:
    generator = PlanGenerator(
        tasks=tasks,
        capabilities=build_capabilities(),
        templates=templates or voyage_registry(),
        settings=PlanningSettings(cache_enabled=False),
    )
    return generator.generate("bunker_planning", state or {}, options=GenerationOptions(**options))


def _engine(tasks: TaskCatalog, resilience: ResilienceLayer | None = None, **kwargs: Any) -> WorkflowEngine:
    return WorkflowEngine(
        tasks=tasks,
        capabilities=build_capabilities(),
        resilience=resilience or instant_resilience(),
        **kwargs,
    )


def _invoker(tasks: TaskCatalog, task_id: str) -> StubTask:
    return tasks.get(task_id).invoke  # type: ignore[return-value]


def _enrichment_template() -> TemplateRegistry:
    return TemplateRegistry(
        [
            WorkflowTemplate(
                template_id="enriched_voyage",
                query_types=["bunker_planning"],
                stages=[
                    TemplateStage(task_id="route_agent", order=1),
                    TemplateStage(task_id="weather_agent", order=2, parallel_eligible=True, parallel_group=1),
                    TemplateStage(task_id="compliance_agent", order=2, parallel_eligible=True, parallel_group=1),
                    TemplateStage(task_id="bunker_agent", order=3),
                ],
            )
        ]
    )


def _with_compliance(tasks: TaskCatalog, invoke: Any = None) -> TaskCatalog:
    tasks.register(
        make_task(
            "compliance_agent",
            produces=["compliance_data"],
            requires=["route_data"],
            capabilities=["check_eca_zones"],
            invoke=invoke,
        )
    )
    return tasks


@pytest.mark.asyncio
async def test_executes_voyage_plan_in_dependency_order() -> None:
    tasks = voyage_catalog()
    plan = _plan(tasks)
    state: dict[str, Any] = {"messages": ["plan bunkers"]}

    result = await _engine(tasks).execute(plan, state)

    assert result.success is True
    assert result.stages_completed == ["route_agent_stage", "weather_agent_stage", "bunker_agent_stage"]
    assert result.stages_failed == [] and result.stages_skipped == []
    assert result.final_state is state
    assert state["bunker_analysis"] == "bunker_agent:bunker_analysis"
    assert _invoker(tasks, "weather_agent").calls[0]["route_data"] == "route_agent:route_data"
    assert "weather_data" in _invoker(tasks, "bunker_agent").calls[0]
    assert result.result_for("route_agent_stage").produced_fields == ["route_data"]


@pytest.mark.asyncio
async def test_actual_costs_follow_capability_classes() -> None:
    tasks = voyage_catalog()
    plan = _plan(tasks)

    result = await _engine(tasks).execute(plan, {})

    assert result.costs.api_calls == 3
    assert result.costs.llm_calls == 0
    assert result.costs.actual_cost_usd == pytest.approx(0.012)
    assert result.vs_estimates.cost_diff_usd == pytest.approx(0.0)
    assert result.vs_estimates.duration_diff_ms == result.duration_ms - plan.estimates.estimated_duration_ms


@pytest.mark.asyncio
async def test_stage_with_existing_outputs_is_skipped_without_invocation() -> None:
    tasks = voyage_catalog()
    state: dict[str, Any] = {"route_data": {"distance_nm": 8300}}
    plan = _plan(tasks, state=state)

    result = await _engine(tasks).execute(plan, state)

    assert _invoker(tasks, "route_agent").call_count == 0
    assert result.stages_skipped == ["route_agent_stage"]
    assert result.result_for("route_agent_stage").skip_reason is SkipReason.SKIP_CONDITIONS_MET
    assert state["route_data"] == {"distance_nm": 8300}
    assert result.success is True
    assert result.costs.api_calls == 2


@pytest.mark.asyncio
async def test_required_failure_aborts_remaining_stages() -> None:
    tasks = voyage_catalog(weather_agent=StubTask(failures=[ValueError("invalid weather window")]))
    plan = _plan(tasks)

    result = await _engine(tasks).execute(plan, {})

    assert result.success is False
    assert result.stages_completed == ["route_agent_stage"]
    assert result.stages_failed == ["weather_agent_stage"]
    assert result.stages_skipped == ["bunker_agent_stage"]
    assert result.result_for("bunker_agent_stage").skip_reason is SkipReason.UPSTREAM_ABORTED
    assert _invoker(tasks, "bunker_agent").call_count == 0
    assert set(result.final_state) == {"route_data"}
    assert len(result.errors) == 1
    assert result.errors[0].error == "invalid weather window"
    assert result.errors[0].recoverable is False


@pytest.mark.asyncio
async def test_continue_on_error_runs_remaining_stages() -> None:
    tasks = voyage_catalog(weather_agent=StubTask(failures=[ValueError("invalid weather window")]))
    plan = _plan(tasks)

    result = await _engine(tasks).execute(plan, {}, ExecutionOptions(continue_on_error=True))

    assert result.success is False
    assert result.stages_completed == ["route_agent_stage", "bunker_agent_stage"]
    assert "weather_data" not in _invoker(tasks, "bunker_agent").calls[0]


@pytest.mark.asyncio
async def test_optional_failure_is_recoverable() -> None:
    tasks = voyage_catalog(weather_agent=StubTask(failures=[ValueError("invalid weather window")]))
    plan = _plan(tasks, templates=voyage_registry(weather_required=False))

    result = await _engine(tasks).execute(plan, {})

    assert result.success is True
    assert result.stages_failed == ["weather_agent_stage"]
    assert result.stages_completed == ["route_agent_stage", "bunker_agent_stage"]
    assert result.errors[0].recoverable is True


@pytest.mark.asyncio
async def test_transient_failure_is_retried() -> None:
    tasks = voyage_catalog(weather_agent=StubTask({"weather_data": "calm"}, failures=[TransientError()]))
    plan = _plan(tasks)

    result = await _engine(tasks).execute(plan, {})

    assert result.success is True
    assert result.result_for("weather_agent_stage").attempts == 2
    assert result.final_state["weather_data"] == "calm"


@pytest.mark.asyncio
async def test_parallel_group_runs_concurrently() -> None:
    weather_started = asyncio.Event()
    compliance_started = asyncio.Event()

    async def weather(state: dict[str, Any]) -> dict[str, Any]:
        weather_started.set()
        await asyncio.wait_for(compliance_started.wait(), timeout=2)
        return {"weather_data": "calm"}

    async def compliance(state: dict[str, Any]) -> dict[str, Any]:
        compliance_started.set()
        await asyncio.wait_for(weather_started.wait(), timeout=2)
        return {"compliance_data": "eca clear"}

    tasks = _with_compliance(voyage_catalog(weather_agent=weather), invoke=compliance)
    plan = _plan(tasks, templates=_enrichment_template())

    result = await _engine(tasks, resilience=instant_resilience(max_attempts=1)).execute(plan, {})

    assert result.success is True
    assert set(result.stages_completed[1:3]) == {"weather_agent_stage", "compliance_agent_stage"}
    assert result.final_state["weather_data"] == "calm"
    assert result.final_state["compliance_data"] == "eca clear"


@pytest.mark.asyncio
async def test_parallel_and_sequential_runs_reach_the_same_state() -> None:
    order: list[str] = []

    def recorder(name: str, field: str) -> Any:
        async def _invoke(state: dict[str, Any]) -> dict[str, Any]:
            order.append(name)
            return {field: name}

        return _invoke

    tasks = _with_compliance(
        voyage_catalog(weather_agent=recorder("weather", "weather_data")),
        invoke=recorder("compliance", "compliance_data"),
    )
    plan = _plan(tasks, templates=_enrichment_template())
    engine = _engine(tasks)

    parallel = await engine.execute(plan, {}, ExecutionOptions(enable_parallel=True))
    order.clear()
    sequential = await engine.execute(plan, {}, ExecutionOptions(enable_parallel=False))

    assert order == ["weather", "compliance"]
    assert parallel.final_state == sequential.final_state
    assert parallel.stages_completed == sequential.stages_completed


async def _run_with_completion_order(first: str) -> tuple[list[str], Any]:
    finished: list[str] = []
    released = asyncio.Event()

    def stage(name: str, field: str) -> Any:
        async def _invoke(state: dict[str, Any]) -> dict[str, Any]:
            if name != first:
                await asyncio.wait_for(released.wait(), timeout=2)
            finished.append(name)
            if name == first:
                released.set()
            return {field: f"{name} done"}

        return _invoke

    tasks = _with_compliance(
        voyage_catalog(weather_agent=stage("weather", "weather_data")),
        invoke=stage("compliance", "compliance_data"),
    )
    plan = _plan(tasks, templates=_enrichment_template())
    engine = _engine(tasks, resilience=instant_resilience(max_attempts=1))
    result = await engine.execute(plan, {"messages": ["plan bunkers"]}, ExecutionOptions(enable_parallel=True))
    return finished, result


@pytest.mark.asyncio
async def test_parallel_completion_order_does_not_change_final_state() -> None:
    natural_order, natural = await _run_with_completion_order("weather")
    reversed_order, reversed_run = await _run_with_completion_order("compliance")

    assert natural_order == ["weather", "compliance"]
    assert reversed_order == ["compliance", "weather"]
    assert natural.success is True and reversed_run.success is True
    assert reversed_run.final_state == natural.final_state
    assert set(reversed_run.stages_completed) == set(natural.stages_completed)


@pytest.mark.asyncio
async def test_plan_timeout_fails_in_flight_stage_and_skips_the_rest() -> None:
    tasks = voyage_catalog(route_agent=StubTask({"route_data": "late"}, delay=1.0))
    plan = _plan(tasks, timeout_ms=50)

    result = await _engine(tasks).execute(plan, {})

    assert result.timed_out is True
    assert result.success is False
    assert result.stages_failed == ["route_agent_stage"]
    assert "plan timeout of 50 ms exceeded" in result.result_for("route_agent_stage").error
    assert result.stages_skipped == ["weather_agent_stage", "bunker_agent_stage"]
    assert all(
        result.result_for(stage_id).skip_reason is SkipReason.PLAN_TIMEOUT for stage_id in result.stages_skipped
    )
    assert "route_data" not in result.final_state


@pytest.mark.asyncio
async def test_plan_timeout_cancels_concurrent_group() -> None:
    async def fast(state: dict[str, Any]) -> dict[str, Any]:
        return {"compliance_data": "eca clear"}

    tasks = _with_compliance(
        voyage_catalog(weather_agent=StubTask({"weather_data": "late"}, delay=1.0)),
        invoke=fast,
    )
    plan = _plan(tasks, templates=_enrichment_template(), timeout_ms=200)

    result = await _engine(tasks).execute(plan, {})

    assert result.timed_out is True
    assert result.stages_completed == ["route_agent_stage", "compliance_agent_stage"]
    assert result.stages_failed == ["weather_agent_stage"]
    assert result.stages_skipped == ["bunker_agent_stage"]
    assert result.result_for("bunker_agent_stage").skip_reason is SkipReason.PLAN_TIMEOUT


@pytest.mark.asyncio
async def test_open_breaker_produces_degraded_stage() -> None:
    weather = StubTask({"weather_data": "calm"}, failures=[ConnectionError("weather feed down")])
    tasks = voyage_catalog(weather_agent=weather)
    resilience = instant_resilience(max_attempts=1, breaker_settings=CircuitBreakerSettings(volume_threshold=1))
    engine = _engine(tasks, resilience=resilience)
    plan = _plan(tasks)

    first = await engine.execute(plan, {})
    second = await engine.execute(plan, {})

    assert first.success is False
    assert second.success is True
    assert weather.call_count == 1
    stage_result = second.result_for("weather_agent_stage")
    assert stage_result.status is StageStatus.SUCCESS
    assert stage_result.degraded is True
    assert second.final_state["weather_data"]["_degraded"] is True
    assert second.final_state["weather_data"]["error"] == "Weather data unavailable. Circuit open."
    assert second.costs.api_calls == 2


@pytest.mark.asyncio
async def test_unmet_continue_conditions_skip_the_stage() -> None:
    tasks = voyage_catalog()
    templates = TemplateRegistry(
        [
            WorkflowTemplate(
                template_id="guarded_voyage",
                query_types=["bunker_planning"],
                stages=[
                    TemplateStage(task_id="route_agent", order=1),
                    TemplateStage(
                        task_id="weather_agent",
                        order=2,
                        continue_conditions=ConditionSet(state_checks={"vessel_profile": {"exists": True}}),
                    ),
                ],
            )
        ]
    )
    plan = _plan(tasks, templates=templates)

    result = await _engine(tasks).execute(plan, {})

    weather = result.result_for("weather_agent_stage")
    assert weather.status is StageStatus.SKIPPED
    assert weather.skip_reason is SkipReason.CONTINUE_CONDITIONS_UNMET
    assert weather.error == "Continue conditions not met: vessel_profile"
    assert _invoker(tasks, "weather_agent").call_count == 0
    assert result.success is True


@pytest.mark.asyncio
async def test_non_mapping_update_fails_the_stage() -> None:
    async def bad_route(state: dict[str, Any]) -> str:
        return "8300 nm"

    tasks = voyage_catalog(route_agent=bad_route)
    result = await _engine(tasks).execute(_plan(tasks), {})

    assert result.stages_failed == ["route_agent_stage"]
    assert "expected a mapping of state updates" in result.result_for("route_agent_stage").error


@pytest.mark.asyncio
async def test_invalid_plan_is_refused() -> None:
    tasks = voyage_catalog()
    plan = _plan(tasks).with_validation(PlanValidationResult(valid=False, errors=["Plan has no stages"]))

    with pytest.raises(PlanValidationError) as exc_info:
        await _engine(tasks).execute(plan, {})

    assert exc_info.value.errors == ["Plan has no stages"]
    assert _invoker(tasks, "route_agent").call_count == 0


@pytest.mark.asyncio
async def test_stage_events_are_emitted() -> None:
    events: list[tuple[str, str]] = []

    async def hook(event: str, stage: Any, payload: dict[str, Any]) -> None:
        events.append((event, stage.stage_id))

    tasks = voyage_catalog(bunker_agent=StubTask(failures=[ValueError("no prices")]))
    state: dict[str, Any] = {"weather_data": "calm"}
    await _engine(tasks, on_event=hook).execute(_plan(tasks, state=state), state)

    assert events == [
        ("stage_started", "route_agent_stage"),
        ("stage_completed", "route_agent_stage"),
        ("stage_skipped", "weather_agent_stage"),
        ("stage_started", "bunker_agent_stage"),
        ("stage_failed", "bunker_agent_stage"),
    ]


@pytest.mark.asyncio
async def test_result_serialises_with_wire_keys() -> None:
    tasks = voyage_catalog()
    result = await _engine(tasks).execute(_plan(tasks), {})

    payload = result.to_dict()

    assert payload["stagesCompleted"] == ["route_agent_stage", "weather_agent_stage", "bunker_agent_stage"]
    assert payload["costs"]["apiCalls"] == 3
    assert payload["stageResults"][0]["status"] == "success"
    assert payload["timedOut"] is False


def test_next_stage_follows_dependencies() -> None:
    tasks = voyage_catalog()
    plan = _plan(tasks)

    assert next_stage(plan, []).stage_id == "route_agent_stage"
    assert next_stage(plan, ["route_agent_stage"]).stage_id == "weather_agent_stage"
    assert next_stage(plan, list(plan.iter_stage_ids())) is None
    assert is_complete(plan, list(plan.iter_stage_ids())) is True
    assert is_complete(plan, ["route_agent_stage"]) is False


def test_accuracy_percent() -> None:
    assert accuracy_percent(900, 1_000) == 90
    assert accuracy_percent(1_500, 1_000) == 50
    assert accuracy_percent(10, 0) == 0


@pytest.mark.asyncio
async def test_correlation_id_is_scoped_to_the_execution() -> None:
    seen: list[Any] = []

    async def route(state: dict[str, Any]) -> dict[str, Any]:
        seen.append(structlog.contextvars.get_contextvars().get("correlation_id"))
        return {"route_data": "8300 nm"}

    tasks = voyage_catalog(route_agent=route)
    plan = _plan(tasks, state={"correlation_id": "voyage-17"})
    structlog.contextvars.bind_contextvars(correlation_id="request-3")

    await _engine(tasks).execute(plan, {})

    assert seen == ["voyage-17"]
    assert structlog.contextvars.get_contextvars()["correlation_id"] == "request-3"
    structlog.contextvars.unbind_contextvars("correlation_id")
