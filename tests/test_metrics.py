from __future__ import annotations

import pytest
from prometheus_client import REGISTRY

from planflow.core.metrics import (
    increment_circuit_short_circuit,
    increment_fallback_response,
    mark_plan_execution_completed,
    mark_plan_execution_started,
    record_plan_generated,
    record_stage_outcome,
    set_plan_success_rate,
)


def _sample(name: str, labels: dict[str, str] | None = None) -> float:
    return REGISTRY.get_sample_value(name, labels or {}) or 0.0


def test_record_plan_generated_counts_by_source() -> None:
    labels = {"query_type": "metrics-test", "source": "template"}
    before = _sample("planflow_plans_generated_total", labels)
    stages_before = _sample("planflow_plan_stages_sum", {"query_type": "metrics-test"})

    record_plan_generated(query_type="metrics-test", source="template", stages=4)

    assert _sample("planflow_plans_generated_total", labels) == pytest.approx(before + 1)
    assert _sample("planflow_plan_stages_sum", {"query_type": "metrics-test"}) == pytest.approx(stages_before + 4)


def test_plan_execution_tracks_active_gauge_and_latency() -> None:
    active_before = _sample("planflow_plan_executions_active")
    labels = {"workflow_id": "metrics-workflow"}
    latency_before = _sample("planflow_plan_execution_latency_seconds_sum", labels)

    mark_plan_execution_started()
    assert _sample("planflow_plan_executions_active") == pytest.approx(active_before + 1)
    mark_plan_execution_completed(workflow_id="metrics-workflow", status="success", latency=1.5)

    assert _sample("planflow_plan_executions_active") == pytest.approx(active_before)
    assert _sample("planflow_plan_execution_latency_seconds_sum", labels) == pytest.approx(latency_before + 1.5)
    assert _sample("planflow_plan_executions_total", {"workflow_id": "metrics-workflow", "status": "success"}) >= 1


def test_stage_outcome_records_latency_only_when_given() -> None:
    labels = {"task_id": "metrics-task"}
    count_before = _sample("planflow_stage_latency_seconds_count", labels)

    record_stage_outcome(task_id="metrics-task", status="skipped")
    record_stage_outcome(task_id="metrics-task", status="success", latency=0.25)

    assert _sample("planflow_stage_latency_seconds_count", labels) == pytest.approx(count_before + 1)
    assert _sample("planflow_stage_outcomes_total", {"task_id": "metrics-task", "status": "skipped"}) >= 1


def test_resilience_counters_increment() -> None:
    breaker_before = _sample("planflow_circuit_short_circuits_total", {"breaker": "metrics-breaker"})
    fallback_labels = {"dependency_type": "price", "source": "static"}
    fallback_before = _sample("planflow_fallback_responses_total", fallback_labels)

    increment_circuit_short_circuit(breaker="metrics-breaker")
    increment_fallback_response(dependency_type="price", source="static")

    assert _sample("planflow_circuit_short_circuits_total", {"breaker": "metrics-breaker"}) == pytest.approx(
        breaker_before + 1
    )
    assert _sample("planflow_fallback_responses_total", fallback_labels) == pytest.approx(fallback_before + 1)


def test_success_rate_gauge_is_clamped() -> None:
    set_plan_success_rate(1.7)
    assert _sample("planflow_plan_success_rate") == pytest.approx(1.0)

    set_plan_success_rate(0.25)
    assert _sample("planflow_plan_success_rate") == pytest.approx(0.25)
