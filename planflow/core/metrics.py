from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

PLANS_GENERATED_TOTAL = Counter(
    "planflow_plans_generated_total",
    "Execution plans produced by the generator grouped by source",
    labelnames=("query_type", "source"),
)

PLAN_STAGES = Histogram(
    "planflow_plan_stages",
    "Number of stages per generated execution plan",
    labelnames=("query_type",),
    buckets=(0, 1, 2, 3, 4, 5, 8, 13, 21),
)

PLAN_CACHE_EVENTS_TOTAL = Counter(
    "planflow_plan_cache_events_total",
    "Plan cache lookups grouped by outcome",
    labelnames=("event",),
)

PLAN_VALIDATIONS_TOTAL = Counter(
    "planflow_plan_validations_total",
    "Plan validation outcomes",
    labelnames=("outcome",),
)

PLAN_EXECUTIONS_TOTAL = Counter(
    "planflow_plan_executions_total",
    "Plan executions grouped by workflow and final status",
    labelnames=("workflow_id", "status"),
)

PLAN_EXECUTION_LATENCY_SECONDS = Histogram(
    "planflow_plan_execution_latency_seconds",
    "End-to-end plan execution latency",
    labelnames=("workflow_id",),
    buckets=(0.1, 0.5, 1, 2, 5, 10, 30, 60, 120, 300, float("inf")),
)

PLAN_EXECUTIONS_ACTIVE = Gauge(
    "planflow_plan_executions_active",
    "Plan executions currently in flight",
)

PLAN_SUCCESS_RATE = Gauge(
    "planflow_plan_success_rate",
    "Success rate over the plans retained by the monitor",
)

PLAN_COST_USD = Histogram(
    "planflow_plan_cost_usd",
    "Actual cost per executed plan",
    labelnames=("workflow_id",),
    buckets=(0.0, 0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, float("inf")),
)

STAGE_OUTCOMES_TOTAL = Counter(
    "planflow_stage_outcomes_total",
    "Stage outcomes grouped by task and status",
    labelnames=("task_id", "status"),
)

STAGE_LATENCY_SECONDS = Histogram(
    "planflow_stage_latency_seconds",
    "Latency of individual stage invocations",
    labelnames=("task_id",),
)

RETRY_ATTEMPTS_TOTAL = Counter(
    "planflow_retry_attempts_total",
    "Retries scheduled by the resilience layer",
    labelnames=("operation",),
)

CIRCUIT_TRANSITIONS_TOTAL = Counter(
    "planflow_circuit_transitions_total",
    "Circuit breaker state transitions",
    labelnames=("breaker", "state"),
)

CIRCUIT_SHORT_CIRCUITS_TOTAL = Counter(
    "planflow_circuit_short_circuits_total",
    "Calls rejected by an open circuit breaker",
    labelnames=("breaker",),
)

FALLBACK_RESPONSES_TOTAL = Counter(
    "planflow_fallback_responses_total",
    "Degraded fallback payloads served grouped by dependency type and source",
    labelnames=("dependency_type", "source"),
)


def record_plan_generated(*, query_type: str, source: str, stages: int) -> None:
    PLANS_GENERATED_TOTAL.labels(query_type=query_type, source=source).inc()
    PLAN_STAGES.labels(query_type=query_type).observe(max(0, stages))


def increment_plan_cache(*, event: str) -> None:
    PLAN_CACHE_EVENTS_TOTAL.labels(event=event).inc()


def record_plan_validation(*, valid: bool) -> None:
    PLAN_VALIDATIONS_TOTAL.labels(outcome="valid" if valid else "invalid").inc()


def mark_plan_execution_started() -> None:
    PLAN_EXECUTIONS_ACTIVE.inc()


def mark_plan_execution_completed(*, workflow_id: str, status: str, latency: float) -> None:
    PLAN_EXECUTIONS_ACTIVE.dec()
    PLAN_EXECUTIONS_TOTAL.labels(workflow_id=workflow_id, status=status).inc()
    PLAN_EXECUTION_LATENCY_SECONDS.labels(workflow_id=workflow_id).observe(max(0.0, latency))


def observe_plan_cost(*, workflow_id: str, cost_usd: float) -> None:
    PLAN_COST_USD.labels(workflow_id=workflow_id).observe(max(0.0, cost_usd))


def set_plan_success_rate(rate: float) -> None:
    PLAN_SUCCESS_RATE.set(max(0.0, min(1.0, rate)))


def record_stage_outcome(*, task_id: str, status: str, latency: float | None = None) -> None:
    STAGE_OUTCOMES_TOTAL.labels(task_id=task_id, status=status).inc()
    if latency is not None:
        STAGE_LATENCY_SECONDS.labels(task_id=task_id).observe(max(0.0, latency))


def increment_retry_attempt(*, operation: str) -> None:
    RETRY_ATTEMPTS_TOTAL.labels(operation=operation).inc()


def record_circuit_transition(*, breaker: str, state: str) -> None:
    CIRCUIT_TRANSITIONS_TOTAL.labels(breaker=breaker, state=state).inc()


def increment_circuit_short_circuit(*, breaker: str) -> None:
    CIRCUIT_SHORT_CIRCUITS_TOTAL.labels(breaker=breaker).inc()


def increment_fallback_response(*, dependency_type: str, source: str) -> None:
    FALLBACK_RESPONSES_TOTAL.labels(dependency_type=dependency_type, source=source).inc()
