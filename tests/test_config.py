from __future__ import annotations

import pytest
import structlog

from planflow.core.config import Settings
from planflow.core.logging import bind_correlation_id, reset_correlation_id
from planflow.resilience import RetryPolicy


def test_defaults_match_documented_values() -> None:
    settings = Settings(_env_file=None)

    assert settings.planning.cache_ttl_seconds == 300
    assert settings.planning.fallback_query_type == "bunker_planning"
    assert settings.retry.max_attempts == 3
    assert settings.circuit_breaker.error_threshold_percentage == 50
    assert settings.circuit_breaker.volume_threshold == 5
    assert settings.scheduling.continue_on_error is False


def test_nested_environment_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PLANFLOW_RETRY__MAX_ATTEMPTS", "5")
    monkeypatch.setenv("PLANFLOW_SCHEDULING__CONTINUE_ON_ERROR", "true")
    monkeypatch.setenv("PLANFLOW_PLANNING__COSTS__API_CALL_COST_USD", "0.002")

    settings = Settings(_env_file=None)

    assert settings.retry.max_attempts == 5
    assert settings.scheduling.continue_on_error is True
    assert settings.planning.costs.api_call_cost_usd == pytest.approx(0.002)
    assert RetryPolicy.from_settings(settings.retry).max_attempts == 5


def test_correlation_id_is_bound_to_log_context() -> None:
    bind_correlation_id("corr-7")
    assert structlog.contextvars.get_contextvars()["correlation_id"] == "corr-7"

    bind_correlation_id(None)
    assert "correlation_id" not in structlog.contextvars.get_contextvars()


def test_reset_restores_previous_correlation_id() -> None:
    outer = bind_correlation_id("request-1")
    inner = bind_correlation_id("plan-2")
    assert structlog.contextvars.get_contextvars()["correlation_id"] == "plan-2"

    reset_correlation_id(inner)
    assert structlog.contextvars.get_contextvars()["correlation_id"] == "request-1"

    reset_correlation_id(outer)
    assert "correlation_id" not in structlog.contextvars.get_contextvars()
