from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class TaskTypeDurations(BaseModel):
    supervisor: int = Field(2_000, ge=0, description="Fallback duration estimate (ms) for supervisor tasks.")
    specialist: int = Field(5_000, ge=0, description="Fallback duration estimate (ms) for specialist tasks.")
    coordinator: int = Field(5_000, ge=0, description="Fallback duration estimate (ms) for coordinator tasks.")
    finalizer: int = Field(3_000, ge=0, description="Fallback duration estimate (ms) for finalizer tasks.")


class CostSettings(BaseModel):
    llm_cost_per_token_usd: float = Field(0.000003, ge=0.0)
    api_call_cost_usd: float = Field(0.001, ge=0.0)
    expensive_call_cost_usd: float = Field(0.01, ge=0.0)


class PlanningSettings(BaseModel):
    enabled: bool = Field(True)
    cache_enabled: bool = Field(True)
    cache_ttl_seconds: float = Field(300.0, ge=0.0, description="Lifetime of a cached plan.")
    cache_max_entries: int = Field(100, ge=1, description="Upper bound on cached plans before oldest-first eviction.")
    cache_key_query_chars: int = Field(100, ge=1)
    include_optional_capabilities: bool = Field(True)
    enable_parallel: bool = Field(True)
    default_priority: Literal["low", "normal", "high"] = "normal"
    default_timeout_ms: int = Field(60_000, ge=1, description="Plan timeout used when a template declares none.")
    fallback_query_type: str = Field(
        "bunker_planning",
        min_length=1,
        description="Query type whose minimum viable stages are used when classification fails.",
    )
    ambient_state_fields: list[str] = Field(
        default_factory=lambda: ["messages"],
        description="State fields assumed present on every request (never reported as missing inputs).",
    )
    type_durations: TaskTypeDurations = Field(default_factory=TaskTypeDurations)  # type: ignore[arg-type]
    costs: CostSettings = Field(default_factory=CostSettings)  # type: ignore[arg-type]


class SchedulingSettings(BaseModel):
    continue_on_error: bool = Field(False)
    enable_parallel: bool = Field(True)
    max_concurrency: int = Field(5, ge=1, description="Upper bound on stages running concurrently in one group.")


class RetrySettings(BaseModel):
    max_attempts: int = Field(3, ge=1)
    initial_delay_ms: int = Field(1_000, ge=0)
    max_delay_ms: int = Field(10_000, ge=0)
    backoff_multiplier: float = Field(2.0, ge=1.0)
    jitter_ratio: float = Field(0.2, ge=0.0, le=1.0)
    retryable_errors: list[str] = Field(
        default_factory=lambda: [
            "ETIMEDOUT",
            "ECONNRESET",
            "RATE_LIMIT",
            "TIMEOUT_ERROR",
            "NETWORK_ERROR",
            "API_ERROR",
        ]
    )


class CircuitBreakerSettings(BaseModel):
    enabled: bool = Field(True)
    error_threshold_percentage: float = Field(50.0, gt=0.0, le=100.0)
    volume_threshold: int = Field(5, ge=1, description="Minimum requests in the window before the breaker may open.")
    reset_timeout_seconds: float = Field(30.0, ge=0.0)
    rolling_window_seconds: float = Field(300.0, gt=0.0)
    rolling_buckets: int = Field(10, ge=1)
    call_timeout_seconds: float | None = Field(30.0, gt=0.0)


class MonitoringSettings(BaseModel):
    max_stored_metrics: int = Field(1_000, ge=1)
    recent_limit: int = Field(100, ge=1)
    update_catalog_metrics: bool = Field(True)


class ObservabilitySettings(BaseModel):
    prometheus_enabled: bool = Field(True)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    json_logs: bool = Field(True)


class Settings(BaseSettings):
    environment: Literal["development", "staging", "production", "test"] = "development"
    planning: PlanningSettings = Field(default_factory=PlanningSettings)  # type: ignore[arg-type]
    scheduling: SchedulingSettings = Field(default_factory=SchedulingSettings)  # type: ignore[arg-type]
    retry: RetrySettings = Field(default_factory=RetrySettings)  # type: ignore[arg-type]
    circuit_breaker: CircuitBreakerSettings = Field(default_factory=CircuitBreakerSettings)  # type: ignore[arg-type]
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)  # type: ignore[arg-type]
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)  # type: ignore[arg-type]

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="PLANFLOW_",
        env_nested_delimiter="__",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
