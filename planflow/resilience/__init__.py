from .circuit_breaker import CircuitBreaker, CircuitBreakerRegistry, CircuitState
from .fallbacks import DependencyType, FallbackRegistry, LastKnownValueCache, degraded_payload, is_fallback_response
from .layer import ResilienceLayer, ResilientOutcome
from .retry import RetryPolicy, is_retryable_error, retry_with_backoff

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitState",
    "DependencyType",
    "FallbackRegistry",
    "LastKnownValueCache",
    "ResilienceLayer",
    "ResilientOutcome",
    "RetryPolicy",
    "degraded_payload",
    "is_fallback_response",
    "is_retryable_error",
    "retry_with_backoff",
]
