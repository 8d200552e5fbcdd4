from __future__ import annotations

import inspect
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Hashable

from ..core.config import CircuitBreakerSettings, RetrySettings
from .circuit_breaker import CircuitBreakerRegistry
from .fallbacks import DependencyType, FallbackRegistry
from .retry import RetryPolicy, retry_with_backoff


@dataclass(slots=True)
class ResilientOutcome:
    value: Any
    attempts: int
    degraded: bool = False


class ResilienceLayer:
    """Wraps dependency calls as breaker(retry(call)).

    Retries absorb transient blips first, so the breaker only records a failure
    once the retry budget is exhausted. While a breaker is open the call is
    answered by ``fallback`` (or the registry's per-type fallback) and marked
    degraded.
    """

    def __init__(
        self,
        *,
        retry_policy: RetryPolicy | None = None,
        breakers: CircuitBreakerRegistry | None = None,
        fallbacks: FallbackRegistry | None = None,
        rng: random.Random | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self._retry_policy = retry_policy or RetryPolicy()
        self._breakers = breakers or CircuitBreakerRegistry()
        self._fallbacks = fallbacks or FallbackRegistry()
        self._rng = rng
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        *,
        retry: RetrySettings,
        circuit_breaker: CircuitBreakerSettings,
        fallbacks: FallbackRegistry | None = None,
    ) -> "ResilienceLayer":
        return cls(
            retry_policy=RetryPolicy.from_settings(retry),
            breakers=CircuitBreakerRegistry(circuit_breaker),
            fallbacks=fallbacks,
        )

    @property
    def breakers(self) -> CircuitBreakerRegistry:
        return self._breakers

    @property
    def fallbacks(self) -> FallbackRegistry:
        return self._fallbacks

    async def call(
        self,
        name: str,
        func: Callable[..., Awaitable[Any] | Any],
        *args: Any,
        dependency_type: DependencyType | str = DependencyType.GENERIC,
        cache_key: Hashable | None = None,
        fallback: Callable[[dict[str, Any]], Any] | None = None,
        retry_override: dict[str, Any] | None = None,
    ) -> ResilientOutcome:
        policy = self._retry_policy.merge(retry_override)
        attempts = 0

        async def _attempt() -> Any:
            nonlocal attempts
            attempts += 1
            result = func(*args)
            if inspect.isawaitable(result):
                result = await result
            return result

        async def _with_retry() -> Any:
            return await retry_with_backoff(_attempt, policy=policy, name=name, rng=self._rng, sleep=self._sleep)

        def _fallback(_: BaseException | None) -> ResilientOutcome:
            payload = self._fallbacks.resolve(name, dependency_type, key=cache_key)
            value = fallback(payload) if fallback is not None else payload
            return ResilientOutcome(value=value, attempts=attempts, degraded=True)

        result = await self._breakers.get(name).call(_with_retry, fallback=_fallback)
        if isinstance(result, ResilientOutcome):
            return result
        self._fallbacks.remember(name, cache_key, result)
        return ResilientOutcome(value=result, attempts=attempts)
