"""Per-dependency circuit breakers with a rolling failure-rate window."""

from __future__ import annotations

import asyncio
import inspect
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict

from ..core import metrics
from ..core.config import CircuitBreakerSettings
from ..core.exceptions import CircuitBreakerOpenError
from ..core.logging import get_logger

logger = get_logger(name=__name__)

FallbackHandler = Callable[[BaseException | None], Any]


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(slots=True)
class _Bucket:
    started_at: float
    successes: int = 0
    failures: int = 0


class RollingWindow:
    """Counts successes and failures over ``window_seconds`` split into ``buckets`` slots."""

    def __init__(self, *, window_seconds: float, buckets: int, clock: Callable[[], float]) -> None:
        self._bucket_seconds = window_seconds / max(1, buckets)
        self._max_buckets = max(1, buckets)
        self._clock = clock
        self._buckets: list[_Bucket] = []

    def _current(self) -> _Bucket:
        now = self._clock()
        self._expire(now)
        if self._buckets and now - self._buckets[-1].started_at < self._bucket_seconds:
            return self._buckets[-1]
        bucket = _Bucket(started_at=now)
        self._buckets.append(bucket)
        if len(self._buckets) > self._max_buckets:
            self._buckets.pop(0)
        return bucket

    def _expire(self, now: float) -> None:
        horizon = now - self._bucket_seconds * self._max_buckets
        while self._buckets and self._buckets[0].started_at <= horizon:
            self._buckets.pop(0)

    def record_success(self) -> None:
        self._current().successes += 1

    def record_failure(self) -> None:
        self._current().failures += 1

    def reset(self) -> None:
        self._buckets.clear()

    @property
    def failures(self) -> int:
        self._expire(self._clock())
        return sum(bucket.failures for bucket in self._buckets)

    @property
    def requests(self) -> int:
        self._expire(self._clock())
        return sum(bucket.successes + bucket.failures for bucket in self._buckets)

    def failure_percentage(self) -> float:
        total = self.requests
        if total == 0:
            return 0.0
        return self.failures / total * 100.0


class CircuitBreaker:
    """Closed / Open / Half-Open breaker guarding a single named dependency.

    The breaker opens once the rolling window holds at least ``volume_threshold``
    requests and the failure rate reaches ``error_threshold_percentage``. After
    ``reset_timeout_seconds`` a single trial call is let through; its outcome
    closes the breaker again or re-opens it. Rejected calls are served by the
    fallback when one is supplied.
    """

    def __init__(
        self,
        name: str,
        settings: CircuitBreakerSettings | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self._settings = settings or CircuitBreakerSettings()
        self._clock = clock
        self._window = RollingWindow(
            window_seconds=self._settings.rolling_window_seconds,
            buckets=self._settings.rolling_buckets,
            clock=clock,
        )
        self._state = CircuitState.CLOSED
        self._opened_at = 0.0
        self._trial_in_flight = False
        self._last_failure_at: datetime | None = None
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state is CircuitState.OPEN

    def _transition(self, state: CircuitState) -> None:
        if state is self._state:
            return
        previous = self._state
        self._state = state
        metrics.record_circuit_transition(breaker=self.name, state=state.value)
        log = logger.warning if state is CircuitState.OPEN else logger.info
        log("circuit_state_changed", breaker=self.name, previous=previous.value, state=state.value)

    async def _admit(self) -> bool:
        """Return True when the call may proceed, False when it must short-circuit."""
        async with self._lock:
            if self._state is CircuitState.OPEN:
                if self._clock() - self._opened_at < self._settings.reset_timeout_seconds:
                    return False
                self._transition(CircuitState.HALF_OPEN)
            if self._state is CircuitState.HALF_OPEN:
                if self._trial_in_flight:
                    return False
                self._trial_in_flight = True
            return True

    async def _on_success(self) -> None:
        async with self._lock:
            if self._state is CircuitState.HALF_OPEN:
                self._trial_in_flight = False
                self._window.reset()
                self._transition(CircuitState.CLOSED)
                return
            self._window.record_success()

    async def _on_failure(self, error: BaseException) -> None:
        async with self._lock:
            self._last_failure_at = datetime.now(timezone.utc)
            if self._state is CircuitState.HALF_OPEN:
                self._trial_in_flight = False
                self._opened_at = self._clock()
                self._transition(CircuitState.OPEN)
                return
            self._window.record_failure()
            if (
                self._window.requests >= self._settings.volume_threshold
                and self._window.failure_percentage() >= self._settings.error_threshold_percentage
            ):
                self._opened_at = self._clock()
                self._transition(CircuitState.OPEN)
                logger.warning(
                    "circuit_opened",
                    breaker=self.name,
                    failures=self._window.failures,
                    requests=self._window.requests,
                    error=str(error),
                )

    async def _release_trial(self) -> None:
        async with self._lock:
            self._trial_in_flight = False

    async def call(
        self,
        func: Callable[..., Awaitable[Any] | Any],
        *args: Any,
        fallback: FallbackHandler | None = None,
        **kwargs: Any,
    ) -> Any:
        if not self._settings.enabled:
            return await _resolve(func(*args, **kwargs))

        if not await self._admit():
            metrics.increment_circuit_short_circuit(breaker=self.name)
            logger.info("circuit_short_circuit", breaker=self.name, state=self._state.value)
            if fallback is None:
                raise CircuitBreakerOpenError(f"Circuit breaker open for '{self.name}'")
            return fallback(None)

        try:
            result = func(*args, **kwargs)
            if inspect.isawaitable(result):
                timeout = self._settings.call_timeout_seconds
                result = await (asyncio.wait_for(result, timeout) if timeout else result)
        except asyncio.CancelledError:
            await self._release_trial()
            raise
        except Exception as exc:
            await self._on_failure(exc)
            raise
        await self._on_success()
        return result

    def status(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self._state.value,
            "failures": self._window.failures,
            "requests": self._window.requests,
            "last_failure_at": self._last_failure_at.isoformat() if self._last_failure_at else None,
        }

    def reset(self) -> None:
        self._window.reset()
        self._state = CircuitState.CLOSED
        self._opened_at = 0.0
        self._trial_in_flight = False


async def _resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class CircuitBreakerRegistry:
    """Holds one breaker per dependency name; created lazily on first use."""

    def __init__(
        self,
        settings: CircuitBreakerSettings | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings or CircuitBreakerSettings()
        self._clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}

    def get(self, name: str) -> CircuitBreaker:
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(name, self._settings, clock=self._clock)
            self._breakers[name] = breaker
        return breaker

    def status(self) -> dict[str, dict[str, Any]]:
        """Snapshot of every breaker, suitable for a health endpoint payload."""
        return {name: breaker.status() for name, breaker in sorted(self._breakers.items())}

    def reset(self, name: str | None = None) -> None:
        if name is None:
            for breaker in self._breakers.values():
                breaker.reset()
            return
        breaker = self._breakers.get(name)
        if breaker is not None:
            breaker.reset()

    def clear(self) -> None:
        self._breakers.clear()
