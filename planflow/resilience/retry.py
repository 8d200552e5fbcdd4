"""Retry with exponential backoff and jitter for transient task failures."""

from __future__ import annotations

import asyncio
import inspect
import random
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Mapping, Sequence, TypeVar

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt
from tenacity.wait import wait_base

from ..core import metrics
from ..core.config import RetrySettings
from ..core.logging import get_logger

T = TypeVar("T")

logger = get_logger(name=__name__)

DEFAULT_RETRYABLE_ERRORS: tuple[str, ...] = (
    "ETIMEDOUT",
    "ECONNRESET",
    "RATE_LIMIT",
    "TIMEOUT_ERROR",
    "NETWORK_ERROR",
    "API_ERROR",
)
NETWORK_ERROR_PATTERNS: tuple[str, ...] = (
    "timeout",
    "network",
    "connection",
    "econnrefused",
    "enotfound",
    "etimedout",
    "econnreset",
)
RETRYABLE_STATUS_CODES = {408, 429}
RETRY_STATUS_RANGES = ((500, 599),)


@dataclass(slots=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_delay_ms: int = 1_000
    max_delay_ms: int = 10_000
    backoff_multiplier: float = 2.0
    jitter_ratio: float = 0.2
    retryable_errors: tuple[str, ...] = field(default=DEFAULT_RETRYABLE_ERRORS)

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_attempts,
            initial_delay_ms=settings.initial_delay_ms,
            max_delay_ms=settings.max_delay_ms,
            backoff_multiplier=settings.backoff_multiplier,
            jitter_ratio=settings.jitter_ratio,
            retryable_errors=tuple(settings.retryable_errors),
        )

    def merge(self, override: Mapping[str, Any] | None) -> "RetryPolicy":
        if not override:
            return self
        known = {name for name in self.__dataclass_fields__}
        updates = {key: value for key, value in override.items() if key in known and value is not None}
        if "retryable_errors" in updates:
            updates["retryable_errors"] = tuple(updates["retryable_errors"])
        return replace(self, **updates)

    def base_delay_ms(self, attempt: int) -> float:
        """Un-jittered delay before ``attempt`` (1-based); the first attempt never waits."""
        if attempt <= 1:
            return 0.0
        delay = self.initial_delay_ms * (self.backoff_multiplier ** (attempt - 1))
        return float(min(self.max_delay_ms, delay))

    def delay_ms(self, attempt: int, *, rng: random.Random | None = None) -> float:
        base = self.base_delay_ms(attempt)
        if base <= 0 or self.jitter_ratio <= 0:
            return base
        source = rng or random
        spread = base * self.jitter_ratio
        return max(0.0, base + source.uniform(-spread, spread))


class wait_backoff_with_jitter(wait_base):
    """Tenacity wait strategy applying :meth:`RetryPolicy.delay_ms` to the upcoming attempt."""

    def __init__(self, policy: RetryPolicy, *, rng: random.Random | None = None) -> None:
        self._policy = policy
        self._rng = rng

    def __call__(self, retry_state: RetryCallState) -> float:
        upcoming = retry_state.attempt_number + 1
        return self._policy.delay_ms(upcoming, rng=self._rng) / 1000.0


def _status_code(error: BaseException) -> int | None:
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    for attr in ("status_code", "status", "statusCode"):
        value = getattr(error, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    return None


def is_retryable_error(error: BaseException, retryable_errors: Sequence[str] = DEFAULT_RETRYABLE_ERRORS) -> bool:
    """Classify an error as transient (worth retrying) or permanent."""
    if isinstance(error, (asyncio.CancelledError, KeyboardInterrupt)):
        return False
    if isinstance(error, (asyncio.TimeoutError, TimeoutError, ConnectionError, httpx.TransportError)):
        return True

    code = getattr(error, "code", None)
    code_text = str(code) if code is not None else ""
    message = str(error)
    for pattern in retryable_errors:
        if code_text == pattern or pattern in message:
            return True

    status = _status_code(error)
    if status is not None:
        if status in RETRYABLE_STATUS_CODES:
            return True
        if any(low <= status <= high for low, high in RETRY_STATUS_RANGES):
            return True

    lowered = message.lower()
    return any(pattern in lowered for pattern in NETWORK_ERROR_PATTERNS)


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T] | T],
    *,
    policy: RetryPolicy | None = None,
    name: str = "operation",
    rng: random.Random | None = None,
    sleep: Callable[[float], Awaitable[None]] | None = None,
    on_retry: Callable[[int, BaseException, float], None] | None = None,
) -> T:
    """Run ``operation`` until it succeeds, a permanent error occurs, or attempts run out.

    Permanent errors are re-raised immediately. When every attempt fails with a
    transient error the last one is re-raised unchanged.
    """
    policy = policy or RetryPolicy()
    attempts = max(1, policy.max_attempts)

    def _before_sleep(retry_state: RetryCallState) -> None:
        outcome = retry_state.outcome
        error = outcome.exception() if outcome is not None else None
        delay = retry_state.next_action.sleep if retry_state.next_action is not None else 0.0
        metrics.increment_retry_attempt(operation=name)
        logger.warning(
            "retry_scheduled",
            operation=name,
            attempt=retry_state.attempt_number,
            max_attempts=attempts,
            delay_ms=round(delay * 1000),
            error=str(error) if error is not None else None,
        )
        if on_retry is not None and error is not None:
            on_retry(retry_state.attempt_number, error, delay)

    retrying_kwargs: dict[str, Any] = {
        "stop": stop_after_attempt(attempts),
        "wait": wait_backoff_with_jitter(policy, rng=rng),
        "retry": retry_if_exception(lambda exc: is_retryable_error(exc, policy.retryable_errors)),
        "before_sleep": _before_sleep,
        "reraise": True,
    }
    if sleep is not None:
        retrying_kwargs["sleep"] = sleep

    async for attempt in AsyncRetrying(**retrying_kwargs):
        with attempt:
            result = operation()
            if inspect.isawaitable(result):
                result = await result
            if attempt.retry_state.attempt_number > 1:
                logger.info("retry_succeeded", operation=name, attempt=attempt.retry_state.attempt_number)
            return result  # type: ignore[return-value]
    raise AssertionError("unreachable")  # pragma: no cover
