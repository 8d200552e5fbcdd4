"""Degraded responses served while a dependency's circuit is open."""

from __future__ import annotations

import time
from collections import OrderedDict
from enum import Enum
from typing import Any, Callable, Dict, Hashable, Mapping

from ..core import metrics
from ..core.logging import get_logger

logger = get_logger(name=__name__)

DEGRADED_FLAG = "_degraded"
DEGRADATION_REASON = "_degradation_reason"


class DependencyType(str, Enum):
    ROUTE = "route"
    WEATHER = "weather"
    PRICE = "price"
    ANALYSIS = "analysis"
    VESSEL = "vessel"
    GENERIC = "generic"


def dependency_kind(value: DependencyType | str) -> DependencyType:
    """Map a declared dependency type onto :class:`DependencyType`, ``generic`` when unknown."""
    try:
        return DependencyType(value)
    except ValueError:
        logger.warning("fallback_unknown_dependency_type", dependency_type=value)
        return DependencyType.GENERIC


_UNAVAILABLE_MESSAGES: dict[DependencyType, str] = {
    DependencyType.ROUTE: "Route API unavailable. Circuit open. No cached route for this request.",
    DependencyType.WEATHER: "Weather data unavailable. Circuit open.",
    DependencyType.PRICE: "Price data temporarily unavailable. Circuit open. Last known prices could not be retrieved.",
    DependencyType.ANALYSIS: "Analysis unavailable. Circuit open. External analysis API is temporarily down.",
    DependencyType.VESSEL: "Vessel service is temporarily unavailable. Circuit open.",
}

FallbackStrategy = Callable[[str, Any], Dict[str, Any]]


class LastKnownValueCache:
    """Bounded store of the last successful payload per (dependency, key)."""

    def __init__(self, *, max_entries: int = 256, ttl_seconds: float | None = None) -> None:
        self._max_entries = max(1, max_entries)
        self._ttl_seconds = ttl_seconds
        self._entries: "OrderedDict[tuple[str, Hashable], tuple[float, Any]]" = OrderedDict()

    def remember(self, dependency: str, key: Hashable, value: Any) -> None:
        entry_key = (dependency, key)
        self._entries.pop(entry_key, None)
        self._entries[entry_key] = (time.monotonic(), value)
        while len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)

    def recall(self, dependency: str, key: Hashable) -> Any | None:
        entry = self._entries.get((dependency, key))
        if entry is None:
            return None
        stored_at, value = entry
        if self._ttl_seconds is not None and time.monotonic() - stored_at > self._ttl_seconds:
            self._entries.pop((dependency, key), None)
            return None
        return value

    def clear(self) -> None:
        self._entries.clear()


def degraded_payload(message: str, *, dependency: str, reason: str | None = None) -> dict[str, Any]:
    return {
        "error": message,
        "dependency": dependency,
        DEGRADED_FLAG: True,
        DEGRADATION_REASON: reason or message,
    }


def is_fallback_response(value: Any) -> bool:
    """True when ``value`` is a degraded payload produced by a fallback strategy."""
    if isinstance(value, Mapping):
        if value.get(DEGRADED_FLAG) is True:
            return True
        return any(isinstance(item, Mapping) and item.get(DEGRADED_FLAG) is True for item in value.values())
    return False


class FallbackRegistry:
    """Resolves the degraded response for a dependency type.

    The ``route`` strategy prefers the last known good value recorded for the
    same request key; every other type answers with a structured
    "unavailable" payload so downstream stages can keep running.
    """

    def __init__(self, *, cache: LastKnownValueCache | None = None) -> None:
        self._cache = cache or LastKnownValueCache()
        self._strategies: dict[DependencyType, FallbackStrategy] = {}

    @property
    def cache(self) -> LastKnownValueCache:
        return self._cache

    def register(self, dependency_type: DependencyType | str, strategy: FallbackStrategy) -> None:
        self._strategies[DependencyType(dependency_type)] = strategy

    def remember(self, dependency: str, key: Hashable | None, value: Any) -> None:
        if key is None or is_fallback_response(value):
            return
        self._cache.remember(dependency, key, value)

    def resolve(
        self,
        dependency: str,
        dependency_type: DependencyType | str = DependencyType.GENERIC,
        *,
        key: Hashable | None = None,
    ) -> dict[str, Any]:
        kind = dependency_kind(dependency_type)
        custom = self._strategies.get(kind)
        if custom is not None:
            metrics.increment_fallback_response(dependency_type=kind.value, source="custom")
            return custom(dependency, key)

        if kind is DependencyType.ROUTE and key is not None:
            cached = self._cache.recall(dependency, key)
            if isinstance(cached, Mapping):
                metrics.increment_fallback_response(dependency_type=kind.value, source="cache")
                logger.warning("fallback_cached_value", dependency=dependency, dependency_type=kind.value)
                payload = dict(cached)
                payload[DEGRADED_FLAG] = True
                payload[DEGRADATION_REASON] = "Route API unavailable, using cached route"
                return payload

        message = _UNAVAILABLE_MESSAGES.get(kind, f"Service unavailable. Circuit open for {dependency}.")
        metrics.increment_fallback_response(dependency_type=kind.value, source="static")
        logger.warning("fallback_unavailable", dependency=dependency, dependency_type=kind.value)
        return degraded_payload(message, dependency=dependency)
