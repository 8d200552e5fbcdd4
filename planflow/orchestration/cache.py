from __future__ import annotations

import hashlib
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping

from ..core import metrics
from ..core.config import PlanningSettings
from ..schemas.plan import ExecutionPlan

_WHITESPACE = re.compile(r"\s+")


@dataclass(slots=True)
class _CacheEntry:
    plan: ExecutionPlan
    stored_at: float


class PlanCache:
    """Request-scoped plan cache with TTL expiry and oldest-first eviction."""

    def __init__(
        self,
        *,
        ttl_seconds: float = 300.0,
        max_entries: int = 100,
        key_chars: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl_seconds = max(0.0, ttl_seconds)
        self._max_entries = max(1, max_entries)
        self._key_chars = max(1, key_chars)
        self._clock = clock
        self._entries: dict[str, _CacheEntry] = {}

    @classmethod
    def from_settings(cls, settings: PlanningSettings) -> "PlanCache":
        return cls(
            ttl_seconds=settings.cache_ttl_seconds,
            max_entries=settings.cache_max_entries,
            key_chars=settings.cache_key_query_chars,
        )

    def key_for(
        self,
        query: str,
        state: Mapping[str, Any],
        tracked_fields: Iterable[str],
        *,
        variant: str | None = None,
    ) -> str:
        """``variant`` distinguishes plans built from the same query under different generation options."""
        normalized = _WHITESPACE.sub(" ", query.strip().lower())[: self._key_chars]
        key = f"{normalized}::{state_signature(state, tracked_fields)}"
        return f"{key}::{variant}" if variant else key

    def get(self, key: str) -> ExecutionPlan | None:
        entry = self._entries.get(key)
        if entry is None:
            metrics.increment_plan_cache(event="miss")
            return None
        if self._clock() - entry.stored_at > self._ttl_seconds:
            del self._entries[key]
            metrics.increment_plan_cache(event="expired")
            return None
        metrics.increment_plan_cache(event="hit")
        return entry.plan

    def put(self, key: str, plan: ExecutionPlan) -> None:
        self._entries.pop(key, None)
        self._purge_expired()
        while len(self._entries) >= self._max_entries:
            oldest = min(self._entries, key=lambda item: self._entries[item].stored_at)
            del self._entries[oldest]
            metrics.increment_plan_cache(event="evicted")
        self._entries[key] = _CacheEntry(plan=plan, stored_at=self._clock())

    def _purge_expired(self) -> None:
        now = self._clock()
        for key in [key for key, entry in self._entries.items() if now - entry.stored_at > self._ttl_seconds]:
            del self._entries[key]

    def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


def state_signature(state: Mapping[str, Any], tracked_fields: Iterable[str]) -> str:
    """Compact digest of which tracked fields are already populated in ``state``."""
    populated = sorted(name for name in set(tracked_fields) if state.get(name) is not None)
    if not populated:
        return "empty"
    return hashlib.sha1(",".join(populated).encode("utf-8")).hexdigest()[:12]
