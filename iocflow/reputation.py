"""Weighted reputation scoring across multiple sources."""

import asyncio
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Iterable, Optional

from iocflow.config import ReputationConfig
from iocflow.enrichment.base import ReputationAdapter, applicable
from iocflow.errors import AdapterTimeout
from iocflow.models import (
    IOCType,
    ReputationCategory,
    ReputationScore,
    SourceScore,
    TenantContext,
    utcnow,
)

logger = logging.getLogger("iocflow.reputation")

NEUTRAL_SCORE = 0.5


def categorize(score: float) -> ReputationCategory:
    """Map a score in [0, 1] onto its reputation band."""
    if score >= 0.8:
        return ReputationCategory.MALICIOUS
    if score >= 0.6:
        return ReputationCategory.SUSPICIOUS
    if score >= 0.4:
        return ReputationCategory.NEUTRAL
    if score >= 0.2:
        return ReputationCategory.GOOD
    return ReputationCategory.TRUSTED


def compute_reputation(scores: list[SourceScore], weights: dict[str, float]) -> tuple[float, float]:
    """
    Compute the weighted mean over available sources.

    Args:
        scores: Per-source scores (unavailable ones are ignored)
        weights: Source weight by source name

    Returns:
        Tuple of (score, confidence). Confidence is the share of the total
        weight that answered; with no usable answer the result is (0.5, 0.0).
    """
    total_weight = sum(weights.get(s.source_name, 0.0) for s in scores)
    available = [s for s in scores if s.available]
    answered_weight = sum(weights.get(s.source_name, 0.0) for s in available)
    if not available or answered_weight <= 0:
        return NEUTRAL_SCORE, 0.0

    weighted_sum = sum(s.raw_score * weights.get(s.source_name, 0.0) for s in available)
    score = weighted_sum / answered_weight
    confidence = answered_weight / total_weight if total_weight else 0.0
    return round(score, 6), round(confidence, 6)


@dataclass
class _CacheEntry:
    score: ReputationScore
    stored_at: float


class ReputationCache:
    """Bounded LRU cache with a single TTL, safe to share across threads."""

    def __init__(self, capacity: int, ttl_seconds: float):
        self.capacity = capacity
        self.ttl_seconds = ttl_seconds
        self._entries: OrderedDict[str, _CacheEntry] = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Optional[ReputationScore]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            if time.monotonic() - entry.stored_at > self.ttl_seconds:
                del self._entries[key]
                self.misses += 1
                return None
            self._entries.move_to_end(key)
            self.hits += 1
            return entry.score

    def put(self, key: str, score: ReputationScore) -> None:
        with self._lock:
            self._entries[key] = _CacheEntry(score=score, stored_at=time.monotonic())
            self._entries.move_to_end(key)
            while len(self._entries) > self.capacity:
                self._entries.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class ReputationEngine:
    """
    Aggregates weighted scores from reputation adapters.

    Source weight and enablement come from configuration and can be
    overridden per tenant; any override invalidates that tenant's cache.
    """

    def __init__(
        self,
        adapters: Iterable[ReputationAdapter] = (),
        config: Optional[ReputationConfig] = None,
        timeout_seconds: float = 5.0,
    ):
        self.config = config or ReputationConfig()
        self.timeout_seconds = timeout_seconds
        self.adapters: dict[str, ReputationAdapter] = {a.source_id: a for a in adapters}
        self._defaults: dict[str, tuple[float, bool]] = {
            sid: (a.weight, a.enabled) for sid, a in self.adapters.items()
        }
        for source in self.config.sources:
            self._defaults[source.id] = (source.weight, source.enabled)
        self._overrides: dict[str, dict[str, tuple[float, bool]]] = {}
        self._caches: dict[str, ReputationCache] = {}
        self._lock = threading.Lock()

    def _cache_for(self, tenant_id: str) -> ReputationCache:
        with self._lock:
            cache = self._caches.get(tenant_id)
            if cache is None:
                cache = ReputationCache(self.config.cache_capacity, self.config.cache_ttl_seconds)
                self._caches[tenant_id] = cache
            return cache

    def source_settings(self, ctx: TenantContext) -> dict[str, tuple[float, bool]]:
        """Effective (weight, enabled) per source for a tenant."""
        with self._lock:
            settings = dict(self._defaults)
            settings.update(self._overrides.get(ctx.tenant_id, {}))
        return settings

    def update_source(
        self,
        ctx: TenantContext,
        source_id: str,
        weight: Optional[float] = None,
        enabled: Optional[bool] = None,
    ) -> None:
        """Change a source's weight or enablement for one tenant."""
        if source_id not in self.adapters:
            raise KeyError(f"Unknown reputation source: {source_id}")
        if weight is not None and weight < 0:
            raise ValueError(f"Source weight must be non-negative: {weight}")
        current_weight, current_enabled = self.source_settings(ctx)[source_id]
        with self._lock:
            self._overrides.setdefault(ctx.tenant_id, {})[source_id] = (
                current_weight if weight is None else weight,
                current_enabled if enabled is None else enabled,
            )
        self.invalidate(ctx)
        logger.info(
            f"Reputation source {source_id} updated (weight={weight}, enabled={enabled})",
            extra={"tenant_id": ctx.tenant_id},
        )

    def invalidate(self, ctx: TenantContext) -> None:
        self._cache_for(ctx.tenant_id).clear()

    async def _query(self, adapter: ReputationAdapter, value: str, ioc_type: IOCType) -> SourceScore:
        """Run one adapter under the per-source deadline; never raises."""
        try:
            score = await asyncio.wait_for(adapter.fetch(value, ioc_type), self.timeout_seconds)
        except asyncio.TimeoutError:
            error = AdapterTimeout(adapter.source_id, self.timeout_seconds)
            return SourceScore(adapter.source_id, 0.0, available=False, error=str(error))
        except Exception as e:
            return SourceScore(adapter.source_id, 0.0, available=False, error=f"Error: {e}")

        if score.available and not 0.0 <= score.raw_score <= 1.0:
            return SourceScore(
                adapter.source_id,
                0.0,
                available=False,
                error=f"Score out of range: {score.raw_score}",
            )
        score.source_name = adapter.source_id
        return score

    async def fetch(self, ctx: TenantContext, value: str, ioc_type: IOCType) -> ReputationScore:
        """
        Return the reputation for a canonical value, consulting the cache first.

        Source failures become warnings on the score; they never raise.
        """
        cache = self._cache_for(ctx.tenant_id)
        cached = cache.get(value)
        if cached is not None:
            return cached

        settings = self.source_settings(ctx)
        selected = applicable(
            (a for sid, a in self.adapters.items() if settings.get(sid, (0.0, False))[1]), ioc_type
        )
        weights = {sid: settings[sid][0] for sid in settings}

        scores = list(await asyncio.gather(*[self._query(a, value, ioc_type) for a in selected]))
        score, confidence = compute_reputation(scores, weights)

        warnings = []
        for s in scores:
            if not s.available:
                warning = f"Reputation source {s.source_name} failed: {s.error}"
                warnings.append(warning)
                logger.warning(warning, extra={"tenant_id": ctx.tenant_id})

        result = ReputationScore(
            value=value,
            score=score,
            category=categorize(score),
            confidence=confidence,
            source_scores=scores,
            warnings=warnings,
            computed_at=utcnow(),
        )
        logger.debug(
            f"Reputation {ioc_type.value} {value}: score={score:.3f} "
            f"category={result.category.value} confidence={confidence:.2f}",
            extra={"tenant_id": ctx.tenant_id},
        )

        # Results with no answering source are not cached so recovery is seen
        if confidence > 0:
            cache.put(value, result)
        return result

    async def close(self) -> None:
        for adapter in self.adapters.values():
            await adapter.close()
