"""Enrichment fan-out, payload merge and confidence uplift."""

import asyncio
import dataclasses
import logging
from collections import Counter
from typing import Iterable, Optional

from iocflow.cancellation import run_cancellable
from iocflow.config import EnrichmentConfig
from iocflow.enrichment.base import IntelligenceAdapter, applicable
from iocflow.errors import AdapterTimeout
from iocflow.models import (
    IOC,
    EnrichedIOC,
    EnrichmentPayload,
    Intelligence,
    ReputationScore,
    TenantContext,
    utcnow,
)
from iocflow.reputation import ReputationEngine

logger = logging.getLogger("iocflow.aggregator")

# Reputation source scores at or above this count as a malicious verdict
MALICIOUS_SOURCE_SCORE = 0.8


def extract_tags(payloads: Iterable[EnrichmentPayload]) -> list[str]:
    """
    Extract and aggregate tags from enrichment payloads.

    Tags appearing in 2+ sources are promoted to primary tags.

    Args:
        payloads: Payloads from the sources that answered

    Returns:
        Sorted list of unique tags
    """
    all_tags: list[str] = []

    for payload in payloads:
        # Count each tag once per source
        all_tags.extend({str(t).strip().lower() for t in payload.tags if str(t).strip()})

    tag_counts = Counter(all_tags)

    # Promote tags that appear in multiple sources
    primary_tags = [tag for tag, count in tag_counts.items() if count >= 2]

    return sorted(set(primary_tags))


def corroborating_sources(
    payloads: Iterable[EnrichmentPayload],
    reputation: Optional[ReputationScore],
    high_confidence: float,
) -> list[str]:
    """Distinct sources that returned a high-confidence malicious verdict."""
    sources = {
        p.source_id for p in payloads if p.is_malicious and p.confidence >= high_confidence
    }
    if reputation is not None:
        sources.update(
            s.source_name
            for s in reputation.source_scores
            if s.available and s.raw_score >= MALICIOUS_SOURCE_SCORE
        )
    return sorted(sources)


def uplift_confidence(confidence: float, corroborations: int, delta: float) -> float:
    """Raise confidence by at most ``delta`` when two or more sources agree; never lower it."""
    if corroborations < 2:
        return confidence
    return round(confidence + min(1.0 - confidence, delta), 6)


def build_intelligence(enriched: EnrichedIOC) -> Intelligence:
    """
    Summarize an enriched record into an Intelligence block.

    Confidence is a noisy-or over the contributing confidences, so an
    additional concurring source never lowers it.
    """
    confidences = [p.confidence for p in enriched.enrichments.values() if p.confidence > 0]
    sources = list(enriched.sources)
    if enriched.reputation is not None and enriched.reputation.confidence > 0:
        confidences.append(enriched.reputation.score * enriched.reputation.confidence)
        for s in enriched.reputation.source_scores:
            if s.available and s.source_name not in sources:
                sources.append(s.source_name)

    remaining = 1.0
    for c in confidences:
        remaining *= 1.0 - min(1.0, max(0.0, c))

    related: list[str] = []
    for payload in enriched.enrichments.values():
        for threat in payload.data.get("threats", []) or []:
            if threat not in related:
                related.append(str(threat))

    return Intelligence(
        sources=sorted(sources),
        confidence=round(1.0 - remaining, 6),
        last_updated=enriched.enrichment_timestamp,
        related_threats=related,
    )


def _merge_context(ioc: IOC, payloads: list[EnrichmentPayload], now) -> None:
    """Fold payload metadata into the IOC context without touching value or id."""
    context = ioc.context
    context.last_seen = now if context.last_seen is None else max(context.last_seen, now)
    if context.first_seen is None:
        context.first_seen = min(ioc.timestamp, now)

    for payload in payloads:
        for related in payload.related_indicators:
            if related not in context.related_indicators:
                context.related_indicators.append(related)

        data = payload.data
        if context.asn is None and data.get("asn") is not None:
            try:
                context.asn = int(str(data["asn"]).upper().removeprefix("AS"))
            except ValueError:
                logger.debug(f"{payload.source_id} returned a non-numeric ASN: {data['asn']!r}")
        if context.geolocation is None and data.get("country"):
            context.geolocation = str(data["country"])
        if context.category is None and data.get("category"):
            context.category = str(data["category"])
        if context.resolved_ip is None and data.get("resolved_ip"):
            context.resolved_ip = str(data["resolved_ip"])


class EnrichmentEngine:
    """
    Runs applicable intelligence adapters concurrently and merges their payloads.

    Each adapter gets its own deadline; failures and timeouts are recorded as
    warnings and never fail the enrichment as a whole.
    """

    def __init__(
        self,
        adapters: Iterable[IntelligenceAdapter] = (),
        config: Optional[EnrichmentConfig] = None,
        reputation: Optional[ReputationEngine] = None,
    ):
        self.config = config or EnrichmentConfig()
        self.adapters: list[IntelligenceAdapter] = list(adapters)
        self.reputation = reputation

    @property
    def timeout_seconds(self) -> float:
        return self.config.per_source_timeout_ms / 1000.0

    def select_adapters(self, ioc: IOC) -> list[IntelligenceAdapter]:
        """Adapters enabled by configuration that declare support for this IOC type."""
        enabled = set(self.config.enabled_sources)
        return applicable(
            (a for a in self.adapters if not enabled or a.source_id in enabled), ioc.ioc_type
        )

    async def _run_adapter(
        self, adapter: IntelligenceAdapter, ioc: IOC, semaphore: asyncio.Semaphore
    ) -> tuple[Optional[EnrichmentPayload], Optional[str]]:
        async with semaphore:
            try:
                payload = await asyncio.wait_for(adapter.enrich(ioc), self.timeout_seconds)
            except asyncio.TimeoutError:
                return None, str(AdapterTimeout(adapter.source_id, self.timeout_seconds))
            except Exception as e:
                return None, f"{adapter.source_id}: {e}"

        # Payloads are keyed by the adapter that produced them
        payload.source_id = adapter.source_id
        return payload, None

    async def _gather(
        self, ctx: TenantContext, ioc: IOC
    ) -> tuple[list[EnrichmentPayload], list[str], Optional[ReputationScore]]:
        selected = self.select_adapters(ioc)
        semaphore = asyncio.Semaphore(self.config.max_concurrency)

        tasks = [self._run_adapter(a, ioc, semaphore) for a in selected]
        if self.reputation is not None:
            outcomes, reputation = await asyncio.gather(
                asyncio.gather(*tasks), self.reputation.fetch(ctx, ioc.value, ioc.ioc_type)
            )
        else:
            outcomes, reputation = await asyncio.gather(*tasks), None

        payloads: list[EnrichmentPayload] = []
        warnings: list[str] = []
        for payload, error in outcomes:
            if payload is not None:
                payloads.append(payload)
            else:
                warning = f"Enrichment source failed: {error}"
                warnings.append(warning)
                logger.warning(warning, extra={"tenant_id": ctx.tenant_id})
        return payloads, warnings, reputation

    async def enrich(
        self,
        ctx: TenantContext,
        ioc: IOC,
        previous: Optional[EnrichedIOC] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> EnrichedIOC:
        """
        Enrich a canonical IOC.

        Args:
            ctx: Tenant the IOC belongs to
            ioc: Validated IOC (it is copied, never mutated)
            previous: Earlier enriched record for the same IOC, if any
            cancel: Optional cancellation signal

        Returns:
            EnrichedIOC with merged payloads, reputation and warnings

        Raises:
            Cancelled: If ``cancel`` fires while adapters are in flight
        """
        payloads, warnings, reputation = await run_cancellable(
            self._gather(ctx, ioc), cancel, "enrichment"
        )
        now = utcnow()

        enriched_ioc = dataclasses.replace(
            ioc,
            tags=set(ioc.tags),
            context=dataclasses.replace(
                ioc.context, related_indicators=list(ioc.context.related_indicators)
            ),
        )
        if previous is not None:
            prior = previous.ioc.context
            enriched_ioc.context.last_seen = max(
                filter(None, [enriched_ioc.context.last_seen, prior.last_seen]), default=None
            )
            enriched_ioc.context.first_seen = min(
                filter(None, [enriched_ioc.context.first_seen, prior.first_seen]), default=None
            )

        # Same source overwrites its own key; other sources are untouched
        enrichments = dict(previous.enrichments) if previous is not None else {}
        sources = list(previous.sources) if previous is not None else []
        for payload in payloads:
            enrichments[payload.source_id] = payload
            if payload.source_id not in sources:
                sources.append(payload.source_id)

        _merge_context(enriched_ioc, payloads, now)
        enriched_ioc.tags.update(extract_tags(payloads))

        corroborating = corroborating_sources(payloads, reputation, self.config.high_confidence)
        uplifted = uplift_confidence(
            enriched_ioc.confidence, len(corroborating), self.config.uplift_delta
        )
        if uplifted > enriched_ioc.confidence:
            logger.debug(
                f"Confidence uplift for {ioc.value}: {enriched_ioc.confidence:.2f} -> {uplifted:.2f} "
                f"({', '.join(corroborating)})",
                extra={"tenant_id": ctx.tenant_id},
            )
            enriched_ioc.confidence = uplifted

        if reputation is not None:
            warnings.extend(reputation.warnings)

        logger.info(
            f"Enriched {ioc.ioc_type.value} {ioc.value}: {len(payloads)} sources, "
            f"{len(warnings)} warnings",
            extra={"tenant_id": ctx.tenant_id},
        )
        return EnrichedIOC(
            ioc=enriched_ioc,
            enrichments=enrichments,
            sources=sources,
            enrichment_timestamp=now,
            reputation=reputation,
            warnings=warnings,
        )

    async def close(self) -> None:
        """Close every adapter, including the reputation engine's."""
        for adapter in self.adapters:
            await adapter.close()
        if self.reputation is not None:
            await self.reputation.close()
