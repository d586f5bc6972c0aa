"""Pipeline orchestrator: validate, store, enrich, detect, correlate, persist."""

import asyncio
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Optional

from iocflow.cancellation import check_cancelled
from iocflow.config import PipelineConfig
from iocflow.correlation import CorrelationEngine
from iocflow.detection import DetectionEngine
from iocflow.enrichment.aggregator import EnrichmentEngine, build_intelligence
from iocflow.enrichment.registry import build_adapters
from iocflow.errors import (
    Cancelled,
    DuplicateRecord,
    InvalidFormat,
    TenantIsolationViolation,
)
from iocflow.models import (
    IOC,
    SEVERITY_ORDER,
    AnalysisResult,
    BatchReport,
    ComponentHealth,
    Correlation,
    DetectionResult,
    EnrichedIOC,
    ImpactAssessment,
    IOCResult,
    Page,
    ReputationCategory,
    SearchCriteria,
    Severity,
    TenantContext,
    derive_ioc_id,
    utcnow,
)
from iocflow.reputation import ReputationEngine
from iocflow.retry import async_retry
from iocflow.storage.base import DataStore
from iocflow.storage.factory import open_store
from iocflow.validation import validate_ioc

logger = logging.getLogger("iocflow.pipeline")

SEVERITY_IMPACT = {
    Severity.LOW: 0.25,
    Severity.MEDIUM: 0.5,
    Severity.HIGH: 0.75,
    Severity.CRITICAL: 1.0,
}

ROLLING_WINDOW = 100


@dataclass
class ProcessingStats:
    """Snapshot of processing counters."""

    succeeded: int = 0
    failed: int = 0
    mean_processing_ms: float = 0.0
    last_processed: Optional[datetime] = None
    failures_by_kind: dict[str, int] = field(default_factory=dict)


class StatsRecorder:
    """Thread-safe counters with a rolling mean over recent successful items."""

    def __init__(self, window: int = ROLLING_WINDOW):
        self._lock = threading.Lock()
        self._durations: deque[float] = deque(maxlen=window)
        self._succeeded = 0
        self._failed = 0
        self._failures_by_kind: dict[str, int] = {}
        self._last_processed: Optional[datetime] = None

    def record_success(self, seconds: float) -> None:
        with self._lock:
            self._succeeded += 1
            self._durations.append(seconds)
            self._last_processed = utcnow()

    def record_failure(self, error: BaseException) -> None:
        kind = type(error).__name__
        with self._lock:
            self._failed += 1
            self._failures_by_kind[kind] = self._failures_by_kind.get(kind, 0) + 1

    def snapshot(self) -> ProcessingStats:
        with self._lock:
            mean = sum(self._durations) / len(self._durations) if self._durations else 0.0
            return ProcessingStats(
                succeeded=self._succeeded,
                failed=self._failed,
                mean_processing_ms=round(mean * 1000, 3),
                last_processed=self._last_processed,
                failures_by_kind=dict(self._failures_by_kind),
            )


def effective_severity(ioc: IOC, detection: DetectionEngine, result: DetectionResult) -> Severity:
    """The IOC's own severity raised to that of its most severe matched rule."""
    matched = detection.highest_severity(result)
    if matched is not None and SEVERITY_ORDER[matched] > SEVERITY_ORDER[ioc.severity]:
        return matched
    return ioc.severity


def build_analysis(
    enriched: EnrichedIOC,
    detection_result: DetectionResult,
    correlations: list[Correlation],
    severity: Severity,
    confidence_threshold: float,
) -> AnalysisResult:
    """
    Derive impact, recommendations and tags from the computed evidence.

    Args:
        enriched: Enriched record of the IOC
        detection_result: Rule evaluation outcome
        correlations: Correlations found for the IOC
        severity: Effective severity
        confidence_threshold: Minimum IOC confidence for blocking advice

    Returns:
        AnalysisResult
    """
    ioc = enriched.ioc
    reputation = enriched.reputation
    reputation_score = reputation.score if reputation is not None and reputation.confidence > 0 else 0.0

    technical = detection_result.detection_confidence
    business = SEVERITY_IMPACT[severity]
    operational = min(1.0, 0.1 * len(correlations))
    overall = min(1.0, 0.5 * technical + 0.3 * reputation_score + 0.2 * business)
    impact = ImpactAssessment(
        business_impact=round(business, 6),
        technical_impact=round(technical, 6),
        operational_impact=round(operational, 6),
        overall_risk=round(overall, 6),
    )

    malicious = reputation is not None and reputation.category == ReputationCategory.MALICIOUS
    recommendations: list[str] = []
    if ioc.confidence >= confidence_threshold and (technical > 0.6 or malicious):
        recommendations.append(f"Block {ioc.ioc_type.value} {ioc.value} at perimeter controls")
    if detection_result.matched_rules:
        recommendations.append(
            f"Review matched detection rules: {', '.join(detection_result.matched_rules)}"
        )
    if correlations:
        related = {i for c in correlations for i in c.correlated_iocs if i != ioc.id}
        recommendations.append(f"Investigate {len(related)} correlated indicator(s)")
    if reputation is not None and reputation.category == ReputationCategory.SUSPICIOUS:
        recommendations.append(f"Monitor {ioc.value} for further activity")
    if not recommendations:
        recommendations.append("No action required; continue monitoring")

    tags = set(ioc.tags)
    tags.add(f"severity:{severity.value}")
    if reputation is not None and reputation.confidence > 0:
        tags.add(f"reputation:{reputation.category.value}")
    return AnalysisResult(recommendations=recommendations, impact=impact, tags=sorted(tags))


class IOCPipeline:
    """
    Orchestrates one submission end to end.

    Side effects happen in a fixed order: base IOC, enriched record,
    correlations, result. Storage calls are retried on transient failures.
    """

    def __init__(
        self,
        store: DataStore,
        detection: Optional[DetectionEngine] = None,
        enrichment: Optional[EnrichmentEngine] = None,
        correlation: Optional[CorrelationEngine] = None,
        config: Optional[PipelineConfig] = None,
    ):
        self.config = config or PipelineConfig()
        self.store = store
        self.detection = detection or DetectionEngine()
        self.enrichment = enrichment or EnrichmentEngine(config=self.config.enrichment)
        self.correlation = correlation or CorrelationEngine(self.config.correlation)
        self._stats = StatsRecorder()

    @classmethod
    async def from_config(
        cls, config: PipelineConfig, rules_file: Optional[str] = None
    ) -> "IOCPipeline":
        """Build every component from configuration and open the store."""
        reputation_adapters, intelligence_adapters = build_adapters(config)
        reputation = ReputationEngine(
            reputation_adapters,
            config.reputation,
            timeout_seconds=config.enrichment.per_source_timeout_ms / 1000.0,
        )
        enrichment = EnrichmentEngine(intelligence_adapters, config.enrichment, reputation)
        detection = DetectionEngine()
        if rules_file:
            detection.load_rules_file(rules_file)
        store = await open_store(config.storage)
        return cls(
            store,
            detection=detection,
            enrichment=enrichment,
            correlation=CorrelationEngine(config.correlation),
            config=config,
        )

    @property
    def reputation(self) -> Optional[ReputationEngine]:
        return self.enrichment.reputation

    @property
    def stats(self) -> ProcessingStats:
        return self._stats.snapshot()

    async def _retry(self, fn, description: str):
        return await async_retry(fn, attempts=3, base_delay=0.1, description=description)

    async def _neighbours(self, ctx: TenantContext, subject: IOC) -> list[IOC]:
        """Stored IOCs of the tenant, preferring their enriched form."""
        criteria = SearchCriteria(limit=self.config.correlation.candidate_limit)
        iocs = await self._retry(lambda: self.store.search_iocs(ctx, criteria), "search neighbours")
        enriched = await self._retry(
            lambda: self.store.search_enriched(ctx, criteria), "search enriched neighbours"
        )
        by_id = {i.id: i for i in iocs.items}
        by_id.update({e.id: e.ioc for e in enriched.items})
        by_id.pop(subject.id, None)
        return list(by_id.values())

    async def _process(
        self, ctx: TenantContext, raw: IOC, cancel: Optional[asyncio.Event]
    ) -> IOCResult:
        check_cancelled(cancel, "validation")
        outcome = validate_ioc(raw)
        base = outcome.ioc
        if base.id is None:
            base.id = derive_ioc_id(ctx.tenant_id, base.ioc_type, base.value)

        check_cancelled(cancel, "base write")
        try:
            await self._retry(lambda: self.store.store_ioc(ctx, base), "store base IOC")
        except DuplicateRecord:
            # Resubmission of a known indicator
            await self._retry(lambda: self.store.update_ioc(ctx, base), "update base IOC")

        previous = await self._retry(lambda: self.store.get_enriched(ctx, base.id), "get enriched")
        enriched = await self.enrichment.enrich(ctx, base, previous=previous, cancel=cancel)

        check_cancelled(cancel, "enriched write")
        await self._retry(lambda: self.store.store_enriched(ctx, enriched), "store enriched")

        subject = enriched.ioc
        detection_result = self.detection.evaluate(subject)
        severity = effective_severity(subject, self.detection, detection_result)

        check_cancelled(cancel, "correlation")
        now = utcnow()
        neighbours = await self._neighbours(ctx, subject)
        correlations = self.correlation.correlate(subject, neighbours, now=now)

        result = IOCResult(
            ioc=subject,
            detection_result=detection_result,
            intelligence=build_intelligence(enriched),
            correlations=correlations,
            analysis=build_analysis(
                enriched,
                detection_result,
                correlations,
                severity,
                self.config.processing.confidence_threshold,
            ),
            processing_timestamp=max(now, subject.timestamp),
            reputation=enriched.reputation,
            warnings=list(outcome.warnings) + list(enriched.warnings),
        )

        check_cancelled(cancel, "result write")
        await self._retry(
            lambda: self.store.store_result_with_correlations(ctx, result, correlations),
            "store result",
        )
        return result

    async def process_ioc(
        self, ctx: TenantContext, ioc: IOC, cancel: Optional[asyncio.Event] = None
    ) -> IOCResult:
        """
        Process one raw IOC for a tenant.

        Args:
            ctx: Owning tenant
            ioc: Raw IOC; it is not mutated
            cancel: Optional cancellation signal

        Returns:
            The persisted IOCResult

        Raises:
            InvalidFormat: If validation fails (nothing is written)
            Cancelled: If cancelled or over the processing deadline (no result is written)
            StorageError: If persistence fails after retries
        """
        start = time.monotonic()
        deadline = self.config.processing.cancel_timeout_ms / 1000.0
        try:
            try:
                result = await asyncio.wait_for(self._process(ctx, ioc, cancel), deadline)
            except asyncio.TimeoutError:
                raise Cancelled(f"Processing exceeded {self.config.processing.cancel_timeout_ms} ms")
        except InvalidFormat as e:
            self._stats.record_failure(e)
            logger.warning(
                f"Rejected IOC {ioc.value!r}: {e}", extra={"tenant_id": ctx.tenant_id}
            )
            raise
        except TenantIsolationViolation as e:
            self._stats.record_failure(e)
            logger.error(
                f"Tenant isolation violation while processing {ioc.value!r}: {e}",
                extra={"tenant_id": ctx.tenant_id},
            )
            raise
        except Exception as e:
            self._stats.record_failure(e)
            logger.warning(
                f"Processing failed for {ioc.value!r}: {e}", extra={"tenant_id": ctx.tenant_id}
            )
            raise

        self._stats.record_success(time.monotonic() - start)
        logger.info(
            f"Processed {result.ioc.ioc_type.value} {result.ioc.value}: "
            f"detection={result.detection_result.detection_confidence:.2f} "
            f"correlations={len(result.correlations)}",
            extra={"tenant_id": ctx.tenant_id},
        )
        return result

    async def process_batch(
        self,
        ctx: TenantContext,
        iocs: Iterable[IOC],
        cancel: Optional[asyncio.Event] = None,
    ) -> BatchReport:
        """
        Process IOCs in chunks of at most ``max_batch_size``.

        Per-item failures are collected by input index; they never abort the
        batch. After cancellation the remaining items are reported as cancelled.
        """
        iocs = list(iocs)
        report = BatchReport(total=len(iocs))
        chunk_size = self.config.processing.max_batch_size

        for start in range(0, len(iocs), chunk_size):
            if cancel is not None and cancel.is_set():
                for index in range(start, len(iocs)):
                    report.errors[index] = "Cancelled: batch cancelled"
                break

            chunk = iocs[start:start + chunk_size]
            outcomes = await asyncio.gather(
                *[self.process_ioc(ctx, ioc, cancel) for ioc in chunk], return_exceptions=True
            )
            for offset, outcome in enumerate(outcomes):
                if isinstance(outcome, BaseException):
                    report.errors[start + offset] = f"{type(outcome).__name__}: {outcome}"
                else:
                    report.results.append(outcome)

            # Yield between chunks
            await asyncio.sleep(0)

        logger.info(
            f"Batch complete: {report.succeeded}/{report.total} succeeded, {report.failed} failed",
            extra={"tenant_id": ctx.tenant_id},
        )
        return report

    async def search_iocs(self, ctx: TenantContext, criteria: SearchCriteria) -> Page[IOC]:
        return await self.store.search_iocs(ctx, criteria)

    async def get_result(self, ctx: TenantContext, ioc_id: str) -> Optional[IOCResult]:
        return await self.store.get_result(ctx, ioc_id)

    async def get_correlations(self, ctx: TenantContext, ioc_id: str) -> list[Correlation]:
        return await self.store.get_correlations(ctx, ioc_id)

    async def delete_ioc(self, ctx: TenantContext, ioc_id: str) -> bool:
        """Delete an IOC and everything derived from it."""
        return await self.store.delete_ioc(ctx, ioc_id)

    async def health(self) -> dict[str, Any]:
        """Component health plus an overall status (healthy, degraded or unhealthy)."""
        components: dict[str, ComponentHealth] = {}

        try:
            store_ok = await self.store.health_check()
            store_message = "ok" if store_ok else "health check failed"
        except Exception as e:
            store_ok, store_message = False, str(e)
        components["storage"] = ComponentHealth(
            name="storage",
            healthy=store_ok,
            message=store_message,
            details={"backend": self.store.name},
        )

        rules = self.detection.rules
        active = [r for r in rules if self.detection.is_active(r.id)]
        components["detection"] = ComponentHealth(
            name="detection",
            healthy=bool(active),
            message=f"{len(active)} active rules",
            details={"rules": len(rules), "rejected": len(self.detection.load_errors)},
        )

        components["enrichment"] = ComponentHealth(
            name="enrichment",
            healthy=True,
            message=f"{len(self.enrichment.adapters)} intelligence adapters",
            details={"sources": [a.source_id for a in self.enrichment.adapters]},
        )

        if self.reputation is not None:
            components["reputation"] = ComponentHealth(
                name="reputation",
                healthy=True,
                message=f"{len(self.reputation.adapters)} reputation sources",
                details={"sources": sorted(self.reputation.adapters)},
            )

        stats = self.stats
        components["processing"] = ComponentHealth(
            name="processing",
            healthy=True,
            message=f"{stats.succeeded} succeeded, {stats.failed} failed",
            details={"mean_processing_ms": stats.mean_processing_ms},
        )

        if not store_ok:
            status = "unhealthy"
        elif all(c.healthy for c in components.values()):
            status = "healthy"
        else:
            status = "degraded"
        return {"status": status, "components": components}

    async def close(self) -> None:
        await self.enrichment.close()
        await self.store.close()
