"""Uniform tenant-scoped storage contract and the shared record logic."""

import asyncio
import logging
import re
import time
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Optional, TypeVar

from iocflow.config import StorageConfig
from iocflow.correlation import rank_key
from iocflow.errors import StorageError, StorageTransient
from iocflow.models import (
    IOC,
    BulkResult,
    Correlation,
    CorrelationCriteria,
    EnrichedIOC,
    IOCResult,
    Page,
    SearchCriteria,
    TenantContext,
    utcnow,
)
from iocflow.storage.envelope import unwrap, wrap

logger = logging.getLogger("iocflow.storage")

T = TypeVar("T")

IOC_KIND = "ioc"
ENRICHED_KIND = "enriched"
RESULT_KIND = "result"
CORRELATION_KIND = "correlation"
KINDS = (IOC_KIND, ENRICHED_KIND, RESULT_KIND, CORRELATION_KIND)

TOKEN_RE = re.compile(r"[a-z0-9]+")


@dataclass(frozen=True)
class StoreCapabilities:
    """What a backend can do; callers branch on these, never on the backend type."""

    supports_multi_tenancy: bool = True
    supports_full_text_search: bool = False
    supports_transactions: bool = False
    supports_bulk_operations: bool = True
    max_batch_size: int = 1000


@dataclass
class StorageMetrics:
    """Per-tenant record counts plus backend-wide operation statistics."""

    backend: str
    tenant_id: str
    ioc_count: int = 0
    enriched_count: int = 0
    result_count: int = 0
    correlation_count: int = 0
    operations: int = 0
    errors: int = 0
    average_response_ms: float = 0.0
    active_connections: int = 0
    extra: dict[str, Any] = field(default_factory=dict)


def tokenize(text: str) -> set[str]:
    """Lowercased alphanumeric tokens of a string."""
    return set(TOKEN_RE.findall(text.lower()))


def ioc_tokens(ioc: IOC) -> set[str]:
    """Terms under which an IOC is found by a full-text query."""
    tokens = tokenize(ioc.value) | {ioc.value.lower(), ioc.ioc_type.value}
    tokens |= tokenize(ioc.source)
    for tag in ioc.tags:
        tokens |= tokenize(tag) | {tag.lower()}
    if ioc.context.category:
        tokens |= tokenize(ioc.context.category)
    return tokens


def matches_query(ioc: IOC, query: Optional[str]) -> bool:
    """Every query term must be one of the IOC's terms."""
    if not query:
        return True
    return tokenize(query).issubset(ioc_tokens(ioc))


def ioc_sort_key(ioc: IOC) -> tuple:
    """Newest first, id as the tie-break."""
    return (-ioc.timestamp.timestamp(), ioc.id or "")


class DataStore(ABC):
    """
    Tenant-scoped persistence for IOCs, enriched records, results and correlations.

    Backends implement five record primitives over envelopes keyed by
    ``(tenant, kind, id)``; everything else, including serialization,
    filtering, pagination and the delete cascade, is shared here. Backends
    with a native query engine override the search methods.
    """

    name = "abstract"
    capabilities = StoreCapabilities()

    def __init__(self, config: Optional[StorageConfig] = None):
        self.config = config or StorageConfig(backend=self.name)
        self._initialized = False
        self._operations = 0
        self._errors = 0
        self._latency_total = 0.0
        self._active = 0

    # ------------------------------------------------------------------
    # Backend primitives
    # ------------------------------------------------------------------

    @abstractmethod
    async def _insert(self, ctx: TenantContext, kind: str, record_id: str, envelope: dict) -> None:
        """Create a record; raise DuplicateRecord if ``(tenant, kind, id)`` exists."""
        ...

    @abstractmethod
    async def _upsert(self, ctx: TenantContext, kind: str, record_id: str, envelope: dict) -> None:
        """Create or replace a record."""
        ...

    @abstractmethod
    async def _fetch(self, ctx: TenantContext, kind: str, record_id: str) -> Optional[dict]:
        """Return the envelope of a record, or None."""
        ...

    @abstractmethod
    async def _remove(self, ctx: TenantContext, kind: str, record_ids: list[str]) -> int:
        """Delete records, returning how many existed."""
        ...

    @abstractmethod
    async def _scan(self, ctx: TenantContext, kind: str) -> list[dict]:
        """Every envelope of one kind owned by the tenant."""
        ...

    async def _count(self, ctx: TenantContext, kind: str) -> int:
        return len(await self._scan(ctx, kind))

    async def _correlation_envelopes_for(self, ctx: TenantContext, ioc_id: str) -> list[dict]:
        return [
            env
            for env in await self._scan(ctx, CORRELATION_KIND)
            if ioc_id in env["payload"].get("correlated_iocs", [])
        ]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        self._initialized = True
        logger.info(f"Storage backend {self.name} initialized")

    async def close(self) -> None:
        self._initialized = False

    async def health_check(self) -> bool:
        return self._initialized

    async def get_metrics(self, ctx: TenantContext) -> StorageMetrics:
        counts = {kind: await self._count(ctx, kind) for kind in KINDS}
        return StorageMetrics(
            backend=self.name,
            tenant_id=ctx.tenant_id,
            ioc_count=counts[IOC_KIND],
            enriched_count=counts[ENRICHED_KIND],
            result_count=counts[RESULT_KIND],
            correlation_count=counts[CORRELATION_KIND],
            operations=self._operations,
            errors=self._errors,
            average_response_ms=(
                round(self._latency_total / self._operations * 1000, 3) if self._operations else 0.0
            ),
            active_connections=self._active,
        )

    @asynccontextmanager
    async def _observe(self, operation: str):
        self._active += 1
        start = time.monotonic()
        try:
            yield
        except StorageError:
            self._errors += 1
            raise
        finally:
            self._active -= 1
            self._operations += 1
            self._latency_total += time.monotonic() - start

    async def _run(self, operation: str, fn: Callable[[], Awaitable[T]]) -> T:
        """Run one public operation under the configured deadline."""
        async with self._observe(operation):
            try:
                return await asyncio.wait_for(fn(), self.config.timeout_seconds)
            except asyncio.TimeoutError:
                raise StorageTransient(
                    f"{self.name}: {operation} timed out after {self.config.timeout_seconds}s"
                )

    async def _put(
        self, ctx: TenantContext, kind: str, record_id: str, payload: dict, create: bool
    ) -> None:
        if create:
            await self._insert(ctx, kind, record_id, wrap(ctx, payload))
            return
        existing = await self._fetch(ctx, kind, record_id)
        created_at = None
        if existing is not None:
            unwrap(ctx, existing, record_id)
            created_at = existing.get("created_at")
        await self._upsert(ctx, kind, record_id, wrap(ctx, payload, created_at=created_at))

    async def _get(self, ctx: TenantContext, kind: str, record_id: str) -> Optional[dict]:
        envelope = await self._fetch(ctx, kind, record_id)
        if envelope is None:
            return None
        return unwrap(ctx, envelope, record_id)

    async def _all(self, ctx: TenantContext, kind: str) -> list[dict]:
        return [unwrap(ctx, env) for env in await self._scan(ctx, kind)]

    # ------------------------------------------------------------------
    # IOCs
    # ------------------------------------------------------------------

    async def store_ioc(self, ctx: TenantContext, ioc: IOC) -> str:
        """
        Persist a new IOC for the tenant.

        An IOC without an id is given a random one.

        Raises:
            DuplicateRecord: If the tenant already has an IOC with this id
        """
        if ioc.id is None:
            ioc.id = str(uuid.uuid4())

        async def op():
            await self._put(ctx, IOC_KIND, ioc.id, ioc.to_dict(), create=True)
            return ioc.id

        return await self._run("store_ioc", op)

    async def get_ioc(self, ctx: TenantContext, ioc_id: str) -> Optional[IOC]:
        async def op():
            payload = await self._get(ctx, IOC_KIND, ioc_id)
            return IOC.from_dict(payload) if payload is not None else None

        return await self._run("get_ioc", op)

    async def update_ioc(self, ctx: TenantContext, ioc: IOC) -> bool:
        """Replace an existing IOC, advancing ``updated_at``; False if it does not exist."""

        async def op():
            if await self._fetch(ctx, IOC_KIND, ioc.id) is None:
                return False
            ioc.updated_at = utcnow()
            await self._put(ctx, IOC_KIND, ioc.id, ioc.to_dict(), create=False)
            return True

        return await self._run("update_ioc", op)

    async def delete_ioc(self, ctx: TenantContext, ioc_id: str) -> bool:
        """Delete an IOC together with its enriched record, result and correlations."""

        async def op():
            removed = await self._remove(ctx, IOC_KIND, [ioc_id])
            if not removed:
                return False
            await self._remove(ctx, ENRICHED_KIND, [ioc_id])
            await self._remove(ctx, RESULT_KIND, [ioc_id])
            linked = [env["payload"]["id"] for env in await self._correlation_envelopes_for(ctx, ioc_id)]
            if linked:
                await self._remove(ctx, CORRELATION_KIND, linked)
            logger.debug(
                f"Deleted IOC {ioc_id} and {len(linked)} correlations",
                extra={"tenant_id": ctx.tenant_id},
            )
            return True

        return await self._run("delete_ioc", op)

    async def search_iocs(self, ctx: TenantContext, criteria: SearchCriteria) -> Page[IOC]:
        async def op():
            iocs = [IOC.from_dict(p) for p in await self._all(ctx, IOC_KIND)]
            selected = [i for i in iocs if criteria.matches(i) and matches_query(i, criteria.query)]
            selected.sort(key=ioc_sort_key)
            return Page.from_items(selected, criteria.limit, criteria.offset)

        return await self._run("search_iocs", op)

    async def bulk_store_iocs(self, ctx: TenantContext, iocs: Iterable[IOC]) -> BulkResult:
        """Store many IOCs; each failure is reported and does not stop the rest."""
        iocs = list(iocs)
        result = BulkResult(total_requested=len(iocs))
        batch_size = self.capabilities.max_batch_size
        for start in range(0, len(iocs), batch_size):
            for ioc in iocs[start:start + batch_size]:
                try:
                    await self.store_ioc(ctx, ioc)
                    result.successful += 1
                except (StorageError, ValueError) as e:
                    result.failed += 1
                    failed_id = ioc.id or ioc.value
                    result.failed_ids.append(failed_id)
                    result.errors[failed_id] = str(e)
        if result.failed:
            logger.warning(
                f"Bulk store: {result.failed}/{result.total_requested} failed",
                extra={"tenant_id": ctx.tenant_id},
            )
        return result

    async def bulk_delete_iocs(self, ctx: TenantContext, ioc_ids: Iterable[str]) -> BulkResult:
        ioc_ids = list(ioc_ids)
        result = BulkResult(total_requested=len(ioc_ids))
        for ioc_id in ioc_ids:
            try:
                deleted = await self.delete_ioc(ctx, ioc_id)
            except StorageError as e:
                deleted = False
                result.errors[ioc_id] = str(e)
            if deleted:
                result.successful += 1
            else:
                result.failed += 1
                result.failed_ids.append(ioc_id)
                result.errors.setdefault(ioc_id, "not found")
        return result

    # ------------------------------------------------------------------
    # Enriched records
    # ------------------------------------------------------------------

    async def store_enriched(self, ctx: TenantContext, enriched: EnrichedIOC) -> None:
        if enriched.id is None:
            raise ValueError("Enriched record has no IOC id")

        async def op():
            await self._put(ctx, ENRICHED_KIND, enriched.id, enriched.to_dict(), create=False)

        await self._run("store_enriched", op)

    async def get_enriched(self, ctx: TenantContext, ioc_id: str) -> Optional[EnrichedIOC]:
        async def op():
            payload = await self._get(ctx, ENRICHED_KIND, ioc_id)
            return EnrichedIOC.from_dict(payload) if payload is not None else None

        return await self._run("get_enriched", op)

    async def delete_enriched(self, ctx: TenantContext, ioc_id: str) -> bool:
        async def op():
            return await self._remove(ctx, ENRICHED_KIND, [ioc_id]) > 0

        return await self._run("delete_enriched", op)

    async def search_enriched(
        self, ctx: TenantContext, criteria: SearchCriteria
    ) -> Page[EnrichedIOC]:
        async def op():
            records = [EnrichedIOC.from_dict(p) for p in await self._all(ctx, ENRICHED_KIND)]
            selected = [
                r for r in records if criteria.matches(r.ioc) and matches_query(r.ioc, criteria.query)
            ]
            selected.sort(key=lambda r: ioc_sort_key(r.ioc))
            return Page.from_items(selected, criteria.limit, criteria.offset)

        return await self._run("search_enriched", op)

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    async def store_result(self, ctx: TenantContext, result: IOCResult) -> None:
        """Create or atomically replace the single result for an IOC."""
        if result.id is None:
            raise ValueError("Result has no IOC id")

        async def op():
            await self._put(ctx, RESULT_KIND, result.id, result.to_dict(), create=False)

        await self._run("store_result", op)

    async def get_result(self, ctx: TenantContext, ioc_id: str) -> Optional[IOCResult]:
        async def op():
            payload = await self._get(ctx, RESULT_KIND, ioc_id)
            return IOCResult.from_dict(payload) if payload is not None else None

        return await self._run("get_result", op)

    async def delete_result(self, ctx: TenantContext, ioc_id: str) -> bool:
        async def op():
            return await self._remove(ctx, RESULT_KIND, [ioc_id]) > 0

        return await self._run("delete_result", op)

    async def search_results(self, ctx: TenantContext, criteria: SearchCriteria) -> Page[IOCResult]:
        async def op():
            results = [IOCResult.from_dict(p) for p in await self._all(ctx, RESULT_KIND)]
            selected = [
                r for r in results if criteria.matches(r.ioc) and matches_query(r.ioc, criteria.query)
            ]
            selected.sort(key=lambda r: ioc_sort_key(r.ioc))
            return Page.from_items(selected, criteria.limit, criteria.offset)

        return await self._run("search_results", op)

    # ------------------------------------------------------------------
    # Correlations
    # ------------------------------------------------------------------

    async def store_correlations(self, ctx: TenantContext, correlations: Iterable[Correlation]) -> int:
        """Create or replace correlations (same type and id set means same record)."""
        correlations = list(correlations)

        async def op():
            for correlation in correlations:
                await self._put(
                    ctx, CORRELATION_KIND, correlation.id, correlation.to_dict(), create=False
                )
            return len(correlations)

        return await self._run("store_correlations", op)

    async def get_correlations(self, ctx: TenantContext, ioc_id: str) -> list[Correlation]:
        """Correlations referencing an IOC, strongest first."""

        async def op():
            envelopes = await self._correlation_envelopes_for(ctx, ioc_id)
            correlations = [Correlation.from_dict(unwrap(ctx, env)) for env in envelopes]
            return sorted(correlations, key=rank_key)

        return await self._run("get_correlations", op)

    async def delete_correlations(self, ctx: TenantContext, ioc_id: str) -> int:
        """Delete every correlation referencing an IOC."""

        async def op():
            linked = [env["payload"]["id"] for env in await self._correlation_envelopes_for(ctx, ioc_id)]
            return await self._remove(ctx, CORRELATION_KIND, linked) if linked else 0

        return await self._run("delete_correlations", op)

    async def search_correlations(
        self, ctx: TenantContext, criteria: CorrelationCriteria
    ) -> Page[Correlation]:
        async def op():
            if criteria.ioc_id:
                envelopes = await self._correlation_envelopes_for(ctx, criteria.ioc_id)
                payloads = [unwrap(ctx, env) for env in envelopes]
            else:
                payloads = await self._all(ctx, CORRELATION_KIND)
            correlations = [Correlation.from_dict(p) for p in payloads]
            selected = sorted((c for c in correlations if criteria.matches(c)), key=rank_key)
            return Page.from_items(selected, criteria.limit, criteria.offset)

        return await self._run("search_correlations", op)

    async def store_result_with_correlations(
        self, ctx: TenantContext, result: IOCResult, correlations: list[Correlation]
    ) -> None:
        """
        Persist a result and its correlations.

        Correlations referencing the IOC that are not in the new set are
        removed. Without transactions the correlations are written first so a
        failure leaves at worst an orphaned correlation set, never a result
        whose correlations are missing.
        """
        if result.id is None:
            raise ValueError("Result has no IOC id")
        current = {c.id for c in correlations}

        async def prune():
            envelopes = await self._correlation_envelopes_for(ctx, result.id)
            stale = [env["payload"]["id"] for env in envelopes if env["payload"]["id"] not in current]
            return await self._remove(ctx, CORRELATION_KIND, stale) if stale else 0

        await self.store_correlations(ctx, correlations)
        removed = await self._run("prune_correlations", prune)
        if removed:
            logger.debug(
                f"Removed {removed} stale correlations for {result.id}",
                extra={"tenant_id": ctx.tenant_id},
            )
        await self.store_result(ctx, result)

