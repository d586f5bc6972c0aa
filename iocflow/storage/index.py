"""Inverted-index backend with term queries over IOC values, tags and sources."""

import threading
from typing import Optional

from iocflow.models import IOC, Page, SearchCriteria, TenantContext
from iocflow.storage.base import IOC_KIND, StoreCapabilities, ioc_sort_key, ioc_tokens, tokenize
from iocflow.storage.envelope import unwrap
from iocflow.storage.memory import MemoryStore


class IndexStore(MemoryStore):
    """
    Memory-resident records plus one inverted index per tenant.

    Each IOC is indexed under the terms of its value, type, source, tags and
    category. A query matches IOCs holding every query term; the other
    search filters then apply as usual.
    """

    name = "index"
    capabilities = StoreCapabilities(supports_full_text_search=True, max_batch_size=5000)

    def __init__(self, config=None):
        super().__init__(config)
        self._postings: dict[str, dict[str, set[str]]] = {}
        self._terms: dict[str, dict[str, set[str]]] = {}
        self._index_lock = threading.RLock()

    def _index(self, tenant_id: str, record_id: str, payload: dict) -> None:
        tokens = ioc_tokens(IOC.from_dict(payload))
        with self._index_lock:
            self._unindex(tenant_id, record_id)
            postings = self._postings.setdefault(tenant_id, {})
            for token in tokens:
                postings.setdefault(token, set()).add(record_id)
            self._terms.setdefault(tenant_id, {})[record_id] = tokens

    def _unindex(self, tenant_id: str, record_id: str) -> None:
        with self._index_lock:
            tokens = self._terms.get(tenant_id, {}).pop(record_id, set())
            postings = self._postings.get(tenant_id, {})
            for token in tokens:
                ids = postings.get(token)
                if ids is not None:
                    ids.discard(record_id)
                    if not ids:
                        del postings[token]

    def lookup(self, ctx: TenantContext, query: str) -> set[str]:
        """Ids of the tenant's IOCs containing every term of ``query``."""
        terms = tokenize(query)
        if not terms:
            return set()
        with self._index_lock:
            postings = self._postings.get(ctx.tenant_id, {})
            sets = [postings.get(term, set()) for term in terms]
            return set.intersection(*sets) if sets else set()

    async def _insert(self, ctx: TenantContext, kind: str, record_id: str, envelope: dict) -> None:
        await super()._insert(ctx, kind, record_id, envelope)
        if kind == IOC_KIND:
            self._index(ctx.tenant_id, record_id, envelope["payload"])

    async def _upsert(self, ctx: TenantContext, kind: str, record_id: str, envelope: dict) -> None:
        await super()._upsert(ctx, kind, record_id, envelope)
        if kind == IOC_KIND:
            self._index(ctx.tenant_id, record_id, envelope["payload"])

    async def _remove(self, ctx: TenantContext, kind: str, record_ids: list[str]) -> int:
        removed = await super()._remove(ctx, kind, record_ids)
        if kind == IOC_KIND:
            for record_id in record_ids:
                self._unindex(ctx.tenant_id, record_id)
        return removed

    async def search_iocs(self, ctx: TenantContext, criteria: SearchCriteria) -> Page[IOC]:
        if not criteria.query:
            return await super().search_iocs(ctx, criteria)

        async def op():
            iocs = []
            for record_id in sorted(self.lookup(ctx, criteria.query)):
                envelope: Optional[dict] = await self._fetch(ctx, IOC_KIND, record_id)
                if envelope is not None:
                    iocs.append(IOC.from_dict(unwrap(ctx, envelope, record_id)))
            selected = sorted((i for i in iocs if criteria.matches(i)), key=ioc_sort_key)
            return Page.from_items(selected, criteria.limit, criteria.offset)

        return await self._run("search_iocs", op)

    async def close(self) -> None:
        with self._index_lock:
            self._postings.clear()
            self._terms.clear()
        await super().close()
