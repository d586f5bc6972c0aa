"""Document store with one physical collection per tenant and record kind."""

import asyncio
import json
import logging
import os
import threading
from pathlib import Path
from typing import Optional
from urllib.parse import quote

from iocflow.errors import DuplicateRecord, StoragePermanent
from iocflow.models import TenantContext
from iocflow.storage.base import (
    CORRELATION_KIND,
    ENRICHED_KIND,
    IOC_KIND,
    RESULT_KIND,
    DataStore,
    StoreCapabilities,
)

logger = logging.getLogger("iocflow.storage.document")

BASE_NAMES = {
    IOC_KIND: "iocs",
    ENRICHED_KIND: "enriched",
    RESULT_KIND: "results",
    CORRELATION_KIND: "correlations",
}


def collection_name(kind: str, tenant_id: str) -> str:
    """Deterministic per-tenant collection name, e.g. ``iocs_acme``."""
    return f"{BASE_NAMES[kind]}_{tenant_id}"


class DocumentStore(DataStore):
    """
    Collections of JSON documents keyed by record id.

    With a ``connection_string`` naming a directory, each collection is
    persisted as ``<collection>.json`` there and rewritten atomically on
    every change; otherwise collections live in memory.
    """

    name = "document"
    capabilities = StoreCapabilities(max_batch_size=1000)

    def __init__(self, config=None):
        super().__init__(config)
        self.directory = Path(self.config.connection_string) if self.config.connection_string else None
        self._collections: dict[str, dict[str, dict]] = {}
        self._lock = threading.RLock()

    def _path(self, name: str) -> Path:
        return self.directory / f"{quote(name, safe='')}.json"

    def _load(self, name: str) -> dict[str, dict]:
        """Return a collection, reading it from disk on first use."""
        collection = self._collections.get(name)
        if collection is not None:
            return collection
        collection = {}
        if self.directory is not None:
            path = self._path(name)
            if path.exists():
                try:
                    with open(path, "r", encoding="utf-8") as f:
                        collection = json.load(f)
                except (OSError, ValueError) as e:
                    raise StoragePermanent(f"document: cannot read collection {name}: {e}")
        self._collections[name] = collection
        return collection

    def _flush(self, name: str) -> None:
        if self.directory is None:
            return
        path = self._path(name)
        tmp = path.with_suffix(".json.tmp")
        try:
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(self._collections.get(name, {}), f, sort_keys=True)
            os.replace(tmp, path)
        except OSError as e:
            raise StoragePermanent(f"document: cannot write collection {name}: {e}")

    async def _in_executor(self, fn):
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, fn)

    def collections(self, ctx: TenantContext) -> list[str]:
        """Names of the collections that hold this tenant's data."""
        return [collection_name(kind, ctx.tenant_id) for kind in BASE_NAMES]

    async def initialize(self) -> None:
        if self.directory is not None:
            self.directory.mkdir(parents=True, exist_ok=True)
        await super().initialize()

    async def health_check(self) -> bool:
        if not self._initialized:
            return False
        return self.directory is None or os.access(self.directory, os.W_OK)

    async def _insert(self, ctx: TenantContext, kind: str, record_id: str, envelope: dict) -> None:
        name = collection_name(kind, ctx.tenant_id)

        def op():
            with self._lock:
                collection = self._load(name)
                if record_id in collection:
                    raise DuplicateRecord(kind, record_id)
                collection[record_id] = json.loads(json.dumps(envelope))
                self._flush(name)

        await self._in_executor(op)

    async def _upsert(self, ctx: TenantContext, kind: str, record_id: str, envelope: dict) -> None:
        name = collection_name(kind, ctx.tenant_id)

        def op():
            with self._lock:
                self._load(name)[record_id] = json.loads(json.dumps(envelope))
                self._flush(name)

        await self._in_executor(op)

    async def _fetch(self, ctx: TenantContext, kind: str, record_id: str) -> Optional[dict]:
        name = collection_name(kind, ctx.tenant_id)

        def op():
            with self._lock:
                document = self._load(name).get(record_id)
                return json.loads(json.dumps(document)) if document is not None else None

        return await self._in_executor(op)

    async def _remove(self, ctx: TenantContext, kind: str, record_ids: list[str]) -> int:
        name = collection_name(kind, ctx.tenant_id)

        def op():
            with self._lock:
                collection = self._load(name)
                removed = sum(1 for rid in record_ids if collection.pop(rid, None) is not None)
                if removed:
                    self._flush(name)
                return removed

        return await self._in_executor(op)

    async def _scan(self, ctx: TenantContext, kind: str) -> list[dict]:
        name = collection_name(kind, ctx.tenant_id)

        def op():
            with self._lock:
                return json.loads(json.dumps(list(self._load(name).values())))

        return await self._in_executor(op)

    async def _count(self, ctx: TenantContext, kind: str) -> int:
        name = collection_name(kind, ctx.tenant_id)
        with self._lock:
            return len(self._load(name))

    async def close(self) -> None:
        with self._lock:
            self._collections.clear()
        await super().close()
