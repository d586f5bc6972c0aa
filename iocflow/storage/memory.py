"""In-process storage backend, partitioned by tenant."""

import copy
import threading
from typing import Optional

from iocflow.errors import DuplicateRecord
from iocflow.models import TenantContext
from iocflow.storage.base import DataStore, StoreCapabilities


class MemoryStore(DataStore):
    """Dictionary-backed store; each tenant gets its own partition."""

    name = "memory"
    capabilities = StoreCapabilities(max_batch_size=10000)

    def __init__(self, config=None):
        super().__init__(config)
        self._partitions: dict[str, dict[str, dict[str, dict]]] = {}
        self._lock = threading.RLock()

    def _records(self, ctx: TenantContext, kind: str) -> dict[str, dict]:
        partition = self._partitions.setdefault(ctx.tenant_id, {})
        return partition.setdefault(kind, {})

    async def _insert(self, ctx: TenantContext, kind: str, record_id: str, envelope: dict) -> None:
        with self._lock:
            records = self._records(ctx, kind)
            if record_id in records:
                raise DuplicateRecord(kind, record_id)
            records[record_id] = copy.deepcopy(envelope)

    async def _upsert(self, ctx: TenantContext, kind: str, record_id: str, envelope: dict) -> None:
        with self._lock:
            self._records(ctx, kind)[record_id] = copy.deepcopy(envelope)

    async def _fetch(self, ctx: TenantContext, kind: str, record_id: str) -> Optional[dict]:
        with self._lock:
            envelope = self._records(ctx, kind).get(record_id)
            return copy.deepcopy(envelope) if envelope is not None else None

    async def _remove(self, ctx: TenantContext, kind: str, record_ids: list[str]) -> int:
        with self._lock:
            records = self._records(ctx, kind)
            return sum(1 for rid in record_ids if records.pop(rid, None) is not None)

    async def _scan(self, ctx: TenantContext, kind: str) -> list[dict]:
        with self._lock:
            return [copy.deepcopy(env) for env in self._records(ctx, kind).values()]

    async def _count(self, ctx: TenantContext, kind: str) -> int:
        with self._lock:
            return len(self._records(ctx, kind))

    async def close(self) -> None:
        with self._lock:
            self._partitions.clear()
        await super().close()
