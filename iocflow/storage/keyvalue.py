"""Key-value store holding serialized envelopes under tenant-namespaced keys."""

import asyncio
import dbm
import logging
import threading
from pathlib import Path
from typing import Any, Optional
from urllib.parse import quote

from iocflow.errors import DuplicateRecord, StoragePermanent
from iocflow.models import TenantContext
from iocflow.storage.base import DataStore, StoreCapabilities
from iocflow.storage.envelope import dumps, loads

logger = logging.getLogger("iocflow.storage.keyvalue")


def namespace(tenant_id: str, kind: str) -> str:
    """Key prefix owned by one tenant for one record kind."""
    return f"{quote(tenant_id, safe='')}:{kind}:"


def record_key(tenant_id: str, kind: str, record_id: str) -> str:
    return namespace(tenant_id, kind) + record_id


class KeyValueStore(DataStore):
    """
    Opaque-blob backend.

    Values are JSON envelopes; the owning tenant is both encoded in the key
    prefix and checked against the envelope on every read. A
    ``connection_string`` names a dbm file; without one an in-process
    mapping is used.
    """

    name = "keyvalue"
    capabilities = StoreCapabilities(max_batch_size=1000)

    def __init__(self, config=None):
        super().__init__(config)
        self._db: Any = None
        self._lock = threading.RLock()

    async def initialize(self) -> None:
        if self._db is None:
            path = self.config.connection_string
            if path:
                Path(path).parent.mkdir(parents=True, exist_ok=True)
                try:
                    self._db = dbm.open(path, "c")
                except (dbm.error + (OSError,)) as e:
                    raise StoragePermanent(f"keyvalue: cannot open {path}: {e}")
            else:
                self._db = {}
        await super().initialize()

    async def close(self) -> None:
        with self._lock:
            if self._db is not None and hasattr(self._db, "close"):
                self._db.close()
            self._db = None
        await super().close()

    def _require_db(self) -> Any:
        if self._db is None:
            raise StoragePermanent("Key-value store is not initialized")
        return self._db

    def _keys(self, prefix: str) -> list[str]:
        keys = []
        for raw in self._require_db().keys():
            key = raw.decode("utf-8") if isinstance(raw, bytes) else raw
            if key.startswith(prefix):
                keys.append(key)
        return sorted(keys)

    def _read(self, key: str) -> Optional[dict]:
        db = self._require_db()
        if key not in db:
            return None
        return loads(db[key])

    async def _in_executor(self, fn):
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, fn)

    async def _insert(self, ctx: TenantContext, kind: str, record_id: str, envelope: dict) -> None:
        key = record_key(ctx.tenant_id, kind, record_id)

        def op():
            with self._lock:
                db = self._require_db()
                if key in db:
                    raise DuplicateRecord(kind, record_id)
                db[key] = dumps(envelope)

        await self._in_executor(op)

    async def _upsert(self, ctx: TenantContext, kind: str, record_id: str, envelope: dict) -> None:
        key = record_key(ctx.tenant_id, kind, record_id)

        def op():
            with self._lock:
                self._require_db()[key] = dumps(envelope)

        await self._in_executor(op)

    async def _fetch(self, ctx: TenantContext, kind: str, record_id: str) -> Optional[dict]:
        key = record_key(ctx.tenant_id, kind, record_id)

        def op():
            with self._lock:
                return self._read(key)

        return await self._in_executor(op)

    async def _remove(self, ctx: TenantContext, kind: str, record_ids: list[str]) -> int:
        def op():
            with self._lock:
                db = self._require_db()
                removed = 0
                for record_id in record_ids:
                    key = record_key(ctx.tenant_id, kind, record_id)
                    if key in db:
                        del db[key]
                        removed += 1
                return removed

        return await self._in_executor(op)

    async def _scan(self, ctx: TenantContext, kind: str) -> list[dict]:
        prefix = namespace(ctx.tenant_id, kind)

        def op():
            with self._lock:
                return [self._read(key) for key in self._keys(prefix)]

        return await self._in_executor(op)

    async def _count(self, ctx: TenantContext, kind: str) -> int:
        prefix = namespace(ctx.tenant_id, kind)
        with self._lock:
            return len(self._keys(prefix))

    async def health_check(self) -> bool:
        return self._initialized and self._db is not None
