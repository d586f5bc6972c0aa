"""SQLite-backed relational store with a tenant predicate on every statement."""

import asyncio
import json
import logging
import sqlite3
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

from iocflow.errors import DuplicateRecord, StoragePermanent, StorageTransient
from iocflow.models import (
    IOC,
    Correlation,
    IOCResult,
    Page,
    SearchCriteria,
    TenantContext,
    ensure_utc,
)
from iocflow.storage.base import (
    CORRELATION_KIND,
    ENRICHED_KIND,
    IOC_KIND,
    RESULT_KIND,
    DataStore,
    StoreCapabilities,
    ioc_sort_key,
    matches_query,
)
from iocflow.storage.envelope import check_tenant, unwrap, wrap

logger = logging.getLogger("iocflow.storage.relational")

T = TypeVar("T")

SCHEMA_VERSION = 1

TABLES = {
    IOC_KIND: "iocs",
    ENRICHED_KIND: "enriched",
    RESULT_KIND: "results",
    CORRELATION_KIND: "correlations",
}

SCHEMA = """
CREATE TABLE IF NOT EXISTS iocs (
    tenant_id   TEXT    NOT NULL,
    id          TEXT    NOT NULL,
    ioc_type    TEXT    NOT NULL,
    value       TEXT    NOT NULL,
    source      TEXT    NOT NULL,
    confidence  REAL    NOT NULL,
    observed_at REAL    NOT NULL,
    created_at  TEXT    NOT NULL,
    updated_at  TEXT    NOT NULL,
    version     INTEGER NOT NULL,
    payload     TEXT    NOT NULL,
    PRIMARY KEY (tenant_id, id)
);
CREATE INDEX IF NOT EXISTS idx_iocs_type ON iocs(tenant_id, ioc_type);
CREATE INDEX IF NOT EXISTS idx_iocs_observed ON iocs(tenant_id, observed_at);

CREATE TABLE IF NOT EXISTS ioc_tags (
    tenant_id TEXT NOT NULL,
    ioc_id    TEXT NOT NULL,
    tag       TEXT NOT NULL,
    PRIMARY KEY (tenant_id, ioc_id, tag)
);
CREATE INDEX IF NOT EXISTS idx_ioc_tags_tag ON ioc_tags(tenant_id, tag);

CREATE TABLE IF NOT EXISTS enriched (
    tenant_id  TEXT    NOT NULL,
    id         TEXT    NOT NULL,
    created_at TEXT    NOT NULL,
    updated_at TEXT    NOT NULL,
    version    INTEGER NOT NULL,
    payload    TEXT    NOT NULL,
    PRIMARY KEY (tenant_id, id)
);

CREATE TABLE IF NOT EXISTS results (
    tenant_id  TEXT    NOT NULL,
    id         TEXT    NOT NULL,
    created_at TEXT    NOT NULL,
    updated_at TEXT    NOT NULL,
    version    INTEGER NOT NULL,
    payload    TEXT    NOT NULL,
    PRIMARY KEY (tenant_id, id)
);

CREATE TABLE IF NOT EXISTS correlations (
    tenant_id        TEXT    NOT NULL,
    id               TEXT    NOT NULL,
    correlation_type TEXT    NOT NULL,
    strength         REAL    NOT NULL,
    created_at       TEXT    NOT NULL,
    updated_at       TEXT    NOT NULL,
    version          INTEGER NOT NULL,
    payload          TEXT    NOT NULL,
    PRIMARY KEY (tenant_id, id)
);

CREATE TABLE IF NOT EXISTS correlation_members (
    tenant_id      TEXT NOT NULL,
    correlation_id TEXT NOT NULL,
    ioc_id         TEXT NOT NULL,
    PRIMARY KEY (tenant_id, correlation_id, ioc_id)
);
CREATE INDEX IF NOT EXISTS idx_members_ioc ON correlation_members(tenant_id, ioc_id);

CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER NOT NULL
);
"""


def database_path(connection_string: Optional[str]) -> str:
    """Accept a bare path, ``sqlite:///path`` or nothing (in-memory)."""
    if not connection_string:
        return ":memory:"
    if connection_string.startswith("sqlite:///"):
        return connection_string[len("sqlite:///"):] or ":memory:"
    return connection_string


def _extra_columns(kind: str, payload: dict[str, Any]) -> dict[str, Any]:
    if kind == IOC_KIND:
        return {
            "ioc_type": payload["ioc_type"],
            "value": payload["value"],
            "source": payload["source"],
            "confidence": payload["confidence"],
            "observed_at": ensure_utc(datetime.fromisoformat(payload["timestamp"])).timestamp(),
        }
    if kind == CORRELATION_KIND:
        return {
            "correlation_type": payload["correlation_type"],
            "strength": payload["strength"],
        }
    return {}


def _row_to_envelope(row: sqlite3.Row) -> dict[str, Any]:
    return {
        "tenant_id": row["tenant_id"],
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
        "version": row["version"],
        "payload": json.loads(row["payload"]),
    }


class RelationalStore(DataStore):
    """
    Relational backend on sqlite3.

    All tenants share the tables; every statement carries a
    ``tenant_id = ?`` predicate. Blocking calls run in a pool of
    ``pool_size`` threads behind one lock, and a result plus its
    correlations commit in a single transaction.
    """

    name = "relational"
    capabilities = StoreCapabilities(supports_transactions=True, max_batch_size=500)

    def __init__(self, config=None):
        super().__init__(config)
        self.db_path = database_path(self.config.connection_string)
        self._lock = threading.RLock()
        self._conn: Optional[sqlite3.Connection] = None
        self._executor: Optional[ThreadPoolExecutor] = None

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    def _connect(self) -> sqlite3.Connection:
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            self.db_path, timeout=self.config.timeout_seconds, check_same_thread=False
        )
        conn.row_factory = sqlite3.Row
        conn.executescript(SCHEMA)
        row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
        if row is None:
            conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
        conn.commit()
        return conn

    async def _call(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        """Run ``fn`` against the connection in the executor, mapping sqlite errors."""
        if self._conn is None:
            raise StoragePermanent("Relational store is not initialized")

        def guarded() -> T:
            with self._lock:
                try:
                    return fn(self._conn)
                except sqlite3.OperationalError as e:
                    message = str(e).lower()
                    if "locked" in message or "busy" in message:
                        raise StorageTransient(f"relational: {e}")
                    raise StoragePermanent(f"relational: {e}")
                except sqlite3.DatabaseError as e:
                    raise StoragePermanent(f"relational: {e}")

        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(self._executor, guarded)

    async def initialize(self) -> None:
        if self._conn is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.config.pool_size, thread_name_prefix="iocflow-sqlite"
            )
            loop = asyncio.get_event_loop()
            self._conn = await loop.run_in_executor(self._executor, self._connect)
        await super().initialize()

    async def close(self) -> None:
        if self._conn is not None:
            conn, self._conn = self._conn, None
            with self._lock:
                conn.close()
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None
        await super().close()

    async def health_check(self) -> bool:
        if self._conn is None:
            return False
        try:
            return await self._call(lambda c: c.execute("SELECT 1").fetchone()[0] == 1)
        except (StorageTransient, StoragePermanent) as e:
            logger.warning(f"Relational health check failed: {e}")
            return False

    # ------------------------------------------------------------------
    # Statement helpers (called with the lock held)
    # ------------------------------------------------------------------

    def _write_sync(
        self,
        conn: sqlite3.Connection,
        ctx: TenantContext,
        kind: str,
        record_id: str,
        envelope: dict,
        create: bool,
    ) -> None:
        table = TABLES[kind]
        payload = envelope["payload"]
        columns = {
            "tenant_id": ctx.tenant_id,
            "id": record_id,
            **_extra_columns(kind, payload),
            "created_at": envelope["created_at"],
            "updated_at": envelope["updated_at"],
            "version": envelope["version"],
            "payload": json.dumps(payload, sort_keys=True),
        }
        names = ", ".join(columns)
        marks = ", ".join("?" for _ in columns)
        sql = f"INSERT INTO {table} ({names}) VALUES ({marks})"
        if not create:
            updates = ", ".join(
                f"{name} = excluded.{name}"
                for name in columns
                if name not in ("tenant_id", "id", "created_at")
            )
            sql += f" ON CONFLICT(tenant_id, id) DO UPDATE SET {updates}"
        try:
            conn.execute(sql, tuple(columns.values()))
        except sqlite3.IntegrityError:
            raise DuplicateRecord(kind, record_id)

        if kind == IOC_KIND:
            conn.execute(
                "DELETE FROM ioc_tags WHERE tenant_id = ? AND ioc_id = ?", (ctx.tenant_id, record_id)
            )
            conn.executemany(
                "INSERT OR IGNORE INTO ioc_tags (tenant_id, ioc_id, tag) VALUES (?, ?, ?)",
                [(ctx.tenant_id, record_id, tag) for tag in payload.get("tags", [])],
            )
        elif kind == CORRELATION_KIND:
            conn.execute(
                "DELETE FROM correlation_members WHERE tenant_id = ? AND correlation_id = ?",
                (ctx.tenant_id, record_id),
            )
            conn.executemany(
                "INSERT OR IGNORE INTO correlation_members (tenant_id, correlation_id, ioc_id) "
                "VALUES (?, ?, ?)",
                [(ctx.tenant_id, record_id, ioc_id) for ioc_id in payload["correlated_iocs"]],
            )

    def _remove_sync(
        self, conn: sqlite3.Connection, ctx: TenantContext, kind: str, record_ids: list[str]
    ) -> int:
        table = TABLES[kind]
        removed = 0
        for record_id in record_ids:
            cursor = conn.execute(
                f"DELETE FROM {table} WHERE tenant_id = ? AND id = ?", (ctx.tenant_id, record_id)
            )
            removed += cursor.rowcount
            if kind == IOC_KIND:
                conn.execute(
                    "DELETE FROM ioc_tags WHERE tenant_id = ? AND ioc_id = ?",
                    (ctx.tenant_id, record_id),
                )
            elif kind == CORRELATION_KIND:
                conn.execute(
                    "DELETE FROM correlation_members WHERE tenant_id = ? AND correlation_id = ?",
                    (ctx.tenant_id, record_id),
                )
        return removed

    # ------------------------------------------------------------------
    # Record primitives
    # ------------------------------------------------------------------

    async def _insert(self, ctx: TenantContext, kind: str, record_id: str, envelope: dict) -> None:
        def op(conn):
            with conn:
                self._write_sync(conn, ctx, kind, record_id, envelope, create=True)

        await self._call(op)

    async def _upsert(self, ctx: TenantContext, kind: str, record_id: str, envelope: dict) -> None:
        def op(conn):
            with conn:
                self._write_sync(conn, ctx, kind, record_id, envelope, create=False)

        await self._call(op)

    async def _fetch(self, ctx: TenantContext, kind: str, record_id: str) -> Optional[dict]:
        table = TABLES[kind]

        def op(conn):
            row = conn.execute(
                f"SELECT * FROM {table} WHERE tenant_id = ? AND id = ?", (ctx.tenant_id, record_id)
            ).fetchone()
            return _row_to_envelope(row) if row else None

        return await self._call(op)

    async def _remove(self, ctx: TenantContext, kind: str, record_ids: list[str]) -> int:
        def op(conn):
            with conn:
                return self._remove_sync(conn, ctx, kind, record_ids)

        return await self._call(op)

    async def _scan(self, ctx: TenantContext, kind: str) -> list[dict]:
        table = TABLES[kind]

        def op(conn):
            rows = conn.execute(
                f"SELECT * FROM {table} WHERE tenant_id = ? ORDER BY id", (ctx.tenant_id,)
            ).fetchall()
            return [_row_to_envelope(row) for row in rows]

        return await self._call(op)

    async def _count(self, ctx: TenantContext, kind: str) -> int:
        table = TABLES[kind]
        return await self._call(
            lambda conn: conn.execute(
                f"SELECT COUNT(*) FROM {table} WHERE tenant_id = ?", (ctx.tenant_id,)
            ).fetchone()[0]
        )

    async def _correlation_envelopes_for(self, ctx: TenantContext, ioc_id: str) -> list[dict]:
        def op(conn):
            rows = conn.execute(
                """
                SELECT c.* FROM correlations c
                JOIN correlation_members m
                  ON m.tenant_id = c.tenant_id AND m.correlation_id = c.id
                WHERE c.tenant_id = ? AND m.ioc_id = ?
                """,
                (ctx.tenant_id, ioc_id),
            ).fetchall()
            return [_row_to_envelope(row) for row in rows]

        return await self._call(op)

    # ------------------------------------------------------------------
    # Native search and transactions
    # ------------------------------------------------------------------

    async def search_iocs(self, ctx: TenantContext, criteria: SearchCriteria) -> Page[IOC]:
        clauses = ["tenant_id = ?"]
        params: list[Any] = [ctx.tenant_id]

        if criteria.ioc_types:
            clauses.append(f"ioc_type IN ({', '.join('?' for _ in criteria.ioc_types)})")
            params.extend(t.value for t in criteria.ioc_types)
        if criteria.sources:
            clauses.append(f"source IN ({', '.join('?' for _ in criteria.sources)})")
            params.extend(criteria.sources)
        if criteria.value_contains:
            clauses.append("instr(lower(value), ?) > 0")
            params.append(criteria.value_contains.lower())
        if criteria.min_confidence is not None:
            clauses.append("confidence >= ?")
            params.append(criteria.min_confidence)
        if criteria.max_confidence is not None:
            clauses.append("confidence <= ?")
            params.append(criteria.max_confidence)
        if criteria.start_time is not None:
            clauses.append("observed_at >= ?")
            params.append(ensure_utc(criteria.start_time).timestamp())
        if criteria.end_time is not None:
            clauses.append("observed_at <= ?")
            params.append(ensure_utc(criteria.end_time).timestamp())
        for tag in criteria.tags:
            clauses.append(
                "EXISTS (SELECT 1 FROM ioc_tags t WHERE t.tenant_id = iocs.tenant_id "
                "AND t.ioc_id = iocs.id AND t.tag = ?)"
            )
            params.append(tag)

        where = " AND ".join(clauses)
        order = "ORDER BY observed_at DESC, id ASC"

        def op(conn):
            if criteria.query:
                rows = conn.execute(f"SELECT * FROM iocs WHERE {where} {order}", params).fetchall()
                return rows, None
            total = conn.execute(f"SELECT COUNT(*) FROM iocs WHERE {where}", params).fetchone()[0]
            rows = conn.execute(
                f"SELECT * FROM iocs WHERE {where} {order} LIMIT ? OFFSET ?",
                [*params, criteria.limit, criteria.offset],
            ).fetchall()
            return rows, total

        async def search():
            rows, total = await self._call(op)
            iocs = []
            for row in rows:
                envelope = _row_to_envelope(row)
                iocs.append(IOC.from_dict(unwrap(ctx, envelope, row["id"])))
            if total is None:
                selected = sorted((i for i in iocs if matches_query(i, criteria.query)), key=ioc_sort_key)
                return Page.from_items(selected, criteria.limit, criteria.offset)
            return Page(items=iocs, total_count=total, limit=criteria.limit, offset=criteria.offset)

        return await self._run("search_iocs", search)

    async def store_result_with_correlations(
        self, ctx: TenantContext, result: IOCResult, correlations: list[Correlation]
    ) -> None:
        """Write the result and its correlations, dropping stale ones, in one transaction."""
        if result.id is None:
            raise ValueError("Result has no IOC id")
        writes = [(CORRELATION_KIND, c.id, c.to_dict()) for c in correlations]
        writes.append((RESULT_KIND, result.id, result.to_dict()))
        current = {c.id for c in correlations}

        def op(conn):
            with conn:
                for kind, record_id, payload in writes:
                    row = conn.execute(
                        f"SELECT tenant_id, created_at FROM {TABLES[kind]} "
                        "WHERE tenant_id = ? AND id = ?",
                        (ctx.tenant_id, record_id),
                    ).fetchone()
                    if row is not None:
                        check_tenant(ctx, dict(row), record_id)
                    envelope = wrap(ctx, payload, created_at=row["created_at"] if row else None)
                    self._write_sync(conn, ctx, kind, record_id, envelope, create=False)
                stale = [
                    row["correlation_id"]
                    for row in conn.execute(
                        "SELECT correlation_id FROM correlation_members "
                        "WHERE tenant_id = ? AND ioc_id = ?",
                        (ctx.tenant_id, result.id),
                    ).fetchall()
                    if row["correlation_id"] not in current
                ]
                if stale:
                    self._remove_sync(conn, ctx, CORRELATION_KIND, stale)

        async def write():
            await self._call(op)

        await self._run("store_result_with_correlations", write)
        logger.debug(
            f"Committed result {result.id} with {len(correlations)} correlations",
            extra={"tenant_id": ctx.tenant_id},
        )
