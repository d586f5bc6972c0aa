"""Persisted envelope shared by every storage backend."""

import json
import logging
from datetime import datetime
from typing import Any, Optional

from iocflow.errors import StoragePermanent, TenantIsolationViolation
from iocflow.models import TenantContext, utcnow

logger = logging.getLogger("iocflow.storage")

ENVELOPE_VERSION = 1


def wrap(
    ctx: TenantContext,
    payload: dict[str, Any],
    created_at: Optional[str] = None,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """Build ``{tenant_id, created_at, updated_at, version, payload}`` for a record."""
    stamp = (now or utcnow()).isoformat()
    return {
        "tenant_id": ctx.tenant_id,
        "created_at": created_at or stamp,
        "updated_at": stamp,
        "version": ENVELOPE_VERSION,
        "payload": payload,
    }


def check_tenant(ctx: TenantContext, envelope: dict[str, Any], record_id: str = "?") -> None:
    """Fail closed when a record read under one tenant belongs to another."""
    owner = envelope.get("tenant_id")
    if owner != ctx.tenant_id:
        logger.error(
            f"Tenant isolation violation on record {record_id}",
            extra={"tenant_id": ctx.tenant_id},
        )
        raise TenantIsolationViolation(
            f"Record {record_id} is not owned by tenant {ctx.tenant_id!r}"
        )


def unwrap(ctx: TenantContext, envelope: dict[str, Any], record_id: str = "?") -> dict[str, Any]:
    """
    Return the payload of an envelope after checking owner and version.

    Raises:
        TenantIsolationViolation: If the envelope belongs to another tenant
        StoragePermanent: If the envelope version is not understood
    """
    check_tenant(ctx, envelope, record_id)
    version = envelope.get("version")
    if version != ENVELOPE_VERSION:
        raise StoragePermanent(f"Unsupported envelope version {version!r} for {record_id}")
    return envelope["payload"]


def dumps(envelope: dict[str, Any]) -> str:
    return json.dumps(envelope, sort_keys=True)


def loads(raw: str | bytes) -> dict[str, Any]:
    try:
        return json.loads(raw)
    except (TypeError, ValueError) as e:
        raise StoragePermanent(f"Corrupt envelope: {e}")
