"""Tests for the persisted record envelope."""

import pytest

from iocflow.errors import StoragePermanent, TenantIsolationViolation
from iocflow.storage.envelope import ENVELOPE_VERSION, dumps, loads, unwrap, wrap


class TestEnvelope:
    """Tests for wrap/unwrap."""

    def test_wrap(self, tenant_a, now):
        """Test the envelope carries owner, timestamps and version."""
        envelope = wrap(tenant_a, {"id": "x"}, now=now)

        assert envelope == {
            "tenant_id": "acme",
            "created_at": now.isoformat(),
            "updated_at": now.isoformat(),
            "version": ENVELOPE_VERSION,
            "payload": {"id": "x"},
        }

    def test_wrap_keeps_created_at(self, tenant_a, now):
        """Test rewrapping preserves the original creation time."""
        envelope = wrap(tenant_a, {}, created_at="2020-01-01T00:00:00+00:00", now=now)

        assert envelope["created_at"] == "2020-01-01T00:00:00+00:00"
        assert envelope["updated_at"] == now.isoformat()

    def test_unwrap_same_tenant(self, tenant_a):
        """Test the payload is returned to its owner."""
        assert unwrap(tenant_a, wrap(tenant_a, {"id": "x"})) == {"id": "x"}

    def test_unwrap_other_tenant(self, tenant_a, tenant_b):
        """Test reading another tenant's envelope fails closed."""
        with pytest.raises(TenantIsolationViolation):
            unwrap(tenant_b, wrap(tenant_a, {"id": "x"}), "x")

    def test_unwrap_unknown_version(self, tenant_a):
        """Test unknown envelope versions are rejected."""
        envelope = wrap(tenant_a, {})
        envelope["version"] = 2

        with pytest.raises(StoragePermanent, match="version"):
            unwrap(tenant_a, envelope)

    def test_serialization(self, tenant_a):
        """Test envelopes serialize to JSON and back."""
        envelope = wrap(tenant_a, {"tags": ["a", "b"]})
        assert loads(dumps(envelope)) == envelope
        assert loads(dumps(envelope).encode("utf-8")) == envelope

    def test_corrupt(self):
        """Test corrupt data raises StoragePermanent."""
        with pytest.raises(StoragePermanent, match="Corrupt"):
            loads("{not json")
