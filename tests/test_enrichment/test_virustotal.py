"""Tests for the VirusTotal reputation adapter."""

import base64
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from iocflow.models import IOCType
from iocflow.rate_limiter import RateLimiterConfig, TokenBucketRateLimiter


class TestVirusTotalAdapter:
    """Tests for VirusTotalAdapter."""

    def _make_limiter(self):
        config = RateLimiterConfig(requests_per_minute=100, name="vt-test")
        return TokenBucketRateLimiter(config)

    def _make_adapter(self, limiter=None):
        from iocflow.enrichment.virustotal import VirusTotalAdapter

        limiter = limiter or self._make_limiter()
        with patch("iocflow.enrichment.virustotal.vt.Client"):
            adapter = VirusTotalAdapter("fake-api-key", limiter)
        return adapter

    def _mock_object(self, stats, reputation=0, tags=()):
        obj = MagicMock()
        obj.last_analysis_stats = stats
        obj.reputation = reputation
        obj.tags = list(tags)
        return obj

    def test_supported_types(self):
        """Test VT scores every network and file indicator type."""
        adapter = self._make_adapter()
        assert adapter.supports(IOCType.IP)
        assert adapter.supports(IOCType.DOMAIN)
        assert adapter.supports(IOCType.URL)
        assert adapter.supports(IOCType.HASH)
        assert not adapter.supports(IOCType.EMAIL)
        assert not adapter.supports(IOCType.FILE_PATH)

    @pytest.mark.asyncio
    async def test_fetch_ip_success(self, vt_stats):
        """Test scoring an IP address."""
        adapter = self._make_adapter()
        adapter.client.get_object_async = AsyncMock(
            return_value=self._mock_object(vt_stats, reputation=-50, tags=["malware", "c2"])
        )

        score = await adapter.fetch("192.0.2.10", IOCType.IP)

        assert score.source_name == "virustotal"
        assert score.available is True
        # (10 * 1.0 + 2 * 0.5) / 70 = 0.157
        assert score.raw_score == pytest.approx(0.1571, abs=0.001)
        assert score.details["malicious_count"] == 10
        assert score.details["total_engines"] == 70
        assert score.details["tags"] == ["malware", "c2"]
        adapter.client.get_object_async.assert_called_once_with("/ip_addresses/192.0.2.10")

    @pytest.mark.asyncio
    async def test_fetch_domain_path(self):
        """Test domains use the domains collection."""
        adapter = self._make_adapter()
        adapter.client.get_object_async = AsyncMock(
            return_value=self._mock_object({"malicious": 45, "suspicious": 3, "undetected": 20, "harmless": 2})
        )

        score = await adapter.fetch("evil.example.com", IOCType.DOMAIN)

        assert score.raw_score > 0.6
        adapter.client.get_object_async.assert_called_once_with("/domains/evil.example.com")

    @pytest.mark.asyncio
    async def test_fetch_hash(self):
        """Test hashes use the files collection."""
        adapter = self._make_adapter()
        adapter.client.get_object_async = AsyncMock(
            return_value=self._mock_object({"malicious": 30, "suspicious": 0, "undetected": 30, "harmless": 0})
        )

        score = await adapter.fetch("d41d8cd98f00b204e9800998ecf8427e", IOCType.HASH)

        assert score.raw_score == 0.5
        adapter.client.get_object_async.assert_called_once_with(
            "/files/d41d8cd98f00b204e9800998ecf8427e"
        )

    @pytest.mark.asyncio
    async def test_fetch_url_encoded(self):
        """Test URLs are base64url-encoded without padding."""
        adapter = self._make_adapter()
        adapter.client.get_object_async = AsyncMock(
            return_value=self._mock_object({"malicious": 0, "harmless": 10})
        )
        url = "http://evil.example.com/"
        expected_id = base64.urlsafe_b64encode(url.encode()).decode().rstrip("=")

        score = await adapter.fetch(url, IOCType.URL)

        assert score.raw_score == 0.0
        adapter.client.get_object_async.assert_called_once_with(f"/urls/{expected_id}")

    @pytest.mark.asyncio
    async def test_fetch_no_engines(self):
        """Test an object without analysis scores zero."""
        adapter = self._make_adapter()
        adapter.client.get_object_async = AsyncMock(return_value=self._mock_object({}))

        score = await adapter.fetch("192.0.2.10", IOCType.IP)

        assert score.available is True
        assert score.raw_score == 0.0

    @pytest.mark.asyncio
    async def test_fetch_unsupported_type(self):
        """Test unsupported types are reported unavailable without a call."""
        adapter = self._make_adapter()
        adapter.client.get_object_async = AsyncMock()

        score = await adapter.fetch("bad@evil.example.com", IOCType.EMAIL)

        assert score.available is False
        adapter.client.get_object_async.assert_not_called()

    @pytest.mark.asyncio
    async def test_fetch_api_error(self):
        """Test API errors become an unavailable score."""
        import vt

        adapter = self._make_adapter()
        adapter.client.get_object_async = AsyncMock(
            side_effect=vt.APIError("NotFoundError", "Resource not found")
        )

        score = await adapter.fetch("192.0.2.10", IOCType.IP)

        assert score.available is False
        assert "API error" in score.error

    @pytest.mark.asyncio
    async def test_close(self):
        """Test close shuts down the VT client."""
        adapter = self._make_adapter()
        adapter.client.close_async = AsyncMock()

        await adapter.close()

        adapter.client.close_async.assert_awaited_once()
