"""Pytest configuration and shared fixtures."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from iocflow.enrichment.base import IntelligenceAdapter, ReputationAdapter
from iocflow.errors import AdapterUnavailable
from iocflow.models import IOC, EnrichmentPayload, IOCType, SourceScore, TenantContext


class FakeReputationAdapter(ReputationAdapter):
    """Reputation adapter returning canned scores."""

    def __init__(
        self,
        source_id: str,
        score: float = 0.5,
        ioc_types=None,
        delay: float = 0.0,
        error: Optional[Exception] = None,
        weight: float = 1.0,
    ):
        self.source_id = source_id
        self.score = score
        self.delay = delay
        self.error = error
        self.weight = weight
        self.calls = 0
        self.closed = False
        if ioc_types is not None:
            self.ioc_types = frozenset(ioc_types)

    async def fetch(self, value: str, ioc_type: IOCType) -> SourceScore:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return SourceScore(source_name=self.source_id, raw_score=self.score)

    async def close(self) -> None:
        self.closed = True


class FakeIntelligenceAdapter(IntelligenceAdapter):
    """Intelligence adapter returning a canned payload."""

    def __init__(
        self,
        source_id: str,
        verdict: Optional[str] = None,
        confidence: float = 0.0,
        tags=(),
        data=None,
        related=(),
        ioc_types=None,
        delay: float = 0.0,
        error: Optional[Exception] = None,
    ):
        self.source_id = source_id
        self.verdict = verdict
        self.confidence = confidence
        self.tags = list(tags)
        self.data = dict(data or {})
        self.related = list(related)
        self.delay = delay
        self.error = error
        self.calls = 0
        if ioc_types is not None:
            self.ioc_types = frozenset(ioc_types)

    async def enrich(self, ioc: IOC) -> EnrichmentPayload:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return EnrichmentPayload(
            source_id=self.source_id,
            data=dict(self.data),
            verdict=self.verdict,
            confidence=self.confidence,
            related_indicators=list(self.related),
            tags=list(self.tags),
        )


@pytest.fixture
def tenant_a():
    """Primary tenant context."""
    return TenantContext(tenant_id="acme")


@pytest.fixture
def tenant_b():
    """Second tenant used for isolation checks."""
    return TenantContext(tenant_id="globex")


@pytest.fixture
def now():
    return datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def make_ioc(now):
    """Factory for canonical IOCs with optional overrides."""

    def _make(ioc_type=IOCType.DOMAIN, value="evil.example.com", **kwargs):
        kwargs.setdefault("source", "feed")
        kwargs.setdefault("timestamp", now)
        return IOC(ioc_type=ioc_type, value=value, **kwargs)

    return _make


@pytest.fixture
def minutes():
    return lambda n: timedelta(minutes=n)


@pytest.fixture
def unavailable_error():
    return AdapterUnavailable("broken", "connection refused")


@pytest.fixture
def valid_ioc_file(tmp_path):
    """Create a temporary file with valid IOCs of all types."""
    content = """# Test IOCs - All valid types
# IPv4
192.168.1.1
10.0.0.1

# Domains
evil.example.com
malware-c2.net

# URLs
http://malware.site/payload.exe
https://phishing-site.com/login

# MD5 hashes
d41d8cd98f00b204e9800998ecf8427e

# SHA1 hashes
da39a3ee5e6b4b0d3255bfef95601890afd80709

# SHA256 hashes
e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855

# Emails and paths
attacker@evil.example.com
C:\\Users\\Public\\Temp\\dropper.exe
"""
    f = tmp_path / "valid_iocs.txt"
    f.write_text(content)
    return str(f)


@pytest.fixture
def mixed_ioc_file(tmp_path):
    """Create a temporary file with mixed valid/invalid IOCs and duplicates."""
    content = """# Mixed IOCs with comments and duplicates
192.168.1.1
evil.example.com

# Duplicate (should be removed)
192.168.1.1

# Malformed
just some text

# Defanged URL
hxxp://malware[.]site/test.exe

# Case-insensitive duplicate (should be removed)
EVIL.EXAMPLE.COM

# Valid hash
d41d8cd98f00b204e9800998ecf8427e
"""
    f = tmp_path / "mixed_iocs.txt"
    f.write_text(content)
    return str(f)


@pytest.fixture
def vt_stats():
    """VirusTotal last_analysis_stats for a flagged object."""
    return {"malicious": 10, "suspicious": 2, "undetected": 50, "harmless": 8}


@pytest.fixture
def abuseipdb_response():
    """Mock AbuseIPDB response."""
    return {
        "data": {
            "ipAddress": "192.0.2.10",
            "abuseConfidenceScore": 87,
            "totalReports": 1432,
            "numDistinctUsers": 89,
            "countryCode": "CN",
            "isp": "Example Telecom",
            "usageType": "Data Center/Web Hosting/Transit",
            "isTor": False,
            "isWhitelisted": False,
        }
    }


@pytest.fixture
def otx_ip_response():
    """Mock OTX response for IP lookup."""
    return {
        "general": {"reputation": -2},
        "pulse_info": {
            "pulses": [
                {"name": "APT29 Infrastructure", "tags": ["apt29", "c2"]},
                {"name": "Known C2 Servers", "tags": ["c2"]},
                {"name": "Botnet IPs"},
            ]
        },
        "malware": {
            "data": [
                {"hash": "abc123", "detections": {"avast": "Emotet"}},
                {"hash": "def456", "detections": {"avast": "Emotet", "msdefender": "Trickbot"}},
            ]
        },
        "geo": {"country_code": "RU", "asn": "AS12345 Example Hosting"},
        "passive_dns": {"passive_dns": [{"hostname": "c2.example.net", "address": "192.0.2.10"}]},
    }
