"""Tests for enrichment fan-out and aggregation."""

import asyncio
from datetime import timedelta

import pytest

from iocflow.config import EnrichmentConfig
from iocflow.enrichment.aggregator import (
    EnrichmentEngine,
    build_intelligence,
    corroborating_sources,
    extract_tags,
    uplift_confidence,
)
from iocflow.enrichment.base import applicable
from iocflow.errors import Cancelled
from iocflow.models import (
    IOC,
    EnrichedIOC,
    EnrichmentPayload,
    IOCContext,
    IOCType,
    ReputationCategory,
    ReputationScore,
    SourceScore,
)
from iocflow.reputation import ReputationEngine

from conftest import FakeIntelligenceAdapter, FakeReputationAdapter


class TestExtractTags:
    """Tests for tag extraction."""

    def test_promotes_tags_seen_in_two_sources(self):
        """Test tags in 2+ sources are promoted."""
        payloads = [
            EnrichmentPayload("otx", tags=["Malware", "phishing"]),
            EnrichmentPayload("vt", tags=["malware", "c2"]),
        ]
        assert extract_tags(payloads) == ["malware"]

    def test_single_source_tags_not_promoted(self):
        """Test tags reported by only one source stay off the IOC."""
        payloads = [EnrichmentPayload("otx", tags=["apt:lazarus", "misc"])]
        assert extract_tags(payloads) == []

    def test_tag_counted_once_per_source(self):
        """Test a source repeating a tag does not promote it alone."""
        payloads = [
            EnrichmentPayload("otx", tags=["x", "X"]),
            EnrichmentPayload("vt", tags=["y", "z"]),
            EnrichmentPayload("abuse", tags=["y"]),
        ]
        assert extract_tags(payloads) == ["y"]

    def test_empty(self):
        """Test no payloads means no tags."""
        assert extract_tags([]) == []


def test_applicable_keeps_registration_order():
    """Test only adapters supporting the type are kept, in order."""
    adapters = [
        FakeIntelligenceAdapter("ip-only", ioc_types={IOCType.IP}),
        FakeIntelligenceAdapter("any"),
        FakeReputationAdapter("rep-ip", ioc_types={IOCType.IP}),
    ]

    assert [a.source_id for a in applicable(adapters, IOCType.IP)] == ["ip-only", "any", "rep-ip"]
    assert [a.source_id for a in applicable(adapters, IOCType.DOMAIN)] == ["any"]


class TestUplift:
    """Tests for corroboration uplift."""

    def test_uplift_requires_two_sources(self):
        """Test a single corroborating source changes nothing."""
        assert uplift_confidence(0.5, 1, 0.1) == 0.5
        assert uplift_confidence(0.5, 2, 0.1) == pytest.approx(0.6)

    def test_uplift_capped(self):
        """Test uplift never exceeds 1."""
        assert uplift_confidence(0.95, 3, 0.1) == 1.0

    def test_corroborating_sources(self):
        """Test payload verdicts and reputation scores both count."""
        payloads = [
            EnrichmentPayload("otx", verdict="malicious", confidence=0.9),
            EnrichmentPayload("weak", verdict="malicious", confidence=0.3),
            EnrichmentPayload("benign", verdict="benign", confidence=0.9),
        ]
        reputation = ReputationScore(
            "x",
            0.85,
            ReputationCategory.MALICIOUS,
            1.0,
            source_scores=[SourceScore("vt", 0.85), SourceScore("abuse", 0.2)],
        )
        assert corroborating_sources(payloads, reputation, 0.7) == ["otx", "vt"]


class TestBuildIntelligence:
    """Tests for the intelligence summary."""

    def test_noisy_or_confidence(self):
        """Test confidence combines sources without ever decreasing."""
        enriched = EnrichedIOC(
            ioc=IOC(IOCType.DOMAIN, "evil.example.com"),
            enrichments={
                "otx": EnrichmentPayload("otx", data={"threats": ["Emotet"]}, confidence=0.5),
                "misc": EnrichmentPayload("misc", data={"threats": ["Emotet", "Qakbot"]}, confidence=0.5),
            },
            sources=["otx", "misc"],
        )
        intel = build_intelligence(enriched)

        assert intel.confidence == pytest.approx(0.75)
        assert intel.sources == ["misc", "otx"]
        assert intel.related_threats == ["Emotet", "Qakbot"]

    def test_reputation_contributes(self):
        """Test answering reputation sources are listed and counted."""
        enriched = EnrichedIOC(
            ioc=IOC(IOCType.IP, "192.0.2.1"),
            reputation=ReputationScore(
                "192.0.2.1",
                0.8,
                ReputationCategory.MALICIOUS,
                0.5,
                source_scores=[SourceScore("vt", 0.8), SourceScore("abuse", 0.0, available=False)],
            ),
        )
        intel = build_intelligence(enriched)

        assert intel.sources == ["vt"]
        assert intel.confidence == pytest.approx(0.4)


class TestEnrichmentEngine:
    """Tests for EnrichmentEngine."""

    @pytest.mark.asyncio
    async def test_enrich_merges_payloads(self, tenant_a, make_ioc):
        """Test payloads are keyed by source and context is merged."""
        adapters = [
            FakeIntelligenceAdapter(
                "otx",
                verdict="malicious",
                confidence=0.8,
                tags=["c2", "emotet"],
                data={"asn": "AS64500", "country": "RU"},
                related=["198.51.100.7"],
            ),
            FakeIntelligenceAdapter("intel2", verdict="suspicious", confidence=0.4, tags=["c2"]),
        ]
        engine = EnrichmentEngine(adapters)
        ioc = make_ioc(id="ioc-1", confidence=0.5)

        enriched = await engine.enrich(tenant_a, ioc)

        assert set(enriched.enrichments) == {"otx", "intel2"}
        assert enriched.sources == ["otx", "intel2"]
        assert enriched.ioc.value == ioc.value
        assert enriched.ioc.id == "ioc-1"
        assert enriched.ioc.context.asn == 64500
        assert enriched.ioc.context.geolocation == "RU"
        assert enriched.ioc.context.related_indicators == ["198.51.100.7"]
        assert "c2" in enriched.ioc.tags
        assert "emotet" not in enriched.ioc.tags
        assert enriched.ioc.context.last_seen >= enriched.ioc.context.first_seen
        # Input untouched
        assert ioc.tags == set()
        assert ioc.context.asn is None

    @pytest.mark.asyncio
    async def test_failures_are_warnings(self, tenant_a, make_ioc, unavailable_error):
        """Test failing and slow adapters become warnings."""
        adapters = [
            FakeIntelligenceAdapter("ok", verdict="benign", confidence=0.1),
            FakeIntelligenceAdapter("broken", error=unavailable_error),
            FakeIntelligenceAdapter("slow", delay=1.0),
        ]
        engine = EnrichmentEngine(adapters, EnrichmentConfig(per_source_timeout_ms=50))

        enriched = await engine.enrich(tenant_a, make_ioc(id="x"))

        assert list(enriched.enrichments) == ["ok"]
        assert len(enriched.warnings) == 2
        assert any("timed out" in w for w in enriched.warnings)
        assert any("connection refused" in w for w in enriched.warnings)

    @pytest.mark.asyncio
    async def test_unsupported_and_disabled_adapters_skipped(self, tenant_a, make_ioc):
        """Test adapters are selected by type and configuration."""
        ip_only = FakeIntelligenceAdapter("ip-only", ioc_types={IOCType.IP})
        disabled = FakeIntelligenceAdapter("disabled")
        enabled = FakeIntelligenceAdapter("enabled")
        engine = EnrichmentEngine(
            [ip_only, disabled, enabled], EnrichmentConfig(enabled_sources=["ip-only", "enabled"])
        )

        enriched = await engine.enrich(tenant_a, make_ioc(id="x"))

        assert ip_only.calls == 0
        assert disabled.calls == 0
        assert enriched.sources == ["enabled"]

    @pytest.mark.asyncio
    async def test_uplift_with_two_malicious_sources(self, tenant_a, make_ioc):
        """Test confidence rises when two sources agree the IOC is malicious."""
        adapters = [
            FakeIntelligenceAdapter("a", verdict="malicious", confidence=0.9),
            FakeIntelligenceAdapter("b", verdict="malicious", confidence=0.8),
        ]
        engine = EnrichmentEngine(adapters, EnrichmentConfig(uplift_delta=0.1))

        enriched = await engine.enrich(tenant_a, make_ioc(id="x", confidence=0.6))
        assert enriched.ioc.confidence == pytest.approx(0.7)

    @pytest.mark.asyncio
    async def test_no_uplift_with_single_source(self, tenant_a, make_ioc):
        """Test a lone malicious verdict leaves confidence unchanged."""
        engine = EnrichmentEngine([FakeIntelligenceAdapter("a", verdict="malicious", confidence=0.9)])
        enriched = await engine.enrich(tenant_a, make_ioc(id="x", confidence=0.6))
        assert enriched.ioc.confidence == 0.6

    @pytest.mark.asyncio
    async def test_reputation_counts_toward_uplift(self, tenant_a, make_ioc):
        """Test a malicious reputation source corroborates an intelligence verdict."""
        reputation = ReputationEngine([FakeReputationAdapter("vt", 0.9)])
        engine = EnrichmentEngine(
            [FakeIntelligenceAdapter("otx", verdict="malicious", confidence=0.9)],
            reputation=reputation,
        )
        enriched = await engine.enrich(tenant_a, make_ioc(id="x", confidence=0.5))

        assert enriched.reputation.category == ReputationCategory.MALICIOUS
        assert enriched.ioc.confidence == pytest.approx(0.6)

    @pytest.mark.asyncio
    async def test_previous_record_merged(self, tenant_a, make_ioc, now):
        """Test re-enrichment keeps other sources and the earliest first_seen."""
        earlier = now - timedelta(days=3)
        previous = EnrichedIOC(
            ioc=make_ioc(id="x", context=IOCContext(first_seen=earlier, last_seen=earlier)),
            enrichments={"legacy": EnrichmentPayload("legacy", confidence=0.3)},
            sources=["legacy"],
        )
        engine = EnrichmentEngine([FakeIntelligenceAdapter("otx", confidence=0.5)])

        enriched = await engine.enrich(tenant_a, make_ioc(id="x"), previous=previous)

        assert set(enriched.enrichments) == {"legacy", "otx"}
        assert enriched.sources == ["legacy", "otx"]
        assert enriched.ioc.context.first_seen == earlier
        assert enriched.ioc.context.last_seen > earlier

    @pytest.mark.asyncio
    async def test_cancel_during_enrichment(self, tenant_a, make_ioc):
        """Test cancellation aborts in-flight adapters."""
        engine = EnrichmentEngine(
            [FakeIntelligenceAdapter("slow", delay=5.0)], EnrichmentConfig(per_source_timeout_ms=10000)
        )
        cancel = asyncio.Event()

        async def trigger():
            await asyncio.sleep(0.05)
            cancel.set()

        with pytest.raises(Cancelled):
            await asyncio.gather(engine.enrich(tenant_a, make_ioc(id="x"), cancel=cancel), trigger())

    @pytest.mark.asyncio
    async def test_concurrency_bounded(self, tenant_a, make_ioc):
        """Test no more than max_concurrency adapters run at once."""
        running = 0
        peak = 0

        class Tracking(FakeIntelligenceAdapter):
            async def enrich(self, ioc):
                nonlocal running, peak
                running += 1
                peak = max(peak, running)
                await asyncio.sleep(0.02)
                running -= 1
                return await super().enrich(ioc)

        adapters = [Tracking(f"s{i}") for i in range(6)]
        engine = EnrichmentEngine(adapters, EnrichmentConfig(max_concurrency=2))
        enriched = await engine.enrich(tenant_a, make_ioc(id="x"))

        assert peak <= 2
        assert len(enriched.sources) == 6
