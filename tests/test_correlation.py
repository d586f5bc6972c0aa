"""Tests for correlation detectors and ranking."""

from datetime import timedelta

import pytest

from iocflow.config import CorrelationConfig
from iocflow.correlation import (
    CorrelationEngine,
    detect_asn,
    detect_campaign,
    detect_domain_pattern,
    detect_hash_family,
    detect_hosting,
    detect_temporal,
    hamming_distance,
    shannon_entropy,
    split_domain,
)
from iocflow.models import IOCContext, IOCType, CorrelationType


class TestHelpers:
    """Tests for string helpers."""

    def test_shannon_entropy(self):
        """Test entropy of uniform and repeated strings."""
        assert shannon_entropy("") == 0.0
        assert shannon_entropy("aaaa") == 0.0
        assert shannon_entropy("abcd") == pytest.approx(2.0)

    def test_split_domain(self):
        """Test leftmost label and suffix."""
        assert split_domain("x7kq.evil.example.com") == ("x7kq", "evil.example.com")
        assert split_domain("localhost") == ("localhost", "")

    def test_hamming_distance(self):
        """Test distance is defined only for equal lengths."""
        assert hamming_distance("abcd", "abcf") == 1
        assert hamming_distance("abc", "abcd") is None


class TestDetectors:
    """Tests for the individual detectors."""

    def test_temporal_shared_source(self, make_ioc, now):
        """Test IOCs from one source inside the window correlate."""
        config = CorrelationConfig(time_window_hours=1)
        a = make_ioc(value="a.example.com", timestamp=now)
        b = make_ioc(value="b.example.com", timestamp=now + timedelta(minutes=30))

        strength, evidence = detect_temporal(a, b, config)

        assert strength == pytest.approx(0.6)
        assert "shared_source:feed" in evidence
        assert "window_hours:1" in evidence

    def test_temporal_outside_window(self, make_ioc, now):
        """Test IOCs outside the window do not correlate."""
        a = make_ioc(value="a.example.com", timestamp=now)
        b = make_ioc(value="b.example.com", timestamp=now + timedelta(hours=2))
        assert detect_temporal(a, b, CorrelationConfig()) is None

    def test_temporal_requires_shared_evidence(self, make_ioc, now):
        """Test closeness in time alone is not enough."""
        a = make_ioc(value="a.example.com", source="x")
        b = make_ioc(value="b.example.com", source="y")
        assert detect_temporal(a, b, CorrelationConfig()) is None

    def test_temporal_shared_tags_raise_strength(self, make_ioc):
        """Test each shared tag adds strength."""
        a = make_ioc(value="a.example.com", tags={"c2", "Phish"})
        b = make_ioc(value="b.example.com", tags={"C2", "phish"})
        strength, evidence = detect_temporal(a, b, CorrelationConfig())

        assert strength == pytest.approx(0.8)
        assert {"shared_tag:c2", "shared_tag:phish"} <= evidence

    def test_domain_pattern_high_entropy_siblings(self, make_ioc):
        """Test random-looking labels under one suffix correlate."""
        a = make_ioc(value="x7kq9zplm2rt.evil.example.com")
        b = make_ioc(value="q8wn3vbc5dyh.evil.example.com")
        strength, evidence = detect_domain_pattern(a, b, CorrelationConfig())

        assert strength == 0.75
        assert "shared_suffix:evil.example.com" in evidence

    def test_domain_pattern_low_entropy(self, make_ioc):
        """Test ordinary labels do not correlate."""
        a = make_ioc(value="www.example.com")
        b = make_ioc(value="x7kq9zplm2rt.example.com")
        assert detect_domain_pattern(a, b, CorrelationConfig()) is None

    def test_domain_pattern_different_suffix(self, make_ioc):
        """Test labels under different suffixes do not correlate."""
        a = make_ioc(value="x7kq9zplm2rt.example.com")
        b = make_ioc(value="q8wn3vbc5dyh.example.net")
        assert detect_domain_pattern(a, b, CorrelationConfig()) is None

    def test_hash_family_by_tag(self, make_ioc):
        """Test hashes sharing a family tag correlate."""
        a = make_ioc(IOCType.HASH, "a" * 64, tags={"family:emotet"})
        b = make_ioc(IOCType.HASH, "b" * 64, tags={"Family:Emotet"})
        strength, evidence = detect_hash_family(a, b, CorrelationConfig(hash_family_mode="tag"))

        assert strength == 0.8
        assert evidence == {"shared_family:family:emotet"}

    def test_hash_family_by_hamming(self, make_ioc):
        """Test near-identical hashes correlate in hamming mode."""
        a = make_ioc(IOCType.HASH, "a" * 64)
        b = make_ioc(IOCType.HASH, "a" * 62 + "bb")
        config = CorrelationConfig(hash_family_mode="hamming", hash_hamming_distance=2)

        assert detect_hash_family(a, b, config) == (0.8, {"hamming_distance:2"})
        assert detect_hash_family(a, b, CorrelationConfig(hash_family_mode="tag")) is None

    def test_asn(self, make_ioc):
        """Test IPs in the same ASN correlate."""
        a = make_ioc(IOCType.IP, "192.0.2.1", context=IOCContext(asn=64500))
        b = make_ioc(IOCType.IP, "198.51.100.1", context=IOCContext(asn=64500))
        c = make_ioc(IOCType.IP, "203.0.113.1", context=IOCContext(asn=64501))

        assert detect_asn(a, b, CorrelationConfig()) == (0.6, {"asn:AS64500"})
        assert detect_asn(a, c, CorrelationConfig()) is None

    def test_hosting_range(self, make_ioc):
        """Test a domain resolving into the same range as an IP correlates."""
        config = CorrelationConfig(hosting_ranges=["198.51.100.0/24"])
        ip = make_ioc(IOCType.IP, "198.51.100.7")
        domain = make_ioc(value="phish.example.com", context=IOCContext(resolved_ip="198.51.100.99"))
        outside = make_ioc(IOCType.IP, "192.0.2.1")

        assert detect_hosting(ip, domain, config) == (0.5, {"hosting_range:198.51.100.0/24"})
        assert detect_hosting(ip, outside, config) is None

    def test_campaign(self, make_ioc):
        """Test shared campaign tags correlate across types."""
        a = make_ioc(value="a.example.com", tags={"campaign:darkhydra"})
        b = make_ioc(IOCType.IP, "192.0.2.1", tags={"campaign:darkhydra", "c2"})

        assert detect_campaign(a, b, CorrelationConfig()) == (0.7, {"shared_tag:campaign:darkhydra"})


class TestCorrelationEngine:
    """Tests for CorrelationEngine."""

    def test_requires_subject_id(self, make_ioc):
        """Test the subject must already be identified."""
        with pytest.raises(ValueError):
            CorrelationEngine().correlate(make_ioc(), [])

    def test_threshold_and_ranking(self, make_ioc, now):
        """Test results respect the threshold and are ranked by strength then type."""
        subject = make_ioc(id="s", value="a.example.com", tags={"campaign:x"})
        neighbour = make_ioc(id="n", value="b.example.com", tags={"campaign:x"})
        far = make_ioc(id="f", value="c.example.com", source="other", timestamp=now - timedelta(days=2))

        correlations = CorrelationEngine(CorrelationConfig(minimum_correlation_strength=0.5)).correlate(
            subject, [neighbour, far], now=now
        )

        assert [(c.correlation_type, c.strength) for c in correlations] == [
            (CorrelationType.TEMPORAL, pytest.approx(0.7)),
            (CorrelationType.TAG_CAMPAIGN, 0.7),
        ]
        assert all(c.correlated_iocs == ["n", "s"] for c in correlations)
        assert all(c.timestamp == now for c in correlations)

    def test_threshold_filters_weak(self, make_ioc):
        """Test correlations below the minimum strength are dropped."""
        subject = make_ioc(id="s", value="a.example.com")
        neighbour = make_ioc(id="n", value="b.example.com")
        engine = CorrelationEngine(CorrelationConfig(minimum_correlation_strength=0.65))

        assert engine.correlate(subject, [neighbour]) == []

    def test_self_and_unidentified_skipped(self, make_ioc):
        """Test the subject itself and id-less candidates are ignored."""
        subject = make_ioc(id="s", value="a.example.com")
        assert CorrelationEngine().correlate(subject, [subject, make_ioc(value="b.example.com")]) == []

    def test_cap(self, make_ioc):
        """Test the per-IOC cap keeps only the strongest."""
        subject = make_ioc(id="s", value="a.example.com", tags={"t1"})
        neighbours = [make_ioc(id=f"n{i}", value=f"n{i}.example.com") for i in range(5)]
        neighbours.append(make_ioc(id="best", value="best.example.com", tags={"t1"}))
        engine = CorrelationEngine(CorrelationConfig(max_correlations_per_ioc=2))

        correlations = engine.correlate(subject, neighbours)

        assert len(correlations) == 2
        assert correlations[0].correlated_iocs == ["best", "s"]
        assert correlations[0].strength == pytest.approx(0.7)

    def test_deterministic(self, make_ioc, now):
        """Test identical inputs give identical output."""
        subject = make_ioc(id="s", value="a.example.com")
        neighbours = [make_ioc(id=f"n{i}", value=f"n{i}.example.com") for i in range(3)]
        engine = CorrelationEngine()

        first = engine.correlate(subject, neighbours, now=now)
        second = engine.correlate(subject, list(reversed(neighbours)), now=now)

        assert [c.to_dict() for c in first] == [c.to_dict() for c in second]

    def test_custom_detector_set(self, make_ioc):
        """Test the detector set can be restricted."""
        subject = make_ioc(id="s", value="a.example.com", tags={"campaign:x"})
        neighbour = make_ioc(id="n", value="b.example.com", tags={"campaign:x"})
        engine = CorrelationEngine(detectors={CorrelationType.TAG_CAMPAIGN: detect_campaign})

        correlations = engine.correlate(subject, [neighbour])
        assert [c.correlation_type for c in correlations] == [CorrelationType.TAG_CAMPAIGN]
