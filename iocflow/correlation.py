"""Correlation detectors and the engine that ranks their candidates."""

import ipaddress
import logging
import math
import re
from collections import Counter
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

from iocflow.config import CorrelationConfig
from iocflow.models import (
    CORRELATION_TYPE_ORDER,
    IOC,
    Correlation,
    CorrelationType,
    IOCType,
    utcnow,
)

logger = logging.getLogger("iocflow.correlation")

CAMPAIGN_TAG_RE = re.compile(r"^(campaign|apt):.+", re.IGNORECASE)
FAMILY_TAG_RE = re.compile(r"^(family|malware[-_]?family|malware):.+", re.IGNORECASE)

STRENGTHS = {
    CorrelationType.PATTERN_DOMAIN: 0.75,
    CorrelationType.PATTERN_HASH_FAMILY: 0.8,
    CorrelationType.INFRASTRUCTURE_ASN: 0.6,
    CorrelationType.INFRASTRUCTURE_HOSTING: 0.5,
    CorrelationType.TAG_CAMPAIGN: 0.7,
}

# A detector inspects one pair and returns (strength, evidence) or None
Detector = Callable[[IOC, IOC, CorrelationConfig], Optional[tuple[float, set[str]]]]


def shannon_entropy(text: str) -> float:
    """Shannon entropy in bits per character."""
    if not text:
        return 0.0
    counts = Counter(text)
    total = len(text)
    return -sum((n / total) * math.log2(n / total) for n in counts.values())


def split_domain(domain: str) -> tuple[str, str]:
    """Split a domain into its leftmost label and the suffix it is registered under."""
    label, _, suffix = domain.partition(".")
    return label, suffix


def hamming_distance(a: str, b: str) -> Optional[int]:
    """Character-wise distance between equal-length strings, None otherwise."""
    if len(a) != len(b):
        return None
    return sum(1 for x, y in zip(a, b) if x != y)


def _normalized_tags(ioc: IOC) -> set[str]:
    return {t.lower() for t in ioc.tags}


def host_address(ioc: IOC) -> Optional[str]:
    """Address an indicator resolves to, if known."""
    if ioc.ioc_type == IOCType.IP:
        return ioc.value
    return ioc.context.resolved_ip


def detect_temporal(a: IOC, b: IOC, config: CorrelationConfig) -> Optional[tuple[float, set[str]]]:
    window = timedelta(hours=config.time_window_hours)
    if abs(a.timestamp - b.timestamp) > window:
        return None

    evidence = {f"shared_tag:{t}" for t in _normalized_tags(a) & _normalized_tags(b)}
    if a.source == b.source:
        evidence.add(f"shared_source:{a.source}")
    if not evidence:
        return None
    strength = min(1.0, 0.5 + 0.1 * len(evidence))
    evidence.add(f"window_hours:{config.time_window_hours:g}")
    return round(strength, 6), evidence


def detect_domain_pattern(
    a: IOC, b: IOC, config: CorrelationConfig
) -> Optional[tuple[float, set[str]]]:
    if a.ioc_type != IOCType.DOMAIN or b.ioc_type != IOCType.DOMAIN:
        return None
    label_a, suffix_a = split_domain(a.value)
    label_b, suffix_b = split_domain(b.value)
    if not suffix_a or suffix_a != suffix_b:
        return None
    entropy_a, entropy_b = shannon_entropy(label_a), shannon_entropy(label_b)
    if entropy_a <= config.dga_entropy_threshold or entropy_b <= config.dga_entropy_threshold:
        return None
    return STRENGTHS[CorrelationType.PATTERN_DOMAIN], {
        f"shared_suffix:{suffix_a}",
        f"entropy:{label_a}={entropy_a:.2f}",
        f"entropy:{label_b}={entropy_b:.2f}",
    }


def detect_hash_family(
    a: IOC, b: IOC, config: CorrelationConfig
) -> Optional[tuple[float, set[str]]]:
    if a.ioc_type != IOCType.HASH or b.ioc_type != IOCType.HASH:
        return None
    evidence: set[str] = set()

    if config.hash_family_mode in ("tag", "both"):
        families_a = {t for t in _normalized_tags(a) if FAMILY_TAG_RE.match(t)}
        families_b = {t for t in _normalized_tags(b) if FAMILY_TAG_RE.match(t)}
        evidence.update(f"shared_family:{t}" for t in families_a & families_b)

    if config.hash_family_mode in ("hamming", "both"):
        distance = hamming_distance(a.value, b.value)
        if distance is not None and distance <= config.hash_hamming_distance:
            evidence.add(f"hamming_distance:{distance}")

    if not evidence:
        return None
    return STRENGTHS[CorrelationType.PATTERN_HASH_FAMILY], evidence


def detect_asn(a: IOC, b: IOC, config: CorrelationConfig) -> Optional[tuple[float, set[str]]]:
    if a.ioc_type != IOCType.IP or b.ioc_type != IOCType.IP:
        return None
    if a.context.asn is None or a.context.asn != b.context.asn:
        return None
    return STRENGTHS[CorrelationType.INFRASTRUCTURE_ASN], {f"asn:AS{a.context.asn}"}


def detect_hosting(a: IOC, b: IOC, config: CorrelationConfig) -> Optional[tuple[float, set[str]]]:
    host_a, host_b = host_address(a), host_address(b)
    if not host_a or not host_b:
        return None
    try:
        addr_a, addr_b = ipaddress.ip_address(host_a), ipaddress.ip_address(host_b)
    except ValueError:
        return None
    for cidr in config.hosting_ranges:
        network = ipaddress.ip_network(cidr, strict=False)
        if addr_a in network and addr_b in network:
            return STRENGTHS[CorrelationType.INFRASTRUCTURE_HOSTING], {f"hosting_range:{network}"}
    return None


def detect_campaign(a: IOC, b: IOC, config: CorrelationConfig) -> Optional[tuple[float, set[str]]]:
    shared = {
        t for t in _normalized_tags(a) & _normalized_tags(b) if CAMPAIGN_TAG_RE.match(t)
    }
    if not shared:
        return None
    return STRENGTHS[CorrelationType.TAG_CAMPAIGN], {f"shared_tag:{t}" for t in shared}


DETECTORS: dict[CorrelationType, Detector] = {
    CorrelationType.TEMPORAL: detect_temporal,
    CorrelationType.PATTERN_DOMAIN: detect_domain_pattern,
    CorrelationType.PATTERN_HASH_FAMILY: detect_hash_family,
    CorrelationType.INFRASTRUCTURE_ASN: detect_asn,
    CorrelationType.INFRASTRUCTURE_HOSTING: detect_hosting,
    CorrelationType.TAG_CAMPAIGN: detect_campaign,
}


def rank_key(correlation: Correlation) -> tuple:
    """Descending strength, then catalog order, then ids for a stable order."""
    return (
        -correlation.strength,
        CORRELATION_TYPE_ORDER[correlation.correlation_type],
        tuple(correlation.correlated_iocs),
    )


class CorrelationEngine:
    """
    Finds relationships between a subject IOC and its stored neighbours.

    Scoring is synchronous and side-effect free; persistence is the
    caller's job.
    """

    def __init__(
        self,
        config: Optional[CorrelationConfig] = None,
        detectors: Optional[dict[CorrelationType, Detector]] = None,
    ):
        self.config = config or CorrelationConfig()
        self.detectors = dict(detectors if detectors is not None else DETECTORS)

    def correlate(
        self,
        ioc: IOC,
        candidates: Iterable[IOC],
        now: Optional[datetime] = None,
    ) -> list[Correlation]:
        """
        Correlate ``ioc`` against candidate neighbours.

        Args:
            ioc: Subject IOC, which must already carry an id
            candidates: Other IOCs of the same tenant
            now: Discovery timestamp (defaults to the current time)

        Returns:
            At most ``max_correlations_per_ioc`` correlations at or above
            the strength threshold, best first
        """
        if ioc.id is None:
            raise ValueError("Cannot correlate an IOC without an id")
        discovered_at = now or utcnow()
        threshold = self.config.minimum_correlation_strength

        best: dict[tuple[frozenset[str], CorrelationType], Correlation] = {}
        for other in candidates:
            if other.id is None or other.id == ioc.id:
                continue
            for ctype, detector in self.detectors.items():
                found = detector(ioc, other, self.config)
                if found is None:
                    continue
                strength, evidence = found
                if strength < threshold:
                    continue
                correlation = Correlation(
                    correlated_iocs=[ioc.id, other.id],
                    correlation_type=ctype,
                    strength=strength,
                    evidence=evidence,
                    timestamp=discovered_at,
                )
                key = (correlation.key, ctype)
                existing = best.get(key)
                if existing is None or existing.strength < strength:
                    best[key] = correlation
                elif existing.strength == strength:
                    existing.evidence |= evidence

        ranked = sorted(best.values(), key=rank_key)
        if len(ranked) > self.config.max_correlations_per_ioc:
            logger.debug(
                f"Dropping {len(ranked) - self.config.max_correlations_per_ioc} "
                f"correlations for {ioc.value} beyond the per-IOC cap"
            )
        return ranked[: self.config.max_correlations_per_ioc]
