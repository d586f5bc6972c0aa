"""OTX AlienVault intelligence adapter."""

import asyncio
import logging
import math
from typing import Any, Optional

from OTXv2 import IndicatorTypes, OTXv2

from iocflow.enrichment.base import IntelligenceAdapter
from iocflow.errors import AdapterUnavailable
from iocflow.models import IOC, EnrichmentPayload, HashAlgorithm, IOCType
from iocflow.rate_limiter import TokenBucketRateLimiter

logger = logging.getLogger("iocflow.otx")

HASH_INDICATOR_TYPES = {
    HashAlgorithm.MD5: IndicatorTypes.FILE_HASH_MD5,
    HashAlgorithm.SHA1: IndicatorTypes.FILE_HASH_SHA1,
    HashAlgorithm.SHA256: IndicatorTypes.FILE_HASH_SHA256,
}


def indicator_type_for(ioc: IOC) -> Optional[Any]:
    """OTX indicator type for a canonical IOC, or None if unsupported."""
    if ioc.ioc_type == IOCType.IP:
        return IndicatorTypes.IPv6 if ":" in ioc.value else IndicatorTypes.IPv4
    if ioc.ioc_type == IOCType.DOMAIN:
        return IndicatorTypes.DOMAIN
    if ioc.ioc_type == IOCType.URL:
        return IndicatorTypes.URL
    if ioc.ioc_type == IOCType.HASH and ioc.hash_algorithm is not None:
        return HASH_INDICATOR_TYPES.get(ioc.hash_algorithm)
    return None


def parse_asn(value: Any) -> Optional[int]:
    """Read ``"AS15169 Google LLC"``-style ASN strings."""
    if value is None:
        return None
    token = str(value).split()[0].upper() if str(value).split() else ""
    token = token[2:] if token.startswith("AS") else token
    return int(token) if token.isdigit() else None


def pulse_score(pulse_count: int, has_malware: bool) -> float:
    """Map pulse and malware counts to [0, 1]."""
    # Logarithmic scoring for pulses to avoid over-weighting prolific indicators
    score = min(100.0, math.log2(pulse_count + 1) * 15) if pulse_count > 0 else 0.0
    if has_malware:
        score += 20
    return min(100.0, score) / 100.0


class OTXAdapter(IntelligenceAdapter):
    """Pulls pulses, malware families, geo and passive DNS context from OTX."""

    source_id = "otx"
    ioc_types = frozenset({IOCType.IP, IOCType.DOMAIN, IOCType.HASH, IOCType.URL})

    def __init__(
        self,
        api_key: str,
        rate_limiter: TokenBucketRateLimiter,
        max_wait: Optional[float] = None,
        malicious_threshold: float = 0.5,
    ):
        """Initialize the OTX adapter."""
        self.api_key = api_key
        self.rate_limiter = rate_limiter
        self.max_wait = max_wait
        self.malicious_threshold = malicious_threshold
        self.client = OTXv2(api_key)

    async def enrich(self, ioc: IOC) -> EnrichmentPayload:
        """
        Enrich an IOC from OTX.

        Raises:
            AdapterUnavailable: If the type is unsupported or the SDK call fails
        """
        indicator_type = indicator_type_for(ioc)
        if indicator_type is None:
            raise AdapterUnavailable(self.source_id, f"{ioc.ioc_type.value} not supported")

        await self.rate_limiter.acquire(timeout=self.max_wait)

        # OTX SDK is synchronous, run in executor
        loop = asyncio.get_event_loop()
        try:
            result = await loop.run_in_executor(
                None, self.client.get_indicator_details_full, indicator_type, ioc.value
            )
        except Exception as e:
            logger.warning(f"OTX error for {ioc.value}: {e}")
            raise AdapterUnavailable(self.source_id, f"Error: {e}")

        general = result.get("general", {}) or {}
        pulse_info = general.get("pulse_info") or result.get("pulse_info", {}) or {}
        pulses = pulse_info.get("pulses", [])
        malware_data = (result.get("malware", {}) or {}).get("data", [])
        score = pulse_score(len(pulses), bool(malware_data))

        families: list[str] = []
        for sample in malware_data:
            detections = sample.get("detections", {}) or {}
            for family in detections.values():
                if family and family not in families:
                    families.append(str(family))

        tags: list[str] = []
        for pulse in pulses:
            for tag in pulse.get("tags", []) or []:
                if tag not in tags:
                    tags.append(tag)
        tags.extend(f"family:{f.lower()}" for f in families[:5])

        geo = result.get("geo", {}) or {}
        passive_dns = (result.get("passive_dns", {}) or {}).get("passive_dns", []) or []
        related = []
        for record in passive_dns:
            other = record.get("hostname") if ioc.ioc_type == IOCType.IP else record.get("address")
            if other and other not in related:
                related.append(other)

        data: dict[str, Any] = {
            "pulse_count": len(pulses),
            "pulse_names": [p.get("name") for p in pulses[:5]],
            "malware_samples": len(malware_data),
            "threats": families,
        }
        if "reputation" in general:
            data["reputation"] = general["reputation"]
        if geo.get("country_code"):
            data["country"] = geo["country_code"]
        asn = parse_asn(geo.get("asn"))
        if asn is not None:
            data["asn"] = asn
        if ioc.ioc_type == IOCType.DOMAIN and related:
            data["resolved_ip"] = related[0]

        verdict = "malicious" if score >= self.malicious_threshold else ("suspicious" if score else "benign")
        logger.debug(
            f"OTX: {ioc.value} scored {score:.2f} ({len(pulses)} pulses, "
            f"malware={bool(malware_data)})"
        )
        return EnrichmentPayload(
            source_id=self.source_id,
            data=data,
            verdict=verdict,
            confidence=round(score, 4),
            related_indicators=related[:20],
            tags=tags[:10],
        )
