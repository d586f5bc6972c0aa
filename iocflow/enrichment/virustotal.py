"""VirusTotal reputation adapter."""

import base64
import logging
from typing import Any, Optional

import vt

from iocflow.enrichment.base import ReputationAdapter
from iocflow.models import IOCType, SourceScore
from iocflow.rate_limiter import TokenBucketRateLimiter

logger = logging.getLogger("iocflow.virustotal")


def object_path(value: str, ioc_type: IOCType) -> Optional[str]:
    """VirusTotal API v3 object path for a canonical value."""
    if ioc_type == IOCType.IP:
        return f"/ip_addresses/{value}"
    if ioc_type == IOCType.DOMAIN:
        return f"/domains/{value}"
    if ioc_type == IOCType.HASH:
        return f"/files/{value}"
    if ioc_type == IOCType.URL:
        # URLs need to be base64url-encoded without padding
        url_id = base64.urlsafe_b64encode(value.encode()).decode().rstrip("=")
        return f"/urls/{url_id}"
    return None


class VirusTotalAdapter(ReputationAdapter):
    """Scores indicators by the share of engines flagging them."""

    source_id = "virustotal"
    ioc_types = frozenset({IOCType.IP, IOCType.DOMAIN, IOCType.HASH, IOCType.URL})

    def __init__(
        self,
        api_key: str,
        rate_limiter: TokenBucketRateLimiter,
        weight: float = 1.0,
        max_wait: Optional[float] = None,
    ):
        """Initialize the VirusTotal adapter."""
        self.api_key = api_key
        self.rate_limiter = rate_limiter
        self.weight = weight
        self.max_wait = max_wait
        self.client = vt.Client(api_key)

    async def fetch(self, value: str, ioc_type: IOCType) -> SourceScore:
        """Score a value against VirusTotal."""
        path = object_path(value, ioc_type)
        if path is None:
            return SourceScore(
                source_name=self.source_id,
                raw_score=0.0,
                available=False,
                error="IOC type not supported",
            )

        await self.rate_limiter.acquire(timeout=self.max_wait)
        try:
            obj = await self.client.get_object_async(path)
        except vt.APIError as e:
            logger.warning(f"VirusTotal API error for {value}: {e}")
            return SourceScore(
                source_name=self.source_id,
                raw_score=0.0,
                available=False,
                error=f"API error: {e}",
            )

        stats = obj.last_analysis_stats
        malicious = stats.get("malicious", 0)
        suspicious = stats.get("suspicious", 0)
        total = sum(stats.values())

        score = (malicious * 1.0 + suspicious * 0.5) / total if total else 0.0

        details: dict[str, Any] = {
            "malicious_count": malicious,
            "suspicious_count": suspicious,
            "total_engines": total,
            "reputation": getattr(obj, "reputation", 0),
        }
        tags = getattr(obj, "tags", [])
        if tags:
            details["tags"] = list(tags)[:5]

        logger.debug(f"VirusTotal: {value} scored {score:.3f} ({malicious}/{total} malicious)")
        return SourceScore(source_name=self.source_id, raw_score=round(score, 4), details=details)

    async def close(self) -> None:
        """Close the VT client."""
        await self.client.close_async()
