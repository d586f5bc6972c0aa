"""AbuseIPDB reputation adapter."""

import logging
from typing import Any, Optional

import aiohttp

from iocflow.enrichment.base import ReputationAdapter
from iocflow.models import IOCType, SourceScore
from iocflow.rate_limiter import TokenBucketRateLimiter

logger = logging.getLogger("iocflow.abuseipdb")


class AbuseIPDBAdapter(ReputationAdapter):
    """AbuseIPDB API v2 reputation adapter (IP addresses only)."""

    API_ENDPOINT = "https://api.abuseipdb.com/api/v2/check"

    source_id = "abuseipdb"
    ioc_types = frozenset({IOCType.IP})

    def __init__(
        self,
        api_key: str,
        rate_limiter: TokenBucketRateLimiter,
        weight: float = 1.0,
        max_wait: Optional[float] = None,
        max_age_days: int = 90,
    ):
        """Initialize the AbuseIPDB adapter."""
        self.api_key = api_key
        self.rate_limiter = rate_limiter
        self.weight = weight
        self.max_wait = max_wait
        self.max_age_days = max_age_days
        self.session: aiohttp.ClientSession | None = None

    async def _ensure_session(self) -> aiohttp.ClientSession:
        """Ensure aiohttp session exists."""
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession()
        return self.session

    async def fetch(self, value: str, ioc_type: IOCType) -> SourceScore:
        """Score an IP address against AbuseIPDB."""
        if not self.supports(ioc_type):
            return SourceScore(
                source_name=self.source_id,
                raw_score=0.0,
                available=False,
                error="Only IP addresses supported",
            )

        await self.rate_limiter.acquire(timeout=self.max_wait)
        session = await self._ensure_session()

        headers = {"Key": self.api_key, "Accept": "application/json"}
        params = {"ipAddress": value, "maxAgeInDays": str(self.max_age_days)}

        try:
            async with session.get(self.API_ENDPOINT, headers=headers, params=params) as response:
                if response.status == 429:
                    logger.warning(f"AbuseIPDB rate limit hit for {value}")
                    return SourceScore(
                        source_name=self.source_id,
                        raw_score=0.0,
                        available=False,
                        error="Rate limit exceeded",
                    )

                response.raise_for_status()
                data = await response.json()
        except aiohttp.ClientError as e:
            logger.warning(f"AbuseIPDB HTTP error for {value}: {e}")
            return SourceScore(
                source_name=self.source_id,
                raw_score=0.0,
                available=False,
                error=f"HTTP error: {e}",
            )

        result = data.get("data", {})
        score = result.get("abuseConfidenceScore", 0)

        details: dict[str, Any] = {
            "abuse_confidence_score": score,
            "total_reports": result.get("totalReports", 0),
            "distinct_reporters": result.get("numDistinctUsers", 0),
            "country_code": result.get("countryCode"),
            "isp": result.get("isp"),
            "usage_type": result.get("usageType"),
            "is_tor": result.get("isTor", False),
            "is_whitelisted": result.get("isWhitelisted", False),
        }

        logger.debug(f"AbuseIPDB: {value} scored {score}")
        return SourceScore(
            source_name=self.source_id,
            raw_score=min(1.0, max(0.0, float(score) / 100.0)),
            details=details,
        )

    async def close(self) -> None:
        """Close the aiohttp session."""
        if self.session:
            await self.session.close()
