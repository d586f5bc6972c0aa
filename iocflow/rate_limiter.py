"""Token bucket rate limiter for outbound adapter calls."""

import asyncio
import time
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Optional

from iocflow.errors import AdapterTimeout, AdapterUnavailable


class RateLimitExhaustedError(AdapterUnavailable):
    """Raised when daily budget is exhausted."""

    pass


@dataclass
class RateLimiterConfig:
    """Configuration for rate limiter."""

    requests_per_minute: float
    daily_budget: int = 0  # 0 = unlimited
    name: str = "default"


class TokenBucketRateLimiter:
    """Async token bucket rate limiter with a daily budget reset at UTC midnight."""

    def __init__(self, config: RateLimiterConfig):
        """Initialize the rate limiter."""
        self.config = config
        self.tokens = config.requests_per_minute
        self.max_tokens = config.requests_per_minute
        self.last_refill = time.monotonic()
        self.daily_count = 0
        self.budget_day: date = datetime.now(timezone.utc).date()
        self.lock = asyncio.Lock()

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.max_tokens, self.tokens + elapsed * (self.max_tokens / 60.0))
        self.last_refill = now

    def _check_budget(self) -> None:
        today = datetime.now(timezone.utc).date()
        if today != self.budget_day:
            self.budget_day = today
            self.daily_count = 0
        if self.config.daily_budget and self.daily_count >= self.config.daily_budget:
            raise RateLimitExhaustedError(
                self.config.name, f"daily budget of {self.config.daily_budget} exhausted"
            )

    async def acquire(self, timeout: Optional[float] = None) -> None:
        """
        Acquire a token for making a request.

        Args:
            timeout: Longest acceptable wait in seconds (None = wait as needed)

        Raises:
            RateLimitExhaustedError: If daily budget is exhausted
            AdapterTimeout: If a token would not be available within timeout
        """
        async with self.lock:
            self._check_budget()
            self._refill()

            # Wait if we don't have enough tokens
            if self.tokens < 1:
                wait_time = (1 - self.tokens) / (self.max_tokens / 60.0)
                if timeout is not None and wait_time > timeout:
                    raise AdapterTimeout(self.config.name, timeout)
                await asyncio.sleep(wait_time)
                self._refill()
            self.tokens = max(0.0, self.tokens - 1)
            self.daily_count += 1


# Default rate limit configurations for the bundled adapters
RATE_LIMITS = {
    "virustotal": RateLimiterConfig(requests_per_minute=4, daily_budget=500, name="virustotal"),
    "abuseipdb": RateLimiterConfig(requests_per_minute=60, daily_budget=1000, name="abuseipdb"),
    "otx": RateLimiterConfig(requests_per_minute=150, daily_budget=0, name="otx"),
}


def make_limiter(source: str, rate_override: Optional[int] = None) -> TokenBucketRateLimiter:
    """Build a rate limiter for a bundled source, applying an optional per-minute override."""
    base = RATE_LIMITS[source]
    if rate_override is not None:
        base = RateLimiterConfig(
            requests_per_minute=rate_override, daily_budget=base.daily_budget, name=source
        )
    return TokenBucketRateLimiter(base)
