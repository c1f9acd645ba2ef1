"""
Per-domain and global rate limiting using the token bucket algorithm
"""
import time
import logging
import asyncio
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)


class TokenBucket:
    """Simple token bucket for rate limiting"""

    def __init__(self, tokens: float, refill_rate: float, clock: Callable[[], float] = time.monotonic):
        """
        Args:
            tokens: Initial tokens and max capacity
            refill_rate: Tokens added per second
        """
        self.capacity = tokens
        self.tokens = tokens
        self.refill_rate = refill_rate
        self._clock = clock
        self.last_refill = clock()

    @classmethod
    def per_minute(cls, requests_per_minute: int, burst: int, clock: Callable[[], float] = time.monotonic):
        return cls(float(max(1, burst)), max(1, requests_per_minute) / 60.0, clock)

    def _refill(self):
        """Refill tokens based on time elapsed"""
        now = self._clock()
        elapsed = now - self.last_refill
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    def consume(self, tokens: float = 1.0) -> bool:
        """Try to consume tokens. Returns True if successful."""
        self._refill()
        if self.tokens >= tokens:
            self.tokens -= tokens
            return True
        return False

    def wait_time(self, tokens: float = 1.0) -> float:
        """Calculate wait time needed to consume tokens"""
        self._refill()
        if self.tokens >= tokens:
            return 0.0
        needed = tokens - self.tokens
        return needed / self.refill_rate


class RateLimiter:
    """
    Two-level limiter: one bucket per domain plus one global bucket.

    acquire() returns once both buckets granted a token. Bucket state is only
    touched under the lock; waiting happens outside it so other domains keep
    flowing.
    """

    def __init__(
        self,
        global_rpm: int = 60,
        global_burst: int = 10,
        domain_rpm: int = 20,
        domain_burst: int = 3,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.domain_rpm = domain_rpm
        self.domain_burst = domain_burst
        self._clock = clock
        self.global_bucket = TokenBucket.per_minute(global_rpm, global_burst, clock)
        # Domain -> TokenBucket
        self.buckets: Dict[str, TokenBucket] = {}
        self._lock = asyncio.Lock()
        self.total_acquired = 0
        self.total_wait_seconds = 0.0

    def configure_domain(self, domain: str, requests_per_minute: int, burst: Optional[int] = None):
        """Override the rate for one domain (per-company rate_limit)"""
        domain = normalize_domain(domain)
        self.buckets[domain] = TokenBucket.per_minute(
            requests_per_minute, burst or self.domain_burst, self._clock
        )
        logger.debug(f"[rate_limiter] Configured {domain}: {requests_per_minute}/min")

    def _bucket_for(self, domain: str) -> TokenBucket:
        if domain not in self.buckets:
            self.buckets[domain] = TokenBucket.per_minute(self.domain_rpm, self.domain_burst, self._clock)
        return self.buckets[domain]

    async def acquire(self, domain: str):
        """Wait until a request slot is available for this domain"""
        domain = normalize_domain(domain)
        waited = 0.0
        while True:
            async with self._lock:
                bucket = self._bucket_for(domain)
                wait = max(bucket.wait_time(1.0), self.global_bucket.wait_time(1.0))
                if wait <= 0:
                    bucket.consume(1.0)
                    self.global_bucket.consume(1.0)
                    self.total_acquired += 1
                    self.total_wait_seconds += waited
                    return
            logger.debug(f"[rate_limiter] Waiting {wait:.2f}s for slot - {domain}")
            waited += wait
            await asyncio.sleep(wait)

    def stats(self) -> Dict[str, float]:
        return {
            'domains': len(self.buckets),
            'acquired': self.total_acquired,
            'wait_seconds': round(self.total_wait_seconds, 3),
        }


def normalize_domain(domain: str) -> str:
    domain = (domain or 'default').lower().strip()
    if '://' in domain:
        domain = domain.split('://', 1)[1]
    domain = domain.split('/')[0]
    if domain.startswith('www.'):
        domain = domain[4:]
    return domain or 'default'
