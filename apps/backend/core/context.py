"""
Per-run scraping context.

A ScrapeContext is built for one scraping run and discarded afterwards. It
owns the shared rate limiter, the HTTP client and the cancellation token, so
tests and parallel runs never share state through module globals.
"""
import asyncio
import logging
from typing import Any, Dict, Optional

import httpx

from core.anti_detection import AntiDetection
from core.config import ScraperConfig
from core.domain_limits import RateLimiter
from core.errors import OperationCancelled
from core.net import HTTPClient

logger = logging.getLogger(__name__)


class CancellationToken:
    """Cooperative cancellation shared by every task of a run"""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None
        self._timer: Optional[asyncio.TimerHandle] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled"):
        if not self._event.is_set():
            self.reason = reason
            self._event.set()
            logger.info(f"[context] Cancellation requested: {reason}")

    def cancel_after(self, seconds: float):
        """Trigger cancellation after a delay (external run deadline)"""
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(seconds, self.cancel, f"deadline of {seconds}s reached")

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise OperationCancelled(self.reason or "cancelled")

    async def wait(self):
        await self._event.wait()

    def dispose(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None


class ScrapeContext:
    """Everything a scraping run shares across its concurrent company tasks"""

    def __init__(
        self,
        config: Optional[ScraperConfig] = None,
        cancel: Optional[CancellationToken] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        anti_detection: Optional[AntiDetection] = None,
    ):
        self.config = config or ScraperConfig()
        self.cancel = cancel or CancellationToken()
        self.rate_limiter = RateLimiter(
            global_rpm=self.config.global_rpm,
            global_burst=self.config.global_burst,
            domain_rpm=self.config.domain_rpm,
            domain_burst=self.config.domain_burst,
        )
        self.anti_detection = anti_detection or AntiDetection(
            jitter_min_ms=self.config.jitter_min_ms,
            jitter_max_ms=self.config.jitter_max_ms,
            jitter_mean_ms=self.config.jitter_mean_ms,
        )
        self.http = HTTPClient(self.config, self.rate_limiter, self.anti_detection, transport=transport)
        self.llm_calls = 0
        # LLM extractions keyed by sha256 of the cleaned page text
        self.llm_responses: Dict[str, Dict[str, Any]] = {}
        self.closed = False

    def llm_budget_left(self) -> bool:
        return self.llm_calls < self.config.llm_max_calls

    def stats(self):
        return {
            'requests': self.http.requests_made,
            'bytes': self.http.bytes_downloaded,
            'llm_calls': self.llm_calls,
            'rate_limiter': self.rate_limiter.stats(),
        }

    async def close(self):
        """Stop pending deadline timers and close the HTTP connection pool."""
        self.cancel.dispose()
        await self.http.aclose()
        self.llm_responses.clear()
        self.closed = True

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()
