"""
HTTP client with rate limiting, anti-detection headers, retries and backoff.

Every outbound scraping request goes through HTTPClient.fetch, which:
- waits for a rate-limiter slot for the target domain
- applies a jittered delay and rotated headers
- classifies failures into the scraping error taxonomy
- retries network, rate-limit and timeout errors with exponential backoff
"""
import json
import time
import asyncio
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import httpx
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from core.anti_detection import AntiDetection, detect_block
from core.config import ScraperConfig
from core.domain_limits import RateLimiter
from core.errors import ErrorKind, ScrapingError, is_retryable

logger = logging.getLogger(__name__)


class FetchResponse:
    """Outcome of one successful HTTP exchange"""

    def __init__(self, url: str, status_code: int, headers: Dict[str, str], body: bytes,
                 content_length: int, elapsed_ms: int, redirect_chain: Optional[List[str]] = None):
        self.url = url
        self.status_code = status_code
        self.headers = headers
        self.body = body
        self.content_length = content_length
        self.elapsed_ms = elapsed_ms
        self.redirect_chain = redirect_chain or []

    @property
    def text(self) -> str:
        return self.body.decode('utf-8', errors='replace')

    def json(self) -> Any:
        try:
            return json.loads(self.body)
        except ValueError as e:
            raise ScrapingError(ErrorKind.PARSE, f"Invalid JSON: {e}", url=self.url, status_code=self.status_code)

    @property
    def redirected(self) -> bool:
        return bool(self.redirect_chain)


def _parse_retry_after(headers: Dict[str, str]) -> Optional[float]:
    """Retry-After can be seconds (integer) or an HTTP date"""
    retry_after = headers.get("retry-after") or headers.get("Retry-After")
    if not retry_after:
        return None
    try:
        return max(0.0, float(retry_after))
    except ValueError:
        try:
            from email.utils import parsedate_to_datetime
            retry_date = parsedate_to_datetime(retry_after)
            return max(0.0, retry_date.timestamp() - time.time())
        except (TypeError, ValueError):
            logger.warning(f"[net] Could not parse Retry-After header: {retry_after}")
            return None


class HTTPClient:
    """HTTP client with politeness, retries and throttling"""

    def __init__(
        self,
        config: ScraperConfig,
        rate_limiter: RateLimiter,
        anti_detection: AntiDetection,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self.rate_limiter = rate_limiter
        self.anti_detection = anti_detection
        # Injected in tests (httpx.MockTransport)
        self.transport = transport
        self.requests_made = 0
        self.bytes_downloaded = 0
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        """Connection pool reused by every request of the run"""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.config.request_timeout),
                follow_redirects=True,
                transport=self.transport,
            )
        return self._client

    async def aclose(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _retry_wait(self):
        base = wait_exponential(
            multiplier=self.config.retry_min_wait,
            min=self.config.retry_min_wait,
            max=self.config.retry_max_wait,
        )

        def wait(retry_state) -> float:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            if isinstance(exc, ScrapingError) and exc.retry_after is not None:
                return min(exc.retry_after, self.config.retry_max_wait)
            return base(retry_state)

        return wait

    async def fetch(
        self,
        url: str,
        method: str = "GET",
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
        json_data: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
        cancel=None,
        apply_jitter: bool = True,
        raise_for_status: bool = True,
        max_retries: Optional[int] = None,
    ) -> FetchResponse:
        """
        Fetch URL with rate limiting, retries and error classification.

        Args:
            url: URL to fetch
            method: HTTP method (GET, POST, HEAD)
            headers: Custom headers to add on top of the rotated ones
            params: Query parameters
            json_data: JSON body for POST
            timeout: Per-request timeout in seconds (default: config.request_timeout)
            cancel: CancellationToken checked before every attempt
            apply_jitter: Sleep a randomized delay before the request
            raise_for_status: Raise ScrapingError for 4xx/5xx instead of returning them
            max_retries: Override config.max_retries

        Returns:
            FetchResponse
        """
        retries = self.config.max_retries if max_retries is None else max_retries
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(retries + 1),
            wait=self._retry_wait(),
            retry=retry_if_exception(is_retryable),
            reraise=True,
        ):
            with attempt:
                attempt_number = attempt.retry_state.attempt_number
                if attempt_number > 1:
                    logger.info(f"[net] Retry {attempt_number - 1}/{retries} for {url}")
                return await self._request_once(
                    url, method, headers, params, json_data, timeout,
                    cancel, apply_jitter, raise_for_status,
                )

    async def _request_once(self, url, method, headers, params, json_data, timeout,
                            cancel, apply_jitter, raise_for_status) -> FetchResponse:
        if cancel is not None:
            cancel.raise_if_cancelled()

        domain = urlparse(url).hostname or 'default'
        await self.rate_limiter.acquire(domain)

        if apply_jitter and self.config.enable_jitter:
            await asyncio.sleep(self.anti_detection.jitter_seconds())
        if cancel is not None:
            cancel.raise_if_cancelled()

        request_headers = self.anti_detection.build_headers(url, headers)
        request_timeout = httpx.Timeout(timeout or self.config.request_timeout)

        client = self._get_client()
        start_time = time.time()
        try:
            response = await client.request(
                method.upper(), url, headers=request_headers, params=params, json=json_data,
                timeout=request_timeout,
            )
        except httpx.TimeoutException as e:
            logger.warning(f"[net] Timeout fetching {url}: {e}")
            raise ScrapingError(ErrorKind.TIMEOUT, f"Timeout: {e}", url=url)
        except httpx.TransportError as e:
            logger.warning(f"[net] Connection error fetching {url}: {e}")
            raise ScrapingError(ErrorKind.NETWORK, f"Connection error: {e}", url=url)

        elapsed_ms = int((time.time() - start_time) * 1000)
        self.requests_made += 1

        max_bytes = self.config.max_response_kb * 1024
        content_length = len(response.content)
        self.bytes_downloaded += content_length
        if content_length > max_bytes:
            logger.warning(f"[net] Content too large: {content_length} bytes (limit: {self.config.max_response_kb}KB) - {url}")
            body = response.content[:max_bytes]
        else:
            body = response.content

        response_headers = {k.lower(): v for k, v in response.headers.items()}
        status = response.status_code
        logger.info(f"[net] {method.upper()} {status} {url} ({content_length} bytes, {elapsed_ms}ms)")

        if raise_for_status:
            self._raise_for_status(url, status, response_headers, body)

        return FetchResponse(
            url=str(response.url),
            status_code=status,
            headers=response_headers,
            body=body,
            content_length=content_length,
            elapsed_ms=elapsed_ms,
            redirect_chain=[str(r.url) for r in response.history],
        )

    def _raise_for_status(self, url: str, status: int, headers: Dict[str, str], body: bytes):
        text = body[:20000].decode('utf-8', errors='replace') if status < 300 else None
        block = detect_block(status, text)
        if block == ErrorKind.RATE_LIMIT:
            raise ScrapingError(ErrorKind.RATE_LIMIT, "Rate limited (429)", url=url,
                                status_code=status, retry_after=_parse_retry_after(headers))
        if block == ErrorKind.BLOCKED:
            raise ScrapingError(ErrorKind.BLOCKED, "Bot protection response", url=url, status_code=status)
        if status == 401:
            raise ScrapingError(ErrorKind.AUTHENTICATION, "Authentication required (401)", url=url, status_code=status)
        if status in (404, 410):
            raise ScrapingError(ErrorKind.NETWORK, f"Not found ({status})", url=url,
                                status_code=status, retryable=False)
        if status == 503:
            raise ScrapingError(ErrorKind.NETWORK, "Service unavailable (503)", url=url,
                                status_code=status, retry_after=_parse_retry_after(headers))
        if status >= 500:
            raise ScrapingError(ErrorKind.NETWORK, f"Server error ({status})", url=url, status_code=status)
        if status >= 400:
            raise ScrapingError(ErrorKind.NETWORK, f"Client error ({status})", url=url,
                                status_code=status, retryable=False)
