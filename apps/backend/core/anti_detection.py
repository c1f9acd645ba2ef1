"""
Anti-detection helpers layered on top of every outbound scraping request.

Rotates user agents, varies Accept-Language and referer headers, draws
jittered inter-request delays and recognizes explicit bot-block responses.
"""
import random
import logging
from typing import Dict, Optional
from urllib.parse import urlparse

from core.errors import ErrorKind

logger = logging.getLogger(__name__)

USER_AGENTS = [
    'Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36',
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36',
    'Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/123.0.0.0 Safari/537.36',
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/123.0.0.0 Safari/537.36 Edg/123.0.0.0',
    'Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.4 Safari/605.1.15',
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:125.0) Gecko/20100101 Firefox/125.0',
]

ACCEPT_HEADERS = [
    'text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8',
    'text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8',
    'application/json,text/html;q=0.9,*/*;q=0.8',
]

ACCEPT_LANGUAGES = [
    'en-US,en;q=0.9',
    'en-US,en;q=0.8',
    'en-GB,en;q=0.9,en-US;q=0.8',
    'en-US,en;q=0.9,es;q=0.7',
]

# Body markers of challenge / interstitial pages
BLOCK_MARKERS = [
    'captcha',
    'are you a robot',
    'verify you are human',
    'cf-challenge',
    'challenge-platform',
    'access denied',
    'request blocked',
    'unusual traffic',
    'bot detection',
]

SEARCH_REFERER_PROBABILITY = 0.7


class AntiDetection:
    """Header and delay randomization for one scraping run"""

    def __init__(
        self,
        jitter_min_ms: int = 1000,
        jitter_max_ms: int = 10000,
        jitter_mean_ms: int = 3500,
        rng: Optional[random.Random] = None,
    ):
        if jitter_min_ms > jitter_max_ms:
            raise ValueError("jitter_min_ms must not exceed jitter_max_ms")
        self.jitter_min_ms = jitter_min_ms
        self.jitter_max_ms = jitter_max_ms
        self.jitter_mean_ms = min(max(jitter_mean_ms, jitter_min_ms), jitter_max_ms)
        self.rng = rng or random.Random()

    def user_agent(self) -> str:
        return self.rng.choice(USER_AGENTS)

    def referer_for(self, url: str) -> Optional[str]:
        """Search-engine referer most of the time, otherwise the site origin or none"""
        parsed = urlparse(url)
        domain = (parsed.hostname or '').replace('www.', '')
        if not domain:
            return None
        roll = self.rng.random()
        if roll < SEARCH_REFERER_PROBABILITY:
            return f"https://www.google.com/search?q={domain}+careers"
        if roll < 0.85:
            return f"{parsed.scheme or 'https'}://{parsed.netloc}/"
        return None

    def build_headers(self, url: str, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {
            'User-Agent': self.user_agent(),
            'Accept': self.rng.choice(ACCEPT_HEADERS),
            'Accept-Language': self.rng.choice(ACCEPT_LANGUAGES),
            'Accept-Encoding': 'gzip, deflate',
            'Connection': 'keep-alive',
            'Upgrade-Insecure-Requests': '1',
        }
        if self.rng.random() < 0.5:
            headers['DNT'] = '1'
        referer = self.referer_for(url)
        if referer:
            headers['Referer'] = referer
        if extra:
            headers.update(extra)
        return headers

    def jitter_seconds(self) -> float:
        """Gaussian delay around the mean, clamped to the jitter window"""
        spread = (self.jitter_max_ms - self.jitter_min_ms) / 4.0 or 1.0
        delay_ms = self.rng.gauss(self.jitter_mean_ms, spread)
        delay_ms = min(max(delay_ms, self.jitter_min_ms), self.jitter_max_ms)
        return delay_ms / 1000.0


def detect_block(status_code: int, body: Optional[str] = None) -> Optional[str]:
    """
    Classify a response as an anti-bot answer.

    Returns:
        ErrorKind.RATE_LIMIT, ErrorKind.BLOCKED or None
    """
    if status_code == 429:
        return ErrorKind.RATE_LIMIT
    if status_code == 403:
        return ErrorKind.BLOCKED
    if body and status_code in (200, 202, 503):
        sample = body[:5000].lower()
        # Short challenge pages only; job pages may legitimately mention "captcha"
        if len(body) < 20000 and any(marker in sample for marker in BLOCK_MARKERS):
            return ErrorKind.BLOCKED
    return None
