"""
Base interface for extraction strategies.
"""
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from core.context import ScrapeContext
from core.errors import ScrapingError
from core.models import CompanyConfig, ScrapedJob
from core.net import FetchResponse

logger = logging.getLogger(__name__)


class StrategyOutcome:
    """Result of one strategy attempt"""

    def __init__(
        self,
        jobs: Optional[List[ScrapedJob]] = None,
        confidence: float = 1.0,
        message: Optional[str] = None,
        metadata: Optional[Dict] = None,
    ):
        self.jobs = jobs or []
        self.confidence = confidence  # 0.0 to 1.0
        self.message = message
        self.metadata = metadata or {}

    def is_success(self) -> bool:
        """Check if extraction was successful"""
        return len(self.jobs) > 0

    def __repr__(self):
        return f"StrategyOutcome(jobs={len(self.jobs)}, confidence={self.confidence:.2f})"


class CompanyRun:
    """
    State for one company's pass through the strategy cascade.

    Caches the career page so HTML-based strategies fetch it once, tracks
    transfer metadata, and holds jobs collected page by page so a timeout can
    still return what was gathered.
    """

    def __init__(self, company: CompanyConfig, ctx: ScrapeContext):
        self.company = company
        self.ctx = ctx
        self.partial_jobs: List[ScrapedJob] = []
        self.bytes_downloaded = 0
        self.pages_scraped = 0
        self.current_method: Optional[str] = None
        self._page: Optional[FetchResponse] = None
        self._page_error: Optional[ScrapingError] = None

    def checkpoint(self):
        """Stop promptly once the run has been cancelled"""
        self.ctx.cancel.raise_if_cancelled()

    async def fetch(self, url: str, **kwargs) -> FetchResponse:
        self.checkpoint()
        response = await self.ctx.http.fetch(url, cancel=self.ctx.cancel, **kwargs)
        self.bytes_downloaded += response.content_length
        self.pages_scraped += 1
        return response

    async def career_page(self) -> FetchResponse:
        if self._page_error is not None:
            raise self._page_error
        if self._page is None:
            try:
                self._page = await self.fetch(self.company.career_page_url)
            except ScrapingError as e:
                self._page_error = e
                raise
        return self._page


class ExtractionStrategy(ABC):
    """
    Base class for extraction strategies.

    Each strategy:
    1. Reports whether its preconditions hold for a company (skip_reason)
    2. Extracts jobs, raising ScrapingError on failure
    """

    name: str = ''
    method: str = ''

    def __init__(self):
        self.logger = logging.getLogger(f"{__name__}.{self.name}")

    def skip_reason(self, company: CompanyConfig, ctx: ScrapeContext) -> Optional[str]:
        """Return why this strategy does not apply, or None when it does"""
        if not company.career_page_url:
            return "no career page url"
        return None

    @abstractmethod
    async def extract(self, company: CompanyConfig, run: CompanyRun) -> StrategyOutcome:
        """Extract jobs for a company. Raises ScrapingError on failure."""
