"""
Browser-based strategy using Playwright for JavaScript-heavy sites.

Renders the career page in headless Chromium and runs the JSON-LD,
embedded-state and DOM parsers over the final DOM.
"""
import logging
from typing import Dict, Optional
from urllib.parse import urlparse

from playwright.async_api import async_playwright
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from core.errors import ErrorKind, ScrapingError
from core.models import BrowserConfig, CompanyConfig, ExtractionMethod
from crawler.job_builder import build_jobs
from crawler.strategies.base import CompanyRun, ExtractionStrategy, StrategyOutcome
from crawler.strategies.data_island import parse_data_island_jobs
from crawler.strategies.dom import parse_dom_jobs
from crawler.strategies.jsonld import parse_jsonld_jobs

logger = logging.getLogger(__name__)

MAX_SCROLLS = 15


async def render_page(
    url: str,
    headers: Dict[str, str],
    browser_config: BrowserConfig,
    scroll: bool = False,
    timeout_ms: int = 30000,
) -> str:
    """
    Fetch HTML from URL using browser rendering.

    Args:
        url: URL to render
        headers: Request headers (User-Agent is applied to the browser context)
        browser_config: wait selector and settle time
        scroll: Scroll to the bottom until the page stops growing
        timeout_ms: Navigation timeout in milliseconds

    Returns:
        Rendered HTML content
    """
    async with async_playwright() as p:
        browser = await p.chromium.launch(headless=True)
        try:
            context = await browser.new_context(user_agent=headers.get('User-Agent'))
            page = await context.new_page()
            await page.set_extra_http_headers({k: v for k, v in headers.items() if k != 'User-Agent'})

            try:
                await page.goto(url, wait_until='networkidle', timeout=timeout_ms)
            except PlaywrightTimeoutError as e:
                raise ScrapingError(ErrorKind.TIMEOUT, f"Browser navigation timed out: {e}", url=url)
            except PlaywrightError as e:
                raise ScrapingError(ErrorKind.NETWORK, f"Browser navigation failed: {e}", url=url)

            if browser_config.wait_selector:
                try:
                    await page.wait_for_selector(browser_config.wait_selector, timeout=timeout_ms)
                except PlaywrightTimeoutError:
                    logger.warning(f"[browser] Selector {browser_config.wait_selector} not found on {url}")

            if scroll:
                previous = await page.evaluate('document.body.scrollHeight')
                for _ in range(MAX_SCROLLS):
                    await page.evaluate('window.scrollTo(0, document.body.scrollHeight)')
                    await page.wait_for_timeout(1000)
                    height = await page.evaluate('document.body.scrollHeight')
                    if height == previous:
                        break
                    previous = height

            # Settle time for late AJAX
            await page.wait_for_timeout(browser_config.wait_ms)
            return await page.content()
        finally:
            await browser.close()


class BrowserStrategy(ExtractionStrategy):
    """Headless-browser rendering followed by the HTML parsers"""

    name = 'browser'
    method = ExtractionMethod.BROWSER.value

    def __init__(self, renderer=None):
        super().__init__()
        # Injected in tests
        self.renderer = renderer or render_page

    def skip_reason(self, company: CompanyConfig, ctx) -> Optional[str]:
        reason = super().skip_reason(company, ctx)
        if reason:
            return reason
        if not ctx.config.enable_browser:
            return "browser automation disabled"
        return None

    async def extract(self, company: CompanyConfig, run: CompanyRun) -> StrategyOutcome:
        url = company.career_page_url
        ctx = run.ctx
        run.checkpoint()
        await ctx.rate_limiter.acquire(urlparse(url).hostname or 'default')
        run.checkpoint()

        headers = ctx.anti_detection.build_headers(url)
        scroll = company.browser.scroll or company.pagination.mode == 'infinite_scroll'
        html = await self.renderer(
            url, headers, company.browser,
            scroll=scroll,
            timeout_ms=int(ctx.config.request_timeout * 1000),
        )
        run.pages_scraped += 1
        run.bytes_downloaded += len(html.encode('utf-8'))
        logger.info(f"[browser] Rendered {url} ({len(html)} chars)")

        parsers = [
            ('jsonld', parse_jsonld_jobs, 0.85),
            ('data_island', parse_data_island_jobs, 0.8),
            ('dom', lambda h, u: parse_dom_jobs(h, u, company.selectors), 0.6),
        ]
        for parser_name, parser, confidence in parsers:
            raws = parser(html, url)
            jobs = build_jobs(raws, company, self.method, source_url=url)
            if jobs:
                return StrategyOutcome(
                    jobs=jobs,
                    confidence=confidence,
                    message=f"Rendered page yielded {len(jobs)} jobs via {parser_name}",
                    metadata={'parser': parser_name},
                )
        return StrategyOutcome(jobs=[], confidence=0.0, message="Rendered page contained no jobs")
