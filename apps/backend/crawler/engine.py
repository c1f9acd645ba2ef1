"""
Scraper engine with cascading strategy fallback.

For every company the configured strategies are tried in declared order.
The first strategy that yields at least one well-formed job wins; skipped
strategies carry no penalty and failures fall through to the next one.
Companies run concurrently under a semaphore, in bounded batches, each with
a total time budget.
"""
import asyncio
import time
import logging
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional
from urllib.parse import urlparse

from core.context import CancellationToken, ScrapeContext
from core.errors import ErrorKind, OperationCancelled, ScrapingError
from core.models import CompanyConfig, ScrapingResult, utcnow
from crawler.strategies.base import CompanyRun
from crawler.strategies.registry import StrategyRegistry, default_registry

logger = logging.getLogger(__name__)

FREQUENCY_INTERVALS = {
    'hourly': timedelta(hours=1),
    'daily': timedelta(days=1),
    'weekly': timedelta(days=7),
}

PRIORITY_ORDER = {'high': 0, 'medium': 1, 'low': 2}


def due_companies(
    companies: Iterable[CompanyConfig],
    last_scraped: Dict[str, Optional[datetime]],
    now: Optional[datetime] = None,
) -> List[CompanyConfig]:
    """
    Companies whose scrape cadence has elapsed, highest priority first.

    Args:
        companies: Candidate companies
        last_scraped: company id -> last successful scrape time (missing means never)
        now: Reference time (default: now, UTC)
    """
    now = now or utcnow()
    due = []
    for company in companies:
        last = last_scraped.get(company.id)
        interval = FREQUENCY_INTERVALS.get(company.scrape_frequency, FREQUENCY_INTERVALS['daily'])
        if last is None or now - last >= interval:
            due.append(company)
    # sorted() is stable, so equal priorities keep input order
    return sorted(due, key=lambda c: PRIORITY_ORDER.get(c.priority, 1))


class ScraperEngine:
    """Runs the strategy cascade for many companies with bounded concurrency"""

    def __init__(self, ctx: ScrapeContext, registry: Optional[StrategyRegistry] = None):
        self.ctx = ctx
        self.config = ctx.config
        self.registry = registry or default_registry()
        self.semaphore = asyncio.Semaphore(self.config.max_concurrent)

    def _use_token(self, cancel: Optional[CancellationToken]):
        if cancel is not None:
            self.ctx.cancel = cancel

    async def scrape_companies(
        self,
        companies: List[CompanyConfig],
        cancel: Optional[CancellationToken] = None,
    ) -> List[ScrapingResult]:
        """
        Scrape every company, in input order.

        One failing company never affects the others. Once the run is
        cancelled, companies that have not started are recorded with a
        timeout error instead of being scraped.
        """
        self._use_token(cancel)
        results: List[ScrapingResult] = []
        batch_size = max(1, self.config.batch_size)
        start = time.time()

        for offset in range(0, len(companies), batch_size):
            batch = companies[offset:offset + batch_size]
            if self.ctx.cancel.cancelled:
                results.extend(self._not_started(c) for c in batch)
                continue
            logger.info(f"[engine] Batch {offset // batch_size + 1}: {len(batch)} companies")
            batch_results = await asyncio.gather(
                *(self._scrape_guarded(c) for c in batch),
                return_exceptions=True,
            )
            for company, outcome in zip(batch, batch_results):
                if isinstance(outcome, BaseException):
                    logger.error(f"[engine] Unhandled error for {company.id}: {outcome}", exc_info=outcome)
                    failed = ScrapingResult(company_id=company.id)
                    failed.errors.append(ScrapingError(ErrorKind.PARSE, f"Unhandled error: {outcome}"))
                    results.append(failed)
                else:
                    results.append(outcome)

        succeeded = sum(1 for r in results if r.success)
        total_jobs = sum(len(r.jobs) for r in results)
        logger.info(
            f"[engine] Scraped {len(results)} companies: {succeeded} succeeded, "
            f"{total_jobs} jobs in {time.time() - start:.1f}s"
        )
        return results

    async def _scrape_guarded(self, company: CompanyConfig) -> ScrapingResult:
        async with self.semaphore:
            if self.ctx.cancel.cancelled:
                return self._not_started(company)
            return await self.scrape_company(company)

    def _not_started(self, company: CompanyConfig) -> ScrapingResult:
        result = ScrapingResult(company_id=company.id)
        result.errors.append(ScrapingError(ErrorKind.TIMEOUT, "cancelled", url=company.career_page_url))
        return result

    def _apply_rate_override(self, company: CompanyConfig):
        if not company.rate_limit:
            return
        domain = company.domain or urlparse(company.career_page_url or '').hostname
        if domain:
            self.ctx.rate_limiter.configure_domain(domain, company.rate_limit)

    async def scrape_company(
        self,
        company: CompanyConfig,
        cancel: Optional[CancellationToken] = None,
    ) -> ScrapingResult:
        """Run the strategy cascade for one company within its time budget."""
        self._use_token(cancel)
        result = ScrapingResult(company_id=company.id)
        if self.ctx.cancel.cancelled:
            return self._not_started(company)

        self._apply_rate_override(company)
        run = CompanyRun(company, self.ctx)
        start = time.time()
        try:
            await asyncio.wait_for(self._cascade(company, run, result), timeout=self.config.total_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[engine] {company.id}: exceeded {self.config.total_timeout}s budget")
            result.errors.append(ScrapingError(
                ErrorKind.TIMEOUT,
                f"Company scrape exceeded {self.config.total_timeout}s",
                url=company.career_page_url,
            ))
            self._keep_partial(run, result)
        except OperationCancelled as e:
            logger.info(f"[engine] {company.id}: cancelled ({e})")
            result.errors.append(ScrapingError(ErrorKind.TIMEOUT, f"cancelled: {e}", url=company.career_page_url))
            self._keep_partial(run, result)
        finally:
            result.duration_ms = int((time.time() - start) * 1000)
            result.bytes_downloaded = run.bytes_downloaded
            result.pages_scraped = run.pages_scraped

        if result.success:
            logger.info(
                f"[engine] {company.id}: {len(result.jobs)} jobs via {result.method} "
                f"({result.duration_ms}ms, tried {result.strategies_tried})"
            )
        else:
            kinds = [e.kind for e in result.errors]
            logger.warning(f"[engine] {company.id}: no jobs (tried {result.strategies_tried}, errors {kinds})")
        return result

    def _keep_partial(self, run: CompanyRun, result: ScrapingResult):
        if result.success or not run.partial_jobs:
            return
        result.jobs = list(run.partial_jobs)
        result.method = run.current_method
        result.success = True
        logger.info(f"[engine] {run.company.id}: keeping {len(result.jobs)} partially collected jobs")

    async def _cascade(self, company: CompanyConfig, run: CompanyRun, result: ScrapingResult):
        for strategy in self.registry.resolve(company.strategies):
            # Between strategies
            run.checkpoint()

            reason = strategy.skip_reason(company, self.ctx)
            if reason:
                logger.debug(f"[engine] {company.id}: skipping {strategy.name} ({reason})")
                continue

            result.strategies_tried.append(strategy.name)
            run.partial_jobs = []
            run.current_method = strategy.method
            try:
                outcome = await strategy.extract(company, run)
            except OperationCancelled:
                raise
            except ScrapingError as e:
                result.errors.append(e)
                logger.warning(f"[engine] {company.id}: {strategy.name} failed ({e.kind}): {e.message}")
                continue
            except Exception as e:
                logger.error(f"[engine] {company.id}: {strategy.name} crashed: {e}", exc_info=True)
                result.errors.append(ScrapingError(ErrorKind.PARSE, f"{strategy.name} crashed: {e}",
                                                   url=company.career_page_url))
                continue

            if outcome.is_success():
                result.jobs = outcome.jobs
                result.method = strategy.method
                result.success = True
                return
            logger.debug(f"[engine] {company.id}: {strategy.name} found nothing ({outcome.message})")
