"""
One discovery run: scrape -> dedup -> ingest -> candidate notifications.

A run is built around a ScrapeContext that lives only as long as the run.
"""
import time
import logging
from collections import Counter
from typing import Any, Dict, List, Optional, Sequence

from app.profiles import CandidateProfileSource
from app.ranking import notify_new_matches
from core.config import RankingConfig
from core.context import CancellationToken, ScrapeContext
from core.models import CompanyConfig, ScrapedJob
from crawler.engine import ScraperEngine
from pipeline.dedup import Deduplicator
from pipeline.ingest import JobIngestor
from pipeline.notify import Notifier, NullNotifier
from pipeline.store import JobStore

logger = logging.getLogger(__name__)


class DiscoveryRun:
    def __init__(
        self,
        ctx: ScrapeContext,
        store: JobStore,
        ingestor: Optional[JobIngestor] = None,
        deduplicator: Optional[Deduplicator] = None,
        profiles: Optional[CandidateProfileSource] = None,
        notifier: Optional[Notifier] = None,
        engine: Optional[ScraperEngine] = None,
        ranking_config: Optional[RankingConfig] = None,
        match_threshold: float = 0.6,
    ):
        self.ctx = ctx
        self.store = store
        self.notifier = notifier or NullNotifier()
        self.ingestor = ingestor or JobIngestor(store, notifier=self.notifier)
        self.deduplicator = deduplicator or Deduplicator()
        self.profiles = profiles
        self.engine = engine or ScraperEngine(ctx)
        self.ranking_config = ranking_config
        self.match_threshold = match_threshold

    async def execute(
        self,
        companies: Sequence[CompanyConfig],
        cancel: Optional[CancellationToken] = None,
        deadline: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Run the pipeline for a list of companies.

        Args:
            companies: Companies to scrape
            cancel: Token shared with the caller; defaults to the context token
            deadline: Seconds after which scraping is cancelled; jobs found
                so far are still ingested

        Returns:
            Summary with per-stage counts, failures by error kind and duration
        """
        start = time.time()
        companies = list(companies)
        logger.info(f"[run] Starting discovery for {len(companies)} companies")
        token = cancel or self.ctx.cancel
        if deadline is not None:
            token.cancel_after(deadline)

        try:
            results = await self.engine.scrape_companies(companies, cancel=cancel)
        finally:
            token.dispose()

        scraped: List[ScrapedJob] = []
        failures: Counter = Counter()
        methods: Counter = Counter()
        for result in results:
            scraped.extend(result.jobs)
            if result.success:
                methods[result.method] += 1
            for error in result.errors:
                failures[getattr(error, 'kind', 'unknown')] += 1

        window = self.deduplicator.config.window_days
        existing = self.store.load_recent_jobs(window) if scraped else []
        deduped = self.deduplicator.deduplicate(scraped, existing=existing)

        ingest_summary, created = self.ingestor.ingest_batch(
            deduped.unique,
            deduped.groups,
            company_domains={c.name: c.domain for c in companies if c.domain},
            company_industries={c.name: c.industry for c in companies if c.industry},
            persisted=deduped.persisted,
        )

        notified = 0
        if created and self.profiles is not None:
            for profile in self.profiles.list_profiles():
                notified += notify_new_matches(profile, created, self.notifier,
                                               min_score=self.match_threshold, config=self.ranking_config)

        summary = {
            'companies': len(companies),
            'companies_succeeded': sum(1 for r in results if r.success),
            'jobs_scraped': len(scraped),
            'unique': len(deduped.unique),
            'duplicates': deduped.duplicate_count,
            'inserted': ingest_summary['inserted'],
            'updated': ingest_summary['updated'],
            'refreshed': ingest_summary['refreshed'],
            'reposts': ingest_summary['reposts'],
            'touched': ingest_summary['touched'],
            'failed': ingest_summary['failed'],
            'notifications': notified,
            'methods': dict(methods),
            'failures_by_kind': dict(failures),
            'context': self.ctx.stats(),
            'duration_ms': int((time.time() - start) * 1000),
        }
        logger.info(f"[run] Discovery complete: {summary}")
        return summary
