"""
Tests for a full discovery run with a stubbed engine and store.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from app.profiles import InMemoryProfileSource
from core.config import DedupConfig
from core.errors import ErrorKind, ScrapingError
from core.models import CandidateProfile, ScrapingResult, utcnow
from pipeline.dedup import Deduplicator
from pipeline.notify import JOB_CREATED, NEW_JOB_FOR_CANDIDATE, RecordingNotifier
from pipeline.run import DiscoveryRun


def _upsert(posting):
    return {'success': True, 'job_id': f"id-{posting.external_id}", 'error': None, 'action': 'inserted'}


@pytest.fixture
def store():
    store = MagicMock()
    store.load_recent_jobs.return_value = []
    store.upsert_job.side_effect = _upsert
    return store


@pytest.fixture
def companies(make_company):
    return [
        make_company(),
        make_company(id='globex', name='Globex', career_page_url='https://globex.example.com/jobs',
                     domain='globex.example.com'),
    ]


def engine_returning(results):
    engine = MagicMock()
    engine.scrape_companies = AsyncMock(return_value=results)
    return engine


class TestDiscoveryRun:
    """Test scrape -> dedup -> ingest -> notify."""

    @pytest.mark.asyncio
    async def test_summary(self, make_ctx, make_scraped, store, companies):
        fresh = utcnow()
        jobs = [
            make_scraped(external_id='1', posted_at=fresh),
            make_scraped(external_id='1b', posted_at=fresh),
            make_scraped(external_id='2', title='Data Analyst', posted_at=fresh),
        ]
        engine = engine_returning([
            ScrapingResult(company_id='acme', success=True, jobs=jobs, method='jsonld',
                           strategies_tried=['ats_api', 'jsonld']),
            ScrapingResult(company_id='globex', success=False,
                           errors=[ScrapingError(ErrorKind.NETWORK, "connection refused")]),
        ])
        notifier = RecordingNotifier()
        profiles = InMemoryProfileSource([CandidateProfile(candidate_id='cand-1', skills=['python'])])
        run = DiscoveryRun(
            make_ctx(),
            store,
            deduplicator=Deduplicator(DedupConfig(window_days=7)),
            profiles=profiles,
            notifier=notifier,
            engine=engine,
        )

        summary = await run.execute(companies)

        assert summary['companies'] == 2
        assert summary['companies_succeeded'] == 1
        assert summary['jobs_scraped'] == 3
        assert summary['unique'] == 2
        assert summary['duplicates'] == 1
        assert summary['inserted'] == 2
        assert summary['failed'] == 0
        assert summary['methods'] == {'jsonld': 1}
        assert summary['failures_by_kind'] == {'network': 1}
        assert summary['notifications'] == 2
        assert 'requests' in summary['context']

        store.load_recent_jobs.assert_called_once_with(7)
        assert len(notifier.of_type(JOB_CREATED)) == 2
        assert {e.candidate_id for e in notifier.of_type(NEW_JOB_FOR_CANDIDATE)} == {'cand-1'}

    @pytest.mark.asyncio
    async def test_company_domain_passed_to_ingest(self, make_ctx, make_scraped, store, companies):
        engine = engine_returning([
            ScrapingResult(company_id='globex', success=True, method='api',
                           jobs=[make_scraped(company='Globex', posted_at=utcnow())]),
        ])
        run = DiscoveryRun(make_ctx(), store, engine=engine)

        await run.execute(companies)

        posting = store.upsert_job.call_args[0][0]
        assert posting.company_domain == 'globex.example.com'

    @pytest.mark.asyncio
    async def test_nothing_scraped(self, make_ctx, store, companies):
        engine = engine_returning([ScrapingResult(company_id='acme'), ScrapingResult(company_id='globex')])
        notifier = RecordingNotifier()
        run = DiscoveryRun(make_ctx(), store, notifier=notifier, engine=engine)

        summary = await run.execute(companies)

        assert summary['jobs_scraped'] == 0
        assert summary['inserted'] == 0
        assert summary['notifications'] == 0
        store.load_recent_jobs.assert_not_called()
        store.upsert_job.assert_not_called()
        assert notifier.events == []

    @pytest.mark.asyncio
    async def test_no_profiles_means_no_candidate_events(self, make_ctx, make_scraped, store, companies):
        engine = engine_returning([
            ScrapingResult(company_id='acme', success=True, method='jsonld',
                           jobs=[make_scraped(posted_at=utcnow())]),
        ])
        notifier = RecordingNotifier()
        run = DiscoveryRun(make_ctx(), store, notifier=notifier, engine=engine)

        summary = await run.execute(companies)

        assert summary['notifications'] == 0
        assert notifier.of_type(NEW_JOB_FOR_CANDIDATE) == []
        assert len(notifier.of_type(JOB_CREATED)) == 1

    @pytest.mark.asyncio
    async def test_cancel_token_forwarded(self, make_ctx, store, companies):
        from core.context import CancellationToken
        engine = engine_returning([])
        token = CancellationToken()
        run = DiscoveryRun(make_ctx(), store, engine=engine)

        await run.execute(companies, cancel=token)

        engine.scrape_companies.assert_awaited_once_with(companies, cancel=token)

    @pytest.mark.asyncio
    async def test_deadline_cancels_scraping(self, make_ctx, store, companies):
        ctx = make_ctx()

        async def wait_for_cancel(companies, cancel=None):
            await ctx.cancel.wait()
            return []

        engine = MagicMock()
        engine.scrape_companies = AsyncMock(side_effect=wait_for_cancel)
        run = DiscoveryRun(ctx, store, engine=engine)

        summary = await run.execute(companies, deadline=0.01)

        assert ctx.cancel.cancelled
        assert ctx.cancel.reason == "deadline of 0.01s reached"
        assert summary['jobs_scraped'] == 0


class InMemoryStore:
    """Rows keyed like job_postings; recent jobs are every stored row"""

    def __init__(self, rows=None):
        self.rows = {(r.external_id, r.source_key): r for r in rows or []}
        self.upserts = []
        self.touched = []

    def load_recent_jobs(self, days):
        return list(self.rows.values())

    def upsert_job(self, posting):
        key = (posting.external_id, posting.source_key)
        self.upserts.append(posting)
        action = 'updated' if key in self.rows else 'inserted'
        job_id = self.rows[key].id if key in self.rows else f"id-{posting.external_id}"
        self.rows[key] = posting
        return {'success': True, 'job_id': job_id, 'error': None, 'action': action}

    def touch_seen(self, job_id):
        self.touched.append(job_id)
        return True


class TestRunsAgainstStoredJobs:
    """Test runs whose dedup context holds persisted jobs."""

    @pytest.mark.asyncio
    async def test_rescraped_job_rewrites_stored_row(self, make_ctx, make_scraped, make_posting, companies):
        stored = make_posting(job_id='stored-1', external_id='1', description='old description')
        store = InMemoryStore([stored])
        engine = engine_returning([
            ScrapingResult(company_id='acme', success=True, method='jsonld',
                           jobs=[make_scraped(external_id='1', description='NEW description')]),
        ])
        notifier = RecordingNotifier()
        run = DiscoveryRun(make_ctx(), store, notifier=notifier, engine=engine)

        summary = await run.execute(companies)

        assert summary['unique'] == 0
        assert summary['duplicates'] == 1
        assert summary['refreshed'] == 1
        assert summary['inserted'] == 0
        assert summary['touched'] == 0
        assert len(store.upserts) == 1
        assert store.upserts[0].description == 'NEW description'
        assert store.rows[('1', 'career_page')].id == 'stored-1'
        assert notifier.events == []

    @pytest.mark.asyncio
    async def test_second_run_is_idempotent(self, make_ctx, make_scraped, companies):
        def scrape():
            return [
                make_scraped(external_id='1', posted_at=utcnow()),
                make_scraped(external_id='2', title='Data Analyst', posted_at=utcnow()),
            ]

        store = InMemoryStore()
        notifier = RecordingNotifier()

        first = await DiscoveryRun(make_ctx(), store, notifier=notifier, engine=engine_returning([
            ScrapingResult(company_id='acme', success=True, method='jsonld', jobs=scrape()),
        ])).execute(companies)
        second = await DiscoveryRun(make_ctx(), store, notifier=notifier, engine=engine_returning([
            ScrapingResult(company_id='acme', success=True, method='jsonld', jobs=scrape()),
        ])).execute(companies)

        assert first['inserted'] == 2
        assert second['inserted'] == 0
        assert second['unique'] == 0
        assert second['refreshed'] == 2
        assert second['reposts'] == 0
        assert len(store.rows) == 2
        assert len(notifier.of_type(JOB_CREATED)) == 2

    @pytest.mark.asyncio
    async def test_repost_under_new_id_is_counted(self, make_ctx, make_scraped, make_posting, companies):
        stored = make_posting(job_id='stored-1', external_id='1', repost_count=2)
        store = InMemoryStore([stored])
        engine = engine_returning([
            ScrapingResult(company_id='acme', success=True, method='jsonld',
                           jobs=[make_scraped(external_id='7')]),
        ])
        run = DiscoveryRun(make_ctx(), store, engine=engine)

        summary = await run.execute(companies)

        assert summary['reposts'] == 1
        assert summary['touched'] == 1
        repost = store.rows[('7', 'career_page')]
        assert repost.repost_count == 3
        assert 'reposted' in repost.ghost_reasons

    @pytest.mark.asyncio
    async def test_company_industry_reaches_postings(self, make_ctx, make_scraped, make_company):
        store = InMemoryStore()
        engine = engine_returning([
            ScrapingResult(company_id='acme', success=True, method='jsonld',
                           jobs=[make_scraped(posted_at=utcnow())]),
        ])
        run = DiscoveryRun(make_ctx(), store, engine=engine)

        await run.execute([make_company(industry='Fintech')])

        assert store.upserts[0].industry == 'Fintech'
