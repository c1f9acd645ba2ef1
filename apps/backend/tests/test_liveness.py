"""
Tests for liveness checks and the liveness sweep.
"""

import asyncio
import threading
from unittest.mock import MagicMock

import httpx
import pytest

from core.config import LivenessConfig
from core.models import LivenessStatus
from pipeline.liveness import LivenessChecker, LivenessService, has_closed_marker
from pipeline.notify import JOB_EXPIRED, JOB_STALE, RecordingNotifier


def checker_for(make_ctx, handler, store=None, notifier=None, **overrides):
    ctx = make_ctx(handler)
    config = LivenessConfig(batch_delay=0.0, **overrides)
    return LivenessChecker(ctx.http, config, store=store, notifier=notifier)


class TestLivenessChecker:
    """Test liveness verdicts and state transitions."""

    @pytest.mark.asyncio
    async def test_listed_job_gains_trust(self, make_ctx, make_posting, now):
        checker = checker_for(make_ctx, lambda r: httpx.Response(200, text="<h1>Backend Engineer</h1>"))
        job = make_posting(trust_score=93, consecutive_failures=1)

        outcome = await checker.check_liveness(job, now=now)

        assert outcome.status == LivenessStatus.ACTIVE
        assert outcome.trust_score == 95
        assert outcome.consecutive_failures == 0
        assert outcome.reachable
        assert job.last_liveness_check == now

    @pytest.mark.asyncio
    async def test_not_found_expires(self, make_ctx, make_posting, now):
        notifier = RecordingNotifier()
        checker = checker_for(make_ctx, lambda r: httpx.Response(404), notifier=notifier)
        job = make_posting()

        outcome = await checker.check_liveness(job, now=now)

        assert outcome.status == LivenessStatus.EXPIRED
        assert outcome.http_status == 404
        assert job.liveness_status == LivenessStatus.EXPIRED
        assert [e.job_id for e in notifier.of_type(JOB_EXPIRED)] == ['job-1']

    @pytest.mark.asyncio
    async def test_closed_marker_expires(self, make_ctx, make_posting, now):
        page = "<p>Sorry, this   position has been FILLED.</p>"
        checker = checker_for(make_ctx, lambda r: httpx.Response(200, text=page))

        outcome = await checker.check_liveness(make_posting(), now=now)

        assert outcome.status == LivenessStatus.EXPIRED
        assert outcome.reason == 'closed marker'

    @pytest.mark.asyncio
    async def test_redirect_to_careers_expires(self, make_ctx, make_posting, now):
        def handler(request):
            if request.url.path == '/jobs/job-1':
                return httpx.Response(302, headers={'Location': 'https://acme.example.com/careers/'})
            return httpx.Response(200, text="All open roles")

        outcome = await checker_for(make_ctx, handler).check_liveness(make_posting(), now=now)

        assert outcome.status == LivenessStatus.EXPIRED
        assert outcome.reason.startswith('redirected to')

    @pytest.mark.asyncio
    async def test_timeout_keeps_status(self, make_ctx, make_posting, now):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        job = make_posting(trust_score=80)
        outcome = await checker_for(make_ctx, handler).check_liveness(job, now=now)

        assert outcome.status == LivenessStatus.ACTIVE
        assert outcome.consecutive_failures == 1
        assert outcome.trust_score == 80
        assert not outcome.reachable
        assert not outcome.changed

    @pytest.mark.asyncio
    async def test_repeated_failures_make_stale(self, make_ctx, make_posting, now):
        notifier = RecordingNotifier()
        checker = checker_for(make_ctx, lambda r: httpx.Response(503), notifier=notifier, stale_after_failures=3)
        job = make_posting(trust_score=90, consecutive_failures=2)

        outcome = await checker.check_liveness(job, now=now)

        assert outcome.status == LivenessStatus.STALE
        assert outcome.trust_score == 60
        assert outcome.consecutive_failures == 3
        assert len(notifier.of_type(JOB_STALE)) == 1

    @pytest.mark.asyncio
    async def test_stale_job_is_not_penalized_twice(self, make_ctx, make_posting, now):
        checker = checker_for(make_ctx, lambda r: httpx.Response(500))
        job = make_posting(liveness_status=LivenessStatus.STALE, trust_score=60, consecutive_failures=5)
        outcome = await checker.check_liveness(job, now=now)
        assert outcome.status == LivenessStatus.STALE
        assert outcome.trust_score == 60

    @pytest.mark.asyncio
    async def test_greenhouse_jobs_requery_api(self, make_ctx, make_posting, now):
        requested = []

        def handler(request):
            requested.append(str(request.url))
            return httpx.Response(200, json={'id': 101})

        job = make_posting(job_id='uuid-9', external_id='101', origin='greenhouse', board_id='acme', method='api')
        outcome = await checker_for(make_ctx, handler).check_liveness(job, now=now)

        assert requested == ['https://boards-api.greenhouse.io/v1/boards/acme/jobs/101']
        assert outcome.status == LivenessStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_ashby_job_missing_from_board(self, make_ctx, make_posting, now):
        payload = {'jobs': [{'id': 'other'}]}
        job = make_posting(external_id='a-1', origin='ashby', board_id='acme', method='api')
        outcome = await checker_for(make_ctx, lambda r: httpx.Response(200, json=payload)).check_liveness(job, now=now)
        assert outcome.status == LivenessStatus.EXPIRED
        assert outcome.reason == 'not in board listing'

    @pytest.mark.asyncio
    async def test_result_persisted(self, make_ctx, make_posting, now):
        store = MagicMock()
        checker = checker_for(make_ctx, lambda r: httpx.Response(410), store=store)

        await checker.check_liveness(make_posting(trust_score=70), now=now)

        store.record_liveness.assert_called_once()
        args, kwargs = store.record_liveness.call_args
        assert args == ('job-1', 'active', 'expired', 70, 0, now)
        assert kwargs['http_status'] == 410
        assert kwargs['reason'] == 'http 410'

    def test_closed_markers(self):
        assert has_closed_marker("We are no longer accepting applications for this role")
        assert not has_closed_marker("We are hiring!")
        assert not has_closed_marker(None)


class TestLivenessSweep:
    """Test the sweep and its overlap guards."""

    def _service(self, make_ctx, handler, jobs, lock_available=True):
        store = MagicMock()
        store.acquire_lock.return_value = lock_available
        store.expire_past_due.return_value = ['old-1']
        store.load_jobs_due_for_check.return_value = jobs
        notifier = RecordingNotifier()
        checker = checker_for(make_ctx, handler, store=store, notifier=notifier)
        return LivenessService(store, checker), store, notifier

    @pytest.mark.asyncio
    async def test_sweep_summary(self, make_ctx, make_posting):
        def handler(request):
            if request.url.path == '/jobs/gone':
                return httpx.Response(404)
            return httpx.Response(200, text="Open role")

        jobs = [make_posting(job_id='live'), make_posting(job_id='gone')]
        service, store, notifier = self._service(make_ctx, handler, jobs)

        summary = await service.run_sweep()

        assert summary['skipped'] is False
        assert summary['past_due_expired'] == 1
        assert summary['checked'] == 2
        assert summary['expired'] == 1
        assert summary['unchanged'] == 1
        assert summary['errors'] == 0
        assert {e.job_id for e in notifier.of_type(JOB_EXPIRED)} == {'old-1', 'gone'}
        store.release_lock.assert_called_once_with('liveness_sweep')

    @pytest.mark.asyncio
    async def test_skips_when_running(self, make_ctx):
        service, store, _ = self._service(make_ctx, lambda r: httpx.Response(200), [])
        service.running = True
        summary = await service.run_sweep()
        assert summary == {'skipped': True, 'reason': 'sweep already running'}
        store.acquire_lock.assert_not_called()

    @pytest.mark.asyncio
    async def test_skips_when_locked_elsewhere(self, make_ctx):
        service, store, _ = self._service(make_ctx, lambda r: httpx.Response(200), [], lock_available=False)
        summary = await service.run_sweep()
        assert summary == {'skipped': True, 'reason': 'locked by another process'}
        store.release_lock.assert_not_called()
        assert service.running is False

    @pytest.mark.asyncio
    async def test_concurrent_sweeps_do_not_overlap(self, make_ctx, make_posting):
        async def slow(request):
            await asyncio.sleep(0.05)
            return httpx.Response(200, text="Open role")

        service, store, _ = self._service(make_ctx, slow, [make_posting()])

        first, second = await asyncio.gather(service.run_sweep(), service.run_sweep())

        assert first['skipped'] is False
        assert second == {'skipped': True, 'reason': 'sweep already running'}
        assert store.acquire_lock.call_count == 1

    @pytest.mark.asyncio
    async def test_store_calls_run_off_the_event_loop(self, make_ctx, make_posting):
        loop_thread = threading.get_ident()
        threads = []
        service, store, _ = self._service(make_ctx, lambda r: httpx.Response(200, text="Open role"),
                                          [make_posting()])
        store.acquire_lock.side_effect = lambda name: threads.append(threading.get_ident()) or True
        store.record_liveness.side_effect = lambda *a, **kw: threads.append(threading.get_ident())

        summary = await service.run_sweep()

        assert summary['checked'] == 1
        assert len(threads) == 2
        assert loop_thread not in threads
