"""
Liveness checks and the periodic liveness sweep.

A check re-queries a job's ATS entry or fetches its apply URL and decides:
- 404/410, a "position closed" marker, or a redirect to a generic careers
  page: expired
- any other 2xx: active, trust rises toward the ceiling
- timeouts, connection errors, 5xx and other 4xx: status unchanged, failure
  counted; enough consecutive failures make the job stale

A pure network failure never expires a job.
"""
import asyncio
import re
import time
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from core.config import LivenessConfig
from core.errors import ScrapingError
from core.models import JobPosting, LivenessStatus, utcnow
from core.net import FetchResponse, HTTPClient
from crawler.strategies.ats_api import BOARD_ENDPOINTS, job_api_url
from pipeline.ghost import GhostJobScorer
from pipeline.notify import JOB_EXPIRED, JOB_STALE, NotificationEvent, Notifier, NullNotifier
from pipeline.store import JobStore

logger = logging.getLogger(__name__)

SWEEP_LOCK_NAME = 'liveness_sweep'

CLOSED_MARKERS = [
    'position has been filled',
    'this position is no longer available',
    'this job is no longer available',
    'job is no longer available',
    'no longer accepting applications',
    'this job has expired',
    'job posting has expired',
    'this posting has been closed',
    'position has been closed',
    'the job you are looking for is no longer open',
    'this role has been filled',
    'vacancy has been filled',
]

GENERIC_CAREER_PATHS = {
    '/careers', '/jobs', '/careers/search', '/jobs/search', '/careers/openings',
    '/join-us', '/work-with-us', '/opportunities', '/careers/jobs', '/en/careers',
}

# Origins whose per-job API answers 404 once the job is gone
ATS_REQUERY_ORIGINS = ('greenhouse', 'lever', 'smartrecruiters')

_WHITESPACE = re.compile(r'\s+')


@dataclass
class LivenessOutcome:
    job_id: Optional[str]
    previous_status: LivenessStatus
    status: LivenessStatus
    trust_score: int
    consecutive_failures: int
    checked_at: datetime
    http_status: Optional[int] = None
    reason: str = ''
    response_ms: Optional[int] = None
    reachable: bool = True

    @property
    def changed(self) -> bool:
        return self.status != self.previous_status


def has_closed_marker(text: Optional[str]) -> bool:
    body = _WHITESPACE.sub(' ', (text or '')[:200000].lower())
    return any(marker in body for marker in CLOSED_MARKERS)


def is_generic_careers_redirect(original_url: str, response: FetchResponse) -> bool:
    if not response.redirected:
        return False
    final_path = (urlparse(response.url).path or '/').rstrip('/').lower() or '/'
    original_path = (urlparse(original_url).path or '/').rstrip('/').lower() or '/'
    return final_path != original_path and (final_path in GENERIC_CAREER_PATHS or final_path == '/')


class LivenessChecker:
    """Decides whether a stored job is still open"""

    def __init__(
        self,
        http: HTTPClient,
        config: Optional[LivenessConfig] = None,
        store: Optional[JobStore] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.http = http
        self.config = config or LivenessConfig()
        self.store = store
        self.notifier = notifier or NullNotifier()

    def _check_url(self, job: JobPosting) -> Optional[str]:
        origin = job.source.origin
        if origin in ATS_REQUERY_ORIGINS:
            url = job_api_url(origin, job.source.board_id, job.external_id)
            if url:
                return url
        return job.apply_url

    async def _fetch(self, url: str) -> FetchResponse:
        return await self.http.fetch(
            url,
            timeout=self.config.timeout,
            apply_jitter=False,
            raise_for_status=False,
            max_retries=0,
        )

    async def _request_status(self, job: JobPosting):
        """(verdict, http_status, reason, response_ms); verdict is 'active', 'expired' or 'unreachable'"""
        if job.source.origin == 'ashby' and job.source.board_id:
            return await self._check_ashby(job)

        url = self._check_url(job)
        if not url:
            return 'unreachable', None, 'no url to check', None

        try:
            response = await self._fetch(url)
        except ScrapingError as e:
            return 'unreachable', e.status_code, f"{e.kind}: {e.message}", None

        status = response.status_code
        if status in (404, 410):
            return 'expired', status, f"http {status}", response.elapsed_ms
        if 200 <= status < 300:
            if has_closed_marker(response.text):
                return 'expired', status, 'closed marker', response.elapsed_ms
            if is_generic_careers_redirect(url, response):
                return 'expired', status, f"redirected to {response.url}", response.elapsed_ms
            return 'active', status, 'listed', response.elapsed_ms
        return 'unreachable', status, f"http {status}", response.elapsed_ms

    async def _check_ashby(self, job: JobPosting):
        # Ashby has no per-job endpoint; look the job up in the board listing
        url = BOARD_ENDPOINTS['ashby'].format(board=job.source.board_id)
        try:
            response = await self._fetch(url)
        except ScrapingError as e:
            return 'unreachable', e.status_code, f"{e.kind}: {e.message}", None
        if response.status_code != 200:
            return 'unreachable', response.status_code, f"http {response.status_code}", response.elapsed_ms
        try:
            payload = response.json()
        except ScrapingError as e:
            return 'unreachable', response.status_code, e.message, response.elapsed_ms
        ids = {str(j.get('id')) for j in (payload.get('jobs') or []) if isinstance(j, dict)}
        if str(job.external_id) in ids:
            return 'active', 200, 'listed', response.elapsed_ms
        return 'expired', 200, 'not in board listing', response.elapsed_ms

    def evaluate(self, job: JobPosting, verdict: str) -> Dict[str, Any]:
        """Next (status, trust, failures) for a verdict"""
        cfg = self.config
        status = job.liveness_status
        trust = job.trust_score
        failures = job.consecutive_failures
        if verdict == 'expired':
            status = LivenessStatus.EXPIRED
        elif verdict == 'active':
            status = LivenessStatus.ACTIVE
            trust = min(cfg.trust_ceiling, trust + cfg.trust_step)
            failures = 0
        else:
            failures += 1
            if failures >= cfg.stale_after_failures and status != LivenessStatus.STALE \
                    and status != LivenessStatus.EXPIRED:
                status = LivenessStatus.STALE
                trust = max(0, trust - cfg.stale_penalty)
        return {'status': status, 'trust_score': trust, 'consecutive_failures': failures}

    async def check_liveness(self, job: JobPosting, now: Optional[datetime] = None) -> LivenessOutcome:
        """
        Check one job, persist the result when a store is configured and
        update the job object in place.
        """
        now = now or utcnow()
        started = time.time()
        verdict, http_status, reason, response_ms = await self._request_status(job)
        if response_ms is None:
            response_ms = int((time.time() - started) * 1000)

        previous = job.liveness_status
        nxt = self.evaluate(job, verdict)
        outcome = LivenessOutcome(
            job_id=job.id,
            previous_status=previous,
            status=nxt['status'],
            trust_score=nxt['trust_score'],
            consecutive_failures=nxt['consecutive_failures'],
            checked_at=now,
            http_status=http_status,
            reason=reason,
            response_ms=response_ms,
            reachable=verdict != 'unreachable',
        )

        job.liveness_status = outcome.status
        job.trust_score = outcome.trust_score
        job.consecutive_failures = outcome.consecutive_failures
        job.last_liveness_check = now

        log = logger.info if outcome.changed else logger.debug
        log(f"[liveness] {job.id or job.external_id}: {previous.value} -> {outcome.status.value} ({reason})")

        if self.store is not None and job.id:
            # psycopg2 blocks; keep it off the event loop
            await asyncio.to_thread(
                self.store.record_liveness, job.id, previous.value, outcome.status.value,
                outcome.trust_score, outcome.consecutive_failures, now,
                http_status=http_status, reason=reason, response_ms=response_ms,
            )

        if outcome.changed and outcome.status == LivenessStatus.EXPIRED:
            self.notifier.notify(NotificationEvent(type=JOB_EXPIRED, job_id=job.id,
                                                   payload={'reason': reason, 'title': job.title}))
        elif outcome.changed and outcome.status == LivenessStatus.STALE:
            self.notifier.notify(NotificationEvent(type=JOB_STALE, job_id=job.id,
                                                   payload={'failures': outcome.consecutive_failures}))
        return outcome


class LivenessService:
    """
    Periodic liveness sweep.

    Never overlaps with itself: an in-process lock plus `running` flag stops
    a second sweep in this process, and a `job_locks` row stops one in
    another process.
    """

    def __init__(
        self,
        store: JobStore,
        checker: LivenessChecker,
        ghost_scorer: Optional[GhostJobScorer] = None,
        config: Optional[LivenessConfig] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.store = store
        self.checker = checker
        self.ghost_scorer = ghost_scorer or GhostJobScorer()
        self.config = config or checker.config
        self.notifier = notifier or checker.notifier
        self.running = False
        self._lock = asyncio.Lock()
        self.semaphore = asyncio.Semaphore(max(1, self.config.batch_size))

    async def run_sweep(self) -> Dict[str, Any]:
        if self.running or self._lock.locked():
            logger.info("[liveness] Sweep already running, skipping")
            return {'skipped': True, 'reason': 'sweep already running'}

        async with self._lock:
            self.running = True
            try:
                if not await asyncio.to_thread(self.store.acquire_lock, SWEEP_LOCK_NAME):
                    logger.info("[liveness] Sweep lock held by another process, skipping")
                    return {'skipped': True, 'reason': 'locked by another process'}
                try:
                    return await self._sweep()
                finally:
                    await asyncio.to_thread(self.store.release_lock, SWEEP_LOCK_NAME)
            finally:
                self.running = False

    async def _check_guarded(self, job: JobPosting) -> LivenessOutcome:
        async with self.semaphore:
            return await self.checker.check_liveness(job)

    async def _sweep(self) -> Dict[str, Any]:
        start = time.time()
        summary = {
            'skipped': False,
            'past_due_expired': 0,
            'checked': 0,
            'active': 0,
            'expired': 0,
            'stale': 0,
            'unchanged': 0,
            'errors': 0,
            'ghost_rescored': 0,
        }

        for job_id in await asyncio.to_thread(self.store.expire_past_due):
            summary['past_due_expired'] += 1
            self.notifier.notify(NotificationEvent(type=JOB_EXPIRED, job_id=job_id,
                                                   payload={'reason': 'past expiry date'}))

        jobs = await asyncio.to_thread(self.store.load_jobs_due_for_check, self.config.sweep_limit)
        logger.info(f"[liveness] Sweep: {len(jobs)} jobs due for check")
        checked: List[JobPosting] = []

        batch_size = max(1, self.config.batch_size)
        for offset in range(0, len(jobs), batch_size):
            batch = jobs[offset:offset + batch_size]
            results = await asyncio.gather(*(self._check_guarded(j) for j in batch), return_exceptions=True)
            for job, result in zip(batch, results):
                if isinstance(result, BaseException):
                    summary['errors'] += 1
                    logger.error(f"[liveness] Check failed for {job.id}: {result}", exc_info=result)
                    continue
                summary['checked'] += 1
                checked.append(job)
                if not result.changed:
                    summary['unchanged'] += 1
                elif result.status == LivenessStatus.ACTIVE:
                    summary['active'] += 1
                elif result.status == LivenessStatus.EXPIRED:
                    summary['expired'] += 1
                elif result.status == LivenessStatus.STALE:
                    summary['stale'] += 1
            if offset + batch_size < len(jobs):
                await asyncio.sleep(self.config.batch_delay)

        for job in checked:
            if job.liveness_status == LivenessStatus.EXPIRED:
                continue
            ghost = self.ghost_scorer.score(job)
            if ghost.score != job.ghost_score or ghost.reasons != job.ghost_reasons:
                await asyncio.to_thread(self.store.update_ghost_score, job.id, ghost.score, ghost.reasons)
                job.ghost_score = ghost.score
                job.ghost_reasons = ghost.reasons
                summary['ghost_rescored'] += 1

        summary['duration_ms'] = int((time.time() - start) * 1000)
        logger.info(f"[liveness] Sweep complete: {summary}")
        return summary
