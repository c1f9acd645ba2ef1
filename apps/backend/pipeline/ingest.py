"""
Ingestion of deduplicated jobs into the store.

Seeds trust from the source, sets the initial liveness state and expiry,
scores ghost risk and upserts each job in its own transaction. Stored jobs
that a scrape found again get their content rewritten or their freshness
refreshed, and a job reposted under a new id has its repost count raised.
"""

import logging
from collections import Counter
from datetime import timedelta
from typing import Dict, List, Optional, Sequence, Tuple

from core.models import DuplicateGroup, JobPosting, LivenessStatus, ScrapedJob
from pipeline.dedup import authority, record_key
from pipeline.ghost import GhostJobScorer
from pipeline.notify import JOB_CREATED, NotificationEvent, Notifier, NullNotifier
from pipeline.store import JobStore

logger = logging.getLogger(__name__)

# Initial trust by ATS origin, then by extraction method
ORIGIN_TRUST = {
    'greenhouse': 95,
    'lever': 95,
    'ashby': 90,
    'smartrecruiters': 90,
}
METHOD_TRUST = {
    'jsonld': 75,
    'data_island': 70,
    'browser': 65,
    'dom': 60,
    'llm': 50,
}
DEFAULT_TRUST = 50
DEFAULT_EXPIRY_DAYS = 60

# Platform state of a stored row; a rewrite scores ghost risk against it
CARRIED_FIELDS = (
    'repost_count', 'liveness_status', 'trust_score', 'last_liveness_check',
    'first_seen_at', 'view_count', 'application_count',
)


def seed_trust(job: ScrapedJob) -> int:
    if job.source.origin in ORIGIN_TRUST:
        return ORIGIN_TRUST[job.source.origin]
    return METHOD_TRUST.get(job.source.extraction_method, DEFAULT_TRUST)


class JobIngestor:
    """Writes scraped jobs to the store"""

    def __init__(
        self,
        store: JobStore,
        ghost_scorer: Optional[GhostJobScorer] = None,
        notifier: Optional[Notifier] = None,
        expiry_days: int = DEFAULT_EXPIRY_DAYS,
    ):
        self.store = store
        self.ghost_scorer = ghost_scorer or GhostJobScorer()
        self.notifier = notifier or NullNotifier()
        self.expiry_days = expiry_days

    def prepare(self, job: ScrapedJob, company_domain: Optional[str] = None,
                industry: Optional[str] = None, **overrides) -> JobPosting:
        """Turn a scraped job into the posting that will be written."""
        values = {
            'liveness_status': LivenessStatus.UNKNOWN,
            'trust_score': seed_trust(job),
            'company_domain': company_domain,
            'industry': industry,
        }
        values.update(overrides)
        posting = JobPosting.from_scraped(job, **values)
        if job.valid_through:
            posting.expires_at = job.valid_through
        else:
            posting.expires_at = job.reference_time + timedelta(days=self.expiry_days)
        ghost = self.ghost_scorer.score(posting)
        posting.ghost_score = ghost.score
        posting.ghost_reasons = ghost.reasons
        return posting

    def ingest(
        self,
        jobs: Sequence[ScrapedJob],
        groups: Optional[Sequence[DuplicateGroup]] = None,
        company_domains: Optional[Dict[str, str]] = None,
        **kwargs,
    ) -> Dict[str, int]:
        summary, _ = self.ingest_batch(jobs, groups, company_domains, **kwargs)
        return summary

    def ingest_batch(
        self,
        jobs: Sequence[ScrapedJob],
        groups: Optional[Sequence[DuplicateGroup]] = None,
        company_domains: Optional[Dict[str, str]] = None,
        company_industries: Optional[Dict[str, str]] = None,
        persisted: Optional[Dict[Tuple[Optional[str], str], ScrapedJob]] = None,
    ) -> Tuple[Dict[str, int], List[JobPosting]]:
        """
        Upsert new jobs and bring stored jobs a scrape found again up to date.

        Args:
            jobs: Deduplicated jobs (DedupResult.unique)
            groups: Duplicate groups. For a group whose canonical is a stored
                JobPosting, duplicates carrying a stored (external_id, source)
                are written over their row, a same-source copy under a new
                external_id is stored as a repost, and the first duplicate
                from a more authoritative method is stored as well. The
                canonical is touched when its own row was not rewritten.
            company_domains: company name -> domain, for recruiter checks
            company_industries: company name -> industry, for personalization
            persisted: Stored jobs by (external_id, source) (DedupResult.persisted)

        Returns:
            (counts {inserted, updated, refreshed, reposts, touched, failed, total},
             newly inserted postings)
        """
        lookups = (
            {k.lower(): v for k, v in (company_domains or {}).items()},
            {k.lower(): v for k, v in (company_industries or {}).items()},
        )
        counts = Counter()
        created: List[JobPosting] = []

        for job in jobs:
            posting, status = self._write(job, lookups)
            if status is None:
                counts['failed'] += 1
            elif status['action'] == 'inserted':
                counts['inserted'] += 1
                created.append(posting)
            else:
                counts['updated'] += 1

        self._refresh_groups(groups or [], persisted or {}, lookups, counts)

        for posting in created:
            self.notifier.notify(NotificationEvent(
                type=JOB_CREATED,
                job_id=posting.id,
                payload={'title': posting.title, 'company': posting.company, 'source': posting.source_key},
            ))

        summary = {
            'inserted': counts['inserted'],
            'updated': counts['updated'],
            'refreshed': counts['refreshed'],
            'reposts': counts['reposts'],
            'touched': counts['touched'],
            'failed': counts['failed'],
            'total': len(jobs),
        }
        logger.info(f"[ingest] {summary}")
        return summary, created

    def _write(self, job: ScrapedJob, lookups, **overrides):
        """(posting, store status), or (posting or None, None) on failure"""
        domains, industries = lookups
        company = job.company.lower()
        try:
            posting = self.prepare(job, domains.get(company), industries.get(company), **overrides)
        except Exception as e:
            logger.error(f"[ingest] Could not prepare job {job.external_id}: {e}", exc_info=True)
            return None, None

        status = self.store.upsert_job(posting)
        if not status['success']:
            logger.warning(f"[ingest] Failed to store {job.source_key}/{job.external_id}: {status['error']}")
            return posting, None
        posting.id = status['job_id']
        return posting, status

    def _refresh_groups(self, groups: Sequence[DuplicateGroup],
                        persisted: Dict[Tuple[Optional[str], str], ScrapedJob], lookups, counts: Counter):
        for group in groups:
            canonical = group.canonical
            if not isinstance(canonical, JobPosting) or not canonical.id:
                continue
            canonical_key = record_key(canonical)
            canonical_rewritten = False
            superseded = False

            for duplicate in group.duplicates:
                key = record_key(duplicate)
                stored = canonical if key == canonical_key else persisted.get(key)
                if stored is not None:
                    outcome = 'refreshed'
                    overrides = {f: getattr(stored, f) for f in CARRIED_FIELDS if hasattr(stored, f)}
                elif (duplicate.source_key == canonical.source_key
                      and duplicate.identity_hash == canonical.identity_hash):
                    outcome = 'reposts'
                    overrides = {'repost_count': canonical.repost_count + 1}
                    logger.info(f"[ingest] {canonical.id} reposted as {key[1]}/{key[0]} "
                                f"(repost {overrides['repost_count']})")
                elif not superseded and authority(duplicate) > authority(canonical):
                    outcome = 'refreshed'
                    overrides = {}
                    superseded = True
                else:
                    continue

                _, status = self._write(duplicate, lookups, **overrides)
                if status is None:
                    counts['failed'] += 1
                    continue
                counts[outcome] += 1
                if key == canonical_key:
                    canonical_rewritten = True

            if not canonical_rewritten:
                try:
                    if self.store.touch_seen(canonical.id):
                        counts['touched'] += 1
                except Exception as e:
                    logger.error(f"[ingest] Failed to touch job {canonical.id}: {e}")
