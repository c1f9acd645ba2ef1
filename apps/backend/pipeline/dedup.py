"""
Job deduplication.

Collapses records describing the same job, checked in order of increasing
cost:
1. identity hash (normalized title | company | normalized location)
2. canonical apply URL (tracking parameters stripped)
3. edit-distance similarity, only against jobs posted within a time window

Jobs are processed in a fixed preference order (source authority, then
most recent posting, then identity hash), so the first job of every cluster
is its canonical and running the dedup again over the canonicals is a no-op.
"""
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Dict, List, Optional, Sequence, Tuple
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from core.config import DedupConfig
from core.models import METHOD_AUTHORITY, DuplicateGroup, ScrapedJob
from core.normalize import normalize_company, normalize_title

logger = logging.getLogger(__name__)

TRACKING_PARAMS = {
    'ref', 'source', 'src', 'gh_src', 'gh_jid_src', 'lever-source', 'lever-origin',
    'fbclid', 'gclid', 'msclkid', 'mc_cid', 'mc_eid', 'trk', 'referrer', 'campaign',
}

REASON_EXACT = 'exact_hash'
REASON_URL = 'url_match'
REASON_FUZZY = 'fuzzy_match'


def canonicalize_url(url: Optional[str]) -> Optional[str]:
    """
    Canonical form of an apply URL.

    Lower-cased scheme and host without "www.", no fragment, no trailing
    slash, tracking parameters removed and remaining parameters sorted.
    """
    if not url:
        return None
    parsed = urlparse(url.strip())
    if not parsed.netloc:
        return None
    host = parsed.netloc.lower()
    if host.startswith('www.'):
        host = host[4:]
    path = parsed.path.rstrip('/') or ''
    query = sorted(
        (k, v) for k, v in parse_qsl(parsed.query, keep_blank_values=True)
        if k.lower() not in TRACKING_PARAMS and not k.lower().startswith('utm_')
    )
    return urlunparse(('https', host, path, '', urlencode(query), ''))


def levenshtein(a: str, b: str) -> int:
    """Edit distance (insert, delete, substitute)"""
    if a == b:
        return 0
    if len(a) < len(b):
        a, b = b, a
    if not b:
        return len(a)
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, 1):
        current = [i]
        for j, cb in enumerate(b, 1):
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (ca != cb),
            ))
        previous = current
    return previous[-1]


def similarity(a: str, b: str) -> float:
    """1 - distance / longest length, in [0, 1]"""
    if not a and not b:
        return 1.0
    return 1.0 - levenshtein(a, b) / max(len(a), len(b))


def fuzzy_key(job: ScrapedJob) -> str:
    title = job.normalized_title or normalize_title(job.title)
    location = (job.location.normalized or job.location.raw or '').lower().strip()
    return f"{title}|{normalize_company(job.company)}|{location}"


def record_key(job: ScrapedJob) -> Tuple[Optional[str], str]:
    """The (external_id, source) pair a stored row is unique on"""
    return job.external_id, job.source_key


def authority(job: ScrapedJob) -> int:
    method = job.source.extraction_method if job.source else None
    return METHOD_AUTHORITY.get(method, 0)


def preference_key(job: ScrapedJob):
    """Sort key: most authoritative source, then newest posting, then identity hash"""
    posted = job.reference_time.timestamp() if job.reference_time else 0.0
    return (-authority(job), -posted, job.identity_hash)


@dataclass
class DedupResult:
    unique: List[ScrapedJob] = field(default_factory=list)
    groups: List[DuplicateGroup] = field(default_factory=list)
    # Every persisted job of the context by record_key, canonical or not
    persisted: Dict[Tuple[Optional[str], str], ScrapedJob] = field(default_factory=dict)

    @property
    def duplicate_count(self) -> int:
        return sum(len(g.duplicates) for g in self.groups)


class _CanonicalIndex:
    """Lookup structures over the canonicals chosen so far"""

    def __init__(self):
        self.by_hash: Dict[str, ScrapedJob] = {}
        self.by_url: Dict[str, ScrapedJob] = {}
        self.by_day: Dict[date, List[ScrapedJob]] = defaultdict(list)
        self.keys: Dict[int, str] = {}

    def add(self, job: ScrapedJob):
        self.by_hash.setdefault(job.identity_hash, job)
        url = canonicalize_url(job.apply_url)
        if url:
            self.by_url.setdefault(url, job)
        self.by_day[job.reference_time.date()].append(job)
        self.keys[id(job)] = fuzzy_key(job)

    def within_window(self, job: ScrapedJob, window_days: int):
        day = job.reference_time.date()
        for offset in range(-window_days, window_days + 1):
            for other in self.by_day.get(day + timedelta(days=offset), ()):
                # Day buckets are coarse; enforce the exact window
                if abs((other.reference_time - job.reference_time).total_seconds()) <= window_days * 86400:
                    yield other


class Deduplicator:
    """Groups duplicate scraped jobs and picks one canonical per group"""

    def __init__(self, config: Optional[DedupConfig] = None):
        self.config = config or DedupConfig()

    def deduplicate(
        self,
        jobs: Sequence[ScrapedJob],
        existing: Optional[Sequence[ScrapedJob]] = None,
    ) -> DedupResult:
        """
        Deduplicate a batch.

        Args:
            jobs: Scraped jobs of this batch
            existing: Already persisted jobs; they seed the canonical set so a
                re-scraped job groups under its stored record

        Returns:
            DedupResult with the new canonicals (unique), every group that
            received duplicates and the persisted jobs by record key.
            Persisted canonicals never appear in unique.
        """
        index = _CanonicalIndex()
        groups: Dict[int, DuplicateGroup] = {}
        persisted = {record_key(job): job for job in existing or []}

        for job in sorted(existing or [], key=preference_key):
            if self._match(job, index) is None:
                index.add(job)

        unique: List[ScrapedJob] = []
        for job in sorted(jobs, key=preference_key):
            match = self._match(job, index)
            if match is None:
                index.add(job)
                unique.append(job)
                continue
            canonical, confidence, reason = match
            group = groups.get(id(canonical))
            if group is None:
                group = DuplicateGroup(canonical=canonical, confidence=confidence, reason=reason)
                groups[id(canonical)] = group
            else:
                # A group is only as certain as its weakest merge
                if confidence < group.confidence:
                    group.confidence = confidence
                    group.reason = reason
            group.duplicates.append(job)

        result = DedupResult(unique=unique, groups=list(groups.values()), persisted=persisted)
        logger.info(
            f"[dedup] {len(jobs)} jobs -> {len(unique)} unique, {result.duplicate_count} duplicates "
            f"in {len(result.groups)} groups (existing context: {len(persisted)})"
        )
        return result

    def _match(self, job: ScrapedJob, index: _CanonicalIndex):
        """(canonical, confidence, reason) for the first matching canonical, or None"""
        canonical = index.by_hash.get(job.identity_hash)
        if canonical is not None:
            return canonical, 1.0, REASON_EXACT

        url = canonicalize_url(job.apply_url)
        if url and url in index.by_url:
            return index.by_url[url], 0.95, REASON_URL

        key = fuzzy_key(job)
        best = None
        best_score = 0.0
        for other in index.within_window(job, self.config.window_days):
            score = similarity(key, index.keys[id(other)])
            if score >= self.config.fuzzy_threshold and score > best_score:
                best, best_score = other, score
        if best is not None:
            logger.debug(f"[dedup] Fuzzy match {best_score:.2f}: '{job.title}' ~ '{best.title}'")
            return best, round(best_score, 4), REASON_FUZZY
        return None
