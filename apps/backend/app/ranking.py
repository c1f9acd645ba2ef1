"""
Candidate-to-job ranking.

final = 0.45*semantic + 0.25*recency + 0.20*liveness + 0.10*personalization

Jobs flagged likely-ghost, expired jobs and jobs whose liveness component is
below the floor are excluded, not ranked low.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from app.cache import TTLCache, make_key
from app.matching import (
    liveness_score,
    personalization_score,
    posting_age_days,
    recency_score,
    semantic_score,
)
from app.profiles import CandidateProfileSource
from core.config import RankingConfig
from core.models import (
    CandidateProfile,
    JobPosting,
    LivenessStatus,
    MatchResult,
    ScoreComponents,
    utcnow,
)
from pipeline.notify import NEW_JOB_FOR_CANDIDATE, NotificationEvent, Notifier
from pipeline.store import JobStore

logger = logging.getLogger(__name__)

MAX_EXPLAINED_SKILLS = 5


def combine(components: ScoreComponents, config: Optional[RankingConfig] = None) -> float:
    config = config or RankingConfig()
    return (config.semantic_weight * components.semantic
            + config.recency_weight * components.recency
            + config.liveness_weight * components.liveness
            + config.personalization_weight * components.personalization)


def exclusion_reason(job: JobPosting, config: RankingConfig) -> Optional[str]:
    if job.ghost_score >= config.likely_ghost_threshold:
        return f"likely ghost ({job.ghost_score})"
    if job.liveness_status == LivenessStatus.EXPIRED:
        return "expired"
    if liveness_score(job) < config.liveness_floor:
        return "below liveness floor"
    return None


def build_explanation(
    job: JobPosting,
    components: ScoreComponents,
    matched: List[str],
    preferences: List[str],
    now: datetime,
) -> str:
    """Human-readable summary of the strongest factors, best first."""
    factors = []

    if matched:
        shown = ', '.join(matched[:MAX_EXPLAINED_SKILLS])
        if len(matched) > MAX_EXPLAINED_SKILLS:
            shown += f" (+{len(matched) - MAX_EXPLAINED_SKILLS} more)"
        factors.append((components.semantic, f"Matches your skills: {shown}"))
    elif components.semantic >= 0.3:
        factors.append((components.semantic, "Related to your experience"))

    days = posting_age_days(job, now)
    if days is not None:
        if days < 1:
            factors.append((components.recency, "Posted today"))
        elif days < 8:
            factors.append((components.recency, f"Posted {int(days)} day{'s' if int(days) != 1 else ''} ago"))

    if job.liveness_status == LivenessStatus.ACTIVE:
        factors.append((components.liveness, f"Verified open (trust {job.trust_score})"))

    if preferences:
        factors.append((components.personalization, f"Fits your {' and '.join(preferences)} preferences"))

    factors.sort(key=lambda f: -f[0])
    top_reasons = [text for _, text in factors[:3]]
    return '; '.join(top_reasons) if top_reasons else "General match"


def score_job(
    profile: CandidateProfile,
    job: JobPosting,
    config: Optional[RankingConfig] = None,
    now: Optional[datetime] = None,
) -> MatchResult:
    """Score one job for one candidate; no exclusion rules applied."""
    config = config or RankingConfig()
    now = now or utcnow()

    semantic, matched, missing = semantic_score(profile, job)
    personalization, preferences = personalization_score(profile, job)
    components = ScoreComponents(
        semantic=semantic,
        recency=recency_score(job, now, config.recency_half_life_days, config.recency_floor),
        liveness=liveness_score(job),
        personalization=personalization,
    )
    final = combine(components, config)
    return MatchResult(
        candidate_id=profile.candidate_id,
        job_id=job.id or job.external_id or job.identity_hash,
        final_score=round(final, 4),
        components=components,
        explanation=build_explanation(job, components, matched, preferences, now),
        matched_skills=matched,
        missing_skills=missing,
        trust_score=job.trust_score,
    )


def rank(
    profile: CandidateProfile,
    jobs: Iterable[JobPosting],
    limit: Optional[int] = None,
    config: Optional[RankingConfig] = None,
    now: Optional[datetime] = None,
) -> List[MatchResult]:
    """
    Rank a job pool for a candidate.

    Sorted by final score, then recency, then trust score, then job id.
    """
    config = config or RankingConfig()
    now = now or utcnow()

    results = []
    excluded = 0
    for job in jobs:
        reason = exclusion_reason(job, config)
        if reason:
            excluded += 1
            logger.debug(f"[ranking] Excluding {job.id}: {reason}")
            continue
        results.append(score_job(profile, job, config, now))

    results.sort(key=lambda r: (-r.final_score, -r.components.recency, -r.trust_score, r.job_id))
    if excluded:
        logger.debug(f"[ranking] {profile.candidate_id}: excluded {excluded} job(s)")
    if limit is not None:
        results = results[:limit]
    return results


class RankingService:
    """Store-backed ranking with a bounded, time-boxed result cache"""

    def __init__(
        self,
        store: JobStore,
        profiles: CandidateProfileSource,
        config: Optional[RankingConfig] = None,
        cache: Optional[TTLCache] = None,
    ):
        self.store = store
        self.profiles = profiles
        self.config = config or RankingConfig()
        self.cache = cache or TTLCache(self.config.cache_ttl_seconds, self.config.cache_max_entries)

    def get_matches(
        self,
        candidate_id: str,
        filters: Optional[Dict[str, Any]] = None,
        limit: int = 20,
    ) -> Optional[List[MatchResult]]:
        """
        Ranked matches for a candidate, or None if the candidate is unknown.

        Cached per candidate_id + filters; `limit` slices the cached list.
        """
        key = make_key(candidate_id, filters or {})
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug(f"[ranking] Cache hit for {candidate_id}")
            return cached[:limit]

        profile = self.profiles.get_profile(candidate_id)
        if profile is None:
            return None

        pool = self.store.load_rankable_jobs(
            filters,
            limit=self.config.pool_limit,
            max_ghost_score=self.config.likely_ghost_threshold,
        )
        results = rank(profile, pool, config=self.config)
        self.cache.set(key, results)
        logger.info(f"[ranking] Ranked {len(pool)} jobs for {candidate_id}: {len(results)} results")
        return results[:limit]


def notify_new_matches(
    profile: CandidateProfile,
    jobs: Sequence[JobPosting],
    notifier: Notifier,
    min_score: float = 0.6,
    config: Optional[RankingConfig] = None,
) -> int:
    """Emit new_job_for_candidate for newly ingested jobs ranking at or above min_score."""
    sent = 0
    for result in rank(profile, jobs, config=config):
        if result.final_score < min_score:
            break
        delivered = notifier.notify(NotificationEvent(
            type=NEW_JOB_FOR_CANDIDATE,
            job_id=result.job_id,
            candidate_id=profile.candidate_id,
            payload={'score': result.final_score, 'explanation': result.explanation},
        ))
        if delivered:
            sent += 1
    return sent
