"""
Match scoring components.

Each component is normalized to [0, 1]:
- semantic: skill coverage, title affinity and experience-level fit
- recency: exponential decay of posting age, floored
- liveness: verification status scaled by trust
- personalization: candidate preferences beyond skills
"""
import re
import logging
from datetime import datetime
from difflib import SequenceMatcher
from typing import List, Optional, Tuple

from core.models import CandidateProfile, JobPosting, LivenessStatus
from core.normalize import normalize_title
from core.skills import normalize_skill, normalize_skills, skills_match

logger = logging.getLogger(__name__)

COVERAGE_WEIGHT = 0.7
TITLE_WEIGHT = 0.2
EXPERIENCE_WEIGHT = 0.1

LIVENESS_BASE = {
    LivenessStatus.ACTIVE: 1.0,
    LivenessStatus.UNKNOWN: 0.6,
    LivenessStatus.STALE: 0.15,
    LivenessStatus.EXPIRED: 0.0,
}

LEVEL_ORDER = {'entry': 0, 'mid': 1, 'senior': 2, 'lead': 3, 'executive': 4}


def years_to_level(years: Optional[float]) -> Optional[str]:
    if years is None:
        return None
    if years < 2:
        return 'entry'
    if years < 5:
        return 'mid'
    if years < 8:
        return 'senior'
    if years < 12:
        return 'lead'
    return 'executive'


def _mentioned(skill: str, text: str) -> bool:
    core = re.sub(r'\.(js|ts|net)$', '', skill)
    pattern = rf'(?<![a-z0-9+#]){re.escape(core)}(?:\.(?:js|ts|net))?(?![a-z0-9+#])'
    return re.search(pattern, text) is not None


def skill_coverage(profile: CandidateProfile, job: JobPosting) -> Tuple[float, List[str], List[str]]:
    """
    Share of the job's skills the candidate covers.

    Returns:
        (coverage, matched_skills, missing_skills)
    """
    candidate = normalize_skills(profile.skills)
    job_skills = normalize_skills(job.skills)
    if not candidate:
        return 0.0, [], job_skills

    if job_skills:
        matched = [s for s in job_skills if any(skills_match(s, c) for c in candidate)]
        missing = [s for s in job_skills if s not in matched]
        return len(matched) / len(job_skills), matched, missing

    # No structured skills: look for the candidate's skills in the text
    text = f"{job.title}\n{job.description or ''}".lower()
    matched = [c for c in candidate if _mentioned(normalize_skill(c), text)]
    return min(1.0, len(matched) / len(candidate)), matched, []


def title_affinity(profile: CandidateProfile, job: JobPosting) -> float:
    job_title = job.normalized_title or normalize_title(job.title)
    if not profile.titles or not job_title:
        return 0.0
    job_tokens = set(job_title.split())
    best = 0.0
    for title in profile.titles:
        wanted = normalize_title(title)
        if not wanted:
            continue
        tokens = set(wanted.split())
        overlap = len(tokens & job_tokens) / len(tokens | job_tokens)
        ratio = SequenceMatcher(None, wanted, job_title).ratio()
        best = max(best, overlap, ratio)
    return best


def experience_fit(profile: CandidateProfile, job: JobPosting) -> float:
    candidate_level = profile.experience_level or years_to_level(profile.years_experience)
    if not candidate_level or not job.experience_level:
        return 0.5
    a = LEVEL_ORDER.get(candidate_level)
    b = LEVEL_ORDER.get(job.experience_level)
    if a is None or b is None:
        return 0.5
    gap = abs(a - b)
    if gap == 0:
        return 1.0
    if gap == 1:
        return 0.5
    return 0.0


def semantic_score(profile: CandidateProfile, job: JobPosting) -> Tuple[float, List[str], List[str]]:
    coverage, matched, missing = skill_coverage(profile, job)
    score = (COVERAGE_WEIGHT * coverage
             + TITLE_WEIGHT * title_affinity(profile, job)
             + EXPERIENCE_WEIGHT * experience_fit(profile, job))
    return min(1.0, score), matched, missing


def posting_age_days(job: JobPosting, now: datetime) -> Optional[float]:
    posted = job.posted_at or job.first_seen_at
    if posted is None:
        return None
    return max(0.0, (now - posted).total_seconds() / 86400)


def recency_score(job: JobPosting, now: datetime, half_life_days: float = 14.0, floor: float = 0.1) -> float:
    """Halves every half_life_days; never below floor. Unknown dates score the floor."""
    days = posting_age_days(job, now)
    if days is None:
        return floor
    return max(floor, 0.5 ** (days / half_life_days))


def liveness_score(job: JobPosting) -> float:
    base = LIVENESS_BASE.get(job.liveness_status, 0.0)
    trust = max(0, min(100, job.trust_score or 0))
    return base * (0.5 + 0.5 * trust / 100)


def personalization_score(profile: CandidateProfile, job: JobPosting) -> Tuple[float, List[str]]:
    """
    Mean over the preferences the candidate has set; 0.5 when none are set.

    Returns:
        (score, names of satisfied preferences)
    """
    scores = []
    satisfied = []

    if profile.preferred_locations:
        wanted = [p.lower().strip() for p in profile.preferred_locations if p]
        where = f"{job.location.normalized or ''} {job.location.raw or ''}".lower()
        hit = (job.location.is_remote and 'remote' in wanted) or any(w and w in where for w in wanted)
        scores.append(1.0 if hit else 0.0)
        if hit:
            satisfied.append('location')

    if profile.preferred_work_types:
        if job.work_type is None:
            scores.append(0.5)
        else:
            hit = job.work_type in [w.lower() for w in profile.preferred_work_types]
            scores.append(1.0 if hit else 0.0)
            if hit:
                satisfied.append('work type')

    if profile.salary_min is not None or profile.salary_max is not None:
        job_min = job.salary.yearly_min if job.salary.yearly_min is not None else job.salary.yearly_max
        job_max = job.salary.yearly_max if job.salary.yearly_max is not None else job.salary.yearly_min
        if job_min is None:
            scores.append(0.5)
        else:
            want_min = profile.salary_min if profile.salary_min is not None else 0
            want_max = profile.salary_max if profile.salary_max is not None else float('inf')
            hit = job_max >= want_min and job_min <= want_max
            scores.append(1.0 if hit else 0.0)
            if hit:
                satisfied.append('salary')

    if profile.industries:
        if not job.industry:
            scores.append(0.5)
        else:
            hit = job.industry.lower() in [i.lower() for i in profile.industries]
            scores.append(1.0 if hit else 0.0)
            if hit:
                satisfied.append('industry')

    if not scores:
        return 0.5, []
    return sum(scores) / len(scores), satisfied
