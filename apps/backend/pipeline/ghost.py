"""
Ghost-job scoring.

A rule-based accumulator: each triggered signal adds its configured weight
and appends a reason code. The total is clamped to [0, 100] and mapped to a
band (clean / suspicious / likely_ghost). Weights are heuristics and live in
GhostConfig.
"""
import re
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from core.config import GhostConfig
from core.models import GhostBand, JobPosting, LivenessStatus, utcnow
from core.normalize import normalize_title

logger = logging.getLogger(__name__)

BOILERPLATE_PHRASES = [
    'fast-paced environment', 'fast paced environment', 'competitive salary',
    'competitive compensation', 'self-starter', 'team player', 'wear many hats',
    'rockstar', 'ninja', 'dynamic environment', 'work hard, play hard',
    'always looking for talented', 'talent community', 'talent pool',
    'future opportunities', 'general application', 'multiple openings',
    'various positions', 'submit your resume for consideration', 'excellent communication skills',
]

GENERIC_TITLE_PATTERN = re.compile(
    r'^(?:general application|open application|various(?: positions| roles)?|multiple (?:positions|roles|openings)'
    r'|talent (?:community|pool|network)|future opportunities|team member|staff|associate|employee'
    r'|job opening|opportunity|career opportunity|we are hiring|hiring now|join our team)$'
)

FREE_MAIL_DOMAINS = {
    'gmail.com', 'googlemail.com', 'yahoo.com', 'hotmail.com', 'outlook.com', 'live.com',
    'aol.com', 'icloud.com', 'me.com', 'protonmail.com', 'proton.me', 'gmx.com', 'mail.com',
    'yandex.com', 'zoho.com',
}


@dataclass
class GhostScore:
    score: int
    band: GhostBand
    reasons: List[str] = field(default_factory=list)


def is_generic_title(title: Optional[str]) -> bool:
    normalized = normalize_title(title)
    return bool(GENERIC_TITLE_PATTERN.match(normalized))


def boilerplate_hits(description: Optional[str]) -> int:
    text = (description or '').lower()
    return sum(1 for phrase in BOILERPLATE_PHRASES if phrase in text)


def email_domain(email: Optional[str]) -> Optional[str]:
    if not email or '@' not in email:
        return None
    return email.rsplit('@', 1)[1].strip().lower().rstrip('.') or None


def domains_match(email_dom: str, company_domain: str) -> bool:
    company = company_domain.lower().strip()
    if company.startswith('www.'):
        company = company[4:]
    return email_dom == company or email_dom.endswith('.' + company)


class GhostJobScorer:
    """Scores how likely a posting is not being actively filled"""

    def __init__(self, config: Optional[GhostConfig] = None):
        self.config = config or GhostConfig()

    def band_for(self, score: int) -> GhostBand:
        if score >= self.config.likely_ghost_threshold:
            return GhostBand.LIKELY_GHOST
        if score >= self.config.suspicious_threshold:
            return GhostBand.SUSPICIOUS
        return GhostBand.CLEAN

    def _age_days(self, job: JobPosting, now: datetime) -> Optional[float]:
        posted = job.posted_at or job.first_seen_at or job.scraped_at
        if posted is None:
            return None
        return (now - posted).total_seconds() / 86400

    def _recently_confirmed(self, job: JobPosting, now: datetime) -> bool:
        return (
            job.liveness_status == LivenessStatus.ACTIVE
            and job.last_liveness_check is not None
            and now - job.last_liveness_check <= timedelta(days=self.config.confirmation_days)
        )

    def score(self, job: JobPosting, now: Optional[datetime] = None) -> GhostScore:
        """
        Score one job.

        Returns:
            GhostScore with the clamped score, its band and the reason codes in
            evaluation order
        """
        now = now or utcnow()
        cfg = self.config
        reasons: List[str] = []
        age = self._age_days(job, now)

        if age is not None and age > cfg.stale_days and not self._recently_confirmed(job, now):
            reasons.append('stale_unconfirmed')

        description = (job.description or '').strip()
        if len(description) < cfg.min_description_chars or boilerplate_hits(description) >= cfg.boilerplate_hits:
            reasons.append('boilerplate_description')

        if not job.salary.is_present() and is_generic_title(job.title):
            reasons.append('no_salary_generic_title')

        if job.repost_count >= cfg.repost_threshold:
            reasons.append('reposted')

        recruiter_domain = email_domain(job.recruiter_email)
        if recruiter_domain:
            if recruiter_domain in FREE_MAIL_DOMAINS:
                reasons.append('recruiter_domain_mismatch')
            elif job.company_domain and not domains_match(recruiter_domain, job.company_domain):
                reasons.append('recruiter_domain_mismatch')

        if (age is not None and age > cfg.engagement_min_days
                and job.view_count >= cfg.engagement_min_views
                and job.application_count / job.view_count < cfg.engagement_min_rate):
            reasons.append('low_engagement')

        total = sum(cfg.weights.get(code, 0) for code in reasons)
        score = max(0, min(100, total))
        band = self.band_for(score)
        if band != GhostBand.CLEAN:
            logger.debug(f"[ghost] {job.external_id}: {score} ({band.value}) {reasons}")
        return GhostScore(score=score, band=band, reasons=reasons)
