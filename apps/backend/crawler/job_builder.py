"""
Turns raw job dicts produced by strategies into normalized ScrapedJob objects.
"""
import hashlib
import logging
from typing import Any, Dict, List, Optional

from core.models import CompanyConfig, JobSource, ScrapedJob
from core.normalize import (
    clean_description,
    extract_requirements,
    norm_employment_type,
    norm_experience_level,
    norm_work_type,
    normalize_location,
    normalize_title,
    parse_date,
    parse_salary,
)
from core.skills import extract_skills, normalize_skills

logger = logging.getLogger(__name__)


def _external_id(raw: Dict[str, Any], apply_url: Optional[str]) -> Optional[str]:
    ext = raw.get('external_id')
    if ext not in (None, ''):
        return str(ext)
    if apply_url:
        return hashlib.sha256(apply_url.encode('utf-8')).hexdigest()[:24]
    return None


def build_job(
    raw: Dict[str, Any],
    company: CompanyConfig,
    method: str,
    origin: Optional[str] = None,
    source_url: Optional[str] = None,
    board_id: Optional[str] = None,
    confidence: float = 1.0,
) -> Optional[ScrapedJob]:
    """
    Normalize one raw job.

    Returns None for malformed records (no title, or neither a URL nor an id).
    """
    title = (raw.get('title') or '').strip()
    if not title or len(title) < 3:
        return None

    apply_url = (raw.get('apply_url') or '').strip() or None
    external_id = _external_id(raw, apply_url)
    if not external_id:
        return None

    description = clean_description(raw.get('description'))
    location = normalize_location(raw.get('location'), remote_hint=bool(raw.get('remote')))

    explicit_skills = raw.get('skills') or []
    if isinstance(explicit_skills, str):
        explicit_skills = [s for s in explicit_skills.split(',')]
    skills = normalize_skills(list(explicit_skills) + extract_skills(description))

    salary = parse_salary(text=raw.get('salary_text'), fields=raw.get('salary'))

    job = ScrapedJob(
        title=title,
        normalized_title=normalize_title(title),
        company=(raw.get('company') or company.name).strip(),
        source=JobSource(
            origin=origin or 'career_page',
            source_url=source_url or company.career_page_url or '',
            extraction_method=method,
            board_id=board_id,
        ),
        location=location,
        description=description,
        requirements=extract_requirements(description, skills),
        skills=skills,
        work_type=norm_work_type(raw.get('work_type'), location),
        employment_type=norm_employment_type(raw.get('employment_type')),
        experience_level=norm_experience_level(title, description),
        salary=salary,
        external_id=external_id,
        apply_url=apply_url,
        posted_at=parse_date(raw.get('posted_at')),
        valid_through=parse_date(raw.get('valid_through')),
        updated_at=parse_date(raw.get('updated_at')),
        recruiter_email=raw.get('recruiter_email'),
        department=raw.get('department'),
        confidence=confidence,
    )
    return job


def build_jobs(raws: List[Dict[str, Any]], company: CompanyConfig, method: str, **kwargs) -> List[ScrapedJob]:
    jobs = []
    dropped = 0
    for raw in raws:
        job = build_job(raw, company, method, **kwargs)
        if job is None:
            dropped += 1
            continue
        jobs.append(job)
    if dropped:
        logger.debug(f"[job_builder] Dropped {dropped} malformed jobs for {company.id} ({method})")
    return jobs
