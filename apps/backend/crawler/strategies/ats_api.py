"""
Direct ATS API strategy.

Calls the public job-board APIs of known applicant tracking systems. This is
the fastest and most reliable source when a company's integration is known.
"""
import html
import logging
from typing import Any, Dict, List, Optional

from core.errors import ErrorKind, ScrapingError
from core.models import CompanyConfig, ExtractionMethod, SUPPORTED_ATS
from crawler.job_builder import build_jobs
from crawler.strategies.base import CompanyRun, ExtractionStrategy, StrategyOutcome

logger = logging.getLogger(__name__)

BOARD_ENDPOINTS = {
    'greenhouse': 'https://boards-api.greenhouse.io/v1/boards/{board}/jobs?content=true',
    'lever': 'https://api.lever.co/v0/postings/{board}?mode=json',
    'ashby': 'https://api.ashbyhq.com/posting-api/job-board/{board}?includeCompensation=true',
    'smartrecruiters': 'https://api.smartrecruiters.com/v1/companies/{board}/postings',
}

# Per-job endpoints used by liveness re-checks
JOB_ENDPOINTS = {
    'greenhouse': 'https://boards-api.greenhouse.io/v1/boards/{board}/jobs/{job_id}',
    'lever': 'https://api.lever.co/v0/postings/{board}/{job_id}',
    'smartrecruiters': 'https://api.smartrecruiters.com/v1/companies/{board}/postings/{job_id}',
}

SMARTRECRUITERS_PAGE_SIZE = 100
SMARTRECRUITERS_MAX_PAGES = 10


def job_api_url(ats_type: Optional[str], board_id: Optional[str], job_id: Optional[str]) -> Optional[str]:
    """Per-job API URL for an ATS-sourced job, if the provider exposes one"""
    template = JOB_ENDPOINTS.get((ats_type or '').lower())
    if not template or not board_id or not job_id:
        return None
    return template.format(board=board_id, job_id=job_id)


def _greenhouse_jobs(payload: Dict[str, Any]) -> List[Dict[str, Any]]:
    raws = []
    for job in payload.get('jobs', []) or []:
        location = (job.get('location') or {}).get('name')
        departments = job.get('departments') or []
        raws.append({
            'external_id': job.get('id'),
            'title': job.get('title'),
            'location': location,
            'description': html.unescape(job.get('content') or ''),
            'apply_url': job.get('absolute_url'),
            'posted_at': job.get('first_published') or job.get('updated_at'),
            'updated_at': job.get('updated_at'),
            'department': departments[0].get('name') if departments else None,
        })
    return raws


def _lever_jobs(payload: Any) -> List[Dict[str, Any]]:
    raws = []
    for job in payload or []:
        categories = job.get('categories') or {}
        salary = job.get('salaryRange') or {}
        raws.append({
            'external_id': job.get('id'),
            'title': job.get('text'),
            'location': categories.get('location'),
            'remote': (job.get('workplaceType') == 'remote'),
            'work_type': job.get('workplaceType'),
            'description': job.get('descriptionPlain') or job.get('description'),
            'employment_type': categories.get('commitment'),
            'department': categories.get('team') or categories.get('department'),
            'apply_url': job.get('hostedUrl') or job.get('applyUrl'),
            'posted_at': job.get('createdAt'),
            'salary': {
                'min': salary.get('min'),
                'max': salary.get('max'),
                'currency': salary.get('currency'),
                'period': salary.get('interval'),
            } if salary else None,
        })
    return raws


def _ashby_jobs(payload: Dict[str, Any]) -> List[Dict[str, Any]]:
    raws = []
    for job in payload.get('jobs', []) or []:
        if job.get('isListed') is False:
            continue
        raws.append({
            'external_id': job.get('id'),
            'title': job.get('title'),
            'location': job.get('location'),
            'remote': bool(job.get('isRemote')),
            'work_type': job.get('workplaceType'),
            'description': job.get('descriptionPlain') or job.get('descriptionHtml') or job.get('description'),
            'employment_type': job.get('employmentType'),
            'department': job.get('department'),
            'apply_url': job.get('jobUrl') or job.get('applyUrl'),
            'posted_at': job.get('publishedAt') or job.get('createdAt'),
            'salary_text': (job.get('compensation') or {}).get('compensationTierSummary'),
        })
    return raws


def _smartrecruiters_jobs(payload: Dict[str, Any], board: str) -> List[Dict[str, Any]]:
    raws = []
    for job in payload.get('content', []) or []:
        loc = job.get('location') or {}
        location = ', '.join(p for p in [loc.get('city'), loc.get('region'), loc.get('country')] if p)
        job_id = job.get('id')
        raws.append({
            'external_id': job_id,
            'title': job.get('name'),
            'location': location,
            'remote': bool(loc.get('remote')),
            'employment_type': (job.get('typeOfEmployment') or {}).get('label'),
            'department': (job.get('department') or {}).get('label'),
            'experience_level': (job.get('experienceLevel') or {}).get('label'),
            'apply_url': job.get('applyUrl') or f"https://jobs.smartrecruiters.com/{board}/{job_id}",
            'posted_at': job.get('releasedDate'),
        })
    return raws


class AtsApiStrategy(ExtractionStrategy):
    """Fetches jobs from a known ATS job-board API"""

    name = 'ats_api'
    method = ExtractionMethod.API.value

    def skip_reason(self, company: CompanyConfig, ctx) -> Optional[str]:
        if not company.ats:
            return "no ATS integration configured"
        if company.ats.type not in SUPPORTED_ATS:
            return f"unsupported ATS type: {company.ats.type}"
        return None

    async def extract(self, company: CompanyConfig, run: CompanyRun) -> StrategyOutcome:
        ats_type = company.ats.type
        board = company.ats.board_id
        url = BOARD_ENDPOINTS[ats_type].format(board=board)

        if ats_type == 'smartrecruiters':
            raws = await self._fetch_smartrecruiters(url, board, company, run)
        else:
            payload = await self._fetch_json(url, run)
            expected = list if ats_type == 'lever' else dict
            if not isinstance(payload, expected):
                raise ScrapingError(ErrorKind.PARSE, f"Unexpected {ats_type} payload shape", url=url)
            if ats_type == 'greenhouse':
                raws = _greenhouse_jobs(payload)
            elif ats_type == 'lever':
                raws = _lever_jobs(payload)
            else:
                raws = _ashby_jobs(payload)

        jobs = build_jobs(raws, company, self.method, origin=ats_type, source_url=url, board_id=board)
        logger.info(f"[ats] {ats_type}/{board}: {len(jobs)} jobs ({len(raws)} raw)")
        return StrategyOutcome(
            jobs=jobs,
            confidence=0.95,
            message=f"{ats_type} API returned {len(jobs)} jobs",
            metadata={'ats': ats_type, 'raw_count': len(raws)},
        )

    async def _fetch_json(self, url: str, run: CompanyRun) -> Any:
        try:
            response = await run.fetch(url, headers={'Accept': 'application/json'})
        except ScrapingError as e:
            if e.status_code == 404:
                raise ScrapingError(ErrorKind.PARSE, f"ATS board not found: {url}", url=url, status_code=404)
            if e.status_code in (401, 403):
                raise ScrapingError(ErrorKind.AUTHENTICATION, f"ATS API refused access ({e.status_code})",
                                    url=url, status_code=e.status_code)
            raise
        return response.json()

    async def _fetch_smartrecruiters(self, url: str, board: str, company: CompanyConfig,
                                     run: CompanyRun) -> List[Dict[str, Any]]:
        raws: List[Dict[str, Any]] = []
        offset = 0
        for _ in range(SMARTRECRUITERS_MAX_PAGES):
            run.checkpoint()
            page_url = f"{url}?limit={SMARTRECRUITERS_PAGE_SIZE}&offset={offset}"
            payload = await self._fetch_json(page_url, run)
            page = _smartrecruiters_jobs(payload, board)
            raws.extend(page)
            run.partial_jobs.extend(build_jobs(page, company, self.method, origin='smartrecruiters',
                                               source_url=url, board_id=board))
            total = int(payload.get('totalFound') or 0)
            offset += SMARTRECRUITERS_PAGE_SIZE
            if not page or offset >= total:
                break
        return raws
