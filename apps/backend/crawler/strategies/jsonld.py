"""
JSON-LD strategy.

Extracts jobs from structured JSON-LD data (Schema.org JobPosting) embedded in
the career page.
"""

import json
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from core.models import CompanyConfig, ExtractionMethod
from crawler.job_builder import build_jobs
from crawler.strategies.base import CompanyRun, ExtractionStrategy, StrategyOutcome

logger = logging.getLogger(__name__)

SALARY_UNITS = {
    'HOUR': 'hourly',
    'DAY': 'daily',
    'WEEK': 'weekly',
    'MONTH': 'monthly',
    'YEAR': 'yearly',
}


def _flatten_jsonld(data: Any) -> List[Dict]:
    """Flatten JSON-LD structure to list of items."""
    items = []

    if isinstance(data, dict):
        if _is_job_posting(data):
            items.append(data)
        elif '@graph' in data and isinstance(data['@graph'], list):
            for item in data['@graph']:
                items.extend(_flatten_jsonld(item))
        elif 'itemListElement' in data and isinstance(data['itemListElement'], list):
            for element in data['itemListElement']:
                if isinstance(element, dict) and 'item' in element:
                    items.extend(_flatten_jsonld(element['item']))
                elif isinstance(element, dict):
                    items.extend(_flatten_jsonld(element))
    elif isinstance(data, list):
        for item in data:
            items.extend(_flatten_jsonld(item))

    return items


def _is_job_posting(item: Dict) -> bool:
    """Check if JSON-LD item is a JobPosting."""
    item_type = item.get('@type', '')
    if isinstance(item_type, str):
        return 'JobPosting' in item_type
    elif isinstance(item_type, list):
        return any('JobPosting' in str(t) for t in item_type)
    return False


def _location_text(loc: Any) -> Optional[str]:
    if isinstance(loc, list):
        parts = [_location_text(l) for l in loc]
        parts = [p for p in parts if p]
        return ' | '.join(parts) if parts else None
    if isinstance(loc, str):
        return loc
    if not isinstance(loc, dict):
        return None
    addr = loc.get('address')
    if isinstance(addr, dict):
        parts = []
        for key in ('addressLocality', 'addressRegion', 'addressCountry'):
            value = addr.get(key)
            if isinstance(value, dict):
                value = value.get('name')
            if value:
                parts.append(str(value))
        return ', '.join(parts) if parts else None
    if isinstance(addr, str):
        return addr
    return loc.get('name')


def _salary_fields(salary: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(salary, dict):
        return None
    value = salary.get('value')
    currency = salary.get('currency')
    if isinstance(value, dict):
        minimum = value.get('minValue', value.get('value'))
        maximum = value.get('maxValue', value.get('value'))
        unit = value.get('unitText')
    else:
        minimum = maximum = value
        unit = salary.get('unitText')
    if minimum is None and maximum is None:
        return None
    return {
        'min': minimum,
        'max': maximum,
        'currency': currency,
        'period': SALARY_UNITS.get(str(unit or 'YEAR').upper(), 'yearly'),
    }


def _job_from_posting(job_data: Dict, page_url: str) -> Dict[str, Any]:
    """Map a JobPosting object to a raw job dict."""
    employer = None
    org = job_data.get('hiringOrganization')
    if isinstance(org, dict):
        employer = org.get('name', org.get('legalName'))
    elif isinstance(org, str):
        employer = org

    identifier = job_data.get('identifier')
    if isinstance(identifier, dict):
        identifier = identifier.get('value')

    url = job_data.get('url') or job_data.get('applicationUrl') or job_data.get('sameAs')
    skills = job_data.get('skills')
    if isinstance(skills, str):
        skills = [s.strip() for s in skills.split(',') if s.strip()]

    description = job_data.get('description') or ''
    qualifications = job_data.get('qualifications') or job_data.get('experienceRequirements')
    if isinstance(qualifications, str) and qualifications not in description:
        description = f"{description}\n{qualifications}"

    return {
        'external_id': identifier,
        'title': job_data.get('title') or job_data.get('name'),
        'company': employer,
        'location': _location_text(job_data.get('jobLocation')),
        'remote': str(job_data.get('jobLocationType', '')).upper() == 'TELECOMMUTE',
        'description': description,
        'employment_type': job_data.get('employmentType'),
        'salary': _salary_fields(job_data.get('baseSalary')),
        'apply_url': urljoin(page_url, str(url)) if url else None,
        'posted_at': job_data.get('datePosted'),
        'valid_through': job_data.get('validThrough'),
        'skills': skills or [],
    }


def parse_jsonld_jobs(html: str, page_url: str) -> List[Dict[str, Any]]:
    """Extract raw job dicts from every JSON-LD block in a page."""
    soup = BeautifulSoup(html, 'lxml')
    raws = []
    for script in soup.find_all('script', type='application/ld+json'):
        try:
            data = json.loads(script.string or '')
        except (json.JSONDecodeError, TypeError) as e:
            logger.debug(f"Failed to parse JSON-LD: {e}")
            continue
        for item in _flatten_jsonld(data):
            raws.append(_job_from_posting(item, page_url))
    return raws


class JsonLdStrategy(ExtractionStrategy):
    """Reads Schema.org JobPosting markup from the career page"""

    name = 'jsonld'
    method = ExtractionMethod.JSONLD.value

    async def extract(self, company: CompanyConfig, run: CompanyRun) -> StrategyOutcome:
        page = await run.career_page()
        raws = parse_jsonld_jobs(page.text, page.url)
        jobs = build_jobs(raws, company, self.method, source_url=page.url)
        return StrategyOutcome(
            jobs=jobs,
            confidence=0.90,
            message=f"Found {len(jobs)} JobPosting items" if jobs else "No JobPosting markup",
            metadata={'raw_count': len(raws)},
        )
