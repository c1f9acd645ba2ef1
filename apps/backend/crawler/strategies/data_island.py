"""
Embedded-state ("data island") strategy.

Many career sites render from a serialized application state shipped inside
the page: Next.js __NEXT_DATA__, window.__INITIAL_STATE__ assignments, inline
"jobs": [...] arrays. This strategy decodes those payloads and walks them for
job-shaped objects.
"""
import json
import re
import logging
from typing import Any, Dict, Iterator, List, Optional
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from core.models import CompanyConfig, ExtractionMethod
from crawler.job_builder import build_jobs
from crawler.strategies.base import CompanyRun, ExtractionStrategy, StrategyOutcome

logger = logging.getLogger(__name__)

# JS assignments / object keys that precede a JSON payload
ASSIGNMENT_PATTERNS = [
    re.compile(r'window\.__(?:INITIAL_STATE|PRELOADED_STATE|APOLLO_STATE|NUXT|APP_DATA|DATA)__\s*=\s*'),
    re.compile(r'(?:var|let|const)\s+(?:jobs|positions|openings|jobData|jobPostings)\s*=\s*'),
    re.compile(r'"(?:jobs|positions|openings|jobPostings|postings|vacancies)"\s*:\s*(?=\[)'),
]

TITLE_FIELDS = ['title', 'jobTitle', 'job_title', 'name', 'position', 'role', 'displayName', 'text']
WEAK_TITLE_FIELDS = {'name', 'text', 'displayName'}
JOB_FIELDS = [
    'location', 'locations', 'department', 'team', 'url', 'absolute_url', 'applyUrl',
    'jobUrl', 'hostedUrl', 'description', 'descriptionPlain', 'employmentType',
    'employment_type', 'jobId', 'job_id', 'requisitionId', 'postedAt', 'datePosted',
    'createdAt', 'publishedAt',
]
URL_FIELDS = ['absolute_url', 'applyUrl', 'jobUrl', 'hostedUrl', 'url', 'href', 'link', 'path']
ID_FIELDS = ['id', 'jobId', 'job_id', 'requisitionId', 'reqId', 'slug']
DATE_FIELDS = ['postedAt', 'datePosted', 'publishedAt', 'createdAt', 'postingDate', 'updated_at']

MAX_DEPTH = 14
MAX_JOBS = 500


def extract_balanced(text: str, start: int) -> Optional[str]:
    """Return the JSON object/array starting at text[start], respecting strings."""
    if start >= len(text) or text[start] not in '{[':
        return None
    closing = {'{': '}', '[': ']'}
    stack = []
    in_string = False
    escaped = False
    quote = ''
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == '\\':
                escaped = True
            elif ch == quote:
                in_string = False
            continue
        if ch in ('"', "'"):
            in_string = True
            quote = ch
        elif ch in '{[':
            stack.append(closing[ch])
        elif ch in '}]':
            if not stack or stack.pop() != ch:
                return None
            if not stack:
                return text[start:i + 1]
    return None


def is_job_object(obj: Any) -> bool:
    """A title-like string field plus at least one job-related field"""
    if not isinstance(obj, dict):
        return False
    titles = [f for f in TITLE_FIELDS if isinstance(obj.get(f), str) and obj.get(f).strip()]
    if not titles:
        return False
    job_fields = [f for f in JOB_FIELDS if obj.get(f) not in (None, '', [])]
    # "name"/"text" alone are too generic (companies, offices, tags)
    if set(titles) <= WEAK_TITLE_FIELDS:
        return len([f for f in job_fields if f not in URL_FIELDS]) >= 2
    return bool(job_fields)


def iter_job_objects(data: Any, depth: int = 0) -> Iterator[Dict]:
    if depth > MAX_DEPTH:
        return
    if isinstance(data, dict):
        if is_job_object(data):
            yield data
            return
        for value in data.values():
            yield from iter_job_objects(value, depth + 1)
    elif isinstance(data, list):
        for item in data:
            yield from iter_job_objects(item, depth + 1)


def _first(obj: Dict, fields: List[str]) -> Any:
    for f in fields:
        value = obj.get(f)
        if value not in (None, '', []):
            return value
    return None


def _as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        return _as_text(_first(value, ['name', 'label', 'title', 'city', 'text']))
    if isinstance(value, list):
        parts = [_as_text(v) for v in value]
        return ' | '.join(p for p in parts if p) or None
    return str(value)


def _raw_from_object(obj: Dict, page_url: str) -> Dict[str, Any]:
    url = _first(obj, URL_FIELDS)
    if isinstance(url, str) and not url.startswith(('http://', 'https://', '/')):
        url = None if ' ' in url else url
    return {
        'external_id': _first(obj, ID_FIELDS),
        'title': _as_text(_first(obj, TITLE_FIELDS)),
        'location': _as_text(_first(obj, ['location', 'locations', 'city', 'office'])),
        'remote': bool(obj.get('isRemote') or obj.get('remote')),
        'description': _as_text(_first(obj, ['descriptionPlain', 'description', 'summary', 'content'])),
        'department': _as_text(_first(obj, ['department', 'team', 'category'])),
        'employment_type': _as_text(_first(obj, ['employmentType', 'employment_type', 'commitment', 'type'])),
        'apply_url': urljoin(page_url, url) if isinstance(url, str) else None,
        'posted_at': _first(obj, DATE_FIELDS),
    }


def _candidate_payloads(html: str) -> Iterator[Any]:
    soup = BeautifulSoup(html, 'lxml')
    for script in soup.find_all('script'):
        body = script.string or ''
        if not body.strip():
            continue
        script_type = (script.get('type') or '').lower()
        if script.get('id') == '__NEXT_DATA__' or script_type == 'application/json':
            try:
                yield json.loads(body)
            except ValueError:
                pass
            continue
        if script_type == 'application/ld+json':
            continue
        for pattern in ASSIGNMENT_PATTERNS:
            for match in pattern.finditer(body):
                blob = extract_balanced(body, match.end())
                if not blob:
                    continue
                try:
                    yield json.loads(blob)
                except ValueError:
                    logger.debug(f"[data_island] Payload after {pattern.pattern[:30]} is not strict JSON")


def parse_data_island_jobs(html: str, page_url: str) -> List[Dict[str, Any]]:
    raws = []
    seen = set()
    for payload in _candidate_payloads(html):
        for obj in iter_job_objects(payload):
            raw = _raw_from_object(obj, page_url)
            key = (raw['title'], raw['apply_url'] or raw['external_id'])
            if key in seen:
                continue
            seen.add(key)
            raws.append(raw)
            if len(raws) >= MAX_JOBS:
                return raws
    return raws


class DataIslandStrategy(ExtractionStrategy):
    """Decodes serialized application state embedded in the career page"""

    name = 'data_island'
    method = ExtractionMethod.DATA_ISLAND.value

    async def extract(self, company: CompanyConfig, run: CompanyRun) -> StrategyOutcome:
        page = await run.career_page()
        raws = parse_data_island_jobs(page.text, page.url)
        jobs = build_jobs(raws, company, self.method, source_url=page.url)
        return StrategyOutcome(
            jobs=jobs,
            confidence=0.85,
            message=f"Decoded {len(jobs)} jobs from embedded state" if jobs else "No embedded job state",
            metadata={'raw_count': len(raws)},
        )
