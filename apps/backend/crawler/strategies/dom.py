"""
DOM heuristics strategy.

Provides extraction from rendered HTML using, in order:
1. Company-configured CSS selectors
2. A list of common job listing selectors
3. Links whose URL or text looks like a job posting

Follows pagination (next link or page query parameter) when configured.
"""
import re
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qsl, urlencode, urljoin, urlparse, urlunparse

from bs4 import BeautifulSoup, Tag

from core.models import CompanyConfig, ExtractionMethod, PaginationConfig, SelectorConfig
from crawler.job_builder import build_jobs
from crawler.strategies.base import CompanyRun, ExtractionStrategy, StrategyOutcome

logger = logging.getLogger(__name__)

# Common job listing selectors (heuristics)
JOB_SELECTORS = [
    '.job-listing', '.job-item', '.career-item', '.position', '.opening',
    'article.job', 'div.vacancy', 'tr.job-row', 'li.job',
    'ul.jobs li', 'ol.jobs li', 'ul.positions li', 'ul.openings li',
    '[data-job-id]', '[data-testid*="job"]',
    'article[class*="job"]', 'li[class*="job"]', 'div[class*="job"]', 'tr[class*="job"]',
    'div[class*="position"]', 'div[class*="opening"]', 'div[class*="posting"]',
    '.card[class*="job"]', 'table tr[data-job]',
]

JOB_LINK_PATH = re.compile(
    r'/(?:jobs?|careers?|positions?|openings?|vacanc(?:y|ies)|opportunit(?:y|ies)|postings?|o)/[^/?#]+',
    re.IGNORECASE,
)
GENERIC_LISTING_PATH = re.compile(
    r'^/(?:careers?|jobs?)(?:/(?:search|openings|all|list))?/?$',
    re.IGNORECASE,
)
TITLE_KEYWORDS = [
    'engineer', 'developer', 'manager', 'designer', 'analyst', 'scientist',
    'specialist', 'coordinator', 'consultant', 'architect', 'director', 'lead',
    'intern', 'officer', 'administrator', 'representative', 'associate', 'head of',
]
NAV_TEXT = {
    'apply', 'apply now', 'learn more', 'read more', 'view all', 'view all jobs', 'see all jobs',
    'next', 'previous', 'careers', 'jobs', 'open positions', 'join us', 'home', 'more',
}
NEXT_TEXT = {'next', 'next page', '›', '»', 'next ›', 'next »', '>'}

MAX_JOBS_PER_PAGE = 200


def _text(elem: Optional[Tag]) -> Optional[str]:
    if elem is None:
        return None
    text = ' '.join(elem.get_text(' ').split())
    return text or None


def _usable_href(href: Optional[str]) -> bool:
    return bool(href) and not href.startswith(('#', 'javascript:', 'mailto:', 'tel:'))


def _looks_like_title(text: Optional[str]) -> bool:
    if not text:
        return False
    return 3 <= len(text) <= 200 and text.lower().strip(' ›»') not in NAV_TEXT


def _select_text(elem: Tag, selector: Optional[str]) -> Optional[str]:
    if not selector:
        return None
    return _text(elem.select_one(selector))


def _link_of(elem: Tag, selector: Optional[str] = None) -> Optional[Tag]:
    if selector:
        link = elem.select_one(selector)
        if link is not None and link.name != 'a':
            link = link.find('a', href=True) or (link if link.get('href') else None)
        return link
    if elem.name == 'a' and elem.get('href'):
        return elem
    return elem.find('a', href=True)


def _raw_from_element(elem: Tag, page_url: str, selectors: SelectorConfig) -> Optional[Dict[str, Any]]:
    link = _link_of(elem, selectors.link)
    href = link.get('href') if link is not None else None
    if not _usable_href(href):
        return None

    title = _select_text(elem, selectors.title)
    if not title:
        heading = elem.find(['h1', 'h2', 'h3', 'h4', 'h5'])
        title = _text(heading) or _text(elem.select_one('[class*="title"]')) or _text(link)
    if not _looks_like_title(title):
        return None

    location = _select_text(elem, selectors.location) or _text(elem.select_one('[class*="location"]'))
    department = (_select_text(elem, selectors.department)
                  or _text(elem.select_one('[class*="department"], [class*="team"]')))
    description = _select_text(elem, selectors.description)

    return {
        'title': title,
        'apply_url': urljoin(page_url, href),
        'location': location,
        'department': department,
        'description': description,
        'external_id': elem.get('data-job-id') or elem.get('data-id'),
    }


def _is_container(elem: Tag, matched_ids: set) -> bool:
    """An element holding two or more linked matches of the same selector is a list wrapper"""
    linked = 0
    for desc in elem.find_all(True):
        if id(desc) in matched_ids and _link_of(desc) is not None:
            linked += 1
            if linked >= 2:
                return True
    return False


def _from_elements(elements: List[Tag], page_url: str, selectors: SelectorConfig,
                   skip_containers: bool) -> List[Dict[str, Any]]:
    matched_ids = {id(e) for e in elements}
    raws = []
    for elem in elements:
        if skip_containers and _is_container(elem, matched_ids):
            continue
        raw = _raw_from_element(elem, page_url, selectors)
        if raw:
            raws.append(raw)
    return _dedup_by_url(raws)


def _dedup_by_url(raws: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    seen = set()
    unique = []
    for raw in raws:
        url = raw['apply_url'].split('#')[0]
        if url in seen:
            continue
        seen.add(url)
        unique.append(raw)
    return unique[:MAX_JOBS_PER_PAGE]


def _job_links(soup: BeautifulSoup, page_url: str) -> List[Dict[str, Any]]:
    raws = []
    for link in soup.find_all('a', href=True):
        href = link.get('href', '')
        if not _usable_href(href):
            continue
        text = _text(link)
        if not _looks_like_title(text):
            continue
        absolute = urljoin(page_url, href)
        path = urlparse(absolute).path
        if GENERIC_LISTING_PATH.match(path):
            continue
        lowered = text.lower()
        if JOB_LINK_PATH.search(path) or any(k in lowered for k in TITLE_KEYWORDS):
            raws.append({'title': text, 'apply_url': absolute})
    return _dedup_by_url(raws)


def parse_dom_jobs(html: str, page_url: str, selectors: Optional[SelectorConfig] = None) -> List[Dict[str, Any]]:
    """Extract raw job dicts from listing HTML."""
    selectors = selectors or SelectorConfig()
    soup = BeautifulSoup(html, 'lxml')

    if selectors.job_container:
        elements = soup.select(selectors.job_container)
        raws = _from_elements(elements, page_url, selectors, skip_containers=False)
        if raws:
            return raws
        logger.debug(f"[dom] Configured selector {selectors.job_container} matched no jobs on {page_url}")

    # Pick the generic selector yielding the most jobs
    best: List[Dict[str, Any]] = []
    best_selector = None
    for selector in JOB_SELECTORS:
        elements = soup.select(selector)
        if not elements:
            continue
        raws = _from_elements(elements, page_url, selectors, skip_containers=True)
        if len(raws) > len(best):
            best, best_selector = raws, selector
    if best:
        logger.debug(f"[dom] {len(best)} jobs via selector {best_selector}")
        return best

    return _job_links(soup, page_url)


def next_page_url(html: str, page_url: str, pagination: PaginationConfig) -> Optional[str]:
    """Resolve the "next page" link of a listing"""
    soup = BeautifulSoup(html, 'lxml')
    link = None
    if pagination.next_selector:
        link = soup.select_one(pagination.next_selector)
    if link is None:
        link = soup.select_one('a[rel~="next"], link[rel~="next"]')
    if link is None:
        for a in soup.find_all('a', href=True):
            if (_text(a) or '').lower() in NEXT_TEXT or (a.get('aria-label') or '').lower() == 'next':
                link = a
                break
    href = link.get('href') if link is not None else None
    if not _usable_href(href):
        return None
    return urljoin(page_url, href)


def page_param_url(url: str, param: str, page: int) -> str:
    parsed = urlparse(url)
    query = [(k, v) for k, v in parse_qsl(parsed.query, keep_blank_values=True) if k != param]
    query.append((param, str(page)))
    return urlunparse(parsed._replace(query=urlencode(query)))


class DomStrategy(ExtractionStrategy):
    """Heuristic extraction from the career page markup"""

    name = 'dom'
    method = ExtractionMethod.DOM.value

    async def extract(self, company: CompanyConfig, run: CompanyRun) -> StrategyOutcome:
        page = await run.career_page()
        pagination = company.pagination
        paginate = pagination.mode in ('next_link', 'page_param')
        max_pages = max(1, pagination.max_pages) if paginate else 1

        html, url = page.text, page.url
        visited = {url}
        seen_urls = set()
        jobs = []
        pages = 1
        while True:
            raws = [r for r in parse_dom_jobs(html, url, company.selectors) if r['apply_url'] not in seen_urls]
            seen_urls.update(r['apply_url'] for r in raws)
            page_jobs = build_jobs(raws, company, self.method, source_url=url)
            jobs.extend(page_jobs)
            run.partial_jobs.extend(page_jobs)

            if not page_jobs or pages >= max_pages:
                break
            if pagination.mode == 'next_link':
                next_url = next_page_url(html, url, pagination)
            else:
                next_url = page_param_url(company.career_page_url, pagination.param, pages + 1)
            if not next_url or next_url in visited:
                break

            # Between pages
            run.checkpoint()
            response = await run.fetch(next_url)
            visited.add(next_url)
            html, url = response.text, response.url
            pages += 1

        if pages > 1:
            logger.info(f"[dom] {company.id}: {len(jobs)} jobs across {pages} pages")
        return StrategyOutcome(
            jobs=jobs,
            confidence=0.6,
            message=f"DOM heuristics found {len(jobs)} jobs" if jobs else "No job elements found",
            metadata={'pages': pages},
        )
