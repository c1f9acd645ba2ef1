"""
Normalization of raw scraped job fields.

Normalizes raw job data to a consistent shape:
- Titles (abbreviation expansion, noise removal)
- Locations (remote detection, ISO country codes)
- Work type, employment type and experience level
- Compensation parsing with yearly conversion
- Requirement classification
- Description cleanup
"""

import re
import logging
from datetime import datetime, timezone
from typing import Optional, List, Any, Dict

from bs4 import BeautifulSoup
from dateutil import parser as date_parser

from core.models import JobLocation, Salary, Requirement

logger = logging.getLogger(__name__)

MAX_DESCRIPTION_CHARS = 5000

# Multipliers to a yearly figure
PERIOD_TO_YEARLY = {
    'hourly': 2080,
    'daily': 260,
    'weekly': 52,
    'monthly': 12,
    'yearly': 1,
}

TITLE_ABBREVIATIONS = {
    'sr': 'senior',
    'snr': 'senior',
    'jr': 'junior',
    'jnr': 'junior',
    'mgr': 'manager',
    'eng': 'engineer',
    'engr': 'engineer',
    'dev': 'developer',
    'swe': 'software engineer',
    'sde': 'software engineer',
    'assoc': 'associate',
    'asst': 'assistant',
    'dir': 'director',
    'vp': 'vice president',
    'ops': 'operations',
    'admin': 'administrator',
    'qa': 'quality assurance',
}

# Gender/contract noise commonly appended to titles
TITLE_NOISE_PATTERNS = [
    r'\((?:m|f|w|d|x)(?:\s*/\s*(?:m|f|w|d|x))+\)',
    r'\b(?:m|f|w)/(?:m|f|w)/(?:d|x)\b',
    r'\s[-–|]\s*(?:remote|hybrid|onsite|on-site)\s*$',
]

COMPANY_SUFFIXES = {
    'inc', 'incorporated', 'llc', 'ltd', 'limited', 'corp', 'corporation', 'co',
    'company', 'gmbh', 'ag', 'plc', 'sa', 'sas', 'bv', 'nv', 'pty', 'oy', 'ab',
    'technologies', 'labs', 'group', 'holdings',
}

COUNTRY_CODES = {
    'united states': 'US', 'united states of america': 'US', 'usa': 'US', 'us': 'US',
    'united kingdom': 'GB', 'uk': 'GB', 'england': 'GB', 'scotland': 'GB', 'great britain': 'GB',
    'canada': 'CA', 'germany': 'DE', 'deutschland': 'DE', 'france': 'FR', 'spain': 'ES',
    'italy': 'IT', 'netherlands': 'NL', 'ireland': 'IE', 'portugal': 'PT', 'poland': 'PL',
    'sweden': 'SE', 'norway': 'NO', 'denmark': 'DK', 'finland': 'FI', 'switzerland': 'CH',
    'austria': 'AT', 'belgium': 'BE', 'india': 'IN', 'singapore': 'SG', 'japan': 'JP',
    'australia': 'AU', 'new zealand': 'NZ', 'brazil': 'BR', 'mexico': 'MX', 'argentina': 'AR',
    'israel': 'IL', 'south africa': 'ZA', 'kenya': 'KE', 'nigeria': 'NG', 'china': 'CN',
}

US_STATES = {
    'al', 'ak', 'az', 'ar', 'ca', 'co', 'ct', 'de', 'fl', 'ga', 'hi', 'id', 'il', 'in',
    'ia', 'ks', 'ky', 'la', 'me', 'md', 'ma', 'mi', 'mn', 'ms', 'mo', 'mt', 'ne', 'nv',
    'nh', 'nj', 'nm', 'ny', 'nc', 'nd', 'oh', 'ok', 'or', 'pa', 'ri', 'sc', 'sd', 'tn',
    'tx', 'ut', 'vt', 'va', 'wa', 'wv', 'wi', 'wy', 'dc',
}

REMOTE_PATTERN = re.compile(r'\b(remote|anywhere|work from home|wfh|distributed|telecommute)\b', re.IGNORECASE)
HYBRID_PATTERN = re.compile(r'\bhybrid\b', re.IGNORECASE)

EMPLOYMENT_PATTERNS = [
    ('internship', re.compile(r'\b(intern|internship|trainee|apprentice)\b', re.I)),
    ('contract', re.compile(r'\b(contract|contractor|freelance|consultant|fixed[- ]term)\b', re.I)),
    ('temporary', re.compile(r'\b(temporary|temp|seasonal)\b', re.I)),
    ('part_time', re.compile(r'\bpart[- ]?time\b', re.I)),
    ('full_time', re.compile(r'\b(full[- ]?time|permanent)\b', re.I)),
]

EXPERIENCE_PATTERNS = [
    ('executive', re.compile(r'\b(chief|cto|ceo|cfo|vp|vice president|head of|director)\b', re.I)),
    ('lead', re.compile(r'\b(lead|principal|staff|architect|manager)\b', re.I)),
    ('senior', re.compile(r'\b(senior|sr\.?|snr)\b', re.I)),
    ('entry', re.compile(r'\b(junior|jr\.?|entry[- ]level|graduate|intern|associate)\b', re.I)),
    ('mid', re.compile(r'\b(mid[- ]level|intermediate|ii)\b', re.I)),
]

REQUIREMENT_PATTERNS = [
    ('education', re.compile(r"\b(bachelor'?s?|master'?s?|phd|degree|diploma|bs|ba|ms|msc|bsc)\b", re.I)),
    ('certification', re.compile(r'\b(certified|certification|certificate|license[d]?)\b', re.I)),
    ('experience', re.compile(r'\b\d+\+?\s*(?:-\s*\d+\s*)?years?\b|\bexperience (?:with|in)\b', re.I)),
]


def clean_description(text: Optional[str]) -> str:
    """Strip HTML, collapse whitespace and cap length."""
    if not text:
        return ''
    if '<' in text and '>' in text:
        text = BeautifulSoup(text, 'lxml').get_text(separator='\n')
    text = re.sub(r'[ \t\r\f\v]+', ' ', text)
    text = re.sub(r'\n\s*\n+', '\n\n', text)
    return text.strip()[:MAX_DESCRIPTION_CHARS]


def normalize_title(title: Optional[str]) -> str:
    """
    Normalize a job title for comparison.

    Examples:
        "Sr. Backend Engineer (m/f/d)" -> "senior backend engineer"
        "Software Eng II" -> "software engineer ii"
    """
    if not title:
        return ''
    normalized = title.strip().lower()
    for pattern in TITLE_NOISE_PATTERNS:
        normalized = re.sub(pattern, ' ', normalized, flags=re.IGNORECASE)
    normalized = re.sub(r'[^\w\s+#/&-]', ' ', normalized)
    words = []
    for word in normalized.split():
        words.append(TITLE_ABBREVIATIONS.get(word, word))
    return ' '.join(words)


def normalize_company(company: Optional[str]) -> str:
    """Company name without punctuation or legal suffixes, for fuzzy comparison."""
    if not company:
        return ''
    normalized = re.sub(r'[^\w\s&]', ' ', company.lower())
    words = normalized.split()
    while len(words) > 1 and words[-1] in COMPANY_SUFFIXES:
        words.pop()
    return ' '.join(words)


def to_iso_country(country_name: Optional[str]) -> Optional[str]:
    """
    Convert country name to ISO-2 code.

    Args:
        country_name: Country name (e.g., "India", "United States") or ISO-2 code

    Returns:
        ISO-2 code (e.g., "IN", "US") or None if not found
    """
    if not country_name or not isinstance(country_name, str):
        return None
    normalized = country_name.strip().lower().strip('.')
    if normalized in COUNTRY_CODES:
        return COUNTRY_CODES[normalized]
    if len(normalized) == 2 and normalized.upper() in COUNTRY_CODES.values():
        return normalized.upper()
    return None


def normalize_location(raw: Optional[str], remote_hint: bool = False) -> JobLocation:
    """Parse a raw location string into a JobLocation."""
    if not raw or not raw.strip():
        return JobLocation(
            raw=raw,
            normalized='Remote' if remote_hint else None,
            is_remote=remote_hint,
        )

    raw_clean = re.sub(r'\s+', ' ', raw.strip())
    is_remote = remote_hint or bool(REMOTE_PATTERN.search(raw_clean))

    # Drop remote markers to find the geographic part
    geo = REMOTE_PATTERN.sub('', raw_clean)
    geo = re.sub(r'[()\[\]]', ' ', geo)
    parts = [p.strip(' -–|/') for p in re.split(r'[,;|]', geo)]
    parts = [p for p in parts if p and p.lower() not in ('hybrid', 'onsite', 'on-site')]

    # Full country names win; two-letter tails are read as US states first
    country_code = None
    for part in reversed(parts):
        if len(part) > 2:
            country_code = to_iso_country(part)
            if country_code:
                break
    if not country_code and parts:
        tail = parts[-1]
        if len(parts) > 1 and tail.lower() in US_STATES:
            country_code = 'US'
        else:
            country_code = to_iso_country(tail)

    if parts:
        normalized = ', '.join(p.title() if p.islower() else p for p in parts)
        if is_remote:
            normalized = f"Remote, {normalized}"
    else:
        normalized = 'Remote' if is_remote else raw_clean

    return JobLocation(raw=raw, normalized=normalized, country_code=country_code, is_remote=is_remote)


def norm_work_type(value: Optional[str], location: Optional[JobLocation] = None) -> Optional[str]:
    """Map free text to remote / hybrid / onsite."""
    text = value or ''
    if location and location.raw:
        text = f"{text} {location.raw}"
    if HYBRID_PATTERN.search(text):
        return 'hybrid'
    if REMOTE_PATTERN.search(text) or (location and location.is_remote):
        return 'remote'
    if re.search(r'\b(on[- ]?site|in[- ]office|office[- ]based)\b', text, re.I):
        return 'onsite'
    if location and (location.normalized or location.raw):
        return 'onsite'
    return None


def norm_employment_type(value: Optional[Any]) -> Optional[str]:
    """
    Normalize employment type.

    Valid values: full_time, part_time, contract, internship, temporary
    """
    if not value:
        return None
    if isinstance(value, (list, tuple)):
        value = ' '.join(str(v) for v in value)
    text = str(value).replace('_', ' ')
    for key, pattern in EMPLOYMENT_PATTERNS:
        if pattern.search(text):
            return key
    return None


def norm_experience_level(title: Optional[str], description: Optional[str] = None) -> Optional[str]:
    """Infer entry / mid / senior / lead / executive from the title, then the description."""
    for text in (title, (description or '')[:1000]):
        if not text:
            continue
        for level, pattern in EXPERIENCE_PATTERNS:
            if pattern.search(text):
                return level
    years = re.search(r'(\d+)\+?\s*years?', description or '', re.I)
    if years:
        n = int(years.group(1))
        if n >= 8:
            return 'lead'
        if n >= 5:
            return 'senior'
        if n >= 2:
            return 'mid'
        return 'entry'
    return None


def _detect_period(text: str) -> str:
    if re.search(r'\b(hour|hourly|hr|/h)\b', text, re.I):
        return 'hourly'
    if re.search(r'\b(day|daily)\b', text, re.I):
        return 'daily'
    if re.search(r'\b(week|weekly|wk)\b', text, re.I):
        return 'weekly'
    if re.search(r'\b(month|monthly|mo)\b', text, re.I):
        return 'monthly'
    return 'yearly'


def _to_float(value: Any) -> Optional[float]:
    if value is None or value == '':
        return None
    try:
        return float(str(value).replace(',', ''))
    except (ValueError, TypeError):
        return None


def parse_salary(text: Optional[str] = None, fields: Optional[Dict[str, Any]] = None) -> Salary:
    """
    Parse compensation from structured fields or free text.

    Args:
        text: Free-form compensation text (e.g., "$120k - $150k per year")
        fields: Structured dict with keys like 'min', 'max', 'currency', 'period'

    Returns:
        Salary with yearly_min/yearly_max filled when amounts were found
    """
    salary = Salary()

    if fields and isinstance(fields, dict) and (fields.get('min') is not None or fields.get('max') is not None):
        salary.min = _to_float(fields.get('min'))
        salary.max = _to_float(fields.get('max'))
        salary.currency = (fields.get('currency') or 'USD').upper()
        period = (fields.get('period') or 'yearly').lower()
        salary.period = _detect_period(period) if period not in PERIOD_TO_YEARLY else period

    elif text and isinstance(text, str):
        currency = None
        for pattern, curr in [(r'\$', 'USD'), (r'€', 'EUR'), (r'£', 'GBP'), (r'₹', 'INR')]:
            if re.search(pattern, text):
                currency = curr
                break
        if not currency:
            code = re.search(r'\b(USD|EUR|GBP|INR|CHF|CAD|AUD)\b', text, re.I)
            currency = code.group(1).upper() if code else None

        amounts = []
        for number, suffix in re.findall(r'(\d[\d,]*(?:\.\d+)?)\s*([kK])?', text):
            value = _to_float(number)
            if value is None:
                continue
            if suffix:
                value *= 1000
            amounts.append(value)
        # Ignore stray small numbers ("401k", "2 days") unless they read as hourly rates
        period = _detect_period(text)
        if period == 'yearly':
            amounts = [a for a in amounts if a >= 1000]
        amounts = amounts[:2]
        if not amounts or not (currency or period != 'yearly' or max(amounts) >= 10000):
            return salary
        salary.min = min(amounts)
        salary.max = max(amounts)
        salary.currency = currency or 'USD'
        salary.period = period
    else:
        return salary

    multiplier = PERIOD_TO_YEARLY.get(salary.period or 'yearly', 1)
    if salary.min is not None:
        salary.yearly_min = round(salary.min * multiplier, 2)
    if salary.max is not None:
        salary.yearly_max = round(salary.max * multiplier, 2)
    if salary.yearly_min is None:
        salary.yearly_min = salary.yearly_max
    if salary.yearly_max is None:
        salary.yearly_max = salary.yearly_min
    return salary


def extract_requirements(description: Optional[str], skills: Optional[List[str]] = None) -> List[Requirement]:
    """Classify bullet-like description lines into typed requirements."""
    if not description:
        return []
    requirements = []
    skill_terms = [s.lower() for s in (skills or [])]
    for line in description.split('\n'):
        line = line.strip(' •*-–\t')
        if len(line) < 8 or len(line) > 300:
            continue
        req_type = None
        for key, pattern in REQUIREMENT_PATTERNS:
            if pattern.search(line):
                req_type = key
                break
        if not req_type and skill_terms and any(s in line.lower() for s in skill_terms):
            req_type = 'skill'
        if req_type:
            requirements.append(Requirement(type=req_type, text=line))
    return requirements[:30]


def parse_date(value: Any) -> Optional[datetime]:
    """Parse ISO strings, epoch milliseconds/seconds or datetimes to an aware UTC datetime."""
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        seconds = value / 1000.0 if value > 10_000_000_000 else float(value)
        dt = datetime.fromtimestamp(seconds, tz=timezone.utc)
    else:
        try:
            dt = date_parser.parse(str(value))
        except (ValueError, OverflowError, TypeError):
            logger.debug(f"[normalize] Could not parse date: {value!r}")
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_bool(value: Any) -> Optional[bool]:
    """
    Robust boolean parsing.

    Returns:
        True, False, or None if unparseable
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in ('true', 'yes', '1', 't', 'y'):
            return True
        if normalized in ('false', 'no', '0', 'f', 'n'):
            return False
    return None
