"""
Domain model shared by the scraper, pipeline and ranking layers.

Scraped and persisted jobs are plain dataclasses; company configuration comes
from an external discovery process and is validated with pydantic.
"""
import hashlib
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LivenessStatus(str, Enum):
    ACTIVE = "active"
    STALE = "stale"
    UNKNOWN = "unknown"
    EXPIRED = "expired"


class ExtractionMethod(str, Enum):
    """How a job was obtained, ordered roughly by reliability"""
    API = "api"
    JSONLD = "jsonld"
    DATA_ISLAND = "data_island"
    LLM = "llm"
    DOM = "dom"
    BROWSER = "browser"


# Higher wins when two records describe the same job
METHOD_AUTHORITY = {
    ExtractionMethod.API.value: 6,
    ExtractionMethod.JSONLD.value: 5,
    ExtractionMethod.DATA_ISLAND.value: 4,
    ExtractionMethod.BROWSER.value: 3,
    ExtractionMethod.DOM.value: 2,
    ExtractionMethod.LLM.value: 1,
}


class GhostBand(str, Enum):
    CLEAN = "clean"
    SUSPICIOUS = "suspicious"
    LIKELY_GHOST = "likely_ghost"


REQUIREMENT_TYPES = ("education", "experience", "skill", "certification")


@dataclass
class Requirement:
    type: str
    text: str


@dataclass
class JobLocation:
    raw: Optional[str] = None
    normalized: Optional[str] = None
    country_code: Optional[str] = None
    is_remote: bool = False


@dataclass
class Salary:
    min: Optional[float] = None
    max: Optional[float] = None
    currency: Optional[str] = None
    period: Optional[str] = None  # hourly, daily, weekly, monthly, yearly
    yearly_min: Optional[float] = None
    yearly_max: Optional[float] = None

    def is_present(self) -> bool:
        return self.min is not None or self.max is not None


@dataclass
class JobSource:
    origin: str                       # ats type or "career_page"
    source_url: str
    extraction_method: str
    board_id: Optional[str] = None


@dataclass
class ScrapedJob:
    """A job as produced by one extraction strategy run"""
    title: str
    company: str
    source: JobSource
    normalized_title: str = ""
    location: JobLocation = field(default_factory=JobLocation)
    description: str = ""
    requirements: List[Requirement] = field(default_factory=list)
    skills: List[str] = field(default_factory=list)
    work_type: Optional[str] = None
    employment_type: Optional[str] = None
    experience_level: Optional[str] = None
    salary: Salary = field(default_factory=Salary)
    external_id: Optional[str] = None
    apply_url: Optional[str] = None
    posted_at: Optional[datetime] = None
    valid_through: Optional[datetime] = None
    scraped_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    recruiter_email: Optional[str] = None
    department: Optional[str] = None
    repost_count: int = 0
    confidence: float = 1.0

    @property
    def identity_hash(self) -> str:
        return compute_identity_hash(
            self.normalized_title or self.title,
            self.company,
            self.location.normalized or self.location.raw or "",
        )

    @property
    def source_key(self) -> str:
        """Value stored in the `source` column; pairs with external_id for uniqueness"""
        if self.source.board_id:
            return f"{self.source.origin}:{self.source.board_id}"
        return self.source.origin

    @property
    def reference_time(self) -> datetime:
        return self.posted_at or self.scraped_at

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["identity_hash"] = self.identity_hash
        return data


def compute_identity_hash(normalized_title: str, company: str, normalized_location: str) -> str:
    """SHA-256 of `title|company|location`, lower-cased and trimmed"""
    parts = [
        (normalized_title or "").lower().strip(),
        (company or "").lower().strip(),
        (normalized_location or "").lower().strip(),
    ]
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()


@dataclass
class JobPosting(ScrapedJob):
    """A persisted job: scraped data plus platform freshness and trust fields"""
    id: Optional[str] = None
    liveness_status: LivenessStatus = LivenessStatus.UNKNOWN
    trust_score: int = 50
    ghost_score: int = 0
    ghost_reasons: List[str] = field(default_factory=list)
    last_liveness_check: Optional[datetime] = None
    consecutive_failures: int = 0
    expires_at: Optional[datetime] = None
    first_seen_at: Optional[datetime] = None
    last_seen_at: Optional[datetime] = None
    view_count: int = 0
    application_count: int = 0
    industry: Optional[str] = None
    company_domain: Optional[str] = None

    @classmethod
    def from_scraped(cls, job: ScrapedJob, **overrides) -> "JobPosting":
        values = {f: getattr(job, f) for f in ScrapedJob.__dataclass_fields__}
        values.update(overrides)
        return cls(**values)


@dataclass
class DuplicateGroup:
    canonical: ScrapedJob
    duplicates: List[ScrapedJob] = field(default_factory=list)
    confidence: float = 1.0
    reason: str = "exact_hash"

    @property
    def size(self) -> int:
        return 1 + len(self.duplicates)


@dataclass
class ScoreComponents:
    semantic: float = 0.0
    recency: float = 0.0
    liveness: float = 0.0
    personalization: float = 0.0


@dataclass
class MatchResult:
    candidate_id: str
    job_id: str
    final_score: float
    components: ScoreComponents
    explanation: str = ""
    matched_skills: List[str] = field(default_factory=list)
    missing_skills: List[str] = field(default_factory=list)
    trust_score: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CandidateProfile:
    candidate_id: str
    skills: List[str] = field(default_factory=list)
    years_experience: Optional[float] = None
    experience_level: Optional[str] = None
    titles: List[str] = field(default_factory=list)
    preferred_locations: List[str] = field(default_factory=list)
    preferred_work_types: List[str] = field(default_factory=list)
    salary_min: Optional[float] = None
    salary_max: Optional[float] = None
    industries: List[str] = field(default_factory=list)


@dataclass
class ScrapingResult:
    company_id: str
    success: bool = False
    jobs: List[ScrapedJob] = field(default_factory=list)
    method: Optional[str] = None
    errors: List[Any] = field(default_factory=list)   # ScrapingError instances
    strategies_tried: List[str] = field(default_factory=list)
    duration_ms: int = 0
    bytes_downloaded: int = 0
    pages_scraped: int = 0
    started_at: datetime = field(default_factory=utcnow)

    def summary(self) -> Dict[str, Any]:
        return {
            "company_id": self.company_id,
            "success": self.success,
            "jobs": len(self.jobs),
            "method": self.method,
            "errors": [getattr(e, "kind", str(e)) for e in self.errors],
            "strategies_tried": self.strategies_tried,
            "duration_ms": self.duration_ms,
            "bytes_downloaded": self.bytes_downloaded,
            "pages_scraped": self.pages_scraped,
        }


# --- Company configuration (validated input) ---

SUPPORTED_ATS = ("greenhouse", "lever", "ashby", "smartrecruiters")
STRATEGY_NAMES = ("ats_api", "jsonld", "data_island", "llm", "dom", "browser")


class AtsIntegration(BaseModel):
    type: str
    board_id: str

    @field_validator("type")
    @classmethod
    def _lower_type(cls, v: str) -> str:
        return v.strip().lower()


class SelectorConfig(BaseModel):
    job_container: Optional[str] = None
    title: Optional[str] = None
    location: Optional[str] = None
    link: Optional[str] = None
    description: Optional[str] = None
    department: Optional[str] = None


class PaginationConfig(BaseModel):
    mode: str = "none"  # none, next_link, page_param, infinite_scroll
    max_pages: int = 5
    param: str = "page"
    next_selector: Optional[str] = None


class BrowserConfig(BaseModel):
    wait_selector: Optional[str] = None
    wait_ms: int = 2000
    scroll: bool = False


class CompanyConfig(BaseModel):
    id: str
    name: str
    career_page_url: Optional[str] = None
    domain: Optional[str] = None
    industry: Optional[str] = None
    ats: Optional[AtsIntegration] = None
    strategies: List[str] = Field(default_factory=lambda: list(STRATEGY_NAMES))
    selectors: SelectorConfig = Field(default_factory=SelectorConfig)
    pagination: PaginationConfig = Field(default_factory=PaginationConfig)
    browser: BrowserConfig = Field(default_factory=BrowserConfig)
    scrape_frequency: str = "daily"  # hourly, daily, weekly
    priority: str = "medium"         # high, medium, low
    rate_limit: Optional[int] = None  # requests per minute for this domain

    @field_validator("strategies")
    @classmethod
    def _known_strategies(cls, v: List[str]) -> List[str]:
        unknown = [s for s in v if s not in STRATEGY_NAMES]
        if unknown:
            raise ValueError(f"Unknown strategies: {unknown}")
        return v

    @field_validator("scrape_frequency")
    @classmethod
    def _known_frequency(cls, v: str) -> str:
        if v not in ("hourly", "daily", "weekly"):
            raise ValueError(f"Unknown scrape frequency: {v}")
        return v

    @field_validator("priority")
    @classmethod
    def _known_priority(cls, v: str) -> str:
        if v not in ("high", "medium", "low"):
            raise ValueError(f"Unknown priority: {v}")
        return v
