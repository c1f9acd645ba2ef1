"""
Shared fixtures: scraper contexts backed by httpx.MockTransport and job factories.
"""

from datetime import datetime, timezone

import httpx
import pytest

from core.config import ScraperConfig
from core.context import ScrapeContext
from core.models import (
    CompanyConfig,
    JobPosting,
    JobSource,
    LivenessStatus,
    ScrapedJob,
)
from core.normalize import normalize_location, normalize_title

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

LONG_DESCRIPTION = (
    "You will design, build and operate the payment services behind our checkout. "
    "The team owns APIs written in Python and Go, backed by PostgreSQL and Kafka. "
    "You will pair with product engineers, review designs and run production "
    "systems with a focus on reliability and clear documentation."
)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def scraper_config():
    """No jitter, no backoff waits, generous rate limits"""
    return ScraperConfig(
        enable_jitter=False,
        retry_min_wait=0.0,
        retry_max_wait=0.0,
        max_retries=2,
        global_rpm=60000,
        global_burst=1000,
        domain_rpm=60000,
        domain_burst=1000,
        total_timeout=10.0,
        request_timeout=5.0,
        openrouter_api_key=None,
        enable_browser=False,
    )


@pytest.fixture
def make_ctx(scraper_config):
    """Build a ScrapeContext whose HTTP traffic goes to `handler`."""
    def _make(handler=None, **overrides):
        for key, value in overrides.items():
            setattr(scraper_config, key, value)
        transport = httpx.MockTransport(handler) if handler is not None else None
        return ScrapeContext(scraper_config, transport=transport)
    return _make


@pytest.fixture
def make_company():
    def _make(**fields):
        values = {
            'id': 'acme',
            'name': 'Acme',
            'career_page_url': 'https://acme.example.com/careers',
            'domain': 'acme.example.com',
        }
        values.update(fields)
        return CompanyConfig.model_validate(values)
    return _make


def _scraped(title='Senior Backend Engineer', company='Acme', location='Remote',
             method='jsonld', origin='career_page', external_id='1',
             apply_url=None, posted_at=NOW, board_id=None, cls=ScrapedJob, **fields):
    job = cls(
        title=title,
        normalized_title=normalize_title(title),
        company=company,
        source=JobSource(
            origin=origin,
            source_url='https://acme.example.com/careers',
            extraction_method=method,
            board_id=board_id,
        ),
        location=normalize_location(location),
        description=fields.pop('description', LONG_DESCRIPTION),
        external_id=external_id,
        apply_url=apply_url or f"https://acme.example.com/jobs/{external_id}",
        posted_at=posted_at,
        scraped_at=fields.pop('scraped_at', NOW),
        **fields,
    )
    return job


@pytest.fixture
def make_scraped():
    return _scraped


@pytest.fixture
def make_posting():
    def _make(job_id='job-1', liveness_status=LivenessStatus.ACTIVE, trust_score=90, **fields):
        fields.setdefault('skills', ['python', 'postgresql'])
        return _scraped(
            cls=JobPosting,
            id=job_id,
            liveness_status=liveness_status,
            trust_score=trust_score,
            external_id=fields.pop('external_id', job_id),
            **fields,
        )
    return _make
