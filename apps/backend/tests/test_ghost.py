"""
Tests for ghost-job scoring.
"""

from datetime import timedelta

import pytest

from core.config import GhostConfig
from core.errors import ConfigError
from core.models import GhostBand, LivenessStatus, Salary
from pipeline.ghost import GhostJobScorer, boilerplate_hits, domains_match, email_domain, is_generic_title


@pytest.fixture
def scorer():
    return GhostJobScorer(GhostConfig())


class TestSignals:
    """Test individual signals."""

    def test_clean_job(self, scorer, make_posting, now):
        result = scorer.score(make_posting(posted_at=now - timedelta(days=2)), now=now)
        assert result.score == 0
        assert result.band == GhostBand.CLEAN
        assert result.reasons == []

    def test_stale_unconfirmed(self, scorer, make_posting, now):
        job = make_posting(posted_at=now - timedelta(days=60))
        result = scorer.score(job, now=now)
        assert result.reasons == ['stale_unconfirmed']
        assert result.score == 25
        assert result.band == GhostBand.CLEAN

    def test_old_but_recently_confirmed(self, scorer, make_posting, now):
        job = make_posting(posted_at=now - timedelta(days=60),
                           liveness_status=LivenessStatus.ACTIVE,
                           last_liveness_check=now - timedelta(days=2))
        assert scorer.score(job, now=now).reasons == []

    def test_short_description(self, scorer, make_posting, now):
        job = make_posting(description="Apply now.", posted_at=now)
        assert scorer.score(job, now=now).reasons == ['boilerplate_description']

    def test_boilerplate_phrases(self, scorer, make_posting, now):
        description = ("We are a team player culture in a fast-paced environment offering a competitive salary. "
                       * 3)
        job = make_posting(description=description, posted_at=now)
        assert boilerplate_hits(description) == 3
        assert 'boilerplate_description' in scorer.score(job, now=now).reasons

    def test_generic_title_without_salary(self, scorer, make_posting, now):
        job = make_posting(title='General Application', posted_at=now)
        assert scorer.score(job, now=now).reasons == ['no_salary_generic_title']

    def test_generic_title_with_salary(self, scorer, make_posting, now):
        job = make_posting(title='General Application', posted_at=now,
                           salary=Salary(min=50000, max=60000, currency='USD', period='yearly'))
        assert scorer.score(job, now=now).reasons == []

    def test_reposted(self, scorer, make_posting, now):
        job = make_posting(repost_count=3, posted_at=now)
        assert scorer.score(job, now=now).reasons == ['reposted']

    @pytest.mark.parametrize("email,domain,flagged", [
        ("recruiter@gmail.com", "acme.example.com", True),
        ("jobs@other.example.org", "acme.example.com", True),
        ("hr@acme.example.com", "www.acme.example.com", False),
        ("hr@eu.acme.example.com", "acme.example.com", False),
        ("hr@other.example.org", None, False),
    ])
    def test_recruiter_domain(self, scorer, make_posting, now, email, domain, flagged):
        job = make_posting(recruiter_email=email, company_domain=domain, posted_at=now)
        assert ('recruiter_domain_mismatch' in scorer.score(job, now=now).reasons) is flagged

    def test_low_engagement(self, scorer, make_posting, now):
        job = make_posting(posted_at=now - timedelta(days=40), view_count=500, application_count=1)
        assert scorer.score(job, now=now).reasons == ['low_engagement']

    def test_engagement_needs_enough_views(self, scorer, make_posting, now):
        job = make_posting(posted_at=now - timedelta(days=40), view_count=20, application_count=0)
        assert scorer.score(job, now=now).reasons == []


class TestAccumulation:
    """Test totals, bands and configuration."""

    def test_likely_ghost(self, scorer, make_posting, now):
        job = make_posting(posted_at=now - timedelta(days=90), description="Join us!", repost_count=4)
        result = scorer.score(job, now=now)
        assert result.reasons == ['stale_unconfirmed', 'boilerplate_description', 'reposted']
        assert result.score == 70
        assert result.band == GhostBand.LIKELY_GHOST

    def test_suspicious_band(self, scorer, make_posting, now):
        job = make_posting(posted_at=now - timedelta(days=60), description="Short.")
        result = scorer.score(job, now=now)
        assert result.score == 45
        assert result.band == GhostBand.SUSPICIOUS

    def test_clamped_to_100(self, scorer, make_posting, now):
        job = make_posting(
            title='Various Positions',
            posted_at=now - timedelta(days=90),
            description="Short.",
            repost_count=5,
            recruiter_email='a@gmail.com',
            view_count=1000,
            application_count=0,
        )
        result = scorer.score(job, now=now)
        assert len(result.reasons) == 6
        assert result.score == 100

    def test_custom_weights(self, make_posting, now):
        scorer = GhostJobScorer(GhostConfig(weights={'reposted': 60}))
        result = scorer.score(make_posting(repost_count=3, posted_at=now), now=now)
        assert result.score == 60
        assert result.band == GhostBand.LIKELY_GHOST

    def test_unknown_weight_rejected(self):
        with pytest.raises(ConfigError):
            GhostConfig(weights={'mystery': 10})


class TestHelpers:
    def test_generic_titles(self):
        assert is_generic_title("Talent Community")
        assert is_generic_title("Join Our Team")
        assert not is_generic_title("Senior Backend Engineer")

    def test_email_domain(self):
        assert email_domain("Jobs@Acme.Example.com") == "acme.example.com"
        assert email_domain("nobody") is None
        assert domains_match("eu.acme.com", "www.acme.com")
        assert not domains_match("notacme.com", "acme.com")
