"""
Tests for match scoring, ranking, the ranking cache and profile sources.
"""

from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest

import app.ranking as ranking
from app.cache import TTLCache, make_key
from app.matching import (
    experience_fit,
    liveness_score,
    personalization_score,
    recency_score,
    skill_coverage,
    title_affinity,
    years_to_level,
)
from app.profiles import InMemoryProfileSource, PostgresProfileSource, row_to_profile
from app.ranking import RankingService, build_explanation, combine, exclusion_reason, notify_new_matches, rank, score_job
from core.config import RankingConfig
from core.errors import ConfigError
from core.models import CandidateProfile, LivenessStatus, MatchResult, Salary, ScoreComponents
from pipeline.notify import NEW_JOB_FOR_CANDIDATE, RecordingNotifier


@pytest.fixture
def config():
    return RankingConfig()


@pytest.fixture
def profile():
    return CandidateProfile(candidate_id='cand-1', skills=['Python', 'Postgres'])


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestSemantic:
    """Test skill coverage, title affinity and experience fit."""

    def test_coverage_with_aliases(self, make_posting):
        profile = CandidateProfile(candidate_id='c', skills=['React', 'Python'])
        job = make_posting(skills=['React.js', 'python', 'k8s'])
        coverage, matched, missing = skill_coverage(profile, job)
        assert coverage == pytest.approx(2 / 3)
        assert matched == ['react', 'python']
        assert missing == ['kubernetes']

    def test_coverage_from_description(self, make_posting):
        profile = CandidateProfile(candidate_id='c', skills=['Python', 'Rust'])
        job = make_posting(skills=[], description="Our stack is Python and Django.")
        coverage, matched, missing = skill_coverage(profile, job)
        assert coverage == 0.5
        assert matched == ['python']
        assert missing == []

    def test_no_candidate_skills(self, make_posting):
        coverage, matched, missing = skill_coverage(CandidateProfile(candidate_id='c'), make_posting())
        assert coverage == 0.0
        assert missing == ['python', 'postgresql']

    def test_title_affinity(self, make_posting):
        job = make_posting(title='Senior Backend Engineer')
        assert title_affinity(CandidateProfile(candidate_id='c', titles=['Sr. Backend Engineer']), job) == 1.0
        assert title_affinity(CandidateProfile(candidate_id='c'), job) == 0.0

    @pytest.mark.parametrize("job_level,expected", [
        ('senior', 1.0), ('lead', 0.5), ('entry', 0.0), (None, 0.5),
    ])
    def test_experience_fit(self, make_posting, job_level, expected):
        profile = CandidateProfile(candidate_id='c', years_experience=6)
        assert experience_fit(profile, make_posting(experience_level=job_level)) == expected

    def test_years_to_level(self):
        assert years_to_level(1) == 'entry'
        assert years_to_level(3) == 'mid'
        assert years_to_level(9) == 'lead'
        assert years_to_level(None) is None


class TestComponents:
    """Test recency, liveness and personalization."""

    def test_recency_decay(self, make_posting, now):
        assert recency_score(make_posting(posted_at=now), now) == 1.0
        assert recency_score(make_posting(posted_at=now - timedelta(days=14)), now) == pytest.approx(0.5)
        assert recency_score(make_posting(posted_at=now - timedelta(days=200)), now) == 0.1
        assert recency_score(make_posting(posted_at=None), now) == 0.1

    def test_future_dates_are_fresh(self, make_posting, now):
        assert recency_score(make_posting(posted_at=now + timedelta(days=2)), now) == 1.0

    def test_liveness(self, make_posting):
        assert liveness_score(make_posting(trust_score=100)) == 1.0
        assert liveness_score(make_posting(liveness_status=LivenessStatus.UNKNOWN, trust_score=50)) == \
            pytest.approx(0.45)
        assert liveness_score(make_posting(liveness_status=LivenessStatus.EXPIRED)) == 0.0

    def test_personalization_neutral_without_preferences(self, profile, make_posting):
        assert personalization_score(profile, make_posting()) == (0.5, [])

    def test_personalization_mean(self, make_posting):
        profile = CandidateProfile(
            candidate_id='c',
            preferred_locations=['Remote'],
            preferred_work_types=['hybrid'],
            salary_min=90000,
        )
        job = make_posting(work_type='remote',
                           salary=Salary(min=100000, max=120000, yearly_min=100000, yearly_max=120000))
        score, satisfied = personalization_score(profile, job)
        assert score == pytest.approx(2 / 3)
        assert satisfied == ['location', 'salary']

    def test_industry_preference(self, make_posting, now):
        profile = CandidateProfile(candidate_id='c', skills=['python'], industries=['Fintech'])
        matching = make_posting(industry='fintech', posted_at=now)
        other = make_posting(industry='Retail', posted_at=now)

        assert personalization_score(profile, matching) == (1.0, ['industry'])
        assert personalization_score(profile, other) == (0.0, [])
        assert score_job(profile, matching, RankingConfig(), now).final_score > \
            score_job(profile, other, RankingConfig(), now).final_score

    def test_unknown_job_fields_score_half(self, make_posting):
        profile = CandidateProfile(candidate_id='c', industries=['fintech'], salary_max=50000)
        score, satisfied = personalization_score(profile, make_posting())
        assert score == 0.5
        assert satisfied == []


class TestScoring:
    """Test combination, exclusion and explanation."""

    def test_combine(self, config):
        assert combine(ScoreComponents(1.0, 1.0, 1.0, 0.0), config) == pytest.approx(0.90)

    def test_weights_must_sum_to_one(self):
        with pytest.raises(ConfigError):
            RankingConfig(semantic_weight=0.5)

    def test_score_job(self, profile, make_posting, config, now):
        job = make_posting(posted_at=now, trust_score=90)
        result = score_job(profile, job, config, now)
        assert isinstance(result, MatchResult)
        assert result.job_id == 'job-1'
        assert result.components.semantic == pytest.approx(0.75)
        assert result.components.recency == 1.0
        assert result.components.liveness == pytest.approx(0.95)
        assert result.final_score == pytest.approx(0.8275)
        assert result.matched_skills == ['python', 'postgresql']
        assert result.explanation == "Posted today; Verified open (trust 90); Matches your skills: python, postgresql"

    def test_general_match_explanation(self, make_posting, now):
        profile = CandidateProfile(candidate_id='c', skills=['rust'])
        job = make_posting(posted_at=now - timedelta(days=30), liveness_status=LivenessStatus.UNKNOWN,
                           skills=['python'])
        result = score_job(profile, job, RankingConfig(), now)
        assert result.explanation == "General match"
        assert result.missing_skills == ['python']

    def test_explanation_truncates_skills(self, make_posting, now):
        components = ScoreComponents(semantic=0.9, recency=0.1, liveness=0.0, personalization=0.0)
        job = make_posting(posted_at=now - timedelta(days=3), liveness_status=LivenessStatus.UNKNOWN)
        text = build_explanation(job, components, ['a', 'b', 'c', 'd', 'e', 'f', 'g'], [], now)
        assert text == "Matches your skills: a, b, c, d, e (+2 more); Posted 3 days ago"

    def test_exclusions(self, make_posting, config):
        assert exclusion_reason(make_posting(ghost_score=60), config) == "likely ghost (60)"
        assert exclusion_reason(make_posting(liveness_status=LivenessStatus.EXPIRED), config) == "expired"
        stale = make_posting(liveness_status=LivenessStatus.STALE, trust_score=50)
        assert exclusion_reason(stale, config) == "below liveness floor"
        assert exclusion_reason(make_posting(ghost_score=59), config) is None


class TestRank:
    """Test ordering, limits and tie-breaks."""

    def test_orders_by_score_and_excludes(self, profile, make_posting, now):
        strong = make_posting(job_id='strong', posted_at=now)
        weak = make_posting(job_id='weak', skills=['cobol'], posted_at=now - timedelta(days=20))
        ghost = make_posting(job_id='ghost', ghost_score=75, posted_at=now)
        expired = make_posting(job_id='expired', liveness_status=LivenessStatus.EXPIRED)

        results = rank(profile, [weak, ghost, expired, strong], now=now)

        assert [r.job_id for r in results] == ['strong', 'weak']
        assert results[0].final_score > results[1].final_score

    def test_limit(self, profile, make_posting, now):
        jobs = [make_posting(job_id=f"j{i}", posted_at=now - timedelta(days=i)) for i in range(5)]
        assert [r.job_id for r in rank(profile, jobs, limit=2, now=now)] == ['j0', 'j1']

    def test_tie_breaks(self, profile, make_posting, now, monkeypatch):
        fixed = {
            'a': (0.5, 0.5, 80),
            'b': (0.5, 0.9, 80),
            'c': (0.5, 0.5, 95),
            'd': (0.5, 0.5, 80),
            'e': (0.7, 0.1, 10),
        }

        def fake_score_job(profile, job, config=None, now=None):
            final, recency, trust = fixed[job.id]
            return MatchResult(candidate_id='cand-1', job_id=job.id, final_score=final,
                               components=ScoreComponents(recency=recency), trust_score=trust)

        monkeypatch.setattr(ranking, 'score_job', fake_score_job)
        jobs = [make_posting(job_id=j) for j in ['d', 'a', 'c', 'b', 'e']]

        results = rank(profile, jobs, now=now)

        assert [r.job_id for r in results] == ['e', 'b', 'c', 'a', 'd']


class TestRankingService:
    """Test the cached ranking service."""

    def _service(self, make_posting, now, clock=None):
        store = MagicMock()
        store.load_rankable_jobs.return_value = [
            make_posting(job_id='j1', posted_at=now),
            make_posting(job_id='j2', posted_at=now, skills=['java']),
        ]
        profiles = InMemoryProfileSource([CandidateProfile(candidate_id='cand-1', skills=['python'])])
        cache = TTLCache(ttl_seconds=60, max_entries=10, clock=clock or FakeClock())
        return RankingService(store, profiles, RankingConfig(), cache), store

    def test_unknown_candidate(self, make_posting, now):
        service, store = self._service(make_posting, now)
        assert service.get_matches('nobody') is None
        store.load_rankable_jobs.assert_not_called()

    def test_results_cached_per_filters(self, make_posting, now):
        service, store = self._service(make_posting, now)

        first = service.get_matches('cand-1', {'location': 'Remote'}, limit=1)
        second = service.get_matches('cand-1', {'location': 'Remote'}, limit=5)
        service.get_matches('cand-1', {'location': 'Berlin'})

        assert [r.job_id for r in first] == ['j1']
        assert [r.job_id for r in second] == ['j1', 'j2']
        assert store.load_rankable_jobs.call_count == 2
        store.load_rankable_jobs.assert_any_call({'location': 'Remote'}, limit=2000, max_ghost_score=60)

    def test_cache_expires(self, make_posting, now):
        clock = FakeClock()
        service, store = self._service(make_posting, now, clock)
        service.get_matches('cand-1')
        clock.now += 61
        service.get_matches('cand-1')
        assert store.load_rankable_jobs.call_count == 2


class TestNotifyNewMatches:
    def test_only_strong_matches_notified(self, profile, make_posting):
        from core.models import utcnow
        today = utcnow()
        strong = make_posting(job_id='strong', posted_at=today)
        weak = make_posting(job_id='weak', skills=['cobol'], posted_at=today - timedelta(days=60),
                            liveness_status=LivenessStatus.UNKNOWN, trust_score=50)
        notifier = RecordingNotifier()

        sent = notify_new_matches(profile, [weak, strong], notifier, min_score=0.6)

        assert sent == 1
        event = notifier.of_type(NEW_JOB_FOR_CANDIDATE)[0]
        assert event.job_id == 'strong'
        assert event.candidate_id == 'cand-1'
        assert event.payload['score'] >= 0.6


class TestTTLCache:
    """Test the bounded TTL cache."""

    def test_expiry(self):
        clock = FakeClock()
        cache = TTLCache(ttl_seconds=10, max_entries=5, clock=clock)
        cache.set('k', 1)
        clock.now = 9.9
        assert cache.get('k') == 1
        clock.now = 10.0
        assert cache.get('k') is None
        assert len(cache) == 0

    def test_lru_eviction(self):
        cache = TTLCache(ttl_seconds=100, max_entries=2, clock=FakeClock())
        cache.set('a', 1)
        cache.set('b', 2)
        cache.get('a')
        cache.set('c', 3)
        assert 'a' in cache
        assert 'b' not in cache
        assert 'c' in cache

    def test_get_or_compute(self):
        cache = TTLCache(clock=FakeClock())
        calls = []
        assert cache.get_or_compute('x', lambda: calls.append(1) or 'v') == 'v'
        assert cache.get_or_compute('x', lambda: calls.append(1) or 'w') == 'v'
        assert len(calls) == 1
        assert cache.stats() == {'size': 1, 'hits': 1, 'misses': 1}

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            TTLCache(max_entries=0)

    def test_make_key_ignores_empty_filters(self):
        assert make_key('c1', {'location': 'Remote', 'work_type': None}) == \
            make_key('c1', {'work_type': '', 'location': 'Remote'})
        assert make_key('c1', {}) != make_key('c2', {})


class TestProfiles:
    """Test profile sources."""

    def test_row_to_profile(self):
        profile = row_to_profile({
            'candidate_id': 7,
            'skills': 'python, sql',
            'titles': ['Data Engineer'],
            'years_experience': 4,
            'salary_min': None,
        })
        assert profile.candidate_id == '7'
        assert profile.skills == ['python', 'sql']
        assert profile.years_experience == 4.0
        assert profile.preferred_locations == []

    def test_in_memory(self):
        source = InMemoryProfileSource()
        source.add(CandidateProfile(candidate_id='a'))
        assert source.get_profile('a').candidate_id == 'a'
        assert source.get_profile('b') is None
        assert len(source.list_profiles()) == 1

    def test_postgres_source(self):
        with patch('psycopg2.connect') as mock_connect:
            conn = MagicMock()
            cursor = MagicMock()
            conn.cursor.return_value.__enter__.return_value = cursor
            mock_connect.return_value = conn
            cursor.fetchone.return_value = {'candidate_id': 'a', 'skills': ['go']}

            profile = PostgresProfileSource('postgresql://test').get_profile('a')

            assert profile.skills == ['go']
            conn.close.assert_called_once()
