"""
Tests for the job store with a mocked psycopg2 connection.
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import psycopg2
import pytest

from core.models import JobPosting, LivenessStatus
from pipeline.store import UPSERT_SQL, JobStore, job_to_row, row_to_job


@pytest.fixture
def db():
    """Patched connection and cursor"""
    with patch('psycopg2.connect') as mock_connect:
        conn = MagicMock()
        cursor = MagicMock()
        conn.cursor.return_value.__enter__.return_value = cursor
        mock_connect.return_value = conn
        yield mock_connect, conn, cursor


class TestUpsertSql:
    """Test the generated upsert statement."""

    def test_conflict_target_and_refresh(self):
        assert 'ON CONFLICT (external_id, source) DO UPDATE SET' in UPSERT_SQL
        assert 'description = EXCLUDED.description' in UPSERT_SQL
        assert 'last_seen_at = NOW()' in UPSERT_SQL

    def test_liveness_fields_not_overwritten(self):
        assert 'trust_score = EXCLUDED.trust_score' not in UPSERT_SQL
        assert 'liveness_status = EXCLUDED.liveness_status' not in UPSERT_SQL

    def test_updated_at_is_set_by_the_database(self):
        assert 'updated_at = NOW()' in UPSERT_SQL
        assert ', updated_at = EXCLUDED.updated_at' not in UPSERT_SQL
        assert 'source_updated_at = EXCLUDED.source_updated_at' in UPSERT_SQL

    def test_repost_count_never_lowered(self):
        assert 'repost_count = GREATEST(job_postings.repost_count, EXCLUDED.repost_count)' in UPSERT_SQL
        assert 'repost_count = EXCLUDED.repost_count' not in UPSERT_SQL


class TestRowMapping:
    """Test row <-> JobPosting conversion."""

    def test_job_to_row(self, make_posting):
        job = make_posting(board_id='acme', origin='greenhouse', method='api')
        row = job_to_row(job)
        assert row['source'] == 'greenhouse:acme'
        assert row['identity_hash'] == job.identity_hash
        assert row['liveness_status'] == 'active'
        assert row['skills'].adapted == ['python', 'postgresql']
        assert row['is_remote'] is True
        assert row['repost_count'] == 0
        assert 'updated_at' not in row

    def test_row_to_job(self):
        row = {
            'id': 'abc',
            'external_id': '101',
            'source': 'lever:acme',
            'title': 'Platform Engineer',
            'company': 'Acme',
            'extraction_method': 'api',
            'liveness_status': 'bogus',
            'trust_score': 0,
            'skills': ['go'],
            'requirements': [{'type': 'skill', 'text': 'Go'}],
            'salary_min': 100000,
            'first_seen_at': datetime(2026, 1, 1, tzinfo=timezone.utc),
        }
        job = row_to_job(row)
        assert isinstance(job, JobPosting)
        assert job.source.origin == 'lever'
        assert job.source.board_id == 'acme'
        assert job.source_key == 'lever:acme'
        assert job.liveness_status == LivenessStatus.UNKNOWN
        assert job.trust_score == 0
        assert job.salary.min == 100000.0
        assert job.requirements[0].text == 'Go'
        assert job.scraped_at == row['first_seen_at']


class TestJobStore:
    """Test store operations."""

    def test_upsert_inserted(self, db, make_posting):
        mock_connect, conn, cursor = db
        cursor.fetchone.return_value = {'id': 'uuid-1', 'inserted': True}

        result = JobStore('postgresql://test').upsert_job(make_posting())

        assert result == {'success': True, 'job_id': 'uuid-1', 'error': None, 'action': 'inserted'}
        sql, params = cursor.execute.call_args[0]
        assert sql == UPSERT_SQL
        assert params['external_id'] == 'job-1'
        conn.commit.assert_called_once()
        conn.close.assert_called_once()

    def test_upsert_updated(self, db, make_posting):
        mock_connect, conn, cursor = db
        cursor.fetchone.return_value = {'id': 'uuid-1', 'inserted': False}
        result = JobStore('postgresql://test').upsert_job(make_posting())
        assert result['action'] == 'updated'

    def test_upsert_integrity_error_rolls_back(self, db, make_posting):
        mock_connect, conn, cursor = db
        cursor.execute.side_effect = psycopg2.IntegrityError("duplicate key")

        result = JobStore('postgresql://test').upsert_job(make_posting())

        assert result['success'] is False
        assert 'Integrity error' in result['error']
        conn.rollback.assert_called_once()
        conn.close.assert_called_once()

    def test_upsert_requires_external_id(self, db, make_posting):
        mock_connect, conn, cursor = db
        job = make_posting()
        job.external_id = None
        result = JobStore('postgresql://test').upsert_job(job)
        assert result['success'] is False
        mock_connect.assert_not_called()

    def test_record_liveness_single_transaction(self, db, now):
        mock_connect, conn, cursor = db

        JobStore('postgresql://test').record_liveness(
            'job-1', 'active', 'stale', 60, 3, now, http_status=503, reason='http 503', response_ms=120)

        assert cursor.execute.call_count == 2
        update_sql, update_params = cursor.execute.call_args_list[0][0]
        insert_sql, insert_params = cursor.execute.call_args_list[1][0]
        assert 'updated_at = NOW()' in update_sql
        assert update_params == ('stale', 60, 3, now, 'job-1')
        assert 'INSERT INTO job_liveness_checks' in insert_sql
        assert insert_params == ('job-1', now, 'active', 'stale', 503, 'http 503', 120, 60)
        conn.commit.assert_called_once()

    def test_record_liveness_failure_rolls_back_both_writes(self, db, now):
        mock_connect, conn, cursor = db
        cursor.execute.side_effect = [None, psycopg2.OperationalError("gone")]
        with pytest.raises(psycopg2.OperationalError):
            JobStore('postgresql://test').record_liveness('job-1', 'active', 'stale', 60, 3, now)
        conn.commit.assert_not_called()
        conn.rollback.assert_called_once()
        conn.close.assert_called_once()

    def test_rankable_jobs_filters(self, db):
        mock_connect, conn, cursor = db
        cursor.fetchall.return_value = []

        jobs = JobStore('postgresql://test').load_rankable_jobs(
            {'location': 'Berlin', 'work_type': 'remote'}, limit=100, max_ghost_score=60)

        assert jobs == []
        sql, params = cursor.execute.call_args[0]
        assert 'ghost_score < %s' in sql
        assert params == (60, '%Berlin%', '%Berlin%', 'remote', 100)

    def test_acquire_lock(self, db):
        mock_connect, conn, cursor = db
        assert JobStore('postgresql://test').acquire_lock('liveness_sweep') is True
        conn.commit.assert_called_once()

    def test_acquire_lock_held_elsewhere(self, db):
        mock_connect, conn, cursor = db
        cursor.execute.side_effect = [None, psycopg2.IntegrityError("held")]
        assert JobStore('postgresql://test').acquire_lock('liveness_sweep') is False
        conn.rollback.assert_called_once()

    def test_ensure_schema(self, db):
        mock_connect, conn, cursor = db
        JobStore('postgresql://test').ensure_schema()
        sql = cursor.execute.call_args[0][0]
        assert 'CREATE TABLE IF NOT EXISTS job_postings' in sql
        assert 'job_liveness_checks' in sql
        conn.commit.assert_called_once()
        conn.close.assert_called_once()

    def test_expire_past_due(self, db):
        mock_connect, conn, cursor = db
        cursor.fetchall.return_value = [('id-1',), ('id-2',)]
        assert JobStore('postgresql://test').expire_past_due() == ['id-1', 'id-2']
