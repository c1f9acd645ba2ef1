"""
Persistence adapter for job postings.

One row per (external_id, source) in `job_postings`, an append-only
`job_liveness_checks` log, and a `job_locks` table used as a cross-process
mutex. Every method opens its own connection and closes it in `finally`.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import psycopg2
from psycopg2.extras import Json, RealDictCursor

from core.models import (
    JobLocation,
    JobPosting,
    JobSource,
    LivenessStatus,
    Requirement,
    Salary,
)

logger = logging.getLogger(__name__)

JOBS_TABLE = 'job_postings'

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS job_postings (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    external_id TEXT NOT NULL,
    source TEXT NOT NULL,
    identity_hash TEXT NOT NULL,
    title TEXT NOT NULL,
    normalized_title TEXT,
    company TEXT NOT NULL,
    company_domain TEXT,
    industry TEXT,
    department TEXT,
    location_raw TEXT,
    location_normalized TEXT,
    country_code TEXT,
    is_remote BOOLEAN DEFAULT FALSE,
    description TEXT,
    requirements JSONB DEFAULT '[]'::jsonb,
    skills JSONB DEFAULT '[]'::jsonb,
    work_type TEXT,
    employment_type TEXT,
    experience_level TEXT,
    salary_min NUMERIC,
    salary_max NUMERIC,
    salary_currency TEXT,
    salary_period TEXT,
    salary_yearly_min NUMERIC,
    salary_yearly_max NUMERIC,
    extraction_method TEXT,
    source_url TEXT,
    apply_url TEXT,
    recruiter_email TEXT,
    posted_at TIMESTAMPTZ,
    valid_through TIMESTAMPTZ,
    expires_at TIMESTAMPTZ,
    scraped_at TIMESTAMPTZ,
    source_updated_at TIMESTAMPTZ,
    updated_at TIMESTAMPTZ,
    first_seen_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    last_seen_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    liveness_status TEXT NOT NULL DEFAULT 'unknown',
    trust_score INTEGER NOT NULL DEFAULT 50,
    ghost_score INTEGER NOT NULL DEFAULT 0,
    ghost_reasons JSONB DEFAULT '[]'::jsonb,
    last_liveness_check TIMESTAMPTZ,
    consecutive_failures INTEGER NOT NULL DEFAULT 0,
    repost_count INTEGER NOT NULL DEFAULT 0,
    view_count INTEGER NOT NULL DEFAULT 0,
    application_count INTEGER NOT NULL DEFAULT 0,
    UNIQUE (external_id, source)
);

CREATE TABLE IF NOT EXISTS job_liveness_checks (
    id BIGSERIAL PRIMARY KEY,
    job_id UUID NOT NULL REFERENCES job_postings(id) ON DELETE CASCADE,
    checked_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    previous_status TEXT,
    status TEXT NOT NULL,
    http_status INTEGER,
    reason TEXT,
    response_ms INTEGER,
    trust_score INTEGER
);

CREATE TABLE IF NOT EXISTS job_locks (
    name TEXT PRIMARY KEY,
    locked_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

ALTER TABLE job_postings ADD COLUMN IF NOT EXISTS source_updated_at TIMESTAMPTZ;
"""

# Written on insert; also refreshed on conflict unless listed in INSERT_ONLY_COLUMNS
UPSERT_COLUMNS = [
    'external_id', 'source', 'identity_hash', 'title', 'normalized_title', 'company',
    'company_domain', 'industry', 'department', 'location_raw', 'location_normalized',
    'country_code', 'is_remote', 'description', 'requirements', 'skills', 'work_type',
    'employment_type', 'experience_level', 'salary_min', 'salary_max', 'salary_currency',
    'salary_period', 'salary_yearly_min', 'salary_yearly_max', 'extraction_method',
    'source_url', 'apply_url', 'recruiter_email', 'posted_at', 'valid_through',
    'expires_at', 'scraped_at', 'source_updated_at', 'repost_count', 'liveness_status',
    'trust_score', 'ghost_score', 'ghost_reasons',
]

# Seeded once; liveness checks own these afterwards
INSERT_ONLY_COLUMNS = {'external_id', 'source', 'liveness_status', 'trust_score'}

# Merged rather than overwritten on conflict
MERGED_COLUMNS = {'repost_count'}

# Tiered re-check schedule by posting age
DUE_FOR_CHECK_SQL = f"""
    SELECT * FROM {JOBS_TABLE}
    WHERE liveness_status <> 'expired'
      AND (
        last_liveness_check IS NULL
        OR (COALESCE(posted_at, first_seen_at) >= NOW() - INTERVAL '7 days'
            AND last_liveness_check < NOW() - INTERVAL '24 hours')
        OR (COALESCE(posted_at, first_seen_at) < NOW() - INTERVAL '7 days'
            AND COALESCE(posted_at, first_seen_at) >= NOW() - INTERVAL '30 days'
            AND last_liveness_check < NOW() - INTERVAL '48 hours')
        OR (COALESCE(posted_at, first_seen_at) < NOW() - INTERVAL '30 days'
            AND last_liveness_check < NOW() - INTERVAL '72 hours')
      )
    ORDER BY last_liveness_check ASC NULLS FIRST, first_seen_at ASC
    LIMIT %s
"""


def job_to_row(job: JobPosting) -> Dict[str, Any]:
    """Map a JobPosting to job_postings column values."""
    status = job.liveness_status
    return {
        'external_id': job.external_id,
        'source': job.source_key,
        'identity_hash': job.identity_hash,
        'title': job.title,
        'normalized_title': job.normalized_title,
        'company': job.company,
        'company_domain': job.company_domain,
        'industry': job.industry,
        'department': job.department,
        'location_raw': job.location.raw,
        'location_normalized': job.location.normalized,
        'country_code': job.location.country_code,
        'is_remote': job.location.is_remote,
        'description': job.description,
        'requirements': Json([{'type': r.type, 'text': r.text} for r in job.requirements]),
        'skills': Json(list(job.skills)),
        'work_type': job.work_type,
        'employment_type': job.employment_type,
        'experience_level': job.experience_level,
        'salary_min': job.salary.min,
        'salary_max': job.salary.max,
        'salary_currency': job.salary.currency,
        'salary_period': job.salary.period,
        'salary_yearly_min': job.salary.yearly_min,
        'salary_yearly_max': job.salary.yearly_max,
        'extraction_method': job.source.extraction_method,
        'source_url': job.source.source_url,
        'apply_url': job.apply_url,
        'recruiter_email': job.recruiter_email,
        'posted_at': job.posted_at,
        'valid_through': job.valid_through,
        'expires_at': job.expires_at,
        'scraped_at': job.scraped_at,
        'source_updated_at': job.updated_at,
        'repost_count': job.repost_count,
        'liveness_status': status.value if isinstance(status, LivenessStatus) else status,
        'trust_score': job.trust_score,
        'ghost_score': job.ghost_score,
        'ghost_reasons': Json(list(job.ghost_reasons)),
    }


def _float(value) -> Optional[float]:
    return float(value) if value is not None else None


def row_to_job(row: Dict[str, Any]) -> JobPosting:
    """Build a JobPosting from a job_postings row (RealDictCursor)."""
    source = row.get('source') or ''
    origin, _, board_id = source.partition(':')
    requirements = [
        Requirement(type=r.get('type'), text=r.get('text'))
        for r in (row.get('requirements') or []) if isinstance(r, dict)
    ]
    try:
        status = LivenessStatus(row.get('liveness_status') or 'unknown')
    except ValueError:
        status = LivenessStatus.UNKNOWN

    return JobPosting(
        id=str(row['id']) if row.get('id') is not None else None,
        title=row.get('title') or '',
        normalized_title=row.get('normalized_title') or '',
        company=row.get('company') or '',
        source=JobSource(
            origin=origin,
            source_url=row.get('source_url') or '',
            extraction_method=row.get('extraction_method') or '',
            board_id=board_id or None,
        ),
        location=JobLocation(
            raw=row.get('location_raw'),
            normalized=row.get('location_normalized'),
            country_code=row.get('country_code'),
            is_remote=bool(row.get('is_remote')),
        ),
        description=row.get('description') or '',
        requirements=requirements,
        skills=list(row.get('skills') or []),
        work_type=row.get('work_type'),
        employment_type=row.get('employment_type'),
        experience_level=row.get('experience_level'),
        salary=Salary(
            min=_float(row.get('salary_min')),
            max=_float(row.get('salary_max')),
            currency=row.get('salary_currency'),
            period=row.get('salary_period'),
            yearly_min=_float(row.get('salary_yearly_min')),
            yearly_max=_float(row.get('salary_yearly_max')),
        ),
        external_id=row.get('external_id'),
        apply_url=row.get('apply_url'),
        posted_at=row.get('posted_at'),
        valid_through=row.get('valid_through'),
        scraped_at=row.get('scraped_at') or row.get('first_seen_at'),
        updated_at=row.get('source_updated_at'),
        recruiter_email=row.get('recruiter_email'),
        department=row.get('department'),
        repost_count=row.get('repost_count') or 0,
        liveness_status=status,
        trust_score=row.get('trust_score') if row.get('trust_score') is not None else 50,
        ghost_score=row.get('ghost_score') or 0,
        ghost_reasons=list(row.get('ghost_reasons') or []),
        last_liveness_check=row.get('last_liveness_check'),
        consecutive_failures=row.get('consecutive_failures') or 0,
        expires_at=row.get('expires_at'),
        first_seen_at=row.get('first_seen_at'),
        last_seen_at=row.get('last_seen_at'),
        view_count=row.get('view_count') or 0,
        application_count=row.get('application_count') or 0,
        industry=row.get('industry'),
        company_domain=row.get('company_domain'),
    )


def _build_upsert_sql() -> str:
    columns = ', '.join(UPSERT_COLUMNS)
    placeholders = ', '.join(f"%({c})s" for c in UPSERT_COLUMNS)
    updates = [
        f"{c} = EXCLUDED.{c}" for c in UPSERT_COLUMNS
        if c not in INSERT_ONLY_COLUMNS and c not in MERGED_COLUMNS
    ]
    # A refresh carries the count it was read with; never lower the stored one
    updates.append(f"repost_count = GREATEST({JOBS_TABLE}.repost_count, EXCLUDED.repost_count)")
    # Seen again in a listing: drop stale/expired back to unknown for re-verification
    updates.append(
        f"liveness_status = CASE WHEN {JOBS_TABLE}.liveness_status IN ('stale', 'expired') "
        f"THEN 'unknown' ELSE {JOBS_TABLE}.liveness_status END"
    )
    updates.append(
        f"consecutive_failures = CASE WHEN {JOBS_TABLE}.liveness_status IN ('stale', 'expired') "
        f"THEN 0 ELSE {JOBS_TABLE}.consecutive_failures END"
    )
    updates.append("last_seen_at = NOW()")
    updates.append("updated_at = NOW()")
    return f"""
        INSERT INTO {JOBS_TABLE} ({columns}, first_seen_at, last_seen_at, updated_at)
        VALUES ({placeholders}, NOW(), NOW(), NOW())
        ON CONFLICT (external_id, source) DO UPDATE SET
            {', '.join(updates)}
        RETURNING id, (xmax = 0) AS inserted
    """


UPSERT_SQL = _build_upsert_sql()


class JobStore:
    """psycopg2-backed store for job postings, liveness history and locks"""

    def __init__(self, db_url: str):
        self.db_url = db_url

    def _get_db_conn(self):
        """Get database connection."""
        try:
            return psycopg2.connect(self.db_url, connect_timeout=5)
        except Exception as e:
            logger.error(f"[store] Failed to connect to database: {e}")
            raise

    def ensure_schema(self):
        """Create tables if they do not exist."""
        conn = self._get_db_conn()
        try:
            with conn.cursor() as cur:
                cur.execute(SCHEMA_SQL)
            conn.commit()
        finally:
            conn.close()

    def upsert_job(self, job: JobPosting) -> Dict[str, Any]:
        """
        Insert or update one job atomically.

        Returns:
            Dict with status: {success, job_id, error, action} where action is
            'inserted' or 'updated'
        """
        if not job.external_id:
            return {'success': False, 'job_id': None, 'error': 'Missing external_id', 'action': None}

        conn = None
        try:
            conn = self._get_db_conn()
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(UPSERT_SQL, job_to_row(job))
                row = cur.fetchone()
            conn.commit()
            action = 'inserted' if row['inserted'] else 'updated'
            logger.debug(f"[store] {action} job {row['id']} ({job.source_key}/{job.external_id})")
            return {'success': True, 'job_id': str(row['id']), 'error': None, 'action': action}
        except psycopg2.IntegrityError as e:
            logger.warning(f"[store] Integrity error upserting job {job.external_id}: {e}")
            if conn:
                conn.rollback()
            return {'success': False, 'job_id': None, 'error': f'Integrity error: {str(e)}', 'action': None}
        except Exception as e:
            logger.error(f"[store] Error upserting job {job.external_id}: {e}", exc_info=True)
            if conn:
                conn.rollback()
            return {'success': False, 'job_id': None, 'error': str(e), 'action': None}
        finally:
            if conn:
                conn.close()

    def touch_seen(self, job_id: str) -> bool:
        """Refresh last_seen_at of a stored job re-found by a scrape."""
        conn = self._get_db_conn()
        try:
            with conn.cursor() as cur:
                cur.execute(f"""
                    UPDATE {JOBS_TABLE}
                    SET last_seen_at = NOW()
                    WHERE id = %s
                """, (job_id,))
                touched = cur.rowcount > 0
            conn.commit()
            return touched
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def record_liveness(self, job_id: str, previous_status: Optional[str], status: str,
                        trust_score: int, consecutive_failures: int, checked_at: datetime,
                        http_status: Optional[int] = None, reason: Optional[str] = None,
                        response_ms: Optional[int] = None):
        """
        Store a liveness verdict and append it to the history log.

        Both writes share one transaction; history rows are never updated.
        """
        conn = self._get_db_conn()
        try:
            with conn.cursor() as cur:
                cur.execute(f"""
                    UPDATE {JOBS_TABLE}
                    SET liveness_status = %s,
                        trust_score = %s,
                        consecutive_failures = %s,
                        last_liveness_check = %s,
                        updated_at = NOW()
                    WHERE id = %s
                """, (status, trust_score, consecutive_failures, checked_at, job_id))
                cur.execute("""
                    INSERT INTO job_liveness_checks
                        (job_id, checked_at, previous_status, status, http_status,
                         reason, response_ms, trust_score)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """, (job_id, checked_at, previous_status, status, http_status,
                      reason, response_ms, trust_score))
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def update_ghost_score(self, job_id: str, score: int, reasons: List[str]):
        conn = self._get_db_conn()
        try:
            with conn.cursor() as cur:
                cur.execute(f"""
                    UPDATE {JOBS_TABLE} SET ghost_score = %s, ghost_reasons = %s WHERE id = %s
                """, (score, Json(list(reasons)), job_id))
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _select_jobs(self, sql: str, params: tuple) -> List[JobPosting]:
        conn = self._get_db_conn()
        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(sql, params)
                rows = cur.fetchall()
            return [row_to_job(r) for r in rows]
        finally:
            conn.close()

    def load_jobs_due_for_check(self, limit: int = 500) -> List[JobPosting]:
        """Jobs whose liveness re-check is due on the tiered schedule."""
        return self._select_jobs(DUE_FOR_CHECK_SQL, (limit,))

    def load_recent_jobs(self, days: int = 7) -> List[JobPosting]:
        """Non-expired jobs posted (or first seen) within `days`; dedup context."""
        return self._select_jobs(f"""
            SELECT * FROM {JOBS_TABLE}
            WHERE liveness_status <> 'expired'
              AND COALESCE(posted_at, first_seen_at) >= NOW() - (%s * INTERVAL '1 day')
        """, (days,))

    def load_rankable_jobs(self, filters: Optional[Dict[str, Any]] = None,
                           limit: int = 2000, max_ghost_score: int = 60) -> List[JobPosting]:
        """
        Candidate pool for ranking.

        Args:
            filters: optional {'location': substring, 'work_type': exact}
            limit: maximum rows (newest first)
            max_ghost_score: rows at or above this ghost score are not loaded
        """
        filters = filters or {}
        where = ["liveness_status <> 'expired'", "ghost_score < %s"]
        params: List[Any] = [max_ghost_score]
        if filters.get('location'):
            where.append("(location_normalized ILIKE %s OR location_raw ILIKE %s)")
            pattern = f"%{filters['location']}%"
            params.extend([pattern, pattern])
        if filters.get('work_type'):
            where.append("work_type = %s")
            params.append(filters['work_type'])
        params.append(limit)
        return self._select_jobs(f"""
            SELECT * FROM {JOBS_TABLE}
            WHERE {' AND '.join(where)}
            ORDER BY COALESCE(posted_at, first_seen_at) DESC
            LIMIT %s
        """, tuple(params))

    def expire_past_due(self) -> List[str]:
        """Mark jobs whose expires_at has passed as expired; returns their ids."""
        conn = self._get_db_conn()
        try:
            with conn.cursor() as cur:
                cur.execute(f"""
                    UPDATE {JOBS_TABLE}
                    SET liveness_status = 'expired', updated_at = NOW()
                    WHERE expires_at IS NOT NULL
                      AND expires_at < NOW()
                      AND liveness_status <> 'expired'
                    RETURNING id
                """)
                ids = [str(r[0]) for r in cur.fetchall()]
            conn.commit()
            if ids:
                logger.info(f"[store] Expired {len(ids)} past-due job(s)")
            return ids
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def acquire_lock(self, name: str, ttl_seconds: int = 3600) -> bool:
        """Try to acquire a named lock; locks older than ttl_seconds are reclaimed."""
        conn = self._get_db_conn()
        try:
            with conn.cursor() as cur:
                cur.execute("""
                    DELETE FROM job_locks
                    WHERE name = %s AND locked_at < NOW() - (%s * INTERVAL '1 second')
                """, (name, ttl_seconds))
                try:
                    cur.execute("""
                        INSERT INTO job_locks (name, locked_at)
                        VALUES (%s, NOW())
                    """, (name,))
                    conn.commit()
                    return True
                except psycopg2.IntegrityError:
                    # Lock already held
                    conn.rollback()
                    return False
        finally:
            conn.close()

    def release_lock(self, name: str):
        """Release a named lock"""
        conn = self._get_db_conn()
        try:
            with conn.cursor() as cur:
                cur.execute("""
                    DELETE FROM job_locks WHERE name = %s
                """, (name,))
                conn.commit()
        finally:
            conn.close()
