"""
Candidate profile sources.

Profiles are owned by the account subsystem; ranking only reads them.
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional

import psycopg2
from psycopg2.extras import RealDictCursor

from core.models import CandidateProfile

logger = logging.getLogger(__name__)

PROFILES_TABLE = 'candidate_profiles'


def _as_list(value) -> List[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [v.strip() for v in value.split(',') if v.strip()]
    return [str(v) for v in value]


def _float(value) -> Optional[float]:
    return float(value) if value is not None else None


def row_to_profile(row: Dict[str, Any]) -> CandidateProfile:
    return CandidateProfile(
        candidate_id=str(row['candidate_id']),
        skills=_as_list(row.get('skills')),
        years_experience=_float(row.get('years_experience')),
        experience_level=row.get('experience_level'),
        titles=_as_list(row.get('titles')),
        preferred_locations=_as_list(row.get('preferred_locations')),
        preferred_work_types=_as_list(row.get('preferred_work_types')),
        salary_min=_float(row.get('salary_min')),
        salary_max=_float(row.get('salary_max')),
        industries=_as_list(row.get('industries')),
    )


class CandidateProfileSource(ABC):
    @abstractmethod
    def get_profile(self, candidate_id: str) -> Optional[CandidateProfile]:
        """Profile for a candidate, or None if unknown."""

    @abstractmethod
    def list_profiles(self) -> List[CandidateProfile]:
        """Profiles that want new-job notifications."""


class InMemoryProfileSource(CandidateProfileSource):
    def __init__(self, profiles: Iterable[CandidateProfile] = ()):
        self._profiles = {p.candidate_id: p for p in profiles}

    def add(self, profile: CandidateProfile):
        self._profiles[profile.candidate_id] = profile

    def get_profile(self, candidate_id: str) -> Optional[CandidateProfile]:
        return self._profiles.get(candidate_id)

    def list_profiles(self) -> List[CandidateProfile]:
        return list(self._profiles.values())


class PostgresProfileSource(CandidateProfileSource):
    """Reads `candidate_profiles` rows"""

    def __init__(self, db_url: str):
        self.db_url = db_url

    def _get_db_conn(self):
        try:
            return psycopg2.connect(self.db_url, connect_timeout=5)
        except Exception as e:
            logger.error(f"[profiles] Failed to connect to database: {e}")
            raise

    def get_profile(self, candidate_id: str) -> Optional[CandidateProfile]:
        conn = self._get_db_conn()
        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(f"SELECT * FROM {PROFILES_TABLE} WHERE candidate_id = %s", (candidate_id,))
                row = cur.fetchone()
            return row_to_profile(row) if row else None
        finally:
            conn.close()

    def list_profiles(self) -> List[CandidateProfile]:
        conn = self._get_db_conn()
        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(f"""
                    SELECT * FROM {PROFILES_TABLE}
                    WHERE COALESCE(notify_new_jobs, TRUE)
                """)
                rows = cur.fetchall()
            return [row_to_profile(r) for r in rows]
        finally:
            conn.close()
