"""
Runtime configuration.

Settings come from environment variables (loaded from .env by the entrypoint)
with defaults matching production behaviour. Ghost-job weights and company
lists may also be supplied as YAML files.
"""
import os
import logging
from pathlib import Path
from typing import Dict, List, Optional

import yaml

from core.errors import ConfigError
from core.models import CompanyConfig

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, 'true' if default else 'false').lower() == 'true'


class ScraperConfig:
    """Scraper engine, HTTP and anti-detection settings"""

    def __init__(self, **overrides):
        self.max_concurrent = _env_int('SCRAPER_MAX_CONCURRENT', 10)
        self.batch_size = _env_int('SCRAPER_BATCH_SIZE', 25)
        self.request_timeout = _env_float('SCRAPER_REQUEST_TIMEOUT', 30.0)
        self.total_timeout = _env_float('SCRAPER_TOTAL_TIMEOUT', 120.0)
        self.max_retries = _env_int('SCRAPER_MAX_RETRIES', 3)
        self.retry_min_wait = _env_float('SCRAPER_RETRY_MIN_WAIT', 1.0)
        self.retry_max_wait = _env_float('SCRAPER_RETRY_MAX_WAIT', 30.0)
        self.global_rpm = _env_int('SCRAPER_GLOBAL_RPM', 60)
        self.global_burst = _env_int('SCRAPER_GLOBAL_BURST', 10)
        self.domain_rpm = _env_int('SCRAPER_DOMAIN_RPM', 20)
        self.domain_burst = _env_int('SCRAPER_DOMAIN_BURST', 3)
        self.jitter_min_ms = _env_int('SCRAPER_JITTER_MIN_MS', 1000)
        self.jitter_max_ms = _env_int('SCRAPER_JITTER_MAX_MS', 10000)
        self.jitter_mean_ms = _env_int('SCRAPER_JITTER_MEAN_MS', 3500)
        self.enable_jitter = _env_bool('SCRAPER_ENABLE_JITTER', True)
        self.enable_browser = _env_bool('SCRAPER_ENABLE_BROWSER', False)
        self.max_response_kb = _env_int('SCRAPER_MAX_RESPONSE_KB', 5 * 1024)
        self.openrouter_api_key = os.getenv('OPENROUTER_API_KEY') or None
        self.llm_model = os.getenv('LLM_MODEL', 'openai/gpt-4o-mini')
        self.llm_max_calls = _env_int('LLM_MAX_CALLS', 50)
        self.llm_confidence_floor = _env_float('LLM_CONFIDENCE_FLOOR', 0.6)
        self.llm_max_chars = _env_int('LLM_MAX_CHARS', 25000)

        for key, value in overrides.items():
            if not hasattr(self, key):
                raise ConfigError(f"Unknown scraper setting: {key}")
            setattr(self, key, value)

        if self.max_concurrent < 1 or self.batch_size < 1:
            raise ConfigError("max_concurrent and batch_size must be >= 1")


class DedupConfig:
    def __init__(self, window_days: Optional[int] = None, fuzzy_threshold: Optional[float] = None):
        self.window_days = window_days if window_days is not None else _env_int('DEDUP_WINDOW_DAYS', 7)
        self.fuzzy_threshold = (
            fuzzy_threshold if fuzzy_threshold is not None
            else _env_float('DEDUP_FUZZY_THRESHOLD', 0.85)
        )
        if not 0.0 < self.fuzzy_threshold <= 1.0:
            raise ConfigError(f"fuzzy_threshold out of range: {self.fuzzy_threshold}")


class LivenessConfig:
    def __init__(self, **overrides):
        self.timeout = _env_float('LIVENESS_TIMEOUT', 10.0)
        self.stale_after_failures = _env_int('LIVENESS_STALE_AFTER', 3)
        self.batch_size = _env_int('LIVENESS_BATCH_SIZE', 10)
        self.batch_delay = _env_float('LIVENESS_BATCH_DELAY', 2.0)
        self.sweep_limit = _env_int('LIVENESS_SWEEP_LIMIT', 500)
        self.trust_ceiling = 95
        self.trust_step = 5
        self.stale_penalty = 30
        for key, value in overrides.items():
            if not hasattr(self, key):
                raise ConfigError(f"Unknown liveness setting: {key}")
            setattr(self, key, value)


DEFAULT_GHOST_WEIGHTS = {
    'stale_unconfirmed': 25,
    'boilerplate_description': 20,
    'no_salary_generic_title': 15,
    'reposted': 25,
    'recruiter_domain_mismatch': 20,
    'low_engagement': 15,
}


class GhostConfig:
    """Ghost-job signal weights and band thresholds (heuristic, tunable)"""

    def __init__(self, weights: Optional[Dict[str, int]] = None, **overrides):
        self.weights = dict(DEFAULT_GHOST_WEIGHTS)
        if weights:
            unknown = set(weights) - set(DEFAULT_GHOST_WEIGHTS)
            if unknown:
                raise ConfigError(f"Unknown ghost signals: {sorted(unknown)}")
            self.weights.update(weights)
        self.stale_days = 45
        self.confirmation_days = 7
        self.min_description_chars = 200
        self.boilerplate_hits = 2
        self.repost_threshold = 3
        self.engagement_min_days = 30
        self.engagement_min_views = 100
        self.engagement_min_rate = 0.01
        self.suspicious_threshold = 30
        self.likely_ghost_threshold = 60
        for key, value in overrides.items():
            if not hasattr(self, key):
                raise ConfigError(f"Unknown ghost setting: {key}")
            setattr(self, key, value)

    @classmethod
    def from_yaml(cls, path: str) -> 'GhostConfig':
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
        weights = data.pop('weights', None)
        logger.info(f"[config] Loaded ghost config from {path}")
        return cls(weights=weights, **data)

    @classmethod
    def from_env(cls) -> 'GhostConfig':
        path = os.getenv('GHOST_CONFIG_PATH')
        if path and Path(path).exists():
            return cls.from_yaml(path)
        return cls()


class RankingConfig:
    def __init__(self, **overrides):
        self.semantic_weight = 0.45
        self.recency_weight = 0.25
        self.liveness_weight = 0.20
        self.personalization_weight = 0.10
        self.recency_half_life_days = _env_float('RANKING_RECENCY_HALF_LIFE', 14.0)
        self.recency_floor = _env_float('RANKING_RECENCY_FLOOR', 0.1)
        self.liveness_floor = _env_float('RANKING_LIVENESS_FLOOR', 0.2)
        self.likely_ghost_threshold = 60
        self.cache_ttl_seconds = _env_int('RANKING_CACHE_TTL', 600)
        self.cache_max_entries = _env_int('RANKING_CACHE_MAX', 256)
        self.pool_limit = _env_int('RANKING_POOL_LIMIT', 2000)
        for key, value in overrides.items():
            if not hasattr(self, key):
                raise ConfigError(f"Unknown ranking setting: {key}")
            setattr(self, key, value)

        total = (self.semantic_weight + self.recency_weight
                 + self.liveness_weight + self.personalization_weight)
        if abs(total - 1.0) > 1e-6:
            raise ConfigError(f"Ranking weights must sum to 1.0, got {total:.3f}")


class Settings:
    """Bundle of every component's configuration"""

    def __init__(self):
        self.database_url = os.getenv('DATABASE_URL') or os.getenv('SUPABASE_DB_URL')
        self.scraper = ScraperConfig()
        self.dedup = DedupConfig()
        self.liveness = LivenessConfig()
        self.ghost = GhostConfig.from_env()
        # Ranking excludes exactly the postings the ghost scorer bands likely_ghost
        self.ranking = RankingConfig(likely_ghost_threshold=self.ghost.likely_ghost_threshold)
        self.companies_path = os.getenv('COMPANIES_CONFIG_PATH')


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get settings built from the current environment"""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings():
    global _settings
    _settings = None


def load_company_configs(path: str) -> List[CompanyConfig]:
    """
    Load company sources from a YAML file.

    Expects either a top-level list or a mapping with a `companies` key.
    Invalid entries are logged and skipped.
    """
    config_path = Path(path)
    if not config_path.exists():
        logger.warning(f"Company config file not found: {config_path}")
        return []

    with open(config_path, 'r', encoding='utf-8') as f:
        data = yaml.safe_load(f) or []

    entries = data.get('companies', []) if isinstance(data, dict) else data
    companies = []
    for entry in entries:
        try:
            companies.append(CompanyConfig.model_validate(entry))
        except ValueError as e:
            logger.error(f"[config] Invalid company config {entry.get('id') if isinstance(entry, dict) else entry}: {e}")
    logger.info(f"[config] Loaded {len(companies)} company configs from {config_path}")
    return companies
