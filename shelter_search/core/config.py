"""Application configuration helpers."""

import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Settings:
    database_url: str
    schema_cache_ttl_seconds: float = 300.0
    worker_port: int = 9000
    default_radius_km: float = 30.0
    max_radius_km: float = 200.0
    default_limit: int = 10
    max_limit: int = 50
    include_diagnostics: bool = False
    municipalities_path: Optional[str] = None
    db_pool_max: int = 5
    statement_timeout_ms: int = 0


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings from environment variables with sensible defaults."""
    load_dotenv()

    database_url = os.getenv("DATABASE_URL", "").strip()
    schema_cache_ttl_seconds = float(os.getenv("SCHEMA_CACHE_TTL_SECONDS", "300"))
    worker_port = int(os.getenv("WORKER_PORT", "9000"))
    default_radius_km = float(os.getenv("DEFAULT_RADIUS_KM", "30"))
    max_radius_km = float(os.getenv("MAX_RADIUS_KM", "200"))
    default_limit = int(os.getenv("DEFAULT_LIMIT", "10"))
    max_limit = int(os.getenv("MAX_LIMIT", "50"))
    include_diagnostics = _env_flag("SEARCH_DIAGNOSTICS")
    municipalities_path = os.getenv("MUNICIPALITIES_PATH") or None
    db_pool_max = int(os.getenv("DB_POOL_MAX", "5"))
    statement_timeout_ms = int(os.getenv("DB_STATEMENT_TIMEOUT_MS", "0"))

    if not database_url:
        logger.warning("DATABASE_URL is not set; shelter searches will report ENV_MISSING.")
    if municipalities_path and not os.path.exists(municipalities_path):
        logger.warning("MUNICIPALITIES_PATH=%s does not exist; area names will not be resolved.", municipalities_path)

    return Settings(
        database_url=database_url,
        schema_cache_ttl_seconds=schema_cache_ttl_seconds,
        worker_port=worker_port,
        default_radius_km=default_radius_km,
        max_radius_km=max_radius_km,
        default_limit=default_limit,
        max_limit=max_limit,
        include_diagnostics=include_diagnostics,
        municipalities_path=municipalities_path,
        db_pool_max=db_pool_max,
        statement_timeout_ms=statement_timeout_ms,
    )
