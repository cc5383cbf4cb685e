"""Engine settings, read from the environment (and a ``.env`` file)."""

import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, str(default)).lower() in ("1", "true", "yes", "on")


class EngineConfig(BaseModel):
    """Timing, sizing and storage settings for ``ContextEngine``."""

    poll_interval_ms: int = Field(1000, gt=0)
    app_refresh_ms: int = Field(5000, gt=0)
    maintenance_interval_ms: int = Field(60000, gt=0)
    cache_ttl_ms: int = Field(2000, ge=0)
    debounce_ms: int = Field(500, ge=0)
    history_size: int = Field(5, gt=0)
    similarity_threshold: float = Field(0.8, ge=0, le=1)
    clipboard_max_age_ms: int = Field(30000, ge=0)
    min_history_length: int = Field(10, ge=0)
    top_k: int = Field(5, gt=0)
    use_memory: bool = True
    data_dir: str = "~/.context-memory"
    redis_url: Optional[str] = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "EngineConfig":
        load_dotenv()
        return cls(
            poll_interval_ms=_env_int("CONTEXT_POLL_INTERVAL_MS", 1000),
            app_refresh_ms=_env_int("CONTEXT_APP_REFRESH_MS", 5000),
            maintenance_interval_ms=_env_int("CONTEXT_MAINTENANCE_INTERVAL_MS", 60000),
            cache_ttl_ms=_env_int("CONTEXT_CACHE_TTL_MS", 2000),
            debounce_ms=_env_int("CONTEXT_DEBOUNCE_MS", 500),
            history_size=_env_int("CONTEXT_HISTORY_SIZE", 5),
            similarity_threshold=_env_float("CONTEXT_SIMILARITY_THRESHOLD", 0.8),
            clipboard_max_age_ms=_env_int("CONTEXT_CLIPBOARD_MAX_AGE_MS", 30000),
            min_history_length=_env_int("CONTEXT_MIN_HISTORY_LENGTH", 10),
            top_k=_env_int("CONTEXT_TOP_K", 5),
            use_memory=_env_bool("CONTEXT_USE_MEMORY", True),
            data_dir=os.getenv("CONTEXT_DATA_DIR", "~/.context-memory"),
            redis_url=os.getenv("CONTEXT_REDIS_URL") or None,
            log_level=os.getenv("CONTEXT_LOG_LEVEL", "INFO").upper(),
        )
