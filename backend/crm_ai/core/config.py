"""
Runtime configuration.

Values come from environment variables; a ``.env`` file at the repository
root is loaded first when present. Components accept explicit arguments as
well, so nothing below is required for tests.
"""
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from crm_ai.core.logging import get_logger

logger = get_logger(__name__)

env_path = Path(__file__).parent.parent.parent.parent / ".env"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    return int(raw) if raw else default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    return float(raw) if raw else default


class Settings(BaseModel):
    """Pipeline settings. Defaults match the production behaviour."""

    # LLM completion + moderation endpoint (OpenAI-compatible)
    llm_api_base: str = "https://api.openai.com/v1"
    llm_api_key: Optional[str] = None
    llm_model: str = "gpt-4"
    llm_timeout_seconds: float = 30.0
    llm_cost_per_1k_tokens: float = Field(0.01, ge=0.0)

    # Embeddings
    embedding_backend: str = "api"
    embedding_model: str = "text-embedding-3-small"

    # Content safety
    moderation_enabled: bool = True
    moderation_fail_mode: str = "open"

    # Quota / cache
    ai_requests_per_day: int = Field(100, ge=0)
    cache_ttl_seconds: int = Field(15 * 60, gt=0)
    cache_max_entries: int = Field(1000, gt=0)

    # RAG indexing
    rag_batch_size: int = Field(10, gt=0)
    rag_page_size: int = Field(100, gt=0)
    rag_reconcile_window_hours: int = Field(24, gt=0)
    vector_store_dir: Optional[str] = None

    # Persistence
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            llm_api_base=os.getenv("LLM_API_BASE", "https://api.openai.com/v1"),
            llm_api_key=os.getenv("LLM_API_KEY") or os.getenv("OPENAI_API_KEY"),
            llm_model=os.getenv("LLM_MODEL", "gpt-4"),
            llm_timeout_seconds=_env_float("LLM_TIMEOUT_SECONDS", 30.0),
            llm_cost_per_1k_tokens=_env_float("LLM_COST_PER_1K_TOKENS", 0.01),
            embedding_backend=os.getenv("EMBEDDING_BACKEND", "api").lower(),
            embedding_model=os.getenv("EMBEDDING_MODEL", "text-embedding-3-small"),
            moderation_enabled=_env_bool("MODERATION_ENABLED", True),
            moderation_fail_mode=os.getenv("MODERATION_FAIL_MODE", "open").lower(),
            ai_requests_per_day=_env_int("AI_REQUESTS_PER_DAY", 100),
            cache_ttl_seconds=_env_int("AI_CACHE_TTL_SECONDS", 15 * 60),
            cache_max_entries=_env_int("AI_CACHE_MAX_ENTRIES", 1000),
            rag_batch_size=_env_int("RAG_BATCH_SIZE", 10),
            rag_page_size=_env_int("RAG_PAGE_SIZE", 100),
            rag_reconcile_window_hours=_env_int("RAG_RECONCILE_WINDOW_HOURS", 24),
            vector_store_dir=os.getenv("VECTOR_STORE_DIR") or None,
            supabase_url=os.getenv("SUPABASE_URL"),
            supabase_key=os.getenv("SUPABASE_SERVICE_KEY") or os.getenv("SUPABASE_KEY"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_json=_env_bool("LOG_JSON", True),
        )


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Global settings accessor (reads the environment once)."""
    global _settings
    if _settings is None:
        if env_path.exists():
            load_dotenv(env_path)
            logger.info("env_loaded", env_path=str(env_path))
        _settings = Settings.from_env()
    return _settings


def reset_settings() -> None:
    """Forget cached settings so the next call re-reads the environment."""
    global _settings
    _settings = None
