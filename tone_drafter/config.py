"""
Tone Drafter - Konfiguration

Alle Einstellungen kommen aus der Prozess-Umgebung. ``.env.local`` hat
Vorrang vor ``.env``; bereits gesetzte Variablen werden von ``.env`` nicht
überschrieben.
"""

import os
import logging
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).parent.parent


def load_environment(project_root: Path = PROJECT_ROOT) -> None:
    """Lädt .env.local (Priorität) und danach .env"""
    load_dotenv(project_root / ".env.local", override=True)
    load_dotenv(project_root / ".env", override=False)


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"⚠️ {name}={raw!r} ist keine Ganzzahl, verwende {default}")
        return default


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"⚠️ {name}={raw!r} ist keine Zahl, verwende {default}")
        return default


def _bool_env(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# =============================================================================
# Infrastruktur
# =============================================================================
def get_database_url() -> str:
    return os.getenv("DATABASE_URL", f"sqlite:///{PROJECT_ROOT / 'tone_drafter.db'}")


def get_broker_url() -> str:
    return os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/1")


def get_result_backend() -> str:
    return os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/2")


def get_lock_url() -> str:
    return os.getenv("REDIS_LOCK_URL") or get_broker_url()


def get_db_connect_timeout() -> int:
    return _int_env("DB_CONNECT_TIMEOUT", 10)


# =============================================================================
# LLM / Embeddings / Retrieval
# =============================================================================
def get_llm_timeout() -> float:
    return _float_env("LLM_TIMEOUT", 120.0)


def get_embedding_timeout() -> float:
    return _float_env("EMBEDDING_TIMEOUT", 30.0)


def get_embedding_provider() -> str:
    return os.getenv("EMBEDDING_PROVIDER", "ollama").strip().lower()


def get_embedding_model() -> str:
    return os.getenv("EMBEDDING_MODEL", "all-minilm:22m")


def get_embedding_dim() -> int:
    return _int_env("EMBEDDING_DIM", 384)


def get_context_top_k() -> int:
    return _int_env("CONTEXT_TOP_K", 5)


def get_tone_profile_window() -> int:
    """Maximale Anzahl gesendeter Mails pro Tone-Profile-Job"""
    return _int_env("TONE_PROFILE_WINDOW", 200)


def debug_logging_enabled() -> bool:
    return _bool_env("DRAFT_DEBUG_LOG", False)


# =============================================================================
# Worker
# =============================================================================
def get_task_time_limit() -> int:
    """Hartes Celery-Time-Limit pro Task in Sekunden"""
    return max(_int_env("TASK_TIME_LIMIT_SECONDS", 10 * 60), 60)


def get_job_stale_seconds() -> float:
    """Ab dieser Laufzeit gilt ein active-Job als verwaist

    Muss über dem Task-Time-Limit liegen, sonst wird ein noch laufender
    Job als verloren gezählt.
    """
    limit = get_task_time_limit()
    stale = _float_env("JOB_STALE_AFTER_SECONDS", limit + 5 * 60)
    if stale <= limit:
        logger.warning(f"⚠️ JOB_STALE_AFTER_SECONDS={stale:.0f} liegt nicht über dem Time-Limit {limit}s")
        return float(limit + 5 * 60)
    return stale


def get_recovery_interval() -> float:
    """Intervall des periodischen Recovery-Tasks (Celery Beat)"""
    return _float_env("JOB_RECOVERY_INTERVAL_SECONDS", 5 * 60)


# =============================================================================
# Retry-Policy der Job-Queue
# =============================================================================
@dataclass(frozen=True)
class RetryPolicy:
    """Explizite Retry-Policy für Jobs (Celery-Autoretry ist deaktiviert)

    ``attempt`` zählt die bereits gelaufenen Versuche: nach dem ersten
    Fehlschlag gilt ``delay_for(1) == base_delay``.
    """

    max_attempts: int = 4
    base_delay: float = 30.0
    factor: float = 2.0
    max_delay: float = 900.0

    def delay_for(self, attempt: int) -> float:
        attempt = max(attempt, 1)
        return min(self.base_delay * (self.factor ** (attempt - 1)), self.max_delay)

    def is_exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts

    @classmethod
    def from_env(cls) -> "RetryPolicy":
        return cls(
            max_attempts=max(_int_env("JOB_MAX_ATTEMPTS", 4), 1),
            base_delay=_float_env("JOB_BACKOFF_BASE_SECONDS", 30.0),
            factor=_float_env("JOB_BACKOFF_FACTOR", 2.0),
            max_delay=_float_env("JOB_BACKOFF_MAX_SECONDS", 900.0),
        )
