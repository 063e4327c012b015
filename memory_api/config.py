import os
from dataclasses import dataclass
from typing import Tuple

from dotenv import load_dotenv

from .models import BackendMode

# Load .env if present, but avoid during pytest to keep tests deterministic
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()


def _env_str(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default


def _env_bool(name: str, default: bool) -> bool:
    v = os.getenv(name, "1" if default else "0").strip().lower()
    return v in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    # Queue feature flag: the one environment-driven branch of the pipeline
    queue_enabled: bool = False
    queue_provider: str = "memory"  # "memory" | "sqs"
    worker_concurrency: int = 2
    job_max_attempts: int = 3
    job_backoff_base_ms: int = 2000
    keep_completed_jobs: int = 1000
    keep_failed_jobs: int = 5000
    # SQS
    aws_region: str = ""
    aws_sqs_queue_url: str = ""
    aws_endpoint_url_sqs: str = ""
    sqs_wait_seconds: int = 10
    sqs_visibility_timeout: int = 60
    # Summarizer
    summary_timeout_seconds: float = 8.0
    # Store
    store_url: str = ""
    store_timeout_seconds: float = 10.0
    # Dedup windows (minutes)
    dedup_lookup_minutes: int = 15
    dedup_duplicate_minutes: int = 10
    # Retrieval
    retrieval_default_limit: int = 5
    retrieval_max_limit: int = 50
    # HTTP
    cors_allow_origins: Tuple[str, ...] = ("http://localhost:3000",)
    queue_max_waiting: int = 1000

    @property
    def backend_mode(self) -> BackendMode:
        return BackendMode.QUEUED if self.queue_enabled else BackendMode.DIRECT


def load_settings() -> Settings:
    """Read process configuration from the environment."""
    origins = tuple(
        o.strip() for o in _env_str("CORS_ALLOW_ORIGINS", "http://localhost:3000").split(",") if o.strip()
    )
    return Settings(
        queue_enabled=_env_bool("MEMORY_QUEUE_ENABLED", False),
        queue_provider=(_env_str("MEMORY_QUEUE_PROVIDER", "memory") or "memory").lower(),
        worker_concurrency=max(1, _env_int("MEMORY_WORKER_CONCURRENCY", 2)),
        job_max_attempts=max(1, _env_int("MEMORY_JOB_MAX_ATTEMPTS", 3)),
        job_backoff_base_ms=max(0, _env_int("MEMORY_JOB_BACKOFF_BASE_MS", 2000)),
        keep_completed_jobs=max(1, _env_int("MEMORY_JOB_KEEP_COMPLETED", 1000)),
        keep_failed_jobs=max(1, _env_int("MEMORY_JOB_KEEP_FAILED", 5000)),
        aws_region=_env_str("AWS_REGION"),
        aws_sqs_queue_url=_env_str("AWS_SQS_QUEUE_URL"),
        aws_endpoint_url_sqs=_env_str("AWS_ENDPOINT_URL_SQS"),
        sqs_wait_seconds=_env_int("SQS_WAIT_SECONDS", 10),
        sqs_visibility_timeout=_env_int("SQS_VISIBILITY_TIMEOUT", 60),
        summary_timeout_seconds=_env_float("MEMORY_SUMMARY_TIMEOUT_SECONDS", 8.0),
        store_url=_env_str("MEMORY_STORE_URL"),
        store_timeout_seconds=_env_float("MEMORY_STORE_TIMEOUT_SECONDS", 10.0),
        retrieval_default_limit=max(1, _env_int("RETRIEVAL_DEFAULT_LIMIT", 5)),
        retrieval_max_limit=max(1, _env_int("RETRIEVAL_MAX_LIMIT", 50)),
        cors_allow_origins=origins or ("http://localhost:3000",),
        queue_max_waiting=_env_int("QUEUE_MAX_WAITING", 1000),
    )
