import logging
from typing import Any, Dict, Optional

import boto3

from ..config import Settings
from ..logs import get_logger, log_event
from .base import JobBackend
from .memory import InMemoryJobBackend
from .processor import MemoryProcessor
from .sqs import SqsJobBackend

logger = get_logger("tutor_memory.jobs")


def get_sqs_client(settings: Settings) -> Any:
    kwargs: Dict[str, Any] = {}
    if settings.aws_region:
        kwargs["region_name"] = settings.aws_region
    if settings.aws_endpoint_url_sqs:
        kwargs["endpoint_url"] = settings.aws_endpoint_url_sqs
    return boto3.client("sqs", **kwargs)


def build_job_backend(settings: Settings, processor: MemoryProcessor) -> Optional[JobBackend]:
    """Return the configured job backend, or None when the queue is disabled.

    An SQS selection without a queue URL, or whose client cannot be built,
    falls back to the in-memory backend.
    """
    if not settings.queue_enabled:
        return None
    if settings.queue_provider == "sqs":
        if not settings.aws_sqs_queue_url:
            log_event(logger, logging.WARNING, "sqs_config_missing", detail="AWS_SQS_QUEUE_URL not set; using in-memory queue")
        else:
            try:
                client = get_sqs_client(settings)
            except Exception as e:
                log_event(logger, logging.WARNING, "sqs_client_error", error=str(e))
            else:
                return SqsJobBackend(
                    processor,
                    client,
                    settings.aws_sqs_queue_url,
                    concurrency=settings.worker_concurrency,
                    max_attempts=settings.job_max_attempts,
                    wait_seconds=settings.sqs_wait_seconds,
                    visibility_timeout=settings.sqs_visibility_timeout,
                    keep_completed=settings.keep_completed_jobs,
                    keep_failed=settings.keep_failed_jobs,
                )
    return InMemoryJobBackend(
        processor,
        concurrency=settings.worker_concurrency,
        max_attempts=settings.job_max_attempts,
        backoff_base_ms=settings.job_backoff_base_ms,
        keep_completed=settings.keep_completed_jobs,
        keep_failed=settings.keep_failed_jobs,
    )
