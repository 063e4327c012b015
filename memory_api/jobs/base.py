from __future__ import annotations

import abc
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..models import JobPayload, JobState, JobView, MemoryRecord, now_ms


class EnqueueError(RuntimeError):
    """Raised when a backend cannot accept a job."""


class JobBackend(abc.ABC):
    """Priority work queue for memory jobs.

    Adapters own job state and expose it only through ``JobView``.
    """

    name: str = "unknown"

    @abc.abstractmethod
    async def enqueue(self, payload: JobPayload) -> str:
        """Accept a job and return its id. Raises EnqueueError."""

    @abc.abstractmethod
    async def get_job(self, job_id: str) -> Optional[JobView]:
        ...

    @abc.abstractmethod
    async def counts(self) -> Dict[str, int]:
        ...

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        return None


@dataclass
class Job:
    id: str
    payload: JobPayload
    state: JobState = JobState.QUEUED
    progress: int = 0
    result: Optional[Dict[str, Any]] = None
    failure_reason: Optional[str] = None
    attempts: int = 0
    created_at: int = 0
    processed_at: Optional[int] = None
    finished_at: Optional[int] = None

    def set_progress(self, value: int) -> None:
        self.progress = max(0, min(100, int(value)))

    def mark_active(self) -> None:
        self.state = JobState.ACTIVE
        self.attempts += 1
        if self.processed_at is None:
            self.processed_at = now_ms()

    def mark_completed(self, record: MemoryRecord) -> None:
        self.state = JobState.COMPLETED
        self.set_progress(100)
        self.failure_reason = None
        self.result = {"success": True, "memoryId": record.id, **record.to_dict()}
        self.finished_at = now_ms()

    def mark_failed(self, reason: str) -> None:
        self.state = JobState.FAILED
        self.failure_reason = reason
        self.result = {"success": False, "error": reason}
        self.finished_at = now_ms()

    def to_view(self) -> JobView:
        return JobView(
            id=self.id,
            state=self.state,
            progress=self.progress,
            result=dict(self.result) if self.result is not None else None,
            failure_reason=self.failure_reason,
            created_at=self.created_at,
            processed_at=self.processed_at,
            finished_at=self.finished_at,
            priority=self.payload.priority,
            attempts=self.attempts,
        )


class JobRegistry:
    """Per-process job table with bounded retention of finished jobs."""

    def __init__(self, *, keep_completed: int = 1000, keep_failed: int = 5000):
        # A finished job stays visible to status polling at least until the next one finishes
        self.keep_completed = max(1, keep_completed)
        self.keep_failed = max(1, keep_failed)
        self._jobs: Dict[str, Job] = {}
        self._finished: Dict[JobState, "OrderedDict[str, None]"] = {
            JobState.COMPLETED: OrderedDict(),
            JobState.FAILED: OrderedDict(),
        }

    def create(self, payload: JobPayload, job_id: Optional[str] = None) -> Job:
        job = Job(id=job_id or str(uuid.uuid4()), payload=payload, created_at=now_ms())
        self._jobs[job.id] = job
        return job

    def get(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    def discard(self, job_id: str) -> None:
        self._jobs.pop(job_id, None)

    def finish(self, job: Job) -> None:
        """Record a job that reached a terminal state and evict the oldest overflow."""
        bucket = self._finished.get(job.state)
        if bucket is None:
            return
        bucket[job.id] = None
        limit = self.keep_completed if job.state == JobState.COMPLETED else self.keep_failed
        while len(bucket) > limit:
            old_id, _ = bucket.popitem(last=False)
            self._jobs.pop(old_id, None)

    def counts(self) -> Dict[str, int]:
        out = {s.value: 0 for s in JobState}
        for job in self._jobs.values():
            out[job.state.value] += 1
        return out
