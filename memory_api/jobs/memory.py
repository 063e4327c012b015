import asyncio
import itertools
import logging
import time
from typing import Dict, List, Optional, Tuple

from ..logs import get_logger, log_event
from ..metrics import (
    MEMORY_ENQUEUE_LAT_SECONDS,
    MEMORY_JOB_RETRIES_TOTAL,
    MEMORY_JOB_SECONDS,
    MEMORY_JOBS_TOTAL,
    MEMORY_QUEUE_DEPTH,
)
from ..models import JobPayload, JobState, JobView
from .base import Job, JobBackend, JobRegistry
from .processor import MemoryProcessor

logger = get_logger("tutor_memory.jobs.memory")


class InMemoryJobBackend(JobBackend):
    """asyncio priority queue served by worker tasks in this process.

    Queue item: (priority rank, sequence, job id). Lower rank first, FIFO
    within a rank.
    """

    name = "memory"

    def __init__(
        self,
        processor: MemoryProcessor,
        *,
        concurrency: int = 2,
        max_attempts: int = 3,
        backoff_base_ms: int = 2000,
        keep_completed: int = 1000,
        keep_failed: int = 5000,
    ):
        self.processor = processor
        self.concurrency = max(1, concurrency)
        self.max_attempts = max(1, max_attempts)
        self.backoff_base_ms = max(0, backoff_base_ms)
        self.registry = JobRegistry(keep_completed=keep_completed, keep_failed=keep_failed)
        self._queue: "asyncio.PriorityQueue[Tuple[int, int, str]]" = asyncio.PriorityQueue()
        self._seq = itertools.count()
        self._enqueued_ts: Dict[str, float] = {}
        self._workers: List[asyncio.Task] = []

    async def enqueue(self, payload: JobPayload) -> str:
        job = self.registry.create(payload)
        self._enqueued_ts[job.id] = time.perf_counter()
        await self._queue.put((payload.priority.rank, next(self._seq), job.id))
        MEMORY_QUEUE_DEPTH.labels(provider=self.name).set(self._queue.qsize())
        log_event(
            logger,
            logging.INFO,
            "memory_job_enqueue",
            jobId=job.id,
            priority=payload.priority.value,
            messageCount=payload.message_count,
            queueDepth=self._queue.qsize(),
            provider=self.name,
            requestId=payload.request_id,
        )
        return job.id

    async def get_job(self, job_id: str) -> Optional[JobView]:
        job = self.registry.get(job_id)
        return job.to_view() if job is not None else None

    async def counts(self) -> Dict[str, int]:
        return self.registry.counts()

    async def start(self) -> None:
        if self._workers:
            return
        self._workers = [asyncio.create_task(self._worker(i)) for i in range(self.concurrency)]
        log_event(logger, logging.INFO, "memory_worker_config", workerConcurrency=self.concurrency, provider=self.name)

    async def stop(self) -> None:
        tasks, self._workers = self._workers, []
        waiting = self._queue.qsize()
        active = self.registry.counts()[JobState.ACTIVE.value]
        if tasks and (waiting or active):
            # Queued and retrying jobs live only in this process
            log_event(logger, logging.WARNING, "memory_jobs_dropped", queued=waiting, active=active, provider=self.name)
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def join(self) -> None:
        """Wait until every enqueued job has been processed."""
        await self._queue.join()

    async def _worker(self, worker_index: int) -> None:
        while True:
            try:
                _, _, job_id = await self._queue.get()
            except asyncio.CancelledError:
                break
            try:
                MEMORY_QUEUE_DEPTH.labels(provider=self.name).set(self._queue.qsize())
                t0 = self._enqueued_ts.pop(job_id, None)
                if t0 is not None:
                    MEMORY_ENQUEUE_LAT_SECONDS.observe(time.perf_counter() - t0)
                job = self.registry.get(job_id)
                if job is not None:
                    await self._run(job, worker_index)
            except asyncio.CancelledError:
                self._queue.task_done()
                break
            except Exception as e:
                logger.exception("memory_worker_error: %s", e)
            self._queue.task_done()

    async def _run(self, job: Job, worker_index: int) -> None:
        t0 = time.perf_counter()
        log_event(
            logger,
            logging.INFO,
            "memory_job_dequeue",
            jobId=job.id,
            workerIndex=worker_index,
            queueDepth=self._queue.qsize(),
        )
        last_error: Optional[BaseException] = None
        while job.attempts < self.max_attempts:
            job.mark_active()
            try:
                record = await self.processor.run(job.payload, progress=job.set_progress)
            except Exception as e:
                last_error = e
                if job.attempts >= self.max_attempts:
                    break
                backoff_ms = self.backoff_base_ms * (2 ** (job.attempts - 1))
                MEMORY_JOB_RETRIES_TOTAL.inc()
                log_event(
                    logger,
                    logging.WARNING,
                    "memory_job_retry",
                    jobId=job.id,
                    attempt=job.attempts,
                    backoffMs=backoff_ms,
                    error=str(e)[:512],
                )
                await asyncio.sleep(backoff_ms / 1000.0)
                continue
            job.mark_completed(record)
            self.registry.finish(job)
            MEMORY_JOBS_TOTAL.labels(status="completed").inc()
            MEMORY_JOB_SECONDS.observe(time.perf_counter() - t0)
            log_event(
                logger,
                logging.INFO,
                "memory_job_completed",
                jobId=job.id,
                memoryId=record.id,
                attempts=job.attempts,
                durationMs=int((time.perf_counter() - t0) * 1000),
            )
            return
        reason = f"{type(last_error).__name__}: {last_error}" if last_error else "unknown error"
        job.mark_failed(reason)
        self.registry.finish(job)
        MEMORY_JOBS_TOTAL.labels(status="failed").inc()
        MEMORY_JOB_SECONDS.observe(time.perf_counter() - t0)
        log_event(logger, logging.ERROR, "memory_job_failed", jobId=job.id, attempts=job.attempts, error=reason[:512])
