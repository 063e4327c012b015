"""SQS-backed job backend.

Jobs travel as JSON message bodies ``{"jobId": ..., "payload": {...}}``. SQS
has no native priority, so the priority rides along as a message attribute and
workers honor it only within a receive batch. Redelivery after a failure is the
retry policy: a failed message is released (visibility 0) until its receive
count reaches ``max_attempts``, then deleted and the job recorded as failed.

Job state lives in this process's registry; jobs consumed by another process
are adopted on receipt.
"""
import asyncio
import json
import logging
import time
from typing import Any, Dict, List, Optional

from ..logs import get_logger, log_event
from ..metrics import (
    MEMORY_JOB_RETRIES_TOTAL,
    MEMORY_JOB_SECONDS,
    MEMORY_JOBS_TOTAL,
    SQS_DELETED_TOTAL,
    SQS_ENQUEUED_TOTAL,
    SQS_POLLED_TOTAL,
    SQS_RECEIVE_SECONDS,
    SQS_SEND_SECONDS,
    SQS_VISIBILITY_TOTAL,
)
from ..models import JobPayload, JobState, JobView, Priority
from .base import EnqueueError, JobBackend, JobRegistry
from .processor import MemoryProcessor

logger = get_logger("tutor_memory.jobs.sqs")


class SqsJobBackend(JobBackend):
    name = "sqs"

    def __init__(
        self,
        processor: MemoryProcessor,
        client: Any,
        queue_url: str,
        *,
        concurrency: int = 2,
        max_attempts: int = 3,
        wait_seconds: int = 10,
        visibility_timeout: int = 60,
        batch_size: int = 5,
        keep_completed: int = 1000,
        keep_failed: int = 5000,
    ):
        self.processor = processor
        self.client = client
        self.queue_url = queue_url
        self.concurrency = max(1, concurrency)
        self.max_attempts = max(1, max_attempts)
        self.wait_seconds = wait_seconds
        self.visibility_timeout = visibility_timeout
        self.batch_size = max(1, min(10, batch_size))
        self.registry = JobRegistry(keep_completed=keep_completed, keep_failed=keep_failed)
        self._workers: List[asyncio.Task] = []

    @property
    def is_fifo(self) -> bool:
        return self.queue_url.endswith(".fifo")

    async def enqueue(self, payload: JobPayload) -> str:
        job = self.registry.create(payload)
        body = json.dumps({"jobId": job.id, "payload": payload.to_dict()})
        kwargs: Dict[str, Any] = {
            "QueueUrl": self.queue_url,
            "MessageBody": body,
            "MessageAttributes": {
                "priority": {"DataType": "String", "StringValue": payload.priority.value},
            },
        }
        if self.is_fifo:
            kwargs["MessageGroupId"] = payload.student_id
            kwargs["MessageDeduplicationId"] = job.id
        loop = asyncio.get_running_loop()
        t0 = time.perf_counter()
        try:
            await loop.run_in_executor(None, lambda: self.client.send_message(**kwargs))
        except Exception as e:
            SQS_ENQUEUED_TOTAL.labels(status="error").inc()
            self.registry.discard(job.id)
            log_event(logger, logging.WARNING, "memory_job_enqueue_error", jobId=job.id, provider=self.name, error=str(e))
            raise EnqueueError(str(e)) from e
        SQS_SEND_SECONDS.observe(time.perf_counter() - t0)
        SQS_ENQUEUED_TOTAL.labels(status="ok").inc()
        log_event(
            logger,
            logging.INFO,
            "memory_job_enqueue",
            jobId=job.id,
            priority=payload.priority.value,
            messageCount=payload.message_count,
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
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _receive(self) -> List[Dict[str, Any]]:
        loop = asyncio.get_running_loop()
        t0 = time.perf_counter()
        resp = await loop.run_in_executor(None, lambda: self.client.receive_message(
            QueueUrl=self.queue_url,
            MaxNumberOfMessages=self.batch_size,
            WaitTimeSeconds=self.wait_seconds,
            VisibilityTimeout=self.visibility_timeout,
            AttributeNames=["ApproximateReceiveCount"],
            MessageAttributeNames=["priority"],
        ))
        SQS_RECEIVE_SECONDS.observe(time.perf_counter() - t0)
        messages = list((resp or {}).get("Messages") or [])
        SQS_POLLED_TOTAL.labels(outcome="messages" if messages else "empty").inc()
        return sorted(messages, key=_message_priority_rank)

    async def _worker(self, worker_index: int) -> None:
        while True:
            try:
                messages = await self._receive()
                if not messages:
                    # Long polling already waited; avoid a hot loop on stubs
                    await asyncio.sleep(0.05)
                    continue
                for msg in messages:
                    await self.handle_message(msg, worker_index)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception("memory_worker_sqs_error: %s", e)
                SQS_POLLED_TOTAL.labels(outcome="error").inc()
                await asyncio.sleep(1.0)

    async def handle_message(self, msg: Dict[str, Any], worker_index: int = 0) -> None:
        receipt = msg.get("ReceiptHandle")
        try:
            body = json.loads(msg.get("Body") or "{}")
            job_id = str(body["jobId"])
            payload = JobPayload.from_dict(body["payload"])
        except (KeyError, TypeError, ValueError) as e:
            # Poison message: nothing can process it
            log_event(logger, logging.ERROR, "memory_job_bad_message", error=str(e))
            await self._delete(receipt)
            return
        job = self.registry.get(job_id) or self.registry.create(payload, job_id=job_id)
        if job.state == JobState.COMPLETED:
            # Redelivered after a completed run; the record already exists
            await self._delete(receipt)
            return
        receive_count = _receive_count(msg)
        job.attempts = max(job.attempts, receive_count - 1)
        job.mark_active()
        log_event(logger, logging.INFO, "memory_job_dequeue", jobId=job.id, workerIndex=worker_index, provider=self.name)
        t0 = time.perf_counter()
        try:
            record = await self.processor.run(payload, progress=job.set_progress)
        except Exception as e:
            reason = f"{type(e).__name__}: {e}"
            if job.attempts >= self.max_attempts:
                job.mark_failed(reason)
                self.registry.finish(job)
                MEMORY_JOBS_TOTAL.labels(status="failed").inc()
                MEMORY_JOB_SECONDS.observe(time.perf_counter() - t0)
                log_event(logger, logging.ERROR, "memory_job_failed", jobId=job.id, attempts=job.attempts, error=reason[:512])
                await self._delete(receipt)
                return
            job.state = JobState.QUEUED
            job.failure_reason = reason
            MEMORY_JOB_RETRIES_TOTAL.inc()
            log_event(logger, logging.WARNING, "memory_job_retry", jobId=job.id, attempt=job.attempts, error=reason[:512])
            await self._release(receipt)
            return
        job.mark_completed(record)
        self.registry.finish(job)
        MEMORY_JOBS_TOTAL.labels(status="completed").inc()
        MEMORY_JOB_SECONDS.observe(time.perf_counter() - t0)
        log_event(logger, logging.INFO, "memory_job_completed", jobId=job.id, memoryId=record.id, attempts=job.attempts)
        await self._delete(receipt)

    async def _delete(self, receipt: Optional[str]) -> None:
        if not receipt:
            return
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, lambda: self.client.delete_message(QueueUrl=self.queue_url, ReceiptHandle=receipt))
            SQS_DELETED_TOTAL.labels(status="ok").inc()
        except Exception as e:
            SQS_DELETED_TOTAL.labels(status="error").inc()
            log_event(logger, logging.WARNING, "sqs_delete_error", error=str(e))

    async def _release(self, receipt: Optional[str]) -> None:
        if not receipt:
            return
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, lambda: self.client.change_message_visibility(
                QueueUrl=self.queue_url, ReceiptHandle=receipt, VisibilityTimeout=0
            ))
            SQS_VISIBILITY_TOTAL.labels(status="ok").inc()
        except Exception as e:
            SQS_VISIBILITY_TOTAL.labels(status="error").inc()
            log_event(logger, logging.WARNING, "sqs_visibility_error", error=str(e))


def _receive_count(msg: Dict[str, Any]) -> int:
    try:
        return int((msg.get("Attributes") or {}).get("ApproximateReceiveCount") or 1)
    except (TypeError, ValueError):
        return 1


def _message_priority_rank(msg: Dict[str, Any]) -> int:
    attr = (msg.get("MessageAttributes") or {}).get("priority") or {}
    try:
        return Priority(attr.get("StringValue") or Priority.NORMAL.value).rank
    except ValueError:
        return Priority.NORMAL.rank
