"""Entry point for saving a finished chat session as a memory.

Order of operations: validate, authorize, dedup, then either enqueue a job
(queued mode) or summarize and persist inline (direct mode).
"""
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .dedup import DedupGuard
from .errors import ForbiddenError, PersistenceError, StoreError, ValidationError
from .jobs.base import EnqueueError, JobBackend
from .jobs.processor import MemoryProcessor
from .logs import get_logger, log_event
from .metrics import MEMORY_SAVES_TOTAL
from .models import (
    BackendMode,
    DispatchOutcome,
    DispatchStatus,
    JobPayload,
    MemorySaveRequest,
    Message,
    Priority,
    parse_timestamp,
    utcnow,
)
from .store import Directory

logger = get_logger("tutor_memory.dispatcher")

# Sessions longer than this are summarized ahead of shorter ones
HIGH_PRIORITY_MESSAGE_THRESHOLD = 20

_AGENT_ROLES = ("assistant", "agent")


def priority_for(message_count: int) -> Priority:
    return Priority.HIGH if message_count > HIGH_PRIORITY_MESSAGE_THRESHOLD else Priority.NORMAL


def _require_id(body: Dict[str, Any], key: str) -> str:
    val = body.get(key)
    if isinstance(val, (int, float)) and not isinstance(val, bool):
        val = str(val)
    if not isinstance(val, str) or not val.strip():
        raise ValidationError(f"{key} is required")
    return val.strip()


def _parse_messages(raw: Any) -> List[Message]:
    if not isinstance(raw, list) or not raw:
        raise ValidationError("messages must be a non-empty list")
    out: List[Message] = []
    for i, m in enumerate(raw):
        if not isinstance(m, dict):
            raise ValidationError(f"messages[{i}] must be an object")
        role = str(m.get("role") or "").strip().lower()
        if role == "user":
            pass
        elif role in _AGENT_ROLES:
            role = "assistant"
        else:
            raise ValidationError(f"messages[{i}].role must be 'user' or 'assistant'")
        content = m.get("content")
        if not isinstance(content, str):
            raise ValidationError(f"messages[{i}].content must be a string")
        out.append(Message(role=role, content=content))
    return out


def parse_save_request(body: Any, *, now: Optional[datetime] = None) -> MemorySaveRequest:
    """Validate a save payload. Raises ValidationError; performs no side effects."""
    if not isinstance(body, dict):
        raise ValidationError("request body must be a JSON object")
    student_id = _require_id(body, "studentId")
    chatbot_id = _require_id(body, "chatbotId")
    room_id = _require_id(body, "roomId")
    messages = _parse_messages(body.get("messages"))
    if body.get("sessionStartTime") is None:
        raise ValidationError("sessionStartTime is required")
    try:
        start = parse_timestamp(body.get("sessionStartTime"))
    except (ValueError, OverflowError, OSError):
        raise ValidationError("sessionStartTime must be an ISO-8601 timestamp or epoch milliseconds")
    if start > (now or utcnow()):
        raise ValidationError("sessionStartTime must not be in the future")
    return MemorySaveRequest(
        student_id=student_id,
        chatbot_id=chatbot_id,
        room_id=room_id,
        messages=messages,
        session_start_time=start,
    )


class MemoryDispatcher:
    def __init__(
        self,
        *,
        mode: BackendMode,
        guard: DedupGuard,
        processor: MemoryProcessor,
        directory: Directory,
        backend: Optional[JobBackend] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        if mode == BackendMode.QUEUED and backend is None:
            raise ValueError("queued mode requires a job backend")
        self.mode = mode
        self.guard = guard
        self.processor = processor
        self.directory = directory
        self.backend = backend
        self._clock = clock

    async def authorize(self, caller_id: str, request: MemorySaveRequest) -> None:
        """Caller must be the student or the teacher who owns the room."""
        if caller_id == request.student_id:
            return
        try:
            teacher_id = await self.directory.get_room_teacher(request.room_id)
        except StoreError as e:
            log_event(logger, logging.WARNING, "room_lookup_error", roomId=request.room_id, error=str(e))
            teacher_id = None
        if not teacher_id or teacher_id != caller_id:
            raise ForbiddenError("Unauthorized")

    def build_payload(self, request: MemorySaveRequest, request_id: Optional[str] = None) -> JobPayload:
        duration = int((self._clock() - request.session_start_time).total_seconds())
        return JobPayload(
            student_id=request.student_id,
            chatbot_id=request.chatbot_id,
            room_id=request.room_id,
            messages=list(request.messages),
            session_start_time=request.session_start_time,
            session_duration_seconds=max(0, duration),
            priority=priority_for(request.message_count),
            request_id=request_id,
        )

    async def dispatch(
        self,
        request: MemorySaveRequest,
        *,
        caller_id: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> DispatchOutcome:
        if caller_id is not None:
            await self.authorize(caller_id, request)

        existing = await self.guard.find_duplicate(
            request.student_id, request.chatbot_id, request.room_id, request.message_count
        )
        if existing is not None:
            MEMORY_SAVES_TOTAL.labels(outcome="duplicate").inc()
            return DispatchOutcome(status=DispatchStatus.DUPLICATE, record=existing)

        payload = self.build_payload(request, request_id)

        if self.mode == BackendMode.QUEUED and self.backend is not None:
            try:
                job_id = await self.backend.enqueue(payload)
            except EnqueueError as e:
                # Backend unavailable: process inline rather than drop the session
                log_event(
                    logger,
                    logging.WARNING,
                    "memory_enqueue_fallback_direct",
                    roomId=request.room_id,
                    error=str(e),
                    requestId=request_id,
                )
            else:
                MEMORY_SAVES_TOTAL.labels(outcome="queued").inc()
                log_event(
                    logger,
                    logging.INFO,
                    "memory_save_queued",
                    jobId=job_id,
                    roomId=request.room_id,
                    priority=payload.priority.value,
                    requestId=request_id,
                )
                return DispatchOutcome(status=DispatchStatus.QUEUED, job_id=job_id)

        return await self._process_direct(payload)

    async def _process_direct(self, payload: JobPayload) -> DispatchOutcome:
        try:
            record = await self.processor.run(payload)
        except StoreError as e:
            MEMORY_SAVES_TOTAL.labels(outcome="error").inc()
            log_event(
                logger,
                logging.ERROR,
                "memory_direct_save_error",
                roomId=payload.room_id,
                error=str(e),
                requestId=payload.request_id,
            )
            raise PersistenceError("Failed to save memory", details=str(e)) from e
        MEMORY_SAVES_TOTAL.labels(outcome="processed").inc()
        return DispatchOutcome(status=DispatchStatus.PROCESSED, record=record)
