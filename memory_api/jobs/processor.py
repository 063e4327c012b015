import logging
import time
from typing import Callable, Optional

from ..errors import StoreError
from ..logs import get_logger, log_event
from ..models import JobPayload, MemoryRecord, NewMemory
from ..store import Directory, MemoryStore
from ..summarizer import Summarizer

logger = get_logger("tutor_memory.jobs.processor")

ProgressCallback = Callable[[int], None]


def _noop_progress(value: int) -> None:
    return None


class MemoryProcessor:
    """Summarizes one session and appends its memory record.

    Shared by the direct dispatch path and every job backend worker so both
    produce the same record content for the same payload.
    """

    def __init__(self, summarizer: Summarizer, store: MemoryStore, directory: Directory):
        self.summarizer = summarizer
        self.store = store
        self.directory = directory

    async def resolve_chatbot_name(self, chatbot_id: str) -> Optional[str]:
        try:
            return await self.directory.get_chatbot_name(chatbot_id)
        except StoreError as e:
            log_event(logger, logging.WARNING, "chatbot_lookup_error", chatbotId=chatbot_id, error=str(e))
            return None

    async def run(self, payload: JobPayload, progress: Optional[ProgressCallback] = None) -> MemoryRecord:
        """Raises StoreError when the record cannot be persisted."""
        report = progress or _noop_progress
        t0 = time.perf_counter()
        report(10)
        chatbot_name = await self.resolve_chatbot_name(payload.chatbot_id)
        report(20)
        result = await self.summarizer.summarize(
            payload.messages, chatbot_name, request_id=payload.request_id
        )
        report(50)
        record = await self.store.insert_memory(NewMemory(
            student_id=payload.student_id,
            chatbot_id=payload.chatbot_id,
            room_id=payload.room_id,
            result=result,
            message_count=payload.message_count,
            session_duration_seconds=payload.session_duration_seconds,
        ))
        report(70)
        log_event(
            logger,
            logging.INFO,
            "memory_saved",
            memoryId=record.id,
            roomId=record.room_id,
            messageCount=record.message_count,
            degraded=result.degraded,
            durationMs=int((time.perf_counter() - t0) * 1000),
            requestId=payload.request_id,
        )
        report(100)
        return record
