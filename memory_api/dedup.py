import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from .errors import StoreError
from .logs import get_logger, log_event
from .models import MemoryRecord, utcnow
from .store import MemoryStore

logger = get_logger("tutor_memory.dedup")

LOOKUP_WINDOW = timedelta(minutes=15)
DUPLICATE_WINDOW_MINUTES = 10
MESSAGE_COUNT_TOLERANCE = 2


class DedupGuard:
    """Treats a save as a no-op when an equivalent memory was persisted recently.

    A save is a duplicate when the newest record for the same
    (student, chatbot, room) was created less than ten whole minutes ago and
    its message count differs by less than two. Only persisted records are
    considered; two in-flight saves for the same triple can both pass.
    """

    def __init__(
        self,
        store: MemoryStore,
        *,
        clock: Callable[[], datetime] = utcnow,
        lookup_window: timedelta = LOOKUP_WINDOW,
        duplicate_window_minutes: int = DUPLICATE_WINDOW_MINUTES,
    ):
        self.store = store
        self._clock = clock
        self.lookup_window = lookup_window
        self.duplicate_window_minutes = duplicate_window_minutes

    async def find_duplicate(
        self, student_id: str, chatbot_id: str, room_id: str, message_count: int
    ) -> Optional[MemoryRecord]:
        now = self._clock()
        try:
            recent = await self.store.latest_memory(student_id, chatbot_id, room_id, now - self.lookup_window)
        except StoreError as e:
            # An unreadable history never blocks a save
            log_event(logger, logging.WARNING, "dedup_lookup_error", roomId=room_id, error=str(e))
            return None
        if recent is None:
            return None
        minutes_since = int((now - recent.created_at).total_seconds() // 60)
        if minutes_since < self.duplicate_window_minutes and abs(recent.message_count - message_count) < MESSAGE_COUNT_TOLERANCE:
            log_event(
                logger,
                logging.INFO,
                "memory_duplicate_prevented",
                memoryId=recent.id,
                roomId=room_id,
                minutesSinceLastSave=minutes_since,
                existingMessageCount=recent.message_count,
                messageCount=message_count,
            )
            return recent
        return None

    async def should_skip(self, student_id: str, chatbot_id: str, room_id: str, message_count: int) -> bool:
        return await self.find_duplicate(student_id, chatbot_id, room_id, message_count) is not None
