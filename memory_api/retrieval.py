import asyncio
from typing import Any, Optional

from .errors import ValidationError
from .models import MemoriesView
from .store import MemoryStore

DEFAULT_LIMIT = 5
MAX_LIMIT = 50


def parse_limit(raw: Any, *, default: int = DEFAULT_LIMIT, maximum: int = MAX_LIMIT) -> int:
    """Positive integer limit, capped at ``maximum``. Raises ValidationError."""
    if raw is None or raw == "":
        return default
    if isinstance(raw, bool):
        raise ValidationError("limit must be a positive integer")
    try:
        limit = int(raw)
    except (TypeError, ValueError):
        raise ValidationError("limit must be a positive integer")
    if isinstance(raw, float) and raw != limit:
        raise ValidationError("limit must be a positive integer")
    if limit < 1:
        raise ValidationError("limit must be a positive integer")
    return min(limit, maximum)


class MemoryRetriever:
    """Recent memories plus the learning profile, to seed a new chat session."""

    def __init__(self, store: MemoryStore, *, default_limit: int = DEFAULT_LIMIT, max_limit: int = MAX_LIMIT):
        self.store = store
        self.default_limit = default_limit
        self.max_limit = max_limit

    async def get_memories(self, student_id: str, chatbot_id: str, limit: Optional[int] = None) -> MemoriesView:
        if not student_id or not chatbot_id:
            raise ValidationError("studentId and chatbotId are required")
        n = parse_limit(limit, default=self.default_limit, maximum=self.max_limit)
        memories, profile = await asyncio.gather(
            self.store.recent_memories(student_id, chatbot_id, n),
            self.store.get_learning_profile(student_id, chatbot_id),
        )
        return MemoriesView(memories=list(memories or [])[:n], profile=profile or None)
