"""Persistence boundary for memory records, plus the directory lookups the
pipeline needs from the surrounding system (chatbot names, room owners).

Memory records are append-only: stores expose no update or delete.
"""
from __future__ import annotations

import abc
import asyncio
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from .errors import StoreError
from .models import MemoryRecord, NewMemory, to_iso, utcnow


class MemoryStore(abc.ABC):
    @abc.abstractmethod
    async def insert_memory(self, memory: NewMemory) -> MemoryRecord:
        ...

    @abc.abstractmethod
    async def latest_memory(
        self, student_id: str, chatbot_id: str, room_id: str, since: datetime
    ) -> Optional[MemoryRecord]:
        """Most recent record for the triple created at or after ``since``."""

    @abc.abstractmethod
    async def recent_memories(self, student_id: str, chatbot_id: str, limit: int) -> List[MemoryRecord]:
        """Newest-first records for the student/chatbot pair across rooms."""

    @abc.abstractmethod
    async def get_learning_profile(self, student_id: str, chatbot_id: str) -> Optional[Dict[str, Any]]:
        ...


class Directory(abc.ABC):
    @abc.abstractmethod
    async def get_chatbot_name(self, chatbot_id: str) -> Optional[str]:
        ...

    @abc.abstractmethod
    async def get_room_teacher(self, room_id: str) -> Optional[str]:
        ...


class InMemoryMemoryStore(MemoryStore, Directory):
    """Process-local store. Default backing for development and tests."""

    def __init__(
        self,
        *,
        chatbots: Optional[Dict[str, str]] = None,
        rooms: Optional[Dict[str, str]] = None,
        profiles: Optional[Dict[Tuple[str, str], Dict[str, Any]]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.records: List[MemoryRecord] = []
        self.chatbots: Dict[str, str] = dict(chatbots or {})
        self.rooms: Dict[str, str] = dict(rooms or {})
        self.profiles: Dict[Tuple[str, str], Dict[str, Any]] = dict(profiles or {})
        self._clock = clock
        self._lock = asyncio.Lock()

    async def insert_memory(self, memory: NewMemory) -> MemoryRecord:
        record = MemoryRecord(
            id=str(uuid.uuid4()),
            student_id=memory.student_id,
            chatbot_id=memory.chatbot_id,
            room_id=memory.room_id,
            summary=memory.result.summary,
            key_topics=list(memory.result.key_topics),
            learning_insights=memory.result.learning_insights,
            next_steps=memory.result.next_steps,
            message_count=memory.message_count,
            session_duration_seconds=memory.session_duration_seconds,
            created_at=self._clock(),
        )
        async with self._lock:
            self.records.append(record)
        return record

    async def latest_memory(
        self, student_id: str, chatbot_id: str, room_id: str, since: datetime
    ) -> Optional[MemoryRecord]:
        matches = [
            r for r in self.records
            if r.student_id == student_id
            and r.chatbot_id == chatbot_id
            and r.room_id == room_id
            and r.created_at >= since
        ]
        if not matches:
            return None
        return max(matches, key=lambda r: r.created_at)

    async def recent_memories(self, student_id: str, chatbot_id: str, limit: int) -> List[MemoryRecord]:
        matches = [r for r in self.records if r.student_id == student_id and r.chatbot_id == chatbot_id]
        matches.sort(key=lambda r: r.created_at, reverse=True)
        return matches[:limit]

    async def get_learning_profile(self, student_id: str, chatbot_id: str) -> Optional[Dict[str, Any]]:
        profile = self.profiles.get((student_id, chatbot_id))
        return dict(profile) if profile is not None else None

    async def get_chatbot_name(self, chatbot_id: str) -> Optional[str]:
        return self.chatbots.get(chatbot_id)

    async def get_room_teacher(self, room_id: str) -> Optional[str]:
        return self.rooms.get(room_id)


class HttpMemoryStore(MemoryStore, Directory):
    """Store backed by a query/mutation HTTP API.

    Requests are ``POST {base}/api/query|mutation`` with ``{path, args, format}``
    and answers are ``{status, value}``.
    """

    def __init__(self, base_url: str, *, timeout: float = 10.0, auth_token: Optional[str] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._auth_token = auth_token

    async def _call(self, kind: str, path: str, args: Dict[str, Any]) -> Any:
        url = f"{self.base_url}/api/{kind}"
        payload = {"path": path, "args": args, "format": "json"}
        headers = {"Content-Type": "application/json"}
        if self._auth_token:
            headers["Authorization"] = f"Bearer {self._auth_token}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise StoreError(f"{path}: {type(e).__name__}: {e}") from e
        if resp.status_code >= 400:
            raise StoreError(f"{path}: HTTP {resp.status_code}")
        try:
            data = resp.json()
        except ValueError as e:
            raise StoreError(f"{path}: invalid JSON response") from e
        if not isinstance(data, dict) or data.get("status") == "error":
            message = data.get("errorMessage") if isinstance(data, dict) else None
            raise StoreError(f"{path}: {message or 'error response'}")
        return data.get("value")

    async def insert_memory(self, memory: NewMemory) -> MemoryRecord:
        value = await self._call("mutation", "memories:insert", {
            "studentId": memory.student_id,
            "chatbotId": memory.chatbot_id,
            "roomId": memory.room_id,
            **memory.result.to_dict(),
            "messageCount": memory.message_count,
            "sessionDurationSeconds": memory.session_duration_seconds,
        })
        if not isinstance(value, dict):
            raise StoreError("memories:insert: no record returned")
        return _parse_record("memories:insert", value)

    async def latest_memory(
        self, student_id: str, chatbot_id: str, room_id: str, since: datetime
    ) -> Optional[MemoryRecord]:
        value = await self._call("query", "memories:latestForRoom", {
            "studentId": student_id,
            "chatbotId": chatbot_id,
            "roomId": room_id,
            "since": to_iso(since),
        })
        return _parse_record("memories:latestForRoom", value) if isinstance(value, dict) else None

    async def recent_memories(self, student_id: str, chatbot_id: str, limit: int) -> List[MemoryRecord]:
        value = await self._call("query", "memories:listRecent", {
            "studentId": student_id,
            "chatbotId": chatbot_id,
            "limit": limit,
        })
        if not isinstance(value, list):
            return []
        return [_parse_record("memories:listRecent", v) for v in value if isinstance(v, dict)]

    async def get_learning_profile(self, student_id: str, chatbot_id: str) -> Optional[Dict[str, Any]]:
        value = await self._call("query", "learningProfiles:get", {
            "studentId": student_id,
            "chatbotId": chatbot_id,
        })
        return value if isinstance(value, dict) else None

    async def get_chatbot_name(self, chatbot_id: str) -> Optional[str]:
        value = await self._call("query", "chatbots:getName", {"chatbotId": chatbot_id})
        return value if isinstance(value, str) and value.strip() else None

    async def get_room_teacher(self, room_id: str) -> Optional[str]:
        value = await self._call("query", "rooms:getTeacher", {"roomId": room_id})
        return value if isinstance(value, str) and value.strip() else None


def _parse_record(path: str, value: Dict[str, Any]) -> MemoryRecord:
    try:
        return MemoryRecord.from_dict(value)
    except (KeyError, TypeError, ValueError, OverflowError) as e:
        raise StoreError(f"{path}: malformed record: {e!r}") from e
