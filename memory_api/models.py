from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


class Priority(str, enum.Enum):
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def rank(self) -> int:
        # Lower rank dequeues first
        return {"high": 1, "normal": 2, "low": 3}[self.value]


class JobState(str, enum.Enum):
    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class BackendMode(str, enum.Enum):
    """How the dispatcher executes an accepted save."""

    QUEUED = "queued"
    DIRECT = "direct"


class DispatchStatus(str, enum.Enum):
    DUPLICATE = "duplicate"
    QUEUED = "queued"
    PROCESSED = "processed"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def now_ms() -> int:
    return int(utcnow().timestamp() * 1000)


def to_iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 string or epoch milliseconds into an aware UTC datetime.

    Raises ValueError on anything else.
    """
    if isinstance(value, bool):
        raise ValueError("timestamp must be a string or number")
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(float(value) / 1000.0, tz=timezone.utc)
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    else:
        raise ValueError("timestamp must be a string or number")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@dataclass(frozen=True)
class Message:
    role: str  # "user" | "assistant"
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class MemorySaveRequest:
    student_id: str
    chatbot_id: str
    room_id: str
    messages: List[Message]
    session_start_time: datetime

    @property
    def message_count(self) -> int:
        return len(self.messages)


@dataclass
class LearningInsights:
    understood: List[str] = field(default_factory=list)
    struggling: List[str] = field(default_factory=list)
    progress: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "understood": list(self.understood),
            "struggling": list(self.struggling),
            "progress": self.progress,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "LearningInsights":
        data = data or {}
        return cls(
            understood=list(data.get("understood") or []),
            struggling=list(data.get("struggling") or []),
            progress=str(data.get("progress") or ""),
        )


@dataclass
class MemoryResult:
    summary: str
    key_topics: List[str]
    learning_insights: LearningInsights
    next_steps: str
    # Set when the fallback result was substituted; never persisted.
    degraded: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summary": self.summary,
            "keyTopics": list(self.key_topics),
            "learningInsights": self.learning_insights.to_dict(),
            "nextSteps": self.next_steps,
        }


@dataclass(frozen=True)
class MemoryRecord:
    id: str
    student_id: str
    chatbot_id: str
    room_id: str
    summary: str
    key_topics: List[str]
    learning_insights: LearningInsights
    next_steps: str
    message_count: int
    session_duration_seconds: int
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "studentId": self.student_id,
            "chatbotId": self.chatbot_id,
            "roomId": self.room_id,
            "summary": self.summary,
            "keyTopics": list(self.key_topics),
            "learningInsights": self.learning_insights.to_dict(),
            "nextSteps": self.next_steps,
            "messageCount": self.message_count,
            "sessionDurationSeconds": self.session_duration_seconds,
            "createdAt": to_iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MemoryRecord":
        return cls(
            id=str(data["id"]),
            student_id=str(data["studentId"]),
            chatbot_id=str(data["chatbotId"]),
            room_id=str(data["roomId"]),
            summary=str(data.get("summary") or ""),
            key_topics=list(data.get("keyTopics") or []),
            learning_insights=LearningInsights.from_dict(data.get("learningInsights")),
            next_steps=str(data.get("nextSteps") or ""),
            message_count=int(data.get("messageCount") or 0),
            session_duration_seconds=int(data.get("sessionDurationSeconds") or 0),
            created_at=parse_timestamp(data["createdAt"]),
        )


@dataclass(frozen=True)
class NewMemory:
    """A memory record before the store has assigned an id and timestamp."""

    student_id: str
    chatbot_id: str
    room_id: str
    result: MemoryResult
    message_count: int
    session_duration_seconds: int


@dataclass
class JobPayload:
    """Queue payload for one memory job. Serialized as the job body."""

    student_id: str
    chatbot_id: str
    room_id: str
    messages: List[Message]
    session_start_time: datetime
    session_duration_seconds: int
    priority: Priority = Priority.NORMAL
    request_id: Optional[str] = None

    @property
    def message_count(self) -> int:
        return len(self.messages)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "studentId": self.student_id,
            "chatbotId": self.chatbot_id,
            "roomId": self.room_id,
            "messages": [m.to_dict() for m in self.messages],
            "sessionStartTime": to_iso(self.session_start_time),
            "sessionDurationSeconds": self.session_duration_seconds,
            "messageCount": self.message_count,
            "priority": self.priority.value,
            "requestId": self.request_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobPayload":
        return cls(
            student_id=str(data["studentId"]),
            chatbot_id=str(data["chatbotId"]),
            room_id=str(data["roomId"]),
            messages=[Message(role=str(m["role"]), content=str(m["content"])) for m in data.get("messages") or []],
            session_start_time=parse_timestamp(data["sessionStartTime"]),
            session_duration_seconds=int(data.get("sessionDurationSeconds") or 0),
            priority=Priority(data.get("priority") or Priority.NORMAL.value),
            request_id=data.get("requestId"),
        )


@dataclass
class JobView:
    """Normalized job status. Every backend adapter produces this shape."""

    id: str
    state: JobState
    progress: Optional[int] = None
    result: Optional[Dict[str, Any]] = None
    failure_reason: Optional[str] = None
    created_at: Optional[int] = None
    processed_at: Optional[int] = None
    finished_at: Optional[int] = None
    priority: Optional[Priority] = None
    attempts: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "jobId": self.id,
            "state": self.state.value,
            "progress": self.progress,
            "result": self.result,
            "failureReason": self.failure_reason,
            "createdAt": self.created_at,
            "processedAt": self.processed_at,
            "finishedAt": self.finished_at,
            "priority": self.priority.value if self.priority else None,
            "attempts": self.attempts,
        }


@dataclass(frozen=True)
class DispatchOutcome:
    status: DispatchStatus
    job_id: Optional[str] = None
    record: Optional[MemoryRecord] = None


@dataclass(frozen=True)
class MemoriesView:
    memories: List[MemoryRecord]
    profile: Optional[Dict[str, Any]]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "memories": [m.to_dict() for m in self.memories],
            "profile": self.profile,
        }
