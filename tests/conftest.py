import sys
import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional

import pytest

# Ensure project root is on sys.path for `import memory_api.*`
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from memory_api.models import Message  # noqa: E402
from memory_api.providers.base import CompletionClient  # noqa: E402


class FakeClock:
    """Mutable clock shared by the store, dedup guard, and dispatcher."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


FIXED_SUMMARY = {
    "summary": "The student practiced solving linear equations.",
    "keyTopics": ["linear equations", "inverse operations"],
    "learningInsights": {
        "understood": ["isolating x"],
        "struggling": ["negative coefficients"],
        "progress": "Steady improvement",
    },
    "nextSteps": "Practice equations with negative coefficients.",
}


class FixedCompletionClient(CompletionClient):
    """Returns the same JSON content for every call and records the calls."""

    provider_name = "fixed"

    def __init__(self, content: Optional[str] = None):
        super().__init__(model="fixed-1")
        self.content = content if content is not None else json.dumps(FIXED_SUMMARY)
        self.calls: List[dict] = []

    async def complete_json(self, system, prompt, *, temperature=0.3, request_id=None):
        self.calls.append({"system": system, "prompt": prompt, "temperature": temperature, "request_id": request_id})
        return self.content


def make_messages(n: int) -> List[Message]:
    out: List[Message] = []
    for i in range(n):
        if i % 2 == 0:
            out.append(Message(role="user", content=f"Question {i} about equations"))
        else:
            out.append(Message(role="assistant", content=f"Answer {i}"))
    return out


def make_body(n: int, *, student="s1", chatbot="c1", room="r1", start: Optional[datetime] = None) -> dict:
    start = start or datetime(2026, 3, 2, 8, 30, 0, tzinfo=timezone.utc)
    return {
        "studentId": student,
        "chatbotId": chatbot,
        "roomId": room,
        "messages": [m.to_dict() for m in make_messages(n)],
        "sessionStartTime": start.isoformat(),
    }


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def fixed_client() -> FixedCompletionClient:
    return FixedCompletionClient()
