import types
from datetime import datetime, timezone

import httpx
import pytest

import memory_api.store as store_mod
from memory_api.dedup import DedupGuard
from memory_api.errors import StoreError
from memory_api.models import LearningInsights, MemoryResult, NewMemory
from memory_api.store import HttpMemoryStore


class FakeResponse:
    def __init__(self, status_code, data=None):
        self.status_code = status_code
        self._data = data

    def json(self):
        if self._data is None:
            raise ValueError("no json")
        return self._data


def fake_httpx(responses, calls, raise_exc=None):
    class FakeAsyncClient:
        def __init__(self, *args, **kwargs):
            pass

        async def __aenter__(self):
            return self

        async def __aexit__(self, exc_type, exc, tb):
            return False

        async def post(self, url, json=None, headers=None):
            calls.append({"url": url, "json": json, "headers": headers})
            if raise_exc is not None:
                raise raise_exc
            return responses.pop(0)

    # Keep the real exception types for the store's except clauses
    return types.SimpleNamespace(AsyncClient=FakeAsyncClient, HTTPError=httpx.HTTPError)


RECORD = {
    "id": "mem-1",
    "studentId": "s1",
    "chatbotId": "c1",
    "roomId": "r1",
    "summary": "Worked on fractions.",
    "keyTopics": ["fractions"],
    "learningInsights": {"understood": ["halves"], "struggling": [], "progress": "good"},
    "nextSteps": "Try thirds.",
    "messageCount": 6,
    "sessionDurationSeconds": 900,
    "createdAt": "2026-03-02T09:00:00Z",
}


def _new_memory():
    return NewMemory(
        student_id="s1",
        chatbot_id="c1",
        room_id="r1",
        result=MemoryResult(
            summary="Worked on fractions.",
            key_topics=["fractions"],
            learning_insights=LearningInsights(understood=["halves"], struggling=[], progress="good"),
            next_steps="Try thirds.",
        ),
        message_count=6,
        session_duration_seconds=900,
    )


@pytest.mark.asyncio
async def test_insert_posts_mutation_and_parses_record(monkeypatch: pytest.MonkeyPatch):
    calls = []
    monkeypatch.setattr(store_mod, "httpx", fake_httpx([FakeResponse(200, {"status": "success", "value": RECORD})], calls))

    rec = await HttpMemoryStore("https://store.example/", auth_token="tok").insert_memory(_new_memory())

    assert calls[0]["url"] == "https://store.example/api/mutation"
    body = calls[0]["json"]
    assert body["path"] == "memories:insert"
    assert body["format"] == "json"
    assert body["args"]["messageCount"] == 6
    assert body["args"]["keyTopics"] == ["fractions"]
    assert calls[0]["headers"]["Authorization"] == "Bearer tok"
    assert rec.id == "mem-1"
    assert rec.created_at == datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
    assert rec.learning_insights.understood == ["halves"]


@pytest.mark.asyncio
async def test_latest_memory_query_and_empty_value(monkeypatch: pytest.MonkeyPatch):
    calls = []
    monkeypatch.setattr(store_mod, "httpx", fake_httpx([FakeResponse(200, {"status": "success", "value": None})], calls))

    since = datetime(2026, 3, 2, 8, 45, tzinfo=timezone.utc)
    assert await HttpMemoryStore("https://store.example").latest_memory("s1", "c1", "r1", since) is None
    assert calls[0]["url"].endswith("/api/query")
    assert calls[0]["json"]["args"]["since"] == "2026-03-02T08:45:00Z"


@pytest.mark.asyncio
async def test_recent_memories_list(monkeypatch: pytest.MonkeyPatch):
    calls = []
    resp = FakeResponse(200, {"status": "success", "value": [RECORD, dict(RECORD, id="mem-0")]})
    monkeypatch.setattr(store_mod, "httpx", fake_httpx([resp], calls))

    recs = await HttpMemoryStore("https://store.example").recent_memories("s1", "c1", 2)
    assert [r.id for r in recs] == ["mem-1", "mem-0"]
    assert calls[0]["json"]["args"]["limit"] == 2


@pytest.mark.asyncio
@pytest.mark.parametrize("resp", [
    FakeResponse(500, {"status": "error"}),
    FakeResponse(200, {"status": "error", "errorMessage": "boom"}),
    FakeResponse(200, None),
])
async def test_error_responses_raise_store_error(resp, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(store_mod, "httpx", fake_httpx([resp], []))
    with pytest.raises(StoreError):
        await HttpMemoryStore("https://store.example").get_learning_profile("s1", "c1")


@pytest.mark.asyncio
async def test_transport_error_raises_store_error(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(store_mod, "httpx", fake_httpx([], [], raise_exc=httpx.ConnectError("refused")))
    with pytest.raises(StoreError):
        await HttpMemoryStore("https://store.example").get_room_teacher("r1")


@pytest.mark.asyncio
async def test_directory_lookups(monkeypatch: pytest.MonkeyPatch):
    calls = []
    responses = [
        FakeResponse(200, {"status": "success", "value": "MathBot"}),
        FakeResponse(200, {"status": "success", "value": ""}),
    ]
    monkeypatch.setattr(store_mod, "httpx", fake_httpx(responses, calls))
    s = HttpMemoryStore("https://store.example")
    assert await s.get_chatbot_name("c1") == "MathBot"
    assert await s.get_room_teacher("r1") is None
    assert calls[0]["json"]["path"] == "chatbots:getName"
    assert calls[1]["json"]["path"] == "rooms:getTeacher"


@pytest.mark.asyncio
async def test_malformed_latest_row_raises_store_error_and_does_not_block_dedup(monkeypatch: pytest.MonkeyPatch):
    row = {k: v for k, v in RECORD.items() if k != "createdAt"}
    responses = [
        FakeResponse(200, {"status": "success", "value": row}),
        FakeResponse(200, {"status": "success", "value": row}),
    ]
    monkeypatch.setattr(store_mod, "httpx", fake_httpx(responses, []))
    s = HttpMemoryStore("https://store.example")
    since = datetime(2026, 3, 2, 8, 45, tzinfo=timezone.utc)

    with pytest.raises(StoreError):
        await s.latest_memory("s1", "c1", "r1", since)

    guard = DedupGuard(s, clock=lambda: datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))
    assert await guard.find_duplicate("s1", "c1", "r1", 6) is None


@pytest.mark.asyncio
@pytest.mark.parametrize("bad_row", [
    {k: v for k, v in RECORD.items() if k != "id"},
    dict(RECORD, createdAt="not-a-timestamp"),
])
async def test_malformed_recent_row_raises_store_error(bad_row, monkeypatch: pytest.MonkeyPatch):
    resp = FakeResponse(200, {"status": "success", "value": [RECORD, bad_row]})
    monkeypatch.setattr(store_mod, "httpx", fake_httpx([resp], []))
    with pytest.raises(StoreError):
        await HttpMemoryStore("https://store.example").recent_memories("s1", "c1", 5)
