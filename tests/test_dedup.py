import pytest

from memory_api.dedup import DedupGuard
from memory_api.errors import StoreError
from memory_api.models import LearningInsights, MemoryResult, NewMemory
from memory_api.store import InMemoryMemoryStore


def _result():
    return MemoryResult(
        summary="s",
        key_topics=["t"],
        learning_insights=LearningInsights(understood=[], struggling=[], progress="p"),
        next_steps="n",
    )


async def _seed(store, message_count, *, student="s1", chatbot="c1", room="r1"):
    return await store.insert_memory(NewMemory(
        student_id=student,
        chatbot_id=chatbot,
        room_id=room,
        result=_result(),
        message_count=message_count,
        session_duration_seconds=60,
    ))


class BrokenStore(InMemoryMemoryStore):
    async def latest_memory(self, *args, **kwargs):
        raise StoreError("store offline")


@pytest.mark.asyncio
async def test_recent_similar_save_is_duplicate(clock):
    store = InMemoryMemoryStore(clock=clock)
    seeded = await _seed(store, 12)
    clock.advance(minutes=5)
    guard = DedupGuard(store, clock=clock)

    found = await guard.find_duplicate("s1", "c1", "r1", 13)
    assert found is not None
    assert found.id == seeded.id
    assert await guard.should_skip("s1", "c1", "r1", 12) is True


@pytest.mark.asyncio
async def test_message_count_delta_of_two_is_not_duplicate(clock):
    store = InMemoryMemoryStore(clock=clock)
    await _seed(store, 12)
    clock.advance(minutes=5)
    guard = DedupGuard(store, clock=clock)
    assert await guard.should_skip("s1", "c1", "r1", 14) is False
    assert await guard.should_skip("s1", "c1", "r1", 10) is False


@pytest.mark.asyncio
async def test_window_uses_whole_minutes(clock):
    store = InMemoryMemoryStore(clock=clock)
    await _seed(store, 12)
    guard = DedupGuard(store, clock=clock)

    # 9m59s floors to 9 whole minutes
    clock.advance(minutes=9, seconds=59)
    assert await guard.should_skip("s1", "c1", "r1", 12) is True

    clock.advance(seconds=1)
    assert await guard.should_skip("s1", "c1", "r1", 12) is False


@pytest.mark.asyncio
async def test_eleven_minutes_later_is_accepted(clock):
    store = InMemoryMemoryStore(clock=clock)
    await _seed(store, 12)
    clock.advance(minutes=11)
    assert await DedupGuard(store, clock=clock).should_skip("s1", "c1", "r1", 12) is False


@pytest.mark.asyncio
async def test_records_outside_lookup_window_are_ignored(clock):
    store = InMemoryMemoryStore(clock=clock)
    await _seed(store, 12)
    clock.advance(minutes=16)
    guard = DedupGuard(store, clock=clock, duplicate_window_minutes=30)
    assert await guard.find_duplicate("s1", "c1", "r1", 12) is None


@pytest.mark.asyncio
async def test_only_same_triple_counts(clock):
    store = InMemoryMemoryStore(clock=clock)
    await _seed(store, 12, room="other-room")
    await _seed(store, 12, chatbot="other-bot")
    clock.advance(minutes=1)
    assert await DedupGuard(store, clock=clock).should_skip("s1", "c1", "r1", 12) is False


@pytest.mark.asyncio
async def test_newest_record_is_compared(clock):
    store = InMemoryMemoryStore(clock=clock)
    await _seed(store, 4)
    clock.advance(minutes=2)
    newest = await _seed(store, 30)
    clock.advance(minutes=2)
    guard = DedupGuard(store, clock=clock)
    assert (await guard.find_duplicate("s1", "c1", "r1", 31)).id == newest.id
    assert await guard.should_skip("s1", "c1", "r1", 4) is False


@pytest.mark.asyncio
async def test_lookup_error_does_not_block_save(clock):
    guard = DedupGuard(BrokenStore(clock=clock), clock=clock)
    assert await guard.find_duplicate("s1", "c1", "r1", 12) is None
