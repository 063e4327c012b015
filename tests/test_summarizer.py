import asyncio
import json

import pytest

from memory_api.models import Message
from memory_api.providers.base import CompletionClient, CompletionError
from memory_api.summarizer import (
    FALLBACK_NEXT_STEPS,
    FALLBACK_PROGRESS,
    FALLBACK_SUMMARY,
    SYSTEM_PROMPT,
    Summarizer,
    build_transcript,
    parse_memory_result,
)

from conftest import FIXED_SUMMARY, FixedCompletionClient, make_messages


class RaisingClient(CompletionClient):
    provider_name = "raising"

    def __init__(self, exc: Exception):
        super().__init__(model="raise-1")
        self.exc = exc
        self.calls = 0

    async def complete_json(self, system, prompt, *, temperature=0.3, request_id=None):
        self.calls += 1
        raise self.exc


class SlowClient(CompletionClient):
    provider_name = "slow"

    async def complete_json(self, system, prompt, *, temperature=0.3, request_id=None):
        await asyncio.sleep(5)
        return json.dumps(FIXED_SUMMARY)


def _assert_fallback(result):
    assert result.degraded is True
    assert result.summary == FALLBACK_SUMMARY
    assert result.key_topics == []
    assert result.learning_insights.understood == []
    assert result.learning_insights.struggling == []
    assert result.learning_insights.progress == FALLBACK_PROGRESS
    assert result.next_steps == FALLBACK_NEXT_STEPS


def test_build_transcript_labels_and_separator():
    msgs = [
        Message(role="user", content="What is 2+2?"),
        Message(role="assistant", content="It is 4."),
        Message(role="user", content="Thanks"),
    ]
    text = build_transcript(msgs, "MathBot")
    assert text == "Student: What is 2+2?\n\nMathBot: It is 4.\n\nStudent: Thanks"


@pytest.mark.asyncio
async def test_summarize_sends_one_request_with_prompt_and_low_temperature(fixed_client):
    s = Summarizer(fixed_client)
    result = await s.summarize(make_messages(2), "MathBot", request_id="rid-1")

    assert len(fixed_client.calls) == 1
    call = fixed_client.calls[0]
    assert call["system"] == SYSTEM_PROMPT
    assert call["temperature"] == pytest.approx(0.3)
    assert call["request_id"] == "rid-1"
    assert call["prompt"].startswith("Analyze this conversation:\n\n")
    assert "Student: Question 0 about equations" in call["prompt"]
    assert "MathBot: Answer 1" in call["prompt"]

    assert result.degraded is False
    assert result.summary == FIXED_SUMMARY["summary"]
    assert result.key_topics == ["linear equations", "inverse operations"]
    assert result.learning_insights.struggling == ["negative coefficients"]
    assert result.next_steps == FIXED_SUMMARY["nextSteps"]


@pytest.mark.asyncio
async def test_summarize_defaults_chatbot_name(fixed_client):
    s = Summarizer(fixed_client)
    await s.summarize(make_messages(2), None)
    assert "Assistant: Answer 1" in fixed_client.calls[0]["prompt"]
    await s.summarize(make_messages(2), "   ")
    assert "Assistant: Answer 1" in fixed_client.calls[1]["prompt"]


@pytest.mark.asyncio
@pytest.mark.parametrize("exc", [
    CompletionError("OpenRouter error 500", status=500),
    RuntimeError("connection reset"),
    ValueError("bad"),
])
async def test_summarize_falls_back_on_provider_errors(exc):
    client = RaisingClient(exc)
    result = await Summarizer(client).summarize(make_messages(3), "Bot")
    _assert_fallback(result)
    # No retries inside the summarizer
    assert client.calls == 1


@pytest.mark.asyncio
async def test_summarize_falls_back_on_timeout():
    result = await Summarizer(SlowClient(), timeout=0.05).summarize(make_messages(3), "Bot")
    _assert_fallback(result)


@pytest.mark.asyncio
@pytest.mark.parametrize("content", [
    "not json at all",
    "",
    "[1, 2, 3]",
    "{\"summary\": ",
])
async def test_summarize_falls_back_on_unparseable_content(content):
    result = await Summarizer(FixedCompletionClient(content)).summarize(make_messages(1), "Bot")
    _assert_fallback(result)


def test_parse_memory_result_strips_code_fence_and_prose():
    fenced = "```json\n" + json.dumps(FIXED_SUMMARY) + "\n```"
    assert parse_memory_result(fenced).key_topics == FIXED_SUMMARY["keyTopics"]

    wrapped = "Here is the analysis: " + json.dumps(FIXED_SUMMARY) + " Hope that helps."
    assert parse_memory_result(wrapped).summary == FIXED_SUMMARY["summary"]


def test_parse_memory_result_coerces_partial_fields():
    content = json.dumps({
        "summary": "Talked about fractions.",
        "keyTopics": ["fractions", "", 3, "  decimals "],
        "learningInsights": "unknown",
    })
    result = parse_memory_result(content)
    assert result.summary == "Talked about fractions."
    assert result.key_topics == ["fractions", "decimals"]
    assert result.learning_insights.understood == []
    assert result.learning_insights.progress == FALLBACK_PROGRESS
    assert result.next_steps == FALLBACK_NEXT_STEPS
    assert result.degraded is False
