"""Session summarization against the completion service.

The summarizer issues one completion call per session and never raises: any
transport, status, or parsing failure yields the fixed fallback result so the
caller can still persist a record.
"""
import asyncio
import json
import logging
import time
from typing import Any, List, Optional, Sequence

from .logs import get_logger, log_event
from .metrics import MEMORY_SUMMARIES_TOTAL, SUMMARY_SECONDS
from .models import LearningInsights, MemoryResult, Message
from .providers.base import CompletionClient

logger = get_logger("tutor_memory.summarizer")

DEFAULT_CHATBOT_NAME = "Assistant"
SUMMARY_TEMPERATURE = 0.3

FALLBACK_SUMMARY = "Student had a conversation with the chatbot."
FALLBACK_PROGRESS = "Unable to assess"
FALLBACK_NEXT_STEPS = "Continue with regular curriculum"

SYSTEM_PROMPT = """You are an educational assistant analyzing a student-chatbot conversation.
Your task is to create a memory summary that will help the chatbot remember this student in future conversations.

Analyze the conversation and provide:
1. A concise summary of what was discussed (2-3 sentences)
2. Key topics covered (as an array)
3. Learning insights:
   - What concepts the student understood well
   - What concepts the student struggled with
   - Overall progress assessment
4. Suggested next steps for the student

Return your response as valid JSON matching this structure:
{
  "summary": "string",
  "keyTopics": ["topic1", "topic2"],
  "learningInsights": {
    "understood": ["concept1", "concept2"],
    "struggling": ["concept3"],
    "progress": "string describing overall progress"
  },
  "nextSteps": "string with recommendations"
}"""


def fallback_result() -> MemoryResult:
    return MemoryResult(
        summary=FALLBACK_SUMMARY,
        key_topics=[],
        learning_insights=LearningInsights(understood=[], struggling=[], progress=FALLBACK_PROGRESS),
        next_steps=FALLBACK_NEXT_STEPS,
        degraded=True,
    )


def build_transcript(messages: Sequence[Message], chatbot_name: str) -> str:
    return "\n\n".join(
        f"{'Student' if m.role == 'user' else chatbot_name}: {m.content}" for m in messages
    )


def _extract_json_text(content: str) -> str:
    text = (content or "").strip()
    # Remove fenced code blocks like ```json ... ```
    if text.startswith("```"):
        lines = text.split("\n")
        if len(lines) > 2 and lines[-1].strip().startswith("```"):
            text = "\n".join(lines[1:-1]).strip()
    # Prose around the object: keep the outermost braces
    if not (text.startswith("{") and text.endswith("}")):
        start = text.find("{")
        end = text.rfind("}")
        if start != -1 and end > start:
            text = text[start:end + 1]
    return text


def _str_list(val: Any) -> List[str]:
    out: List[str] = []
    if isinstance(val, list):
        for x in val:
            if isinstance(x, str) and x.strip():
                out.append(x.strip())
    elif isinstance(val, str) and val.strip():
        out.append(val.strip())
    return out


def _str_or(val: Any, default: str) -> str:
    if isinstance(val, str) and val.strip():
        return val.strip()
    return default


def parse_memory_result(content: str) -> MemoryResult:
    """Parse completion content into a MemoryResult.

    Raises ValueError when the content is not a JSON object. Individual fields
    that are missing or mistyped take their fallback value.
    """
    obj = json.loads(_extract_json_text(content))
    if not isinstance(obj, dict):
        raise ValueError("completion content is not a JSON object")
    insights = obj.get("learningInsights")
    if not isinstance(insights, dict):
        insights = {}
    return MemoryResult(
        summary=_str_or(obj.get("summary"), FALLBACK_SUMMARY),
        key_topics=_str_list(obj.get("keyTopics")),
        learning_insights=LearningInsights(
            understood=_str_list(insights.get("understood")),
            struggling=_str_list(insights.get("struggling")),
            progress=_str_or(insights.get("progress"), FALLBACK_PROGRESS),
        ),
        next_steps=_str_or(obj.get("nextSteps"), FALLBACK_NEXT_STEPS),
    )


class Summarizer:
    def __init__(
        self,
        client: CompletionClient,
        *,
        temperature: float = SUMMARY_TEMPERATURE,
        timeout: Optional[float] = None,
    ):
        self.client = client
        self.temperature = temperature
        # Upper bound on the completion call; a timeout is handled like any other failure
        self.timeout = timeout

    async def summarize(
        self,
        messages: Sequence[Message],
        chatbot_name: Optional[str] = None,
        *,
        request_id: Optional[str] = None,
    ) -> MemoryResult:
        name = (chatbot_name or "").strip() or DEFAULT_CHATBOT_NAME
        transcript = build_transcript(messages, name)
        prompt = f"Analyze this conversation:\n\n{transcript}"
        t0 = time.perf_counter()
        try:
            content = await asyncio.wait_for(
                self.client.complete_json(
                    SYSTEM_PROMPT,
                    prompt,
                    temperature=self.temperature,
                    request_id=request_id,
                ),
                timeout=self.timeout,
            )
            result = parse_memory_result(content)
        except Exception as e:
            SUMMARY_SECONDS.observe(time.perf_counter() - t0)
            MEMORY_SUMMARIES_TOTAL.labels(status="fallback").inc()
            log_event(
                logger,
                logging.WARNING,
                "summary_fallback",
                provider=getattr(self.client, "provider_name", "unknown"),
                model=getattr(self.client, "model", None),
                messagesCount=len(messages),
                error=type(e).__name__,
                message=str(e)[:512],
                requestId=request_id,
            )
            return fallback_result()
        SUMMARY_SECONDS.observe(time.perf_counter() - t0)
        MEMORY_SUMMARIES_TOTAL.labels(status="ok").inc()
        log_event(
            logger,
            logging.INFO,
            "summary_generate",
            provider=getattr(self.client, "provider_name", "unknown"),
            model=getattr(self.client, "model", None),
            messagesCount=len(messages),
            keyTopics=len(result.key_topics),
            durationMs=int((time.perf_counter() - t0) * 1000),
            requestId=request_id,
        )
        return result
