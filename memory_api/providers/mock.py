import json
from typing import Optional

from .base import CompletionClient


class MockCompletionClient(CompletionClient):
    """Deterministic provider used when no real provider is configured."""

    provider_name: str = "mock"

    def __init__(self, model: Optional[str] = None, timeout: Optional[float] = None):
        super().__init__(model=model or "mock-summary-1", timeout=timeout)

    async def complete_json(
        self,
        system: str,
        prompt: str,
        *,
        temperature: float = 0.3,
        request_id: Optional[str] = None,
    ) -> str:
        body = prompt or ""
        if body.startswith("Analyze this conversation:"):
            body = body.split("\n\n", 1)[-1] if "\n\n" in body else ""
        turns = [line for line in body.split("\n\n") if ":" in line]
        student_turns = [t for t in turns if t.startswith("Student:")]
        first = student_turns[0].split(":", 1)[1].strip() if student_turns else ""
        topic = " ".join(first.split()[:4]) or "general discussion"
        return json.dumps({
            "summary": f"The student discussed {topic} over {len(turns)} messages.",
            "keyTopics": [topic],
            "learningInsights": {
                "understood": [],
                "struggling": [],
                "progress": "Engaged with the material",
            },
            "nextSteps": f"Review {topic} in the next session.",
        })
