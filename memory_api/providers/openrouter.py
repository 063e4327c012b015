import json
import logging
import os
from typing import Optional

import httpx

from ..logs import get_logger, log_event
from .base import CompletionClient, CompletionError

logger = get_logger("tutor_memory.providers.openrouter")

OPENROUTER_API_URL = "https://openrouter.ai/api/v1/chat/completions"


class OpenRouterCompletionClient(CompletionClient):
    provider_name: str = "openrouter"

    def __init__(self, model: Optional[str] = None, timeout: Optional[float] = None):
        super().__init__(
            model=model or os.getenv("AI_SUMMARY_MODEL") or "google/gemini-2.5-flash-lite",
            timeout=timeout,
        )
        api_key = os.getenv("OPENROUTER_API_KEY", "").strip()
        if not api_key:
            raise RuntimeError("OPENROUTER_API_KEY is required for OpenRouter provider")
        self._api_key = api_key
        if self.timeout is None:
            try:
                self.timeout = float(os.getenv("OPENROUTER_TIMEOUT_SECONDS") or os.getenv("AI_HTTP_TIMEOUT_SECONDS") or 8)
            except ValueError:
                self.timeout = 8.0
        # Origin metadata (optional but recommended by OpenRouter)
        self._referer = os.getenv("PUBLIC_APP_ORIGIN", "http://localhost:3000").strip() or "http://localhost:3000"
        self._title = os.getenv("OPENROUTER_APP_TITLE", "Tutor Memory API").strip() or "Tutor Memory API"

    async def complete_json(
        self,
        system: str,
        prompt: str,
        *,
        temperature: float = 0.3,
        request_id: Optional[str] = None,
    ) -> str:
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
            "User-Agent": "tutor-memory-api/0.1.0",
            "HTTP-Referer": self._referer,
            "X-Title": self._title,
        }
        if request_id:
            headers["X-Request-Id"] = request_id
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
            "temperature": temperature,
            "response_format": {"type": "json_object"},
        }
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.post(OPENROUTER_API_URL, headers=headers, json=payload)
            if resp.status_code >= 400:
                log_event(
                    logger,
                    logging.ERROR,
                    "openrouter_http_error",
                    status=resp.status_code,
                    body=(resp.text or "")[:1024],
                    model=self.model,
                    requestId=request_id,
                )
                raise CompletionError(f"OpenRouter error {resp.status_code}", status=resp.status_code)
            try:
                data = resp.json()
            except json.JSONDecodeError as e:
                raise CompletionError(f"OpenRouter returned non-JSON body: {e}") from e
        msg = (((data or {}).get("choices") or [{}])[0].get("message") or {})
        content = (msg.get("content") or "").strip()
        if not content:
            raise CompletionError("OpenRouter returned empty content")
        return content
