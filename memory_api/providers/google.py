import json
import logging
import os
from typing import Optional

import httpx

from ..logs import get_logger, log_event
from .base import CompletionClient, CompletionError

logger = get_logger("tutor_memory.providers.google")

GOOGLE_API_BASE = "https://generativelanguage.googleapis.com/v1beta"


class GoogleCompletionClient(CompletionClient):
    provider_name: str = "google"

    def __init__(self, model: Optional[str] = None, timeout: Optional[float] = None):
        super().__init__(model=model or os.getenv("AI_SUMMARY_MODEL") or "gemini-2.5-flash-lite", timeout=timeout)
        api_key = os.getenv("GOOGLE_API_KEY", "").strip()
        if not api_key:
            raise RuntimeError("GOOGLE_API_KEY is required for Google provider")
        self._api_key = api_key
        if self.timeout is None:
            try:
                self.timeout = float(os.getenv("AI_HTTP_TIMEOUT_SECONDS") or 8)
            except ValueError:
                self.timeout = 8.0

    async def complete_json(
        self,
        system: str,
        prompt: str,
        *,
        temperature: float = 0.3,
        request_id: Optional[str] = None,
    ) -> str:
        model = (self.model or "gemini-2.5-flash-lite").strip()
        url = f"{GOOGLE_API_BASE}/models/{model}:generateContent?key={self._api_key}"
        # systemInstruction plus responseMimeType keeps Gemini output parseable
        payload = {
            "contents": [
                {
                    "role": "user",
                    "parts": [{"text": prompt}],
                }
            ],
            "generationConfig": {
                "temperature": temperature,
                "candidateCount": 1,
                "responseMimeType": "application/json",
            },
            "systemInstruction": {"parts": [{"text": system}]},
        }
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": "tutor-memory-api/0.1.0",
        }
        if request_id:
            headers["X-Request-Id"] = request_id

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.post(url, headers=headers, json=payload)
            if resp.status_code >= 400:
                log_event(
                    logger,
                    logging.ERROR,
                    "google_summary_http_error",
                    status=resp.status_code,
                    body=(resp.text or "")[:1024],
                    model=model,
                    requestId=request_id,
                )
                raise CompletionError(f"Google error {resp.status_code}", status=resp.status_code)
            try:
                data = resp.json()
            except json.JSONDecodeError as e:
                raise CompletionError(f"Google returned non-JSON body: {e}") from e

        candidates = (data or {}).get("candidates") or []
        if not candidates:
            raise CompletionError("Google returned no candidates")
        parts = (candidates[0].get("content") or {}).get("parts") or []
        text = "".join(str(p.get("text") or "") for p in parts).strip()
        if not text:
            raise CompletionError("Google returned empty content")
        return text
