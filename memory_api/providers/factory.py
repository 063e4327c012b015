import os
from typing import Optional

from .base import CompletionClient
from .mock import MockCompletionClient


def _env_str(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


def get_summary_client(
    provider: Optional[str] = None,
    model: Optional[str] = None,
    timeout: Optional[float] = None,
) -> CompletionClient:
    """Return the completion client used for session summaries.

    Env precedence:
      - AI_PROVIDER_SUMMARY
      - AI_PROVIDER
      - defaults to 'mock'
    Model from AI_SUMMARY_MODEL if not given. A provider that cannot be
    constructed (e.g. missing API key) falls back to the mock client.
    """
    prov = (provider or _env_str("AI_PROVIDER_SUMMARY") or _env_str("AI_PROVIDER") or "mock").lower()
    mdl = model or _env_str("AI_SUMMARY_MODEL") or None

    if prov in ("mock", "test"):
        return MockCompletionClient(model=mdl, timeout=timeout)

    if prov in ("openrouter", "router"):
        try:
            from .openrouter import OpenRouterCompletionClient
            return OpenRouterCompletionClient(model=mdl, timeout=timeout)
        except RuntimeError:
            return MockCompletionClient(model=mdl, timeout=timeout)

    if prov in ("google", "gemini"):
        try:
            from .google import GoogleCompletionClient
            return GoogleCompletionClient(model=mdl, timeout=timeout)
        except RuntimeError:
            return MockCompletionClient(model=mdl, timeout=timeout)

    # Unknown -> mock
    return MockCompletionClient(model=mdl, timeout=timeout)
