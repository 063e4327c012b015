from __future__ import annotations

import abc
from typing import Optional


class CompletionClient(abc.ABC):
    """Abstract text-completion client that must answer with a JSON object.

    Implementations issue exactly one request per call and raise on transport
    errors, non-2xx responses, or empty content. Callers own fallback behavior.
    """

    provider_name: str = "unknown"

    def __init__(self, model: Optional[str] = None, timeout: Optional[float] = None):
        self.model = model
        self.timeout = timeout

    @abc.abstractmethod
    async def complete_json(
        self,
        system: str,
        prompt: str,
        *,
        temperature: float = 0.3,
        request_id: Optional[str] = None,
    ) -> str:
        ...


class CompletionError(RuntimeError):
    """Raised by providers when the completion service fails."""

    def __init__(self, message: str, *, status: Optional[int] = None):
        super().__init__(message)
        self.status = status
