from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


class BackendExecutionError(RuntimeError):
    """Raised when a reasoning backend call fails."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        status_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.status_code = status_code
        self.retriable = retriable


class BackendTimeoutError(BackendExecutionError):
    """Raised when a backend call exceeds the configured timeout."""


class ReasoningBackend(ABC):
    @abstractmethod
    async def complete(
        self,
        system_prompt: str,
        user_payload: dict[str, Any] | str,
        *,
        temperature: float = 0.2,
        model: str | None = None,
    ) -> str:
        """Return the raw text of one chat completion."""
