from __future__ import annotations

import logging
from typing import Any

from runpilot.backends.base import BackendExecutionError, ReasoningBackend
from runpilot.parsing import ParseError, ParseResult, parse_json_object

logger = logging.getLogger(__name__)


class SpecialistAgent:
    role: str = "specialist"
    temperature: float = 0.2
    system_prompt: str = "You are a careful assistant. Reply with one JSON object."

    def __init__(self, backend: ReasoningBackend, *, model: str | None = None) -> None:
        self.backend = backend
        self.model = model

    async def ask(
        self,
        payload: dict[str, Any],
        *,
        model: str | None = None,
        system_prompt: str | None = None,
    ) -> ParseResult:
        """Send ``payload`` to the backend and parse the reply as a JSON object.

        Backend failures come back as ``ParseError`` so callers only ever branch
        on the tagged result.
        """
        try:
            text = await self.backend.complete(
                system_prompt or self.system_prompt,
                payload,
                temperature=self.temperature,
                model=model or self.model,
            )
        except BackendExecutionError as exc:
            logger.warning("%s call failed: %s", self.role, exc)
            return ParseError(f"backend: {exc}")
        result = parse_json_object(text)
        if isinstance(result, ParseError):
            logger.warning("%s reply was not usable JSON: %s", self.role, result.reason)
        return result
