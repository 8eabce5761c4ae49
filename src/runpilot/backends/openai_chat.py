from __future__ import annotations

import json
import os
from typing import Any

from openai import APIConnectionError, APIStatusError, AsyncOpenAI, OpenAIError

from runpilot.backends.base import BackendExecutionError, ReasoningBackend

# Local OpenAI-compatible servers (Ollama, vLLM) accept any key but the SDK requires one.
PLACEHOLDER_API_KEY = "not-needed"


class OpenAIChatBackend(ReasoningBackend):
    """Chat-completions backend for any OpenAI-compatible endpoint."""

    def __init__(
        self,
        *,
        base_url: str,
        model: str,
        api_key_env: str = "RUNPILOT_API_KEY",
        name: str = "openai",
        client: Any | None = None,
    ) -> None:
        self.base_url = base_url
        self.model = model
        self.name = name
        if client is None:
            api_key = os.environ.get(api_key_env) or PLACEHOLDER_API_KEY
            client = AsyncOpenAI(base_url=base_url, api_key=api_key, max_retries=0)
        self._client = client

    @staticmethod
    def _render_payload(user_payload: dict[str, Any] | str) -> str:
        if isinstance(user_payload, str):
            return user_payload
        return json.dumps(user_payload, ensure_ascii=False, default=str)

    @staticmethod
    def _extract_text(response: Any) -> str:
        choices = getattr(response, "choices", None) or []
        if not choices:
            return ""
        message = getattr(choices[0], "message", None)
        content = getattr(message, "content", None)
        return content if isinstance(content, str) else ""

    async def complete(
        self,
        system_prompt: str,
        user_payload: dict[str, Any] | str,
        *,
        temperature: float = 0.2,
        model: str | None = None,
    ) -> str:
        model_name = model.strip() if isinstance(model, str) and model.strip() else self.model
        try:
            response = await self._client.chat.completions.create(
                model=model_name,
                temperature=temperature,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": self._render_payload(user_payload)},
                ],
            )
        except APIStatusError as exc:
            raise BackendExecutionError(
                f"{self.name} request failed ({exc.status_code}).",
                backend=self.name,
                status_code=exc.status_code,
                retriable=exc.status_code == 429 or exc.status_code >= 500,
            ) from exc
        except APIConnectionError as exc:
            raise BackendExecutionError(
                f"{self.name} endpoint unreachable: {exc}",
                backend=self.name,
                retriable=True,
            ) from exc
        except OpenAIError as exc:
            raise BackendExecutionError(
                f"{self.name} request failed: {exc}",
                backend=self.name,
                retriable=False,
            ) from exc

        content = self._extract_text(response).strip()
        if not content:
            raise BackendExecutionError(
                f"{self.name} returned an empty completion.",
                backend=self.name,
                retriable=True,
            )
        return content
