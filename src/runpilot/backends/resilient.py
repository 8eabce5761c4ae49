from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from runpilot.backends.base import BackendExecutionError, BackendTimeoutError, ReasoningBackend

BackendEventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.5
    timeout_seconds: float = 90.0


class ResilientBackend(ReasoningBackend):
    """Wraps primary/fallback backends with timeout, retry, and failover."""

    def __init__(
        self,
        primary_name: str,
        primary_backend: ReasoningBackend,
        retry_policy: RetryPolicy,
        *,
        fallback_name: str | None = None,
        fallback_backend: ReasoningBackend | None = None,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.primary_name = primary_name
        self.primary_backend = primary_backend
        self.fallback_name = fallback_name
        self.fallback_backend = fallback_backend
        self.retry_policy = retry_policy
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def _attempt_plan(self) -> list[tuple[str, ReasoningBackend]]:
        attempts: list[tuple[str, ReasoningBackend]] = [(self.primary_name, self.primary_backend)]
        if (
            self.fallback_backend is not None
            and self.fallback_name
            and self.fallback_name != self.primary_name
        ):
            attempts.append((self.fallback_name, self.fallback_backend))
        return attempts

    async def complete(
        self,
        system_prompt: str,
        user_payload: dict[str, Any] | str,
        *,
        temperature: float = 0.2,
        model: str | None = None,
    ) -> str:
        errors: list[str] = []
        for backend_name, backend in self._attempt_plan():
            # The requested model belongs to the primary endpoint; fallbacks use their own.
            requested_model = model if backend_name == self.primary_name else None
            for attempt in range(self.retry_policy.max_retries + 1):
                if attempt > 0:
                    delay = self.retry_policy.backoff_seconds * (2 ** (attempt - 1))
                    self._emit(
                        {
                            "event": "backend_retry",
                            "backend": backend_name,
                            "attempt": attempt,
                            "delay_seconds": delay,
                        }
                    )
                    await asyncio.sleep(delay)
                try:
                    text = await asyncio.wait_for(
                        backend.complete(
                            system_prompt,
                            user_payload,
                            temperature=temperature,
                            model=requested_model,
                        ),
                        timeout=self.retry_policy.timeout_seconds,
                    )
                except TimeoutError:
                    error = BackendTimeoutError(
                        f"Backend request timed out after {self.retry_policy.timeout_seconds:.1f}s",
                        backend=backend_name,
                        retriable=True,
                    )
                    errors.append(f"{backend_name}[{attempt}]: {error}")
                    self._emit(
                        {
                            "event": "backend_attempt_failed",
                            "backend": backend_name,
                            "attempt": attempt,
                            "error": str(error),
                            "retriable": True,
                        }
                    )
                    continue
                except BackendExecutionError as exc:
                    errors.append(f"{backend_name}[{attempt}]: {exc}")
                    self._emit(
                        {
                            "event": "backend_attempt_failed",
                            "backend": backend_name,
                            "attempt": attempt,
                            "error": str(exc),
                            "retriable": exc.retriable,
                        }
                    )
                    if not exc.retriable:
                        break
                    continue
                if backend_name != self.primary_name:
                    self._emit(
                        {
                            "event": "backend_fallback_success",
                            "backend": backend_name,
                            "attempt": attempt,
                        }
                    )
                return text

        summary = "; ".join(errors[-6:])
        raise BackendExecutionError(
            f"All backend attempts failed. {summary}",
            retriable=False,
        )
