from __future__ import annotations

import importlib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from runpilot.models import PlanStep, StepResult
from runpilot.state.store import RunStore

SNAPSHOT_TEXT_LIMIT = 1200


class ExecutorLoadError(RuntimeError):
    """Raised when the configured step executor factory cannot be resolved."""


@dataclass(slots=True)
class RunContext:
    run_id: str
    prompt: str
    store: RunStore
    tools: list[str] = field(default_factory=list)
    search_provider: str | None = None
    agent_browser: str | None = None
    run_headless: bool = True
    memory: list[str] = field(default_factory=list)


@dataclass(slots=True)
class BrowserContext:
    url: str
    title: str | None = None
    text: str | None = None
    logs: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"url": self.url, "title": self.title, "text": self.text, "logs": list(self.logs)}


class StepExecutor(ABC):
    @abstractmethod
    async def execute(self, step: PlanStep, context: RunContext) -> StepResult:
        """Run one plan step to completion and report the observation."""


class NullExecutor(StepExecutor):
    """Executor used when no tool integration is configured.

    Reasoning-only steps (tool ``none``) succeed; anything needing a tool fails so
    the run surfaces the missing integration instead of pretending to act.
    """

    async def execute(self, step: PlanStep, context: RunContext) -> StepResult:
        _ = context
        if step.tool == "none":
            return StepResult(ok=True, observation=f"Noted: {step.title}")
        return StepResult(ok=False, error=f"No step executor configured for tool '{step.tool}'.")


def load_executor(reference: str) -> StepExecutor:
    """Resolve ``"package.module:factory"`` and build the executor it names."""
    module_name, _, attribute = reference.partition(":")
    if not module_name or not attribute:
        raise ExecutorLoadError(f"Executor reference must look like 'module:factory', got {reference!r}.")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ExecutorLoadError(f"Cannot import executor module '{module_name}': {exc}") from exc
    factory = getattr(module, attribute, None)
    if factory is None:
        raise ExecutorLoadError(f"Executor factory '{attribute}' not found in '{module_name}'.")
    executor = factory()
    if not isinstance(executor, StepExecutor):
        raise ExecutorLoadError(f"'{reference}' did not produce a StepExecutor.")
    return executor


def browser_context(store: RunStore, run_id: str, *, log_limit: int = 20) -> BrowserContext | None:
    """Summarize the latest page snapshot and recent browser log lines for prompts."""
    snapshot = store.latest_snapshot(run_id)
    logs = [
        str(entry.get("message", ""))
        for entry in store.recent_browser_logs(run_id, limit=log_limit)
        if entry.get("message")
    ]
    if snapshot is None or not snapshot.get("url"):
        return None
    text = snapshot.get("text")
    return BrowserContext(
        url=str(snapshot["url"]),
        title=snapshot.get("title") if isinstance(snapshot.get("title"), str) else None,
        text=text[:SNAPSHOT_TEXT_LIMIT] if isinstance(text, str) else None,
        logs=logs,
    )
