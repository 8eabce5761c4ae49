import asyncio
from pathlib import Path

import pytest

from runpilot.executor import (
    ExecutorLoadError,
    NullExecutor,
    RunContext,
    browser_context,
    load_executor,
)
from runpilot.models import BrowserLog, BrowserSnapshot, PlanStep
from runpilot.state import RunStore


def test_load_executor_resolves_factory() -> None:
    assert isinstance(load_executor("runpilot.executor:NullExecutor"), NullExecutor)


@pytest.mark.parametrize(
    ("reference", "message"),
    [
        ("runpilot.executor", "must look like"),
        ("runpilot.nowhere:Factory", "Cannot import"),
        ("runpilot.executor:Missing", "not found"),
        ("runpilot.models:new_id", "did not produce"),
    ],
)
def test_load_executor_rejects_bad_references(reference: str, message: str) -> None:
    with pytest.raises(ExecutorLoadError, match=message):
        load_executor(reference)


def test_null_executor_only_handles_reasoning_steps(tmp_path: Path) -> None:
    context = RunContext(run_id="r1", prompt="p", store=RunStore(tmp_path))
    executor = NullExecutor()

    noted = asyncio.run(executor.execute(PlanStep(id="s1", title="Think", tool="none"), context))
    refused = asyncio.run(executor.execute(PlanStep(id="s2", title="Click"), context))

    assert noted.ok is True
    assert refused.ok is False
    assert refused.error == "No step executor configured for tool 'browser'."


def test_browser_context_uses_latest_snapshot(tmp_path: Path) -> None:
    store = RunStore(tmp_path)
    assert browser_context(store, "r1") is None

    store.add_browser_log(BrowserLog(run_id="r1", message="loaded"))
    store.add_snapshot(BrowserSnapshot(run_id="r1", url="https://a.example"))
    store.add_snapshot(BrowserSnapshot(run_id="r1", url="https://b.example", title="B", text="x" * 5000))

    context = browser_context(store, "r1")

    assert context is not None
    assert context.url == "https://b.example"
    assert context.title == "B"
    assert context.text is not None and len(context.text) == 1200
    assert context.logs == ["loaded"]
