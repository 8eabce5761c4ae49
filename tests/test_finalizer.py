import asyncio
import json
from pathlib import Path
from typing import Any

from runpilot.backends.base import ReasoningBackend
from runpilot.config import RunPreferences
from runpilot.finalizer import Finalizer
from runpilot.memory import MemoryManager
from runpilot.models import AgentRun, BrowserSnapshot, Checkpoint, PlanStep
from runpilot.specialists import CriticAgent
from runpilot.state import RunStore


class CriticBackend(ReasoningBackend):
    def __init__(self, *, crash_review: bool = False) -> None:
        self.crash_review = crash_review
        self.calls: list[dict[str, Any]] = []

    async def complete(
        self,
        system_prompt: str,
        user_payload: dict[str, Any] | str,
        *,
        temperature: float = 0.2,
        model: str | None = None,
    ) -> str:
        _ = temperature
        self.calls.append({"system": system_prompt, "payload": user_payload, "model": model})
        if "verify whether" in system_prompt:
            return json.dumps({"verdict": "pass", "summary": "Title captured.", "evidence": ["h1 text"]})
        if self.crash_review:
            raise ValueError("review exploded")
        return json.dumps({"summary": "Read the page before acting.", "improvements": ["wait for load"], "confidence": 0.7})


def _setup(tmp_path: Path) -> tuple[RunStore, MemoryManager, Checkpoint]:
    store = RunStore(tmp_path)
    store.create_run(AgentRun(id="r1", prompt="Get the title", status="running"))
    checkpoint = Checkpoint(
        steps=[PlanStep(id="s1", title="Open", status="completed", observation="Title is Docs")],
        active_step_id="s1",
        preferences=RunPreferences(verification_model="verify-model", self_check_model="review-model"),
    )
    return store, MemoryManager(store), checkpoint


def test_finalize_completed_run_verifies_and_reflects(tmp_path: Path) -> None:
    store, memory, checkpoint = _setup(tmp_path)
    store.add_snapshot(BrowserSnapshot(run_id="r1", url="https://docs.example", title="Docs"))
    backend = CriticBackend()

    report = asyncio.run(Finalizer(store, memory, CriticAgent(backend)).finalize("r1", checkpoint, status="completed"))

    assert report.status == "completed"
    assert report.verification is not None
    assert report.verification["verified"] is True
    assert report.review is not None
    assert report.review["confidence"] == 0.7
    run = store.get_run("r1")
    assert run is not None
    assert run.status == "completed"
    assert run.active_step_id is None
    assert run.error_message is None
    assert [call["model"] for call in backend.calls] == ["verify-model", "review-model"]
    assert backend.calls[0]["payload"]["browserContext"]["url"] == "https://docs.example"
    messages = [entry["message"] for entry in store.list_audit("r1")]
    assert messages == ["Agent run finished.", "Run verification.", "Self-improvement review."]
    lessons = [item for item in store.list_memory(run_id="r1") if item.metadata.get("type") == "self-improvement"]
    assert [item.content for item in lessons] == ["Read the page before acting."]


def test_finalize_failed_run_keeps_error_and_survives_review_crash(tmp_path: Path) -> None:
    store, memory, checkpoint = _setup(tmp_path)
    finalizer = Finalizer(store, memory, CriticAgent(CriticBackend(crash_review=True)))

    report = asyncio.run(
        finalizer.finalize("r1", checkpoint, status="failed", last_error="captcha wall", requires_human=True)
    )

    assert report.verification is not None
    assert report.review is None
    run = store.get_run("r1")
    assert run is not None
    assert run.status == "failed"
    assert run.error_message == "captcha wall"
    assert run.requires_human_intervention is True
    assert run.active_step_id == "s1"
    messages = [entry["message"] for entry in store.list_audit("r1")]
    assert "Self-improvement review failed." in messages


def test_finalize_without_critic_only_persists(tmp_path: Path) -> None:
    store, memory, checkpoint = _setup(tmp_path)

    report = asyncio.run(Finalizer(store, memory).finalize("r1", checkpoint, status="stopped"))

    assert report.verification is None
    run = store.get_run("r1")
    assert run is not None
    assert run.status == "stopped"
    assert run.finished_at is not None
    assert run.logs[-1].endswith("Agent run stopped.")


def test_finalize_uses_run_model_when_no_preference_is_set(tmp_path: Path) -> None:
    store = RunStore(tmp_path)
    store.create_run(AgentRun(id="r1", prompt="Get the title", status="running", model="run-model"))
    checkpoint = Checkpoint(steps=[PlanStep(id="s1", title="Open", status="completed")])
    backend = CriticBackend()
    finalizer = Finalizer(store, MemoryManager(store), CriticAgent(backend, model="role-model"))

    asyncio.run(finalizer.finalize("r1", checkpoint, status="completed"))

    assert [call["model"] for call in backend.calls] == ["run-model", "run-model"]
