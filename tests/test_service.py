import asyncio
from pathlib import Path

import pytest

from runpilot.models import AgentRun, BrowserLog
from runpilot.service import RunNotFoundError, RunService, RunValidationError
from runpilot.state import RunStore


def _service(tmp_path: Path) -> RunService:
    return RunService(RunStore(tmp_path))


def test_create_run_validates_and_queues(tmp_path: Path) -> None:
    service = _service(tmp_path)

    run = service.create_run(
        {
            "prompt": "  Find the docs  ",
            "model": "llama3.1",
            "tools": ["browser", " "],
            "settings": {"max_steps": 4},
            "preferences": {"require_human_approval": False},
        }
    )

    assert run.status == "queued"
    assert run.prompt == "Find the docs"
    assert run.tools == ["browser"]
    assert run.plan_state == {"settings": {"max_steps": 4}, "preferences": {"require_human_approval": False}}
    stored = service.get_run(run.id)
    assert stored.logs[-1].endswith("Agent run queued.")
    assert service.store.list_audit(run.id)[0]["message"] == "Agent run queued."


@pytest.mark.parametrize(
    ("payload", "message"),
    [
        ({"prompt": "  "}, "Prompt is required."),
        ({}, "Prompt is required."),
        ({"prompt": "x", "tools": "browser"}, "'tools' must be a list of strings."),
        ({"prompt": "x", "run_headless": "yes"}, "'run_headless' must be a boolean."),
        ({"prompt": "x", "settings": [1]}, "'settings' must be an object."),
        ({"prompt": "x", "model": 3}, "'model' must be a string."),
    ],
)
def test_create_run_rejects_bad_payloads(tmp_path: Path, payload: dict, message: str) -> None:
    with pytest.raises(RunValidationError) as exc:
        _service(tmp_path).create_run(payload)
    assert str(exc.value) == message


def test_create_run_starts_scheduler_inside_event_loop(tmp_path: Path) -> None:
    class FakeScheduler:
        def __init__(self) -> None:
            self.starts = 0

        def start(self) -> None:
            self.starts += 1

    scheduler = FakeScheduler()
    service = RunService(RunStore(tmp_path), scheduler)  # type: ignore[arg-type]

    service.create_run({"prompt": "outside"})

    async def _inside() -> None:
        service.create_run({"prompt": "inside"})

    asyncio.run(_inside())

    assert scheduler.starts == 1


def test_list_runs_reports_browser_counts(tmp_path: Path) -> None:
    service = _service(tmp_path)
    run = service.create_run({"prompt": "Browse"})
    service.store.add_browser_log(BrowserLog(run_id=run.id, message="console"))

    listings = service.list_runs()

    assert len(listings) == 1
    payload = listings[0].to_dict()
    assert payload["browser_log_count"] == 1
    assert payload["snapshot_count"] == 0


def test_delete_terminal_runs_keeps_active_ones(tmp_path: Path) -> None:
    service = _service(tmp_path)
    for run_id, status in [
        ("done", "completed"),
        ("broken", "failed"),
        ("halted", "stopped"),
        ("paused", "waiting_human"),
        ("busy", "running"),
        ("next", "queued"),
    ]:
        service.store.create_run(AgentRun(id=run_id, prompt="p", status=status))

    assert service.delete_terminal_runs() == 4
    assert sorted(run.id for run in service.store.list_runs()) == ["busy", "next"]


def test_stop_run_marks_stopped_once(tmp_path: Path) -> None:
    service = _service(tmp_path)
    run = service.create_run({"prompt": "p"})

    stopped = service.stop_run(run.id)
    again = service.stop_run(run.id)

    assert stopped.status == "stopped"
    assert stopped.finished_at is not None
    assert again.logs == stopped.logs
    with pytest.raises(RunNotFoundError):
        service.stop_run("missing")


def test_resume_run_requeues_with_marker(tmp_path: Path) -> None:
    service = _service(tmp_path)
    service.store.create_run(
        AgentRun(id="r1", prompt="p", status="failed", error_message="boom", requires_human_intervention=True)
    )

    run = service.resume_run("r1", "s2")

    assert run.status == "queued"
    assert run.error_message is None
    assert run.requires_human_intervention is False
    assert run.active_step_id == "s2"
    assert run.plan_state is not None
    assert run.plan_state["resume_requested_at"]
    assert run.plan_state["active_step_id"] == "s2"


def test_resume_rejects_running_run(tmp_path: Path) -> None:
    service = _service(tmp_path)
    service.store.create_run(AgentRun(id="r1", prompt="p", status="running"))

    with pytest.raises(RunValidationError, match="already running"):
        service.resume_run("r1")


def test_approve_step_grants_requested_step(tmp_path: Path) -> None:
    service = _service(tmp_path)
    service.store.create_run(
        AgentRun(
            id="r1",
            prompt="p",
            status="waiting_human",
            plan_state={"steps": [], "approval_requested_step_id": "s3"},
        )
    )

    run = service.approve_step("r1")

    assert run.status == "queued"
    assert run.plan_state is not None
    assert run.plan_state["approval_granted_step_id"] == "s3"
    messages = [entry["message"] for entry in service.store.list_audit("r1")]
    assert messages == ["Agent step approved.", "Agent run resume requested."]


def test_approve_step_requires_a_target(tmp_path: Path) -> None:
    service = _service(tmp_path)
    service.store.create_run(AgentRun(id="r1", prompt="p", status="waiting_human"))

    with pytest.raises(RunValidationError, match="No step is waiting for approval."):
        service.approve_step("r1")


def test_approve_step_rejects_running_run_without_writing_a_grant(tmp_path: Path) -> None:
    service = _service(tmp_path)
    service.store.create_run(
        AgentRun(id="r1", prompt="p", status="running", plan_state={"approval_requested_step_id": "s3"})
    )

    with pytest.raises(RunValidationError, match="already running"):
        service.approve_step("r1")

    run = service.store.get_run("r1")
    assert run is not None
    assert run.plan_state is not None
    assert "approval_granted_step_id" not in run.plan_state
    assert service.store.list_audit("r1") == []
