import asyncio
from pathlib import Path
from typing import Any

from runpilot.engine import LoopOutcome
from runpilot.models import AgentRun
from runpilot.scheduler import Scheduler
from runpilot.state import RunStore


class RecordingLoop:
    def __init__(self, store: RunStore, *, error: Exception | None = None) -> None:
        self.store = store
        self.error = error
        self.seen: list[tuple[str, str]] = []
        self.release: asyncio.Event | None = None

    async def run(self, run_id: str) -> LoopOutcome:
        run = self.store.get_run(run_id)
        assert run is not None
        self.seen.append((run_id, run.status))
        if self.release is not None:
            await self.release.wait()
        if self.error is not None:
            raise self.error
        return LoopOutcome(run_id=run_id, status="completed")


def _queue(store: RunStore, run_id: str, created_at: str, **fields: Any) -> None:
    store.create_run(AgentRun(id=run_id, prompt="p", created_at=created_at, **fields))


def test_tick_processes_oldest_queued_run_first(tmp_path: Path) -> None:
    store = RunStore(tmp_path)
    _queue(store, "newer", "2026-01-02T00:00:00+00:00")
    _queue(store, "older", "2026-01-01T00:00:00+00:00")
    loop = RecordingLoop(store)
    scheduler = Scheduler(store, loop)

    results = asyncio.run(scheduler.run_until_idle())

    assert [(result.run_id, result.status) for result in results] == [
        ("older", "completed"),
        ("newer", "completed"),
    ]
    assert loop.seen == [("older", "running"), ("newer", "running")]
    run = store.get_run("older")
    assert run is not None
    assert run.started_at is not None
    assert run.logs[-1].endswith("Started agent run.")


def test_tick_on_empty_queue(tmp_path: Path) -> None:
    scheduler = Scheduler(RunStore(tmp_path), RecordingLoop(RunStore(tmp_path)))

    result = asyncio.run(scheduler.tick())

    assert result.run_id is None
    assert result.skipped is False


def test_unexpected_failure_is_pinned_to_the_run(tmp_path: Path) -> None:
    store = RunStore(tmp_path)
    _queue(store, "r1", "2026-01-01T00:00:00+00:00")
    scheduler = Scheduler(store, RecordingLoop(store, error=RuntimeError("kaboom")))

    result = asyncio.run(scheduler.tick())

    assert result.status == "failed"
    run = store.get_run("r1")
    assert run is not None
    assert run.status == "failed"
    assert run.error_id is not None
    assert run.error_message == f"Agent run failed. Error id: {run.error_id}"
    assert run.finished_at is not None
    audit = store.list_audit("r1")[-1]
    assert audit["message"] == "Agent run failed while processing queue."
    assert audit["metadata"]["error"] == "kaboom"


def test_stuck_running_run_is_requeued_and_resumed(tmp_path: Path) -> None:
    store = RunStore(tmp_path)
    _queue(
        store,
        "stuck",
        "2026-01-01T00:00:00+00:00",
        status="running",
        updated_at="2020-01-01T00:00:00+00:00",
        requires_human_intervention=True,
    )
    _queue(store, "fresh", "2026-01-01T00:00:00+00:00", status="running")
    loop = RecordingLoop(store)
    scheduler = Scheduler(store, loop, stuck_threshold_seconds=600)

    result = asyncio.run(scheduler.tick())

    assert result.recovered == 1
    assert result.run_id == "stuck"
    run = store.get_run("stuck")
    assert run is not None
    assert run.plan_state is not None
    assert run.plan_state["resume_requested_at"]
    assert "Auto-resume queued for stuck run." in [entry["message"] for entry in store.list_audit("stuck")]
    fresh = store.get_run("fresh")
    assert fresh is not None
    assert fresh.status == "running"


def test_tick_is_single_flight(tmp_path: Path) -> None:
    store = RunStore(tmp_path)
    _queue(store, "r1", "2026-01-01T00:00:00+00:00")
    _queue(store, "r2", "2026-01-02T00:00:00+00:00")
    loop = RecordingLoop(store)
    scheduler = Scheduler(store, loop)

    async def _scenario() -> tuple[bool, str | None]:
        loop.release = asyncio.Event()
        first = asyncio.create_task(scheduler.tick())
        while not loop.seen:
            await asyncio.sleep(0)
        second = await scheduler.tick()
        loop.release.set()
        result = await first
        return second.skipped, result.run_id

    skipped, processed = asyncio.run(_scenario())

    assert skipped is True
    assert processed == "r1"
    assert [run_id for run_id, _ in loop.seen] == ["r1"]


def test_start_and_stop_are_idempotent(tmp_path: Path) -> None:
    store = RunStore(tmp_path)
    _queue(store, "r1", "2026-01-01T00:00:00+00:00")
    loop = RecordingLoop(store)
    scheduler = Scheduler(store, loop, poll_interval=0.01)

    async def _scenario() -> tuple[bool, bool]:
        scheduler.start()
        task = scheduler._task
        scheduler.start()
        same_task = scheduler._task is task
        while not loop.seen:
            await asyncio.sleep(0.01)
        await scheduler.stop()
        await scheduler.stop()
        return same_task, scheduler.is_started

    same_task, still_started = asyncio.run(_scenario())

    assert same_task is True
    assert still_started is False
    assert loop.seen == [("r1", "running")]


def test_recovery_sweep_clears_human_flag(tmp_path: Path) -> None:
    store = RunStore(tmp_path)
    _queue(
        store,
        "stuck",
        "2026-01-01T00:00:00+00:00",
        status="running",
        updated_at="2020-01-01T00:00:00+00:00",
        requires_human_intervention=True,
        error_message="old error",
    )
    scheduler = Scheduler(store, RecordingLoop(store))

    assert scheduler.recover_stuck_runs() == ["stuck"]

    run = store.get_run("stuck")
    assert run is not None
    assert run.status == "queued"
    assert run.requires_human_intervention is False
    assert run.error_message is None
    assert run.plan_state is not None
    assert run.plan_state["resume_requested_at"]
