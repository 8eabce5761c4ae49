from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from runpilot.audit import AuditTrail
from runpilot.models import TERMINAL_STATUSES, AgentRun, new_id
from runpilot.scheduler import Scheduler
from runpilot.state.store import RunStore

logger = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 20


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class RunValidationError(RuntimeError):
    """Raised when a run request is malformed."""


class RunNotFoundError(RuntimeError):
    """Raised when a run id does not exist."""


@dataclass(slots=True)
class RunListing:
    run: AgentRun
    browser_log_count: int = 0
    snapshot_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        payload = self.run.to_dict()
        payload["browser_log_count"] = self.browser_log_count
        payload["snapshot_count"] = self.snapshot_count
        return payload


def _optional_text(payload: dict[str, Any], key: str) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise RunValidationError(f"'{key}' must be a string.")
    return value.strip() or None


class RunService:
    """Create, list, control and bulk-delete agent runs."""

    def __init__(self, store: RunStore, scheduler: Scheduler | None = None) -> None:
        self.store = store
        self.scheduler = scheduler

    def _start_scheduler(self) -> None:
        if self.scheduler is None:
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # No loop in this thread; the worker process owns the poller.
            return
        self.scheduler.start()

    def _require(self, run_id: str) -> AgentRun:
        run = self.store.get_run(run_id)
        if run is None:
            raise RunNotFoundError(f"Agent run not found: {run_id}")
        return run

    def create_run(self, payload: dict[str, Any]) -> AgentRun:
        prompt = payload.get("prompt")
        if not isinstance(prompt, str) or not prompt.strip():
            raise RunValidationError("Prompt is required.")
        tools = payload.get("tools") or []
        if not isinstance(tools, list) or not all(isinstance(tool, str) for tool in tools):
            raise RunValidationError("'tools' must be a list of strings.")
        run_headless = payload.get("run_headless", True)
        if not isinstance(run_headless, bool):
            raise RunValidationError("'run_headless' must be a boolean.")

        plan_state: dict[str, Any] | None = None
        for key in ("settings", "preferences"):
            section = payload.get(key)
            if section is None:
                continue
            if not isinstance(section, dict):
                raise RunValidationError(f"'{key}' must be an object.")
            plan_state = plan_state or {}
            plan_state[key] = dict(section)

        run = AgentRun(
            id=new_id(),
            prompt=prompt.strip(),
            model=_optional_text(payload, "model"),
            tools=[tool.strip() for tool in tools if tool.strip()],
            search_provider=_optional_text(payload, "search_provider"),
            agent_browser=_optional_text(payload, "agent_browser"),
            run_headless=run_headless,
            plan_state=plan_state,
        )
        run.append_log("Agent run queued.")
        self.store.create_run(run)
        AuditTrail(self.store, run.id).info("Agent run queued.", model=run.model, tools=run.tools)
        self._start_scheduler()
        return run

    def get_run(self, run_id: str) -> AgentRun:
        return self._require(run_id)

    def list_runs(self, limit: int = DEFAULT_LIST_LIMIT) -> list[RunListing]:
        return [
            RunListing(
                run=run,
                browser_log_count=self.store.count_browser_logs(run.id),
                snapshot_count=self.store.count_snapshots(run.id),
            )
            for run in self.store.list_runs(limit=limit)
        ]

    def delete_terminal_runs(self) -> int:
        """Delete every finished run with its side records and artifacts."""
        run_ids = [run.id for run in self.store.list_runs(statuses=TERMINAL_STATUSES)]
        deleted = self.store.delete_runs(run_ids)
        logger.info("Deleted %d terminal agent runs.", deleted)
        return deleted

    def stop_run(self, run_id: str) -> AgentRun:
        run = self._require(run_id)
        if run.is_terminal:
            return run

        def _mutate(target: AgentRun) -> None:
            target.status = "stopped"
            target.finished_at = _utcnow_iso()
            target.append_log("Agent run stopped by user.")

        run = self.store.update_run(run_id, _mutate)
        AuditTrail(self.store, run_id).warning("Agent run stopped by user.")
        return run

    def resume_run(self, run_id: str, step_id: str | None = None) -> AgentRun:
        run = self._require(run_id)
        if run.status == "running":
            raise RunValidationError("Agent run is already running.")
        stamp = _utcnow_iso()

        def _mutate(target: AgentRun) -> None:
            plan_state = dict(target.plan_state or {})
            plan_state["resume_requested_at"] = stamp
            if step_id:
                plan_state["active_step_id"] = step_id
                target.active_step_id = step_id
            target.plan_state = plan_state
            target.status = "queued"
            target.requires_human_intervention = False
            target.error_message = None
            target.finished_at = None
            target.append_log("Agent run resume requested.")

        run = self.store.update_run(run_id, _mutate)
        AuditTrail(self.store, run_id).info("Agent run resume requested.", step_id=step_id)
        self._start_scheduler()
        return run

    def approve_step(self, run_id: str, step_id: str | None = None) -> AgentRun:
        run = self._require(run_id)
        if run.status == "running":
            raise RunValidationError("Agent run is already running.")
        plan_state = run.plan_state or {}
        target_step = step_id or plan_state.get("approval_requested_step_id")
        if not isinstance(target_step, str) or not target_step:
            raise RunValidationError("No step is waiting for approval.")

        def _mutate(target: AgentRun) -> None:
            state = dict(target.plan_state or {})
            state["approval_granted_step_id"] = target_step
            target.plan_state = state

        self.store.update_run(run_id, _mutate)
        AuditTrail(self.store, run_id).info("Agent step approved.", step_id=target_step)
        return self.resume_run(run_id, target_step)
