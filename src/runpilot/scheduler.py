from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from runpilot.audit import AuditTrail
from runpilot.engine import ControlLoop
from runpilot.models import AgentRun, new_id
from runpilot.state.store import RunStore

logger = logging.getLogger(__name__)


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(slots=True)
class TickResult:
    run_id: str | None = None
    status: str | None = None
    recovered: int = 0
    skipped: bool = False


class Scheduler:
    """Single-flight queue poller: one run at a time, oldest queued first.

    Construct one per process. ``start`` is idempotent and ``stop`` cancels the
    poller. Every failure that escapes the control loop is pinned to the run it
    came from, so the poller itself never dies.
    """

    def __init__(
        self,
        store: RunStore,
        control_loop: ControlLoop,
        *,
        poll_interval: float = 2.0,
        stuck_threshold_seconds: float = 600,
    ) -> None:
        self.store = store
        self.control_loop = control_loop
        self.poll_interval = poll_interval
        self.stuck_threshold_seconds = stuck_threshold_seconds
        self._task: asyncio.Task[None] | None = None
        self._in_flight = False

    @property
    def is_started(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_started:
            return
        self._task = asyncio.get_running_loop().create_task(self._poll_forever())
        logger.info("Agent queue started (poll every %.1fs).", self.poll_interval)

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Agent queue stopped.")

    async def _poll_forever(self) -> None:
        while True:
            try:
                await self.tick()
            except Exception:
                logger.exception("Agent queue tick failed.")
            await asyncio.sleep(self.poll_interval)

    def recover_stuck_runs(self) -> list[str]:
        """Requeue ``running`` runs nobody has touched within the stuck threshold."""
        cutoff = datetime.now(UTC) - timedelta(seconds=self.stuck_threshold_seconds)
        recovered: list[str] = []
        for run in self.store.stale_running_runs(cutoff):
            stamp = _utcnow_iso()

            def _mutate(target: AgentRun, stamp: str = stamp) -> None:
                plan_state = dict(target.plan_state or {})
                plan_state["resume_requested_at"] = stamp
                target.plan_state = plan_state
                target.status = "queued"
                target.requires_human_intervention = False
                target.error_message = None
                target.finished_at = None
                target.checkpointed_at = stamp
                target.append_log("Auto-resume queued for stuck run.")

            self.store.update_run(run.id, _mutate)
            AuditTrail(self.store, run.id).warning(
                "Auto-resume queued for stuck run.",
                reason="stale-running",
                threshold_seconds=self.stuck_threshold_seconds,
            )
            recovered.append(run.id)
        return recovered

    def _mark_failed(self, run_id: str, error: BaseException) -> None:
        error_id = new_id()
        message = str(error) or error.__class__.__name__
        logger.error("Agent run %s failed (error id %s): %s", run_id, error_id, message)
        AuditTrail(self.store, run_id).error(
            "Agent run failed while processing queue.",
            error_id=error_id,
            error=message,
        )

        def _mutate(run: AgentRun) -> None:
            run.status = "failed"
            run.error_id = error_id
            run.error_message = f"Agent run failed. Error id: {error_id}"
            run.finished_at = _utcnow_iso()
            run.append_log(f"Agent failed ({error_id}).")

        self.store.update_run(run_id, _mutate)

    async def tick(self) -> TickResult:
        if self._in_flight:
            return TickResult(skipped=True)
        self._in_flight = True
        try:
            recovered = len(self.recover_stuck_runs())
            run = self.store.oldest_queued_run()
            if run is None:
                return TickResult(recovered=recovered)

            def _mark_running(target: AgentRun) -> None:
                target.status = "running"
                target.started_at = _utcnow_iso()
                target.finished_at = None
                target.append_log("Started agent run.")

            self.store.update_run(run.id, _mark_running)
            try:
                outcome = await self.control_loop.run(run.id)
            except Exception as exc:
                self._mark_failed(run.id, exc)
                return TickResult(run_id=run.id, status="failed", recovered=recovered)
            return TickResult(run_id=run.id, status=outcome.status, recovered=recovered)
        finally:
            self._in_flight = False

    async def run_until_idle(self, max_ticks: int | None = None) -> list[TickResult]:
        """Process queued runs back to back until none are left."""
        results: list[TickResult] = []
        while max_ticks is None or len(results) < max_ticks:
            result = await self.tick()
            if result.run_id is None:
                break
            results.append(result)
        return results
