from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from runpilot.audit import AuditTrail
from runpilot.executor import browser_context
from runpilot.memory import SELF_IMPROVEMENT_TYPE, MemoryManager
from runpilot.models import AgentRun, Checkpoint
from runpilot.specialists.critic import CriticAgent
from runpilot.state.checkpoint import CheckpointStore
from runpilot.state.store import RunStore

logger = logging.getLogger(__name__)

_FINISH_LEVELS = {"completed": "info", "waiting_human": "warning", "stopped": "warning"}


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(slots=True)
class FinalizeReport:
    status: str
    verification: dict[str, Any] | None = None
    review: dict[str, Any] | None = None


class Finalizer:
    """Closes a run: persists the terminal state, then verifies and reflects on it."""

    def __init__(self, store: RunStore, memory: MemoryManager, critic: CriticAgent | None = None) -> None:
        self.store = store
        self.memory = memory
        self.critic = critic
        self.checkpoints = CheckpointStore(store)

    async def finalize(
        self,
        run_id: str,
        checkpoint: Checkpoint,
        *,
        status: str,
        last_error: str | None = None,
        requires_human: bool = False,
    ) -> FinalizeReport:
        audit = AuditTrail(self.store, run_id)
        checkpoint.last_error = last_error
        if status == "completed":
            checkpoint.active_step_id = None
        self.checkpoints.save(run_id, checkpoint)

        def _mutate(run: AgentRun) -> None:
            run.status = status
            run.finished_at = _utcnow_iso()
            run.error_message = last_error if status != "completed" else None
            run.requires_human_intervention = requires_human
            run.append_log(f"Agent run {status.replace('_', ' ')}.")

        run = self.store.update_run(run_id, _mutate)
        audit.append(
            _FINISH_LEVELS.get(status, "error"),
            "Agent run finished.",
            {"status": status, "error": last_error, "requires_human": requires_human},
        )

        report = FinalizeReport(status=status)
        if self.critic is None:
            return report

        context = browser_context(self.store, run_id)
        page = context.to_dict() if context else None
        try:
            report.verification = await self.critic.verify_run(
                run.prompt,
                steps=checkpoint.steps,
                browser_context=page,
                model=checkpoint.preferences.verification_model or run.model,
            )
        except Exception as exc:
            logger.warning("Verification failed for run %s: %s", run_id, exc)
            audit.warning("Run verification failed.", error=str(exc))
        if report.verification is not None:
            audit.info("Run verification.", type="verification", **report.verification)

        try:
            report.review = await self.critic.self_improvement_review(
                run.prompt,
                status=status,
                steps=checkpoint.steps,
                last_error=last_error,
                verification=report.verification,
                model=checkpoint.preferences.self_check_model or run.model,
            )
        except Exception as exc:
            logger.warning("Self-improvement review failed for run %s: %s", run_id, exc)
            audit.warning("Self-improvement review failed.", error=str(exc))
        if report.review is not None:
            audit.info("Self-improvement review.", type=SELF_IMPROVEMENT_TYPE, review=report.review)
            self.memory.add(
                run_id,
                report.review["summary"],
                metadata={"type": SELF_IMPROVEMENT_TYPE, "review": report.review, "status": status},
            )
        return report
