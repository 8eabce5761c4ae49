from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from runpilot.approvals import ApprovalGate
from runpilot.audit import AuditTrail
from runpilot.config import RunSettings
from runpilot.executor import NullExecutor, RunContext, StepExecutor, browser_context
from runpilot.finalizer import FinalizeReport, Finalizer
from runpilot.loop_guard import LoopGuard
from runpilot.memory import PLANNER_SUMMARY_TYPE, MemoryManager
from runpilot.models import AgentRun, Checkpoint, PlanStep, StepResult, StepTrace
from runpilot.planning import (
    Alternative,
    branch_steps,
    build_steps,
    find_deadlock,
    has_pending,
    next_ready_step,
    replace_pending,
    should_evaluate_replan,
)
from runpilot.specialists.critic import CriticAgent
from runpilot.specialists.documenter import DocumenterAgent
from runpilot.specialists.planner import PlannerAgent
from runpilot.state.checkpoint import CheckpointStore, initial_checkpoint, load_checkpoint
from runpilot.state.store import RunStore, RunStoreError

logger = logging.getLogger(__name__)

HUMAN_REQUIRED_PATTERN = re.compile(r"requires human|cloudflare challenge|captcha", re.IGNORECASE)
HISTORY_LIMIT = 20

EventHook = Callable[[dict[str, Any]], None]
Sleeper = Callable[[float], Awaitable[Any]]


@dataclass(slots=True)
class LoopOutcome:
    run_id: str
    status: str
    executed_steps: int = 0
    last_error: str | None = None
    requires_human: bool = False
    approval_step_id: str | None = None
    report: FinalizeReport | None = None


@dataclass(slots=True)
class _RunState:
    run: AgentRun
    checkpoint: Checkpoint
    audit: AuditTrail
    context: RunContext
    alternatives: list[Alternative] = field(default_factory=list)
    executed: int = 0

    @property
    def settings(self) -> RunSettings:
        return self.checkpoint.settings

    def model(self, override: str | None) -> str | None:
        return override or self.run.model


class ControlLoop:
    """Drives one run from its checkpoint to a terminal or suspended state."""

    def __init__(
        self,
        store: RunStore,
        planner: PlannerAgent,
        *,
        executor: StepExecutor | None = None,
        memory: MemoryManager | None = None,
        approval_gate: ApprovalGate | None = None,
        loop_guard: LoopGuard | None = None,
        critic: CriticAgent | None = None,
        documenter: DocumenterAgent | None = None,
        finalizer: Finalizer | None = None,
        defaults: RunSettings | None = None,
        summary_interval: int = 5,
        event_hook: EventHook | None = None,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self.store = store
        self.planner = planner
        self.executor = executor or NullExecutor()
        self.memory = memory or MemoryManager(store)
        self.approval_gate = approval_gate or ApprovalGate()
        self.loop_guard = loop_guard or LoopGuard()
        self.critic = critic
        self.documenter = documenter
        self.finalizer = finalizer or Finalizer(store, self.memory, critic)
        self.defaults = defaults
        self.summary_interval = summary_interval
        self.event_hook = event_hook
        self._sleep = sleep
        self.checkpoints = CheckpointStore(store)

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def _page(self, run_id: str) -> dict[str, Any] | None:
        context = browser_context(self.store, run_id)
        return context.to_dict() if context else None

    def _save(self, state: _RunState) -> None:
        self.checkpoints.save(state.run.id, state.checkpoint)

    def _log(self, run_id: str, message: str) -> None:
        self.store.update_run(run_id, lambda run: run.append_log(message))

    def _load(self, run: AgentRun) -> _RunState:
        checkpoint = load_checkpoint(run.plan_state, self.defaults)
        fresh = checkpoint is None
        if checkpoint is None:
            checkpoint = initial_checkpoint(run.plan_state, self.defaults)
        for step in checkpoint.steps:
            # A step left running belongs to an interrupted worker; its attempt never reported.
            if step.status == "running":
                step.status = "pending"
                step.attempts = max(0, step.attempts - 1)
        if fresh:
            self.memory.add(run.id, run.prompt, metadata={"type": "user"})
        context = RunContext(
            run_id=run.id,
            prompt=run.prompt,
            store=self.store,
            tools=list(run.tools),
            search_provider=run.search_provider,
            agent_browser=run.agent_browser,
            run_headless=run.run_headless,
            memory=self.memory.context(run.id),
        )
        return _RunState(
            run=run,
            checkpoint=checkpoint,
            audit=AuditTrail(self.store, run.id),
            context=context,
        )

    async def run(self, run_id: str) -> LoopOutcome:
        run = self.store.get_run(run_id)
        if run is None:
            raise RunStoreError(f"Agent run not found: {run_id}")
        state = self._load(run)
        checkpoint = state.checkpoint
        self._emit({"event": "run_loaded", "run_id": run_id, "steps": len(checkpoint.steps)})

        if checkpoint.resume_requested_at and checkpoint.resume_requested_at != checkpoint.resume_processed_at:
            await self._resume_review(state)

        if not has_pending(checkpoint.steps) and not self._all_completed(checkpoint):
            if checkpoint.steps:
                for step in checkpoint.steps:
                    if step.status == "failed":
                        step.status = "pending"
                        step.attempts = 0
                state.audit.info("Retrying failed steps.", type="resume-retry")
            else:
                outcome = await self._initial_plan(state)
                if outcome is not None:
                    return outcome
        self._save(state)
        return await self._step_loop(state)

    @staticmethod
    def _all_completed(checkpoint: Checkpoint) -> bool:
        return bool(checkpoint.steps) and all(step.status == "completed" for step in checkpoint.steps)

    async def _initial_plan(self, state: _RunState) -> LoopOutcome | None:
        checkpoint = state.checkpoint
        proposal = await self.planner.build_plan(
            state.run.prompt,
            max_steps=state.settings.max_steps,
            max_step_attempts=state.settings.max_step_attempts,
            memory=state.context.memory,
            browser_context=self._page(state.run.id),
            model=state.model(checkpoint.preferences.planner_model),
        )
        checkpoint.steps = proposal.steps
        checkpoint.task_type = proposal.meta.task_type
        checkpoint.planner_summary = proposal.meta.summary
        checkpoint.active_step_id = proposal.steps[0].id if proposal.steps else None
        state.alternatives = list(proposal.meta.alternatives)
        state.audit.info(
            "Plan created.",
            type="plan",
            source=proposal.source,
            score=proposal.score,
            steps=[step.to_dict() for step in proposal.steps],
            planner_meta=proposal.meta.to_dict(),
            hierarchy=proposal.hierarchy.to_dict() if proposal.hierarchy else None,
        )
        self._emit(
            {
                "event": "plan_created",
                "run_id": state.run.id,
                "source": proposal.source,
                "steps": len(proposal.steps),
            }
        )
        if not proposal.steps:
            return await self._finish(state, "failed", last_error="Planner produced no steps.")
        self._log(state.run.id, f"Plan created with {len(proposal.steps)} steps ({proposal.source}).")
        return None

    async def _resume_review(self, state: _RunState) -> None:
        checkpoint = state.checkpoint
        checkpoint.execution_count = 0
        # An approval grant resumes the exact step that was approved.
        if checkpoint.steps and has_pending(checkpoint.steps) and checkpoint.approval_granted_step_id is None:
            revision = await self.planner.review_progress(
                state.run.prompt,
                trigger="resume",
                max_steps=state.settings.max_steps,
                max_step_attempts=state.settings.max_step_attempts,
                current_plan=checkpoint.steps,
                signals={"lastError": checkpoint.last_error},
                memory=state.context.memory,
                browser_context=self._page(state.run.id),
                model=state.model(checkpoint.preferences.planner_model),
            )
            state.audit.info(
                "Resume review.",
                type="resume-review",
                should_replan=revision.should_replan,
                reason=revision.reason,
            )
            if revision.should_replan and revision.steps:
                await self._apply_replacement(state, revision.steps, trigger="resume", reason=revision.reason)
        checkpoint.resume_processed_at = checkpoint.resume_requested_at
        self._save(state)

    async def _apply_replacement(
        self,
        state: _RunState,
        steps: list[PlanStep],
        *,
        trigger: str,
        reason: str | None = None,
    ) -> None:
        checkpoint = state.checkpoint
        steps = await self.planner.guard_repetition(
            state.run.prompt,
            steps,
            current_plan=checkpoint.steps,
            max_steps=state.settings.max_steps,
            max_step_attempts=state.settings.max_step_attempts,
            memory=self.memory.context(state.run.id),
            model=state.model(checkpoint.preferences.planner_model),
        )
        checkpoint.steps = replace_pending(checkpoint.steps, steps, state.settings.max_steps)
        self._release_grant(checkpoint)
        checkpoint.replan_count += 1
        ready = next_ready_step(checkpoint.steps)
        checkpoint.active_step_id = ready.id if ready else None
        state.audit.warning(
            "Plan re-evaluated.",
            type="plan-replan",
            trigger=trigger,
            reason=reason,
            replan_count=checkpoint.replan_count,
            steps=[step.to_dict() for step in checkpoint.steps],
        )
        self._emit({"event": "plan_created", "run_id": state.run.id, "source": trigger, "steps": len(checkpoint.steps)})
        self._save(state)

    async def _replan(
        self,
        state: _RunState,
        *,
        trigger: str,
        steps: list[PlanStep] | None = None,
        reason: str | None = None,
        failed_step: PlanStep | None = None,
        signals: dict[str, Any] | None = None,
    ) -> bool:
        """Replace the unfinished tail of the plan; ``False`` when that is not possible."""
        checkpoint = state.checkpoint
        settings = state.settings
        if checkpoint.replan_count >= settings.max_replan_calls:
            state.audit.warning("Replan budget exhausted.", type="plan-replan", trigger=trigger)
            return False

        replacement = list(steps or [])
        if not replacement and failed_step is not None and state.alternatives:
            replacement = build_steps(
                branch_steps(state.alternatives),
                max_steps=settings.max_steps,
                max_step_attempts=settings.max_step_attempts,
            )
            state.alternatives = []
            trigger = f"{trigger}:branch"
        if not replacement:
            proposal = await self.planner.replan(
                state.run.prompt,
                max_steps=settings.max_steps,
                max_step_attempts=settings.max_step_attempts,
                trigger=trigger,
                current_plan=checkpoint.steps,
                last_error=checkpoint.last_error,
                failed_step=failed_step,
                signals=signals,
                memory=self.memory.context(state.run.id),
                browser_context=self._page(state.run.id),
                model=state.model(checkpoint.preferences.planner_model),
            )
            if proposal is not None:
                replacement = proposal.steps
                state.alternatives = list(proposal.meta.alternatives)
                checkpoint.task_type = proposal.meta.task_type or checkpoint.task_type
        if not replacement:
            state.audit.warning("Replan produced no steps.", type="plan-replan", trigger=trigger)
            return False
        await self._apply_replacement(state, replacement, trigger=trigger, reason=reason)
        if failed_step is not None and failed_step.last_error:
            countermeasure = (
                "Switched to alternative branch steps." if trigger.endswith(":branch") else "Replanned the remaining steps."
            )
            self.memory.add_problem_solution(
                state.run.id,
                problem=failed_step.last_error,
                countermeasure=countermeasure,
                step_title=failed_step.title,
                trigger=trigger,
            )
        return True

    async def _finish(
        self,
        state: _RunState,
        status: str,
        *,
        last_error: str | None = None,
        requires_human: bool = False,
    ) -> LoopOutcome:
        report = await self.finalizer.finalize(
            state.run.id,
            state.checkpoint,
            status=status,
            last_error=last_error,
            requires_human=requires_human,
        )
        self._emit({"event": "run_finished", "run_id": state.run.id, "status": status, "error": last_error})
        return LoopOutcome(
            run_id=state.run.id,
            status=status,
            executed_steps=state.executed,
            last_error=last_error,
            requires_human=requires_human,
            report=report,
        )

    async def _suspend_for_approval(self, state: _RunState, step: PlanStep, reason: str | None) -> LoopOutcome:
        checkpoint = state.checkpoint
        checkpoint.approval_requested_step_id = step.id
        checkpoint.active_step_id = step.id
        self._save(state)
        message = reason or "Step requires human approval."

        def _mutate(run: AgentRun) -> None:
            run.status = "waiting_human"
            run.requires_human_intervention = True
            run.error_message = message
            run.append_log(f"Waiting for approval: {step.title}")

        self.store.update_run(state.run.id, _mutate)
        state.audit.warning("Approval required.", type="approval", step_id=step.id, title=step.title, reason=message)
        self._emit({"event": "approval_required", "run_id": state.run.id, "step_id": step.id, "reason": message})
        return LoopOutcome(
            run_id=state.run.id,
            status="waiting_human",
            executed_steps=state.executed,
            last_error=message,
            requires_human=True,
            approval_step_id=step.id,
        )

    async def _execute(self, state: _RunState, step: PlanStep) -> StepResult:
        checkpoint = state.checkpoint
        step.status = "running"
        step.attempts += 1
        checkpoint.active_step_id = step.id
        checkpoint.execution_count += 1
        state.executed += 1
        self._save(state)
        self._log(state.run.id, f"Step started: {step.title} (attempt {step.attempts}/{step.max_attempts})")
        self._emit({"event": "step_started", "run_id": state.run.id, "step_id": step.id, "attempt": step.attempts})
        state.context.memory = self.memory.context(state.run.id)
        try:
            return await self.executor.execute(step, state.context)
        except Exception as exc:
            logger.exception("Step executor raised for run %s step %s", state.run.id, step.id)
            return StepResult(ok=False, error=str(exc) or exc.__class__.__name__)

    def _record_result(self, state: _RunState, step: PlanStep, result: StepResult) -> None:
        checkpoint = state.checkpoint
        if result.url:
            step.url = result.url
        checkpoint.history.append(
            StepTrace(
                step_id=step.id,
                title=step.title,
                status="completed" if result.ok else "failed",
                tool=step.tool,
                url=step.url,
            )
        )
        del checkpoint.history[:-HISTORY_LIMIT]

        if result.ok:
            step.status = "completed"
            step.observation = result.observation
            step.last_error = None
            checkpoint.last_error = None
            state.audit.info("Step completed.", type="step", step_id=step.id, title=step.title, url=step.url)
            self._log(state.run.id, f"Step completed: {step.title}")
            self._emit({"event": "step_completed", "run_id": state.run.id, "step_id": step.id})
            if result.observation:
                self.memory.add(
                    state.run.id,
                    f"{step.title}: {result.observation}",
                    metadata={"type": "observation", "step_id": step.id},
                )
        else:
            error = result.error or "Step failed."
            step.last_error = error
            checkpoint.last_error = error
            if step.attempts < step.max_attempts:
                step.status = "pending"
                state.audit.warning("Step failed; retrying.", type="step", step_id=step.id, error=error)
            else:
                step.status = "failed"
                state.audit.error("Step failed.", type="step", step_id=step.id, error=error)
            self._log(state.run.id, f"Step failed: {step.title} ({error})")
            self._emit(
                {
                    "event": "step_failed",
                    "run_id": state.run.id,
                    "step_id": step.id,
                    "error": error,
                    "final": step.status == "failed",
                }
            )
        self._release_grant(checkpoint)
        self._save(state)

    @staticmethod
    def _release_grant(checkpoint: Checkpoint) -> None:
        """Drop an approval grant once its step settled or left the plan; retries stay approved."""
        granted = checkpoint.approval_granted_step_id
        if granted is None:
            return
        step = next((item for item in checkpoint.steps if item.id == granted), None)
        if step is not None and step.status in {"pending", "running"}:
            return
        checkpoint.approval_granted_step_id = None
        checkpoint.approval_requested_step_id = None

    async def _refresh_brief(self, state: _RunState) -> None:
        if self.documenter is None:
            return
        checkpoint = state.checkpoint
        brief = await self.documenter.checkpoint_brief(
            state.run.prompt,
            steps=checkpoint.steps,
            active_step=next_ready_step(checkpoint.steps),
            last_error=checkpoint.last_error,
            model=state.model(checkpoint.preferences.memory_summarization_model),
        )
        if brief is None:
            return
        checkpoint.brief = brief.summary
        checkpoint.next_actions = brief.next_actions
        checkpoint.risks = brief.risks
        self._save(state)

    async def _maybe_summarize(self, state: _RunState) -> None:
        checkpoint = state.checkpoint
        completed = checkpoint.completed_count()
        if self.documenter is None or self.summary_interval <= 0:
            return
        if completed - checkpoint.summary_checkpoint < self.summary_interval:
            return
        summary = await self.documenter.summarize_progress(
            state.run.prompt,
            steps=checkpoint.steps,
            history=checkpoint.history,
            memory=self.memory.recent(state.run.id),
            model=state.model(checkpoint.preferences.memory_summarization_model),
        )
        checkpoint.summary_checkpoint = completed
        if summary:
            checkpoint.planner_summary = summary
            self.memory.add(
                state.run.id,
                summary,
                metadata={"type": PLANNER_SUMMARY_TYPE, "completed_steps": completed},
            )
            state.audit.info("Planner summary recorded.", type=PLANNER_SUMMARY_TYPE, completed_steps=completed)
        self._save(state)

    async def _after_success(self, state: _RunState, step: PlanStep) -> LoopOutcome | None:
        checkpoint = state.checkpoint
        settings = state.settings
        await self._maybe_summarize(state)

        replanned = False
        if self.critic is not None and checkpoint.self_check_count < settings.max_self_checks:
            checkpoint.self_check_count += 1
            verdict = await self.critic.self_check(
                state.run.prompt,
                step=step,
                current_plan=checkpoint.steps,
                max_steps=settings.max_steps,
                max_step_attempts=settings.max_step_attempts,
                memory=self.memory.context(state.run.id),
                browser_context=self._page(state.run.id),
                model=state.model(checkpoint.preferences.self_check_model),
            )
            state.audit.info(
                "Self-check evaluated.",
                type="self-check",
                action=verdict.action,
                reason=verdict.reason,
                count=checkpoint.self_check_count,
            )
            self._save(state)
            if verdict.action == "wait_human":
                return await self._finish(
                    state,
                    "waiting_human",
                    last_error=verdict.reason or "Self-check requested human input.",
                    requires_human=True,
                )
            if verdict.action == "replan" and has_pending(checkpoint.steps):
                replanned = await self._replan(
                    state,
                    trigger="self-check",
                    steps=verdict.steps,
                    reason=verdict.reason,
                    signals={"stepId": step.id, "reason": verdict.reason},
                )

        if (
            not replanned
            and checkpoint.replan_count < settings.max_replan_calls
            and should_evaluate_replan(checkpoint.completed_count(), checkpoint.steps, settings.replan_every_steps)
        ):
            revision = await self.planner.review_progress(
                state.run.prompt,
                trigger="step-complete",
                max_steps=settings.max_steps,
                max_step_attempts=settings.max_step_attempts,
                current_plan=checkpoint.steps,
                signals={"stepId": step.id, "stepTitle": step.title, "url": step.url},
                memory=self.memory.context(state.run.id),
                browser_context=self._page(state.run.id),
                model=state.model(checkpoint.preferences.planner_model),
            )
            if revision.should_replan and revision.steps:
                await self._apply_replacement(state, revision.steps, trigger="step-complete", reason=revision.reason)
        return None

    async def _step_loop(self, state: _RunState) -> LoopOutcome:
        checkpoint = state.checkpoint
        settings = state.settings
        execution_cap = settings.max_steps * settings.max_step_attempts
        while True:
            current = self.store.get_run(state.run.id)
            if current is None:
                return LoopOutcome(run_id=state.run.id, status="stopped", executed_steps=state.executed)
            if current.status == "stopped":
                return await self._finish(state, "stopped", last_error="Agent run stopped by user.")

            if self._all_completed(checkpoint):
                return await self._finish(state, "completed")
            if checkpoint.execution_count >= execution_cap:
                return await self._finish(
                    state,
                    "failed",
                    last_error=f"Step budget exhausted after {checkpoint.execution_count} executions.",
                )

            step = next_ready_step(checkpoint.steps)
            if step is None:
                blocked = find_deadlock(checkpoint.steps)
                titles = ", ".join(item.title for item in blocked) or "none"
                checkpoint.last_error = f"Plan is deadlocked; blocked steps: {titles}."
                state.audit.warning("Plan deadlocked.", type="deadlock", steps=[item.id for item in blocked])
                if await self._replan(
                    state,
                    trigger="deadlock",
                    signals={"blocked": [item.title for item in blocked]},
                ):
                    continue
                return await self._finish(state, "failed", last_error=checkpoint.last_error)

            decision = await self.approval_gate.evaluate(
                step,
                state.run.prompt,
                checkpoint=checkpoint,
                browser_context=self._page(state.run.id),
            )
            state.audit.info("Approval gate evaluated.", type="approval", step_id=step.id, **decision.to_dict())
            if decision.required:
                return await self._suspend_for_approval(state, step, decision.reason)

            result = await self._execute(state, step)
            self._record_result(state, step, result)
            await self._refresh_brief(state)

            if step.status == "failed":
                error = step.last_error or "Step failed."
                if await self._replan(
                    state,
                    trigger="step-failed",
                    failed_step=step,
                    signals={"stepId": step.id, "error": error},
                ):
                    continue
                return await self._finish(
                    state,
                    "failed",
                    last_error=error,
                    requires_human=bool(HUMAN_REQUIRED_PATTERN.search(error)),
                )

            verdict = await self.loop_guard.check(
                state.run.prompt,
                checkpoint,
                state.audit,
                memory=self.memory.context(state.run.id),
                browser_context=self._page(state.run.id),
                run_model=state.run.model,
            )
            self._save(state)
            if verdict.signal is not None:
                self._emit(
                    {
                        "event": "loop_verdict",
                        "run_id": state.run.id,
                        "action": verdict.action,
                        "pattern": verdict.signal.pattern,
                        "backoff_seconds": verdict.backoff_seconds,
                    }
                )
            if verdict.action == "wait_human":
                return await self._finish(
                    state,
                    "waiting_human",
                    last_error=verdict.reason or "Loop guard requested human input.",
                    requires_human=True,
                )
            if verdict.action == "replan":
                await self._replan(
                    state,
                    trigger="loop-guard",
                    steps=verdict.steps,
                    reason=verdict.reason,
                    signals={"loop": verdict.signal.to_dict() if verdict.signal else None},
                )
                if verdict.backoff_seconds > 0:
                    await self._sleep(verdict.backoff_seconds)
                continue

            if step.status == "completed":
                outcome = await self._after_success(state, step)
                if outcome is not None:
                    return outcome
