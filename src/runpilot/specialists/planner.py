from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from runpilot.backends.base import ReasoningBackend
from runpilot.models import PlanStep
from runpilot.parsing import ParseError
from runpilot.planning import (
    PlanProposal,
    PlannerMeta,
    build_steps,
    fallback_plan,
    plan_outline,
    proposal_from_payload,
    string_list,
)
from runpilot.specialists.base import SpecialistAgent

STEP_SCHEMA = "{title, tool, expectedObservation, successCriteria, phase, priority, dependsOn}"
GOAL_SCHEMA = (
    "{title, successCriteria, priority, subgoals:[{title, successCriteria, priority, steps:["
    + STEP_SCHEMA
    + "]}]}"
)
REVISE_BELOW_SCORE = 70


@dataclass(slots=True)
class PlanRevision:
    should_replan: bool
    reason: str | None = None
    steps: list[PlanStep] = field(default_factory=list)
    meta: PlannerMeta | None = None


@dataclass(slots=True)
class PlanEvaluation:
    score: float
    issues: list[str] = field(default_factory=list)
    steps: list[PlanStep] = field(default_factory=list)


class PlannerAgent(SpecialistAgent):
    role = "planner"
    system_prompt = f"""
You are the planner of a browsing agent. Reply with one JSON object only.
Keys: goals, steps, critique, alternatives, taskType, summary, constraints, successSignals.
goals is an array of {GOAL_SCHEMA}. Use 2-4 goals with 1-3 subgoals each.
When goals do not fit, return steps: an array of {STEP_SCHEMA} instead.
tool is 'browser' or 'none'. phase is observe, act, verify or recover.
dependsOn lists earlier step titles or zero-based step indices.
critique is {{safetyChecks[], questions[]}}. alternatives is an array of {{title, rationale, steps[]}}.
taskType is 'web_task' or 'extract_info'. Never exceed maxSteps steps in total.
""".strip()

    review_prompt = f"""
You review the progress of a browsing agent. Reply with one JSON object only.
Keys: shouldReplan, reason, goals, steps, summary, successSignals.
shouldReplan is a boolean. When it is true include goals ({GOAL_SCHEMA})
or steps (an array of {STEP_SCHEMA}) that replace every unfinished step.
The trigger field tells you why the review was requested.
""".strip()

    repetition_prompt = f"""
You remove repeated steps from a browsing agent plan. Reply with one JSON object only.
Keys: steps, an array of {STEP_SCHEMA}.
Drop candidate steps that duplicate each other or redo work the recent steps already cover.
""".strip()

    evaluation_prompt = f"""
You score plans for a browsing agent. Reply with one JSON object only.
Keys: score (0-100), issues[], revisedGoals, revisedSteps.
revisedGoals is an array of {GOAL_SCHEMA}. revisedSteps is an array of {STEP_SCHEMA}.
""".strip()

    def __init__(
        self,
        backend: ReasoningBackend,
        *,
        model: str | None = None,
        refine_plans: bool = False,
    ) -> None:
        super().__init__(backend, model=model)
        self.refine_plans = refine_plans

    async def guard_repetition(
        self,
        prompt: str,
        candidates: list[PlanStep],
        *,
        current_plan: list[PlanStep],
        max_steps: int,
        max_step_attempts: int,
        memory: list[str] | None = None,
        model: str | None = None,
    ) -> list[PlanStep]:
        """Drop candidate steps that repeat each other or finished work; unusable replies keep them."""
        if not self.refine_plans or len(candidates) < 2:
            return candidates
        result = await self.ask(
            {
                "prompt": prompt,
                "memory": memory or [],
                "recentSteps": [
                    {"title": step.title, "status": step.status, "phase": step.phase} for step in current_plan
                ],
                "candidateSteps": plan_outline(candidates),
                "maxSteps": max_steps,
            },
            model=model,
            system_prompt=self.repetition_prompt,
        )
        if isinstance(result, ParseError):
            return candidates
        proposal = proposal_from_payload(
            {"steps": result.value.get("steps")},
            max_steps=max_steps,
            max_step_attempts=max_step_attempts,
        )
        if proposal is None:
            return candidates
        return proposal.steps

    async def evaluate_plan(
        self,
        prompt: str,
        steps: list[PlanStep],
        *,
        max_steps: int,
        max_step_attempts: int,
        memory: list[str] | None = None,
        model: str | None = None,
    ) -> PlanEvaluation | None:
        result = await self.ask(
            {
                "prompt": prompt,
                "memory": memory or [],
                "steps": plan_outline(steps),
                "maxSteps": max_steps,
            },
            model=model,
            system_prompt=self.evaluation_prompt,
        )
        if isinstance(result, ParseError):
            return None
        value = result.value
        score = value.get("score")
        if isinstance(score, bool) or not isinstance(score, (int, float)):
            score = 100
        revised = proposal_from_payload(
            {"goals": value.get("revisedGoals"), "steps": value.get("revisedSteps")},
            max_steps=max_steps,
            max_step_attempts=max_step_attempts,
        )
        return PlanEvaluation(
            score=float(score),
            issues=string_list(value.get("issues")),
            steps=revised.steps if revised else [],
        )

    async def _refine(
        self,
        prompt: str,
        proposal: PlanProposal,
        *,
        max_steps: int,
        max_step_attempts: int,
        memory: list[str] | None,
        model: str | None,
    ) -> PlanProposal:
        proposal.steps = await self.guard_repetition(
            prompt,
            proposal.steps,
            current_plan=[],
            max_steps=max_steps,
            max_step_attempts=max_step_attempts,
            memory=memory,
            model=model,
        )
        evaluation = await self.evaluate_plan(
            prompt,
            proposal.steps,
            max_steps=max_steps,
            max_step_attempts=max_step_attempts,
            memory=memory,
            model=model,
        )
        if evaluation is None:
            return proposal
        proposal.score = evaluation.score
        if evaluation.score < REVISE_BELOW_SCORE and evaluation.steps:
            proposal.steps = evaluation.steps
            proposal.source = "revised"
        return proposal

    async def build_plan(
        self,
        prompt: str,
        *,
        max_steps: int,
        max_step_attempts: int,
        memory: list[str] | None = None,
        browser_context: dict[str, Any] | None = None,
        model: str | None = None,
    ) -> PlanProposal:
        """Initial plan. Falls back to the heuristic plan when the model gives nothing usable."""
        result = await self.ask(
            {
                "prompt": prompt,
                "memory": memory or [],
                "browserContext": browser_context,
                "maxSteps": max_steps,
                "mode": "plan",
            },
            model=model,
        )
        if not isinstance(result, ParseError):
            proposal = proposal_from_payload(
                result.value,
                max_steps=max_steps,
                max_step_attempts=max_step_attempts,
                include_safety=True,
            )
            if proposal is not None:
                if not self.refine_plans:
                    return proposal
                return await self._refine(
                    prompt,
                    proposal,
                    max_steps=max_steps,
                    max_step_attempts=max_step_attempts,
                    memory=memory,
                    model=model,
                )
        steps = build_steps(
            fallback_plan(prompt, max_steps),
            max_steps=max_steps,
            max_step_attempts=max_step_attempts,
        )
        return PlanProposal(steps=steps, source="fallback")

    async def replan(
        self,
        prompt: str,
        *,
        max_steps: int,
        max_step_attempts: int,
        trigger: str,
        current_plan: list[PlanStep],
        last_error: str | None = None,
        failed_step: PlanStep | None = None,
        signals: dict[str, Any] | None = None,
        memory: list[str] | None = None,
        browser_context: dict[str, Any] | None = None,
        model: str | None = None,
    ) -> PlanProposal | None:
        result = await self.ask(
            {
                "prompt": prompt,
                "memory": memory or [],
                "browserContext": browser_context,
                "maxSteps": max_steps,
                "mode": "replan",
                "trigger": trigger,
                "signals": signals or {},
                "lastError": last_error,
                "failedStep": failed_step.title if failed_step else None,
                "previousPlan": plan_outline(current_plan),
            },
            model=model,
        )
        if isinstance(result, ParseError):
            return None
        return proposal_from_payload(
            result.value, max_steps=max_steps, max_step_attempts=max_step_attempts
        )

    async def review_progress(
        self,
        prompt: str,
        *,
        trigger: str,
        max_steps: int,
        max_step_attempts: int,
        current_plan: list[PlanStep],
        signals: dict[str, Any] | None = None,
        memory: list[str] | None = None,
        browser_context: dict[str, Any] | None = None,
        model: str | None = None,
    ) -> PlanRevision:
        completed = sum(1 for step in current_plan if step.status == "completed")
        payload = {
            "prompt": prompt,
            "memory": memory or [],
            "browserContext": browser_context,
            "trigger": trigger,
            "signals": signals or {},
            "completedSteps": completed,
            "currentPlan": plan_outline(current_plan),
            "maxSteps": max_steps,
        }
        result = await self.ask(payload, model=model, system_prompt=self.review_prompt)
        if isinstance(result, ParseError):
            return PlanRevision(should_replan=False, reason=f"review skipped: {result.reason}")
        value = result.value
        reason = value.get("reason") if isinstance(value.get("reason"), str) else None
        if value.get("shouldReplan") is not True:
            return PlanRevision(should_replan=False, reason=reason)
        proposal = proposal_from_payload(
            value, max_steps=max_steps, max_step_attempts=max_step_attempts
        )
        if proposal is None:
            return PlanRevision(should_replan=False, reason=reason)
        return PlanRevision(should_replan=True, reason=reason, steps=proposal.steps, meta=proposal.meta)
