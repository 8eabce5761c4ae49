from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from runpilot.models import LoopSignal, PlanStep, StepTrace
from runpilot.parsing import ParseError
from runpilot.planning import plan_outline, proposal_from_payload
from runpilot.specialists.base import SpecialistAgent
from runpilot.specialists.planner import GOAL_SCHEMA, STEP_SCHEMA

VERDICT_ACTIONS = ("continue", "replan", "wait_human")


@dataclass(slots=True)
class Verdict:
    action: str
    reason: str | None = None
    steps: list[PlanStep] = field(default_factory=list)
    questions: list[str] = field(default_factory=list)


def verdict_from_payload(
    payload: dict[str, Any], *, max_steps: int, max_step_attempts: int
) -> Verdict | None:
    """Read ``{action, reason, goals|steps}``; unknown actions yield ``None``."""
    action = payload.get("action")
    if not isinstance(action, str) or action.strip().lower() not in VERDICT_ACTIONS:
        return None
    action = action.strip().lower()
    reason = payload.get("reason") if isinstance(payload.get("reason"), str) else None
    questions = [item for item in payload.get("questions") or [] if isinstance(item, str)]
    steps: list[PlanStep] = []
    if action == "replan":
        proposal = proposal_from_payload(
            payload, max_steps=max_steps, max_step_attempts=max_step_attempts
        )
        if proposal is not None:
            steps = proposal.steps
    return Verdict(action=action, reason=reason, steps=steps, questions=questions)


class LoopJudgeAgent(SpecialistAgent):
    role = "loop_guard"
    system_prompt = f"""
You guard a browsing agent against loops. Reply with one JSON object only.
Keys: action, reason, questions, goals, steps.
action is 'continue', 'replan' or 'wait_human'.
questions holds 2-4 questions that test whether the agent is looping.
When action is 'replan' include goals ({GOAL_SCHEMA}) or steps (an array of {STEP_SCHEMA}).
""".strip()

    async def judge(
        self,
        prompt: str,
        *,
        signal: LoopSignal,
        history: list[StepTrace],
        current_plan: list[PlanStep],
        max_steps: int,
        max_step_attempts: int,
        last_error: str | None = None,
        memory: list[str] | None = None,
        browser_context: dict[str, Any] | None = None,
        model: str | None = None,
    ) -> Verdict | None:
        result = await self.ask(
            {
                "prompt": prompt,
                "memory": memory or [],
                "browserContext": browser_context,
                "lastError": last_error,
                "loopSignal": signal.to_dict(),
                "history": [item.to_dict() for item in history],
                "currentPlan": plan_outline(current_plan),
                "maxSteps": max_steps,
            },
            model=model,
        )
        if isinstance(result, ParseError):
            return None
        return verdict_from_payload(
            result.value, max_steps=max_steps, max_step_attempts=max_step_attempts
        )
