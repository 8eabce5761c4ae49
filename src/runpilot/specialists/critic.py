from __future__ import annotations

from typing import Any

from runpilot.models import PlanStep
from runpilot.parsing import ParseError
from runpilot.planning import plan_outline, string_list
from runpilot.specialists.base import SpecialistAgent
from runpilot.specialists.loop_judge import Verdict, verdict_from_payload
from runpilot.specialists.planner import GOAL_SCHEMA, STEP_SCHEMA

VERDICTS = ("pass", "partial", "fail")


def _confidence(value: Any) -> float | None:
    """Accept 0..1 or 0..100 and normalize to 0..1."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    score = float(value)
    if score > 1:
        score /= 100
    return min(max(score, 0.0), 1.0)


class CriticAgent(SpecialistAgent):
    role = "critic"
    system_prompt = f"""
You check the work of a browsing agent after a step. Reply with one JSON object only.
Keys: action, reason, questions, evidence, confidence, goals, steps.
action is 'continue', 'replan' or 'wait_human'. Ask yourself 5-8 questions about
assumptions, evidence quality, tool choice and completion criteria.
When action is 'replan' include goals ({GOAL_SCHEMA}) or steps (an array of {STEP_SCHEMA}).
""".strip()

    verification_prompt = """
You verify whether a browsing agent finished its task. Reply with one JSON object only.
Keys: verdict ('pass', 'partial' or 'fail'), summary, evidence[], missing[].
Evidence must cite observable facts from the context.
""".strip()

    review_prompt = """
You review a finished agent run so the next run does better. Reply with one JSON object only.
Keys: summary, mistakes[], improvements[], guardrails[], toolAdjustments[], confidence (0-100).
summary is one or two sentences. List items are short.
""".strip()

    async def self_check(
        self,
        prompt: str,
        *,
        step: PlanStep,
        current_plan: list[PlanStep],
        max_steps: int,
        max_step_attempts: int,
        memory: list[str] | None = None,
        browser_context: dict[str, Any] | None = None,
        model: str | None = None,
    ) -> Verdict:
        """Post-step critique. Anything unusable means ``continue``."""
        result = await self.ask(
            {
                "prompt": prompt,
                "memory": memory or [],
                "browserContext": browser_context,
                "step": {"title": step.title, "observation": step.observation, "url": step.url},
                "currentPlan": plan_outline(current_plan),
                "maxSteps": max_steps,
            },
            model=model,
        )
        if isinstance(result, ParseError):
            return Verdict(action="continue", reason=f"self-check skipped: {result.reason}")
        verdict = verdict_from_payload(
            result.value, max_steps=max_steps, max_step_attempts=max_step_attempts
        )
        return verdict or Verdict(action="continue", reason="self-check returned no action")

    async def verify_run(
        self,
        prompt: str,
        *,
        steps: list[PlanStep],
        browser_context: dict[str, Any] | None = None,
        model: str | None = None,
    ) -> dict[str, Any] | None:
        result = await self.ask(
            {
                "prompt": prompt,
                "plan": plan_outline(steps),
                "observations": [step.observation for step in steps if step.observation],
                "browserContext": browser_context,
            },
            model=model,
            system_prompt=self.verification_prompt,
        )
        if isinstance(result, ParseError):
            return None
        verdict = result.value.get("verdict")
        if verdict not in VERDICTS:
            return None
        summary = result.value.get("summary")
        return {
            "verdict": verdict,
            "verified": verdict == "pass",
            "summary": summary if isinstance(summary, str) else None,
            "evidence": string_list(result.value.get("evidence")),
            "issues": string_list(result.value.get("missing")),
        }

    async def self_improvement_review(
        self,
        prompt: str,
        *,
        status: str,
        steps: list[PlanStep],
        last_error: str | None = None,
        verification: dict[str, Any] | None = None,
        model: str | None = None,
    ) -> dict[str, Any] | None:
        result = await self.ask(
            {
                "prompt": prompt,
                "status": status,
                "lastError": last_error,
                "plan": plan_outline(steps),
                "verification": verification,
            },
            model=model,
            system_prompt=self.review_prompt,
        )
        if isinstance(result, ParseError):
            return None
        summary = result.value.get("summary")
        if not isinstance(summary, str) or not summary.strip():
            return None
        return {
            "summary": summary.strip(),
            "mistakes": string_list(result.value.get("mistakes")),
            "improvements": string_list(result.value.get("improvements")),
            "guardrails": string_list(result.value.get("guardrails")),
            "tool_adjustments": string_list(result.value.get("toolAdjustments")),
            "confidence": _confidence(result.value.get("confidence")),
        }
