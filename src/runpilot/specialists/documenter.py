from __future__ import annotations

from dataclasses import dataclass, field

from runpilot.models import PlanStep, StepTrace
from runpilot.parsing import ParseError
from runpilot.planning import plan_outline, string_list
from runpilot.specialists.base import SpecialistAgent


@dataclass(slots=True)
class CheckpointBrief:
    summary: str
    next_actions: list[str] = field(default_factory=list)
    risks: list[str] = field(default_factory=list)


class DocumenterAgent(SpecialistAgent):
    role = "documenter"
    system_prompt = """
You write checkpoint briefs for a browsing agent. Reply with one JSON object only.
Keys: summary (1-2 sentences), nextActions[] (concrete next steps), risks[].
""".strip()

    summary_prompt = """
You summarize progress of a long-running plan. Reply with one JSON object only.
Keys: summary (under 80 words), keyDecisions[], risks[].
""".strip()

    async def checkpoint_brief(
        self,
        prompt: str,
        *,
        steps: list[PlanStep],
        active_step: PlanStep | None = None,
        last_error: str | None = None,
        model: str | None = None,
    ) -> CheckpointBrief | None:
        result = await self.ask(
            {
                "prompt": prompt,
                "plan": plan_outline(steps),
                "activeStep": active_step.title if active_step else None,
                "lastError": last_error,
            },
            model=model,
        )
        if isinstance(result, ParseError):
            return None
        summary = result.value.get("summary")
        if not isinstance(summary, str) or not summary.strip():
            return None
        return CheckpointBrief(
            summary=summary.strip(),
            next_actions=string_list(result.value.get("nextActions")),
            risks=string_list(result.value.get("risks")),
        )

    async def summarize_progress(
        self,
        prompt: str,
        *,
        steps: list[PlanStep],
        history: list[StepTrace],
        memory: list[str] | None = None,
        model: str | None = None,
    ) -> str | None:
        result = await self.ask(
            {
                "prompt": prompt,
                "memory": memory or [],
                "plan": plan_outline(steps),
                "history": [item.to_dict() for item in history],
            },
            model=model,
            system_prompt=self.summary_prompt,
        )
        if isinstance(result, ParseError):
            return None
        summary = result.value.get("summary")
        if not isinstance(summary, str) or not summary.strip():
            return None
        decisions = string_list(result.value.get("keyDecisions"))
        if decisions:
            return summary.strip() + "\nKey decisions: " + "; ".join(decisions)
        return summary.strip()
