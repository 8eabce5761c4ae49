from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from runpilot.models import PlanStep
from runpilot.parsing import ParseError
from runpilot.specialists.base import SpecialistAgent

RISK_LEVELS = ("low", "medium", "high")


@dataclass(slots=True)
class ApprovalOpinion:
    requires_approval: bool
    reason: str | None = None
    risk_level: str | None = None


class ApprovalJudgeAgent(SpecialistAgent):
    role = "approval_gate"
    temperature = 0.0
    system_prompt = """
You decide whether a planned web action needs human approval before it runs.
Reply with one JSON object only: requiresApproval (boolean), reason (string),
riskLevel (low, medium or high). Flag logins, payments, deletions, account
changes, admin actions and anything irreversible.
""".strip()

    async def judge(
        self,
        step: PlanStep,
        prompt: str,
        *,
        browser_context: dict[str, Any] | None = None,
        model: str | None = None,
    ) -> ApprovalOpinion | None:
        page = None
        if browser_context:
            page = {"url": browser_context.get("url"), "title": browser_context.get("title")}
        result = await self.ask(
            {
                "prompt": prompt,
                "step": {
                    "title": step.title,
                    "tool": step.tool,
                    "expectedObservation": step.expected_observation,
                    "successCriteria": step.success_criteria,
                },
                "browserContext": page,
            },
            model=model,
        )
        if isinstance(result, ParseError):
            return None
        flag = result.value.get("requiresApproval")
        if not isinstance(flag, bool):
            return None
        reason = result.value.get("reason")
        risk = result.value.get("riskLevel")
        return ApprovalOpinion(
            requires_approval=flag,
            reason=reason if isinstance(reason, str) and reason.strip() else None,
            risk_level=risk if risk in RISK_LEVELS else None,
        )
