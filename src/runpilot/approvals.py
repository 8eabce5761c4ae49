from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any

from runpilot.models import Checkpoint, PlanStep
from runpilot.specialists.approval_judge import ApprovalJudgeAgent

logger = logging.getLogger(__name__)

RISK_TERMS = (
    "login",
    "log in",
    "sign in",
    "signup",
    "sign up",
    "register",
    "checkout",
    "purchase",
    "pay",
    "payment",
    "card",
    "delete",
    "remove",
    "cancel",
    "unsubscribe",
    "transfer",
    "withdraw",
    "submit order",
    "place order",
    "invoice",
    "billing",
    "confirm",
    "approve",
    "admin",
)
# Matched anywhere in the text, so run-together words like "mycheckout" still count.
HIGH_RISK_TERMS = ("checkout", "payment", "purchase", "delete", "transfer", "withdraw")
# Short terms are anchored at a word start so "display" does not read as "pay".
RISK_PATTERN = re.compile(
    "("
    + "|".join(re.escape(term) for term in HIGH_RISK_TERMS)
    + r"|\b(?:"
    + "|".join(re.escape(term) for term in RISK_TERMS if term not in HIGH_RISK_TERMS)
    + "))",
    re.IGNORECASE,
)


@dataclass(slots=True)
class ApprovalDecision:
    required: bool
    reason: str | None = None
    risk_level: str | None = None
    source: str = "heuristic"

    def to_dict(self) -> dict[str, Any]:
        return {
            "required": self.required,
            "reason": self.reason,
            "risk_level": self.risk_level,
            "source": self.source,
        }


def risky_term(step: PlanStep, prompt: str) -> str | None:
    """First risk-vocabulary term found in the step title or run prompt."""
    if step.tool == "none":
        return None
    match = RISK_PATTERN.search(f"{step.title} {prompt}")
    return match.group(1).lower() if match else None


def requires_approval_heuristic(step: PlanStep, prompt: str) -> bool:
    return risky_term(step, prompt) is not None


class ApprovalGate:
    """Two-tier gate evaluated once per step before it executes.

    The keyword heuristic runs first. The model tier only runs when a judge is
    configured and the heuristic did not already flag the step; a judge that
    fails or answers nonsense leaves the heuristic verdict in place.
    """

    def __init__(self, judge: ApprovalJudgeAgent | None = None) -> None:
        self.judge = judge

    async def evaluate(
        self,
        step: PlanStep,
        prompt: str,
        *,
        checkpoint: Checkpoint,
        browser_context: dict[str, Any] | None = None,
    ) -> ApprovalDecision:
        if not checkpoint.preferences.require_human_approval:
            return ApprovalDecision(required=False, reason="Approvals disabled for this run.", source="preferences")
        if checkpoint.approval_granted_step_id == step.id:
            return ApprovalDecision(required=False, reason="Approval granted.", source="granted")

        term = risky_term(step, prompt)
        if term is not None:
            return ApprovalDecision(
                required=True,
                reason=f"Step involves a sensitive action ({term}).",
                risk_level="high",
                source="heuristic",
            )
        if step.tool == "none" or self.judge is None:
            return ApprovalDecision(required=False, source="heuristic")

        opinion = await self.judge.judge(
            step,
            prompt,
            browser_context=browser_context,
            model=checkpoint.preferences.approval_gate_model,
        )
        if opinion is None:
            logger.info("Approval judge unavailable for step %s; using heuristic result.", step.id)
            return ApprovalDecision(required=False, reason="Approval judge unavailable.", source="heuristic")
        return ApprovalDecision(
            required=opinion.requires_approval,
            reason=opinion.reason,
            risk_level=opinion.risk_level,
            source="model",
        )
