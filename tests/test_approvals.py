import asyncio
import json
from typing import Any

from runpilot.approvals import ApprovalGate, requires_approval_heuristic, risky_term
from runpilot.backends.base import BackendExecutionError, ReasoningBackend
from runpilot.config import RunPreferences
from runpilot.models import Checkpoint, PlanStep
from runpilot.specialists import ApprovalJudgeAgent


class FakeBackend(ReasoningBackend):
    def __init__(self, reply: dict[str, Any] | str | None = None, *, fail: bool = False) -> None:
        self.reply = reply
        self.fail = fail
        self.calls = 0
        self.last_model: str | None = None

    async def complete(
        self,
        system_prompt: str,
        user_payload: dict[str, Any] | str,
        *,
        temperature: float = 0.2,
        model: str | None = None,
    ) -> str:
        _ = system_prompt, user_payload, temperature
        self.calls += 1
        self.last_model = model
        if self.fail:
            raise BackendExecutionError("boom", backend="fake")
        if isinstance(self.reply, str):
            return self.reply
        return json.dumps(self.reply or {})


def _step(title: str, tool: str = "browser") -> PlanStep:
    return PlanStep(id="s1", title=title, tool=tool)


def test_heuristic_matches_high_risk_terms_anywhere_and_short_terms_at_word_start() -> None:
    assert risky_term(_step("Log in to the dashboard"), "") == "log in"
    assert risky_term(_step("Open the page"), "Then checkout the cart") == "checkout"
    assert risky_term(_step("Open the PAYMENT form"), "") == "payment"
    assert risky_term(_step("Click the mycheckout button"), "") == "checkout"
    assert risky_term(_step("Press autodelete"), "") == "delete"
    assert risky_term(_step("Pay the invoice"), "") == "pay"
    assert risky_term(_step("Read the display settings"), "") is None
    assert risky_term(_step("Delete the account", tool="none"), "") is None
    assert requires_approval_heuristic(_step("Remove the item"), "") is True


def test_gate_skips_when_preferences_disable_approvals() -> None:
    checkpoint = Checkpoint(preferences=RunPreferences(require_human_approval=False))
    decision = asyncio.run(ApprovalGate().evaluate(_step("Delete the account"), "", checkpoint=checkpoint))

    assert decision.required is False
    assert decision.source == "preferences"


def test_gate_honours_granted_step() -> None:
    checkpoint = Checkpoint(approval_granted_step_id="s1")
    decision = asyncio.run(ApprovalGate().evaluate(_step("Delete the account"), "", checkpoint=checkpoint))

    assert decision.required is False
    assert decision.source == "granted"


def test_gate_flags_heuristic_hits_without_asking_the_judge() -> None:
    backend = FakeBackend({"requiresApproval": False})
    gate = ApprovalGate(ApprovalJudgeAgent(backend))

    decision = asyncio.run(gate.evaluate(_step("Sign in with the account"), "", checkpoint=Checkpoint()))

    assert decision.required is True
    assert decision.risk_level == "high"
    assert decision.reason == "Step involves a sensitive action (sign in)."
    assert backend.calls == 0


def test_gate_uses_model_opinion_for_unflagged_steps() -> None:
    backend = FakeBackend({"requiresApproval": True, "reason": "Changes settings.", "riskLevel": "medium"})
    gate = ApprovalGate(ApprovalJudgeAgent(backend, model="judge-default"))
    checkpoint = Checkpoint(preferences=RunPreferences(approval_gate_model="judge-override"))

    decision = asyncio.run(gate.evaluate(_step("Toggle the newsletter option"), "", checkpoint=checkpoint))

    assert decision.to_dict() == {
        "required": True,
        "reason": "Changes settings.",
        "risk_level": "medium",
        "source": "model",
    }
    assert backend.last_model == "judge-override"


def test_gate_falls_back_when_judge_is_unusable() -> None:
    for backend in (FakeBackend(fail=True), FakeBackend("not json"), FakeBackend({"requiresApproval": "yes"})):
        gate = ApprovalGate(ApprovalJudgeAgent(backend))
        decision = asyncio.run(gate.evaluate(_step("Read the headline"), "", checkpoint=Checkpoint()))

        assert decision.required is False
        assert decision.reason == "Approval judge unavailable."


def test_gate_never_asks_about_non_browser_steps() -> None:
    backend = FakeBackend({"requiresApproval": True})
    gate = ApprovalGate(ApprovalJudgeAgent(backend))

    decision = asyncio.run(gate.evaluate(_step("Summarize findings", tool="none"), "", checkpoint=Checkpoint()))

    assert decision.required is False
    assert backend.calls == 0
