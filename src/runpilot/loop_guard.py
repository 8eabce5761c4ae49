from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from runpilot.audit import AuditTrail
from runpilot.models import Checkpoint, LoopSignal, PlanStep, StepTrace
from runpilot.specialists.loop_judge import LoopJudgeAgent

logger = logging.getLogger(__name__)


def detect_loop_pattern(history: list[StepTrace]) -> LoopSignal | None:
    """Pure check over the newest step records; needs at least three of them."""
    if len(history) < 3:
        return None
    last_three = history[-3:]
    last_four = history[-4:]
    titles = [item.title for item in last_three]
    urls = [item.url for item in last_three]
    statuses = [item.status for item in last_three]

    if len({title.lower() for title in titles}) == 1:
        return LoopSignal(
            reason="Repeated the same step multiple times.",
            pattern="repeat-same-step",
            titles=titles,
            urls=urls,
            statuses=statuses,
        )
    if len(last_four) == 4:
        a, b, c, d = (item.title.lower() for item in last_four)
        if a == c and b == d and a != b:
            return LoopSignal(
                reason="Alternating between the same two steps.",
                pattern="alternate-two-steps",
                titles=[item.title for item in last_four],
                urls=[item.url for item in last_four],
                statuses=[item.status for item in last_four],
            )
    if urls[0] and all(url == urls[0] for url in urls) and statuses.count("failed") >= 2:
        return LoopSignal(
            reason="Repeated failures on the same URL.",
            pattern="same-url-failures",
            titles=titles,
            urls=urls,
            statuses=statuses,
        )
    return None


@dataclass(slots=True)
class LoopVerdict:
    action: str = "continue"
    reason: str | None = None
    steps: list[PlanStep] = field(default_factory=list)
    signal: LoopSignal | None = None
    backoff_seconds: float = 0.0

    @property
    def escalated(self) -> bool:
        return self.signal is not None and self.action != "continue"


class LoopGuard:
    """Tracks loop signals across steps and escalates persistent ones to the judge.

    Escalation needs ``loop_guard_threshold`` consecutive signals, no active
    cooldown and replan budget left. After an escalation the guard stays quiet
    for ``loop_guard_cooldown_steps`` steps. Backoff starts at
    ``loop_backoff_base_ms`` and doubles per escalation up to ``loop_backoff_max_ms``;
    a step without a signal resets both the streak and the backoff.
    """

    def __init__(self, judge: LoopJudgeAgent | None = None, *, history_window: int = 6) -> None:
        self.judge = judge
        self.history_window = history_window

    def _next_backoff_ms(self, checkpoint: Checkpoint) -> int:
        settings = checkpoint.settings
        base = max(0, settings.loop_backoff_base_ms)
        ceiling = max(base, settings.loop_backoff_max_ms)
        if checkpoint.loop_backoff_ms <= 0:
            return base
        return min(checkpoint.loop_backoff_ms * 2, ceiling)

    async def check(
        self,
        prompt: str,
        checkpoint: Checkpoint,
        audit: AuditTrail,
        *,
        memory: list[str] | None = None,
        browser_context: dict[str, Any] | None = None,
        run_model: str | None = None,
    ) -> LoopVerdict:
        settings = checkpoint.settings
        checkpoint.loop_cooldown = max(0, checkpoint.loop_cooldown - 1)
        signal = detect_loop_pattern(checkpoint.history[-self.history_window :])
        if signal is None:
            checkpoint.loop_streak = 0
            checkpoint.loop_backoff_ms = 0
            return LoopVerdict()

        checkpoint.loop_streak += 1
        if (
            checkpoint.loop_streak < settings.loop_guard_threshold
            or checkpoint.loop_cooldown > 0
            or checkpoint.replan_count >= settings.max_replan_calls
        ):
            return LoopVerdict(signal=signal)

        checkpoint.loop_backoff_ms = self._next_backoff_ms(checkpoint)
        checkpoint.loop_cooldown = settings.loop_guard_cooldown_steps
        verdict = None
        if self.judge is not None:
            verdict = await self.judge.judge(
                prompt,
                signal=signal,
                history=checkpoint.history[-self.history_window :],
                current_plan=checkpoint.steps,
                max_steps=settings.max_steps,
                max_step_attempts=settings.max_step_attempts,
                last_error=checkpoint.last_error,
                memory=memory,
                browser_context=browser_context,
                model=checkpoint.preferences.loop_guard_model or run_model,
            )
        if verdict is None:
            action, reason, steps = "continue", "Loop judge unavailable; continuing.", []
        else:
            action, reason, steps = verdict.action, verdict.reason, verdict.steps

        audit.warning(
            "Loop guard evaluated.",
            type="loop-guard",
            action=action,
            reason=reason,
            loop=signal.to_dict(),
            backoff_ms=checkpoint.loop_backoff_ms,
            streak=checkpoint.loop_streak,
        )
        logger.info("Loop guard verdict %s (%s)", action, signal.pattern)
        return LoopVerdict(
            action=action,
            reason=reason,
            steps=steps,
            signal=signal,
            backoff_seconds=checkpoint.loop_backoff_ms / 1000,
        )
