from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal
from uuid import uuid4

from runpilot.config import RunPreferences, RunSettings, resolve_preferences, resolve_settings

RunStatus = Literal["queued", "running", "completed", "failed", "stopped", "waiting_human"]
StepStatus = Literal["pending", "running", "completed", "failed"]

TERMINAL_STATUSES: tuple[str, ...] = ("completed", "failed", "stopped", "waiting_human")
STEP_STATUSES = {"pending", "running", "completed", "failed"}
PHASES = ("observe", "act", "verify", "recover")
DEFAULT_TOOL = "browser"


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def _optional_str(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item.strip() for item in value if isinstance(item, str) and item.strip()]


def _int(value: Any, default: int = 0) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    return default


def new_id() -> str:
    return str(uuid4())


@dataclass(slots=True)
class PlanStep:
    id: str
    title: str
    tool: str = DEFAULT_TOOL
    status: str = "pending"
    expected_observation: str | None = None
    success_criteria: str | None = None
    phase: str | None = None
    priority: int | None = None
    depends_on: list[str] = field(default_factory=list)
    attempts: int = 0
    max_attempts: int = 2
    goal_id: str | None = None
    subgoal_id: str | None = None
    last_error: str | None = None
    observation: str | None = None
    url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Any) -> PlanStep | None:
        if not isinstance(payload, dict):
            return None
        step_id = _optional_str(payload.get("id"))
        title = _optional_str(payload.get("title"))
        if step_id is None or title is None:
            return None
        status = payload.get("status")
        priority = payload.get("priority")
        return cls(
            id=step_id,
            title=title,
            tool=_optional_str(payload.get("tool")) or DEFAULT_TOOL,
            status=status if status in STEP_STATUSES else "pending",
            expected_observation=_optional_str(payload.get("expected_observation")),
            success_criteria=_optional_str(payload.get("success_criteria")),
            phase=payload.get("phase") if payload.get("phase") in PHASES else None,
            priority=priority if isinstance(priority, int) and not isinstance(priority, bool) else None,
            depends_on=_str_list(payload.get("depends_on")),
            attempts=max(0, _int(payload.get("attempts"))),
            max_attempts=max(1, _int(payload.get("max_attempts"), 2)),
            goal_id=_optional_str(payload.get("goal_id")),
            subgoal_id=_optional_str(payload.get("subgoal_id")),
            last_error=_optional_str(payload.get("last_error")),
            observation=_optional_str(payload.get("observation")),
            url=_optional_str(payload.get("url")),
        )


@dataclass(slots=True)
class StepTrace:
    step_id: str
    title: str
    status: str
    tool: str | None = None
    url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Any) -> StepTrace | None:
        if not isinstance(payload, dict):
            return None
        title = payload.get("title")
        status = payload.get("status")
        if not isinstance(title, str) or status not in STEP_STATUSES:
            return None
        return cls(
            step_id=str(payload.get("step_id") or ""),
            title=title,
            status=status,
            tool=_optional_str(payload.get("tool")),
            url=_optional_str(payload.get("url")),
        )


@dataclass(slots=True)
class LoopSignal:
    reason: str
    pattern: str
    titles: list[str]
    urls: list[str | None]
    statuses: list[str]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class Checkpoint:
    steps: list[PlanStep] = field(default_factory=list)
    active_step_id: str | None = None
    last_error: str | None = None
    task_type: str | None = None
    resume_requested_at: str | None = None
    resume_processed_at: str | None = None
    approval_requested_step_id: str | None = None
    approval_granted_step_id: str | None = None
    brief: str | None = None
    next_actions: list[str] = field(default_factory=list)
    risks: list[str] = field(default_factory=list)
    checkpoint_step_id: str | None = None
    checkpoint_at: str | None = None
    summary_checkpoint: int = 0
    settings: RunSettings = field(default_factory=RunSettings)
    preferences: RunPreferences = field(default_factory=RunPreferences)
    updated_at: str | None = None
    history: list[StepTrace] = field(default_factory=list)
    replan_count: int = 0
    self_check_count: int = 0
    execution_count: int = 0
    loop_streak: int = 0
    loop_cooldown: int = 0
    loop_backoff_ms: int = 0
    planner_summary: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "steps": [step.to_dict() for step in self.steps],
            "active_step_id": self.active_step_id,
            "last_error": self.last_error,
            "task_type": self.task_type,
            "resume_requested_at": self.resume_requested_at,
            "resume_processed_at": self.resume_processed_at,
            "approval_requested_step_id": self.approval_requested_step_id,
            "approval_granted_step_id": self.approval_granted_step_id,
            "brief": self.brief,
            "next_actions": list(self.next_actions),
            "risks": list(self.risks),
            "checkpoint_step_id": self.checkpoint_step_id,
            "checkpoint_at": self.checkpoint_at,
            "summary_checkpoint": self.summary_checkpoint,
            "settings": self.settings.to_dict(),
            "preferences": self.preferences.to_dict(),
            "updated_at": self.updated_at,
            "history": [item.to_dict() for item in self.history],
            "replan_count": self.replan_count,
            "self_check_count": self.self_check_count,
            "execution_count": self.execution_count,
            "loop_streak": self.loop_streak,
            "loop_cooldown": self.loop_cooldown,
            "loop_backoff_ms": self.loop_backoff_ms,
            "planner_summary": self.planner_summary,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Checkpoint:
        raw_steps = payload.get("steps")
        steps = [
            step
            for step in (PlanStep.from_dict(item) for item in raw_steps or [])
            if step is not None
        ] if isinstance(raw_steps, list) else []
        raw_history = payload.get("history")
        history = [
            item
            for item in (StepTrace.from_dict(entry) for entry in raw_history or [])
            if item is not None
        ] if isinstance(raw_history, list) else []
        return cls(
            steps=steps,
            active_step_id=_optional_str(payload.get("active_step_id")),
            last_error=_optional_str(payload.get("last_error")),
            task_type=_optional_str(payload.get("task_type")),
            resume_requested_at=_optional_str(payload.get("resume_requested_at")),
            resume_processed_at=_optional_str(payload.get("resume_processed_at")),
            approval_requested_step_id=_optional_str(payload.get("approval_requested_step_id")),
            approval_granted_step_id=_optional_str(payload.get("approval_granted_step_id")),
            brief=_optional_str(payload.get("brief")),
            next_actions=_str_list(payload.get("next_actions")),
            risks=_str_list(payload.get("risks")),
            checkpoint_step_id=_optional_str(payload.get("checkpoint_step_id")),
            checkpoint_at=_optional_str(payload.get("checkpoint_at")),
            summary_checkpoint=max(0, _int(payload.get("summary_checkpoint"))),
            settings=resolve_settings(payload),
            preferences=resolve_preferences(payload),
            updated_at=_optional_str(payload.get("updated_at")),
            history=history,
            replan_count=max(0, _int(payload.get("replan_count"))),
            self_check_count=max(0, _int(payload.get("self_check_count"))),
            execution_count=max(0, _int(payload.get("execution_count"))),
            loop_streak=max(0, _int(payload.get("loop_streak"))),
            loop_cooldown=max(0, _int(payload.get("loop_cooldown"))),
            loop_backoff_ms=max(0, _int(payload.get("loop_backoff_ms"))),
            planner_summary=_optional_str(payload.get("planner_summary")),
        )

    def step_by_id(self, step_id: str | None) -> PlanStep | None:
        if not step_id:
            return None
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def completed_count(self) -> int:
        return sum(1 for step in self.steps if step.status == "completed")


@dataclass(slots=True)
class AgentRun:
    id: str
    prompt: str
    model: str | None = None
    tools: list[str] = field(default_factory=list)
    search_provider: str | None = None
    agent_browser: str | None = None
    run_headless: bool = True
    status: str = "queued"
    requires_human_intervention: bool = False
    error_message: str | None = None
    error_id: str | None = None
    logs: list[str] = field(default_factory=list)
    active_step_id: str | None = None
    checkpointed_at: str | None = None
    created_at: str = field(default_factory=_utcnow_iso)
    updated_at: str = field(default_factory=_utcnow_iso)
    started_at: str | None = None
    finished_at: str | None = None
    plan_state: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> AgentRun:
        plan_state = payload.get("plan_state")
        return cls(
            id=str(payload["id"]),
            prompt=str(payload.get("prompt") or ""),
            model=_optional_str(payload.get("model")),
            tools=_str_list(payload.get("tools")),
            search_provider=_optional_str(payload.get("search_provider")),
            agent_browser=_optional_str(payload.get("agent_browser")),
            run_headless=bool(payload.get("run_headless", True)),
            status=str(payload.get("status") or "queued"),
            requires_human_intervention=bool(payload.get("requires_human_intervention", False)),
            error_message=_optional_str(payload.get("error_message")),
            error_id=_optional_str(payload.get("error_id")),
            logs=[str(line) for line in payload.get("logs") or []],
            active_step_id=_optional_str(payload.get("active_step_id")),
            checkpointed_at=_optional_str(payload.get("checkpointed_at")),
            created_at=str(payload.get("created_at") or _utcnow_iso()),
            updated_at=str(payload.get("updated_at") or _utcnow_iso()),
            started_at=_optional_str(payload.get("started_at")),
            finished_at=_optional_str(payload.get("finished_at")),
            plan_state=plan_state if isinstance(plan_state, dict) else None,
        )

    def append_log(self, message: str) -> None:
        self.logs.append(f"[{_utcnow_iso()}] {message}")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(slots=True)
class MemoryItem:
    run_id: str
    content: str
    scope: str = "session"
    metadata: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_id)
    created_at: str = field(default_factory=_utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> MemoryItem:
        metadata = payload.get("metadata")
        return cls(
            run_id=str(payload.get("run_id") or ""),
            content=str(payload.get("content") or ""),
            scope=str(payload.get("scope") or "session"),
            metadata=metadata if isinstance(metadata, dict) else {},
            id=str(payload.get("id") or new_id()),
            created_at=str(payload.get("created_at") or _utcnow_iso()),
        )


@dataclass(slots=True)
class AuditEntry:
    run_id: str
    level: str
    message: str
    metadata: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_id)
    created_at: str = field(default_factory=_utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class BrowserLog:
    run_id: str
    message: str
    level: str = "info"
    step_id: str | None = None
    id: str = field(default_factory=new_id)
    created_at: str = field(default_factory=_utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class BrowserSnapshot:
    run_id: str
    url: str
    title: str | None = None
    text: str | None = None
    artifact: str | None = None
    step_id: str | None = None
    id: str = field(default_factory=new_id)
    created_at: str = field(default_factory=_utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class StepResult:
    ok: bool
    observation: str | None = None
    url: str | None = None
    title: str | None = None
    error: str | None = None
