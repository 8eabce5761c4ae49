"""Plan normalization: model payloads in, executable ``PlanStep`` lists out.

Everything here is pure. The model-facing half of planning lives in
``runpilot.specialists.planner``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

from runpilot.models import DEFAULT_TOOL, PHASES, PlanStep, new_id

DEFAULT_STEP_TITLE = "Review the page state."
TASK_TYPES = {"web_task", "extract_info"}
MAX_SAFETY_STEPS = 3
MAX_VERIFY_STEPS = 3


@dataclass(slots=True)
class StepSpec:
    """A step as proposed by the planner, before ids and dependencies are resolved.

    ``key`` is the step's position in declared (flattened) order. Integer
    ``depends_on`` entries refer to keys, string entries to titles.
    """

    title: str
    key: int = 0
    tool: str = DEFAULT_TOOL
    expected_observation: str | None = None
    success_criteria: str | None = None
    phase: str | None = None
    priority: int | None = None
    depends_on: list[int | str] = field(default_factory=list)
    goal_id: str | None = None
    subgoal_id: str | None = None


@dataclass(slots=True)
class Subgoal:
    id: str
    title: str
    success_criteria: str | None = None
    priority: int | None = None
    steps: list[StepSpec] = field(default_factory=list)


@dataclass(slots=True)
class Goal:
    id: str
    title: str
    success_criteria: str | None = None
    priority: int | None = None
    subgoals: list[Subgoal] = field(default_factory=list)


@dataclass(slots=True)
class Hierarchy:
    goals: list[Goal]

    def to_dict(self) -> dict[str, Any]:
        return {
            "goals": [
                {
                    "id": goal.id,
                    "title": goal.title,
                    "priority": goal.priority,
                    "subgoals": [
                        {
                            "id": subgoal.id,
                            "title": subgoal.title,
                            "priority": subgoal.priority,
                            "steps": [spec.title for spec in subgoal.steps],
                        }
                        for subgoal in goal.subgoals
                    ],
                }
                for goal in self.goals
            ]
        }


@dataclass(slots=True)
class Alternative:
    title: str
    rationale: str | None = None
    steps: list[StepSpec] = field(default_factory=list)


@dataclass(slots=True)
class PlannerMeta:
    task_type: str | None = None
    summary: str | None = None
    constraints: list[str] = field(default_factory=list)
    success_signals: list[str] = field(default_factory=list)
    safety_checks: list[str] = field(default_factory=list)
    questions: list[str] = field(default_factory=list)
    alternatives: list[Alternative] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_type": self.task_type,
            "summary": self.summary,
            "constraints": list(self.constraints),
            "success_signals": list(self.success_signals),
            "safety_checks": list(self.safety_checks),
            "questions": list(self.questions),
            "alternatives": [alt.title for alt in self.alternatives],
        }


@dataclass(slots=True)
class PlanProposal:
    steps: list[PlanStep]
    meta: PlannerMeta = field(default_factory=PlannerMeta)
    hierarchy: Hierarchy | None = None
    source: str = "model"
    score: float | None = None


def _text(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _priority(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item.strip() for item in value if isinstance(item, str) and item.strip()]


def _unique(values: list[str]) -> list[str]:
    seen: set[str] = set()
    ordered: list[str] = []
    for value in values:
        if value not in seen:
            seen.add(value)
            ordered.append(value)
    return ordered


def normalize_tool(value: Any) -> str:
    text = _text(value)
    if text is None:
        return DEFAULT_TOOL
    lowered = text.lower()
    return "none" if lowered == "none" else lowered


def normalize_phase(value: Any) -> str | None:
    text = _text(value)
    if text is None:
        return None
    lowered = text.lower()
    return lowered if lowered in PHASES else None


def _dependency_refs(value: Any) -> list[int | str]:
    if not isinstance(value, list):
        return []
    refs: list[int | str] = []
    for item in value:
        if isinstance(item, bool):
            continue
        if isinstance(item, int):
            refs.append(item)
        elif isinstance(item, str) and item.strip():
            refs.append(item.strip())
    return refs


def spec_from_payload(payload: Any, *, key: int = 0, default_phase: str | None = None) -> StepSpec | None:
    if isinstance(payload, str):
        payload = {"title": payload}
    if not isinstance(payload, dict):
        return None
    return StepSpec(
        title=_text(payload.get("title")) or DEFAULT_STEP_TITLE,
        key=key,
        tool=normalize_tool(payload.get("tool")),
        expected_observation=_text(payload.get("expectedObservation") or payload.get("expected_observation")),
        success_criteria=_text(payload.get("successCriteria") or payload.get("success_criteria")),
        phase=normalize_phase(payload.get("phase")) or default_phase,
        priority=_priority(payload.get("priority")),
        depends_on=_dependency_refs(payload.get("dependsOn", payload.get("depends_on"))),
    )


def normalize_hierarchy(payload: Any) -> Hierarchy | None:
    """Validate a ``goals[].subgoals[].steps[]`` payload; ``None`` when there are no goals."""
    if not isinstance(payload, dict):
        return None
    raw_goals = payload.get("goals")
    if not isinstance(raw_goals, list) or not raw_goals:
        return None
    goals: list[Goal] = []
    for raw_goal in raw_goals:
        if not isinstance(raw_goal, dict):
            continue
        goal = Goal(
            id=new_id(),
            title=_text(raw_goal.get("title")) or "Primary objective",
            success_criteria=_text(raw_goal.get("successCriteria") or raw_goal.get("success_criteria")),
            priority=_priority(raw_goal.get("priority")),
        )
        raw_subgoals = raw_goal.get("subgoals")
        for raw_subgoal in raw_subgoals if isinstance(raw_subgoals, list) else []:
            if not isinstance(raw_subgoal, dict):
                continue
            subgoal = Subgoal(
                id=new_id(),
                title=_text(raw_subgoal.get("title")) or "Supporting task",
                success_criteria=_text(
                    raw_subgoal.get("successCriteria") or raw_subgoal.get("success_criteria")
                ),
                priority=_priority(raw_subgoal.get("priority")),
            )
            raw_steps = raw_subgoal.get("steps")
            for raw_step in raw_steps if isinstance(raw_steps, list) else []:
                spec = spec_from_payload(raw_step)
                if spec is not None:
                    subgoal.steps.append(spec)
            goal.subgoals.append(subgoal)
        goals.append(goal)
    if not goals:
        return None
    return Hierarchy(goals=goals)


def _priority_sort_key(spec: StepSpec) -> tuple[int, int]:
    if spec.priority is None:
        return (1, 0)
    return (0, spec.priority)


def flatten_hierarchy(hierarchy: Hierarchy) -> list[StepSpec]:
    """Flatten goals -> subgoals -> steps into one ordered list.

    Tie-break rules:
      1. goals, then subgoals, keep their declared order;
      2. inside a subgoal, a run of consecutive steps sharing a phase is
         stable-sorted by effective priority (lower first, missing last);
         steps never cross a phase boundary or a subgoal boundary;
      3. effective priority is the step's, else the subgoal's, else the goal's.

    ``key`` records each step's declared flattened position so integer
    dependencies keep pointing at the step the planner meant.
    """
    flattened: list[StepSpec] = []
    key = 0
    for goal in hierarchy.goals:
        for subgoal in goal.subgoals:
            block: list[StepSpec] = []
            for step in subgoal.steps:
                priority = step.priority
                if priority is None:
                    priority = subgoal.priority if subgoal.priority is not None else goal.priority
                block.append(
                    StepSpec(
                        title=step.title,
                        key=key,
                        tool=step.tool,
                        expected_observation=step.expected_observation,
                        success_criteria=step.success_criteria or subgoal.success_criteria,
                        phase=step.phase,
                        priority=priority,
                        depends_on=list(step.depends_on),
                        goal_id=goal.id,
                        subgoal_id=subgoal.id,
                    )
                )
                key += 1
            flattened.extend(_sort_phase_runs(block))
    return flattened


def _sort_phase_runs(block: list[StepSpec]) -> list[StepSpec]:
    ordered: list[StepSpec] = []
    run: list[StepSpec] = []
    for spec in block:
        if run and spec.phase != run[-1].phase:
            ordered.extend(sorted(run, key=_priority_sort_key))
            run = []
        run.append(spec)
    ordered.extend(sorted(run, key=_priority_sort_key))
    return ordered


def _alternatives(value: Any) -> list[Alternative]:
    if not isinstance(value, list):
        return []
    alternatives: list[Alternative] = []
    for entry in value:
        if not isinstance(entry, dict):
            continue
        title = _text(entry.get("title"))
        raw_steps = entry.get("steps")
        steps = [
            spec
            for index, item in enumerate(raw_steps if isinstance(raw_steps, list) else [])
            if (spec := spec_from_payload(item, key=index, default_phase="recover")) is not None
        ]
        if title is None or not steps:
            continue
        alternatives.append(Alternative(title=title, rationale=_text(entry.get("rationale")), steps=steps))
    return alternatives


def meta_from_payload(payload: dict[str, Any]) -> PlannerMeta:
    critique = payload.get("critique") or payload.get("selfCritique")
    critique = critique if isinstance(critique, dict) else {}
    task_type = payload.get("taskType", payload.get("task_type"))
    return PlannerMeta(
        task_type=task_type if task_type in TASK_TYPES else None,
        summary=_text(payload.get("summary")),
        constraints=string_list(payload.get("constraints")),
        success_signals=string_list(payload.get("successSignals", payload.get("success_signals"))),
        safety_checks=_unique(
            string_list(critique.get("safetyChecks")) + string_list(payload.get("safetyChecks"))
        ),
        questions=_unique(string_list(critique.get("questions")) + string_list(payload.get("questions"))),
        alternatives=_alternatives(payload.get("alternatives")),
    )


def plan_from_payload(payload: dict[str, Any]) -> tuple[list[StepSpec], PlannerMeta, Hierarchy | None]:
    """Accept either a ``goals`` hierarchy or a flat ``steps`` list."""
    meta = meta_from_payload(payload)
    hierarchy = normalize_hierarchy(payload)
    if hierarchy is not None:
        specs = flatten_hierarchy(hierarchy)
        if specs:
            return specs, meta, hierarchy
    raw_steps = payload.get("steps")
    specs = [
        spec
        for index, item in enumerate(raw_steps if isinstance(raw_steps, list) else [])
        if (spec := spec_from_payload(item, key=index)) is not None
    ]
    return specs, meta, None


def _resolve_dependencies(specs: list[StepSpec], ids: dict[int, str]) -> list[list[str]]:
    by_title: dict[str, int] = {}
    for spec in specs:
        by_title.setdefault(spec.title.lower(), spec.key)
    resolved: list[list[str]] = []
    for spec in specs:
        deps: list[str] = []
        for ref in spec.depends_on:
            target = ref if isinstance(ref, int) else by_title.get(ref.lower())
            if target is None or target == spec.key or target not in ids:
                continue
            dep_id = ids[target]
            if dep_id not in deps:
                deps.append(dep_id)
        resolved.append(deps)
    return resolved


def order_by_dependencies(steps: list[PlanStep]) -> list[PlanStep]:
    """Stable topological order: declared order wins unless a dependency forces a move.

    Steps caught in a cycle are appended in declared order; the control loop
    reports them as a deadlock.
    """
    known = {step.id for step in steps}
    placed: set[str] = set()
    remaining = list(steps)
    ordered: list[PlanStep] = []
    while remaining:
        for index, step in enumerate(remaining):
            if all(dep in placed or dep not in known for dep in step.depends_on):
                ordered.append(step)
                placed.add(step.id)
                del remaining[index]
                break
        else:
            ordered.extend(remaining)
            break
    return ordered


def _check_steps(titles: list[str], prefix: str, phase: str, max_step_attempts: int) -> list[PlanStep]:
    return [
        PlanStep(
            id=new_id(),
            title=f"{prefix}{title}",
            tool="none",
            phase=phase,
            max_attempts=max_step_attempts,
        )
        for title in titles
    ]


def build_steps(
    specs: list[StepSpec],
    *,
    max_steps: int,
    max_step_attempts: int,
    meta: PlannerMeta | None = None,
    include_safety: bool = False,
) -> list[PlanStep]:
    ids = {spec.key: new_id() for spec in specs}
    dependencies = _resolve_dependencies(specs, ids)
    planned = [
        PlanStep(
            id=ids[spec.key],
            title=spec.title,
            tool=spec.tool,
            expected_observation=spec.expected_observation,
            success_criteria=spec.success_criteria,
            phase=spec.phase,
            priority=spec.priority,
            depends_on=deps,
            max_attempts=max_step_attempts,
            goal_id=spec.goal_id,
            subgoal_id=spec.subgoal_id,
        )
        for spec, deps in zip(specs, dependencies)
    ]
    planned = order_by_dependencies(planned)[:max_steps]

    safety: list[PlanStep] = []
    verify: list[PlanStep] = []
    if include_safety and meta is not None:
        room = max_steps - len(planned)
        safety = _check_steps(
            meta.safety_checks[: min(MAX_SAFETY_STEPS, max(0, room))],
            "Safety check: ",
            "observe",
            max_step_attempts,
        )
        room -= len(safety)
        verify = _check_steps(
            meta.success_signals[: min(MAX_VERIFY_STEPS, max(0, room))],
            "Verify: ",
            "verify",
            max_step_attempts,
        )

    steps = safety + planned + verify
    kept = {step.id for step in steps}
    for step in steps:
        step.depends_on = [dep for dep in step.depends_on if dep in kept]
    return steps


def fallback_plan(prompt: str, max_steps: int) -> list[StepSpec]:
    """Heuristic plan used when the planner cannot produce one."""
    normalized = prompt.strip()
    if not normalized:
        return []
    lower = normalized.lower()
    if any(term in lower for term in ("login", "log in", "sign in", "signin")):
        titles = [
            "Open the target website.",
            "Locate the sign-in form.",
            "Fill in the credentials.",
            "Submit the form and wait for the next page.",
            "Verify the expected page or account state.",
        ]
    elif "browse" in lower or "website" in lower:
        titles = [
            "Open the target URL.",
            "Wait for the page to finish loading.",
            "Locate the requested content.",
            "Capture the relevant details.",
        ]
    else:
        titles = [sentence.strip() for sentence in re.split(r"[.!?]\s+", normalized) if sentence.strip()]
    return [StepSpec(title=title, key=index) for index, title in enumerate(titles[:max_steps])]


def branch_steps(alternatives: list[Alternative]) -> list[StepSpec]:
    """Recovery steps drawn from planner alternatives, in declared order."""
    specs: list[StepSpec] = []
    for alternative in alternatives:
        for spec in alternative.steps:
            specs.append(
                StepSpec(
                    title=spec.title,
                    key=len(specs),
                    tool=spec.tool,
                    expected_observation=spec.expected_observation,
                    success_criteria=spec.success_criteria,
                    phase=spec.phase or "recover",
                    priority=spec.priority,
                )
            )
    return specs


def next_ready_step(steps: list[PlanStep]) -> PlanStep | None:
    """First ``pending`` step whose dependencies are all ``completed``."""
    by_id = {step.id: step for step in steps}
    for step in steps:
        if step.status != "pending":
            continue
        if all(dep in by_id and by_id[dep].status == "completed" for dep in step.depends_on):
            return step
    return None


def find_deadlock(steps: list[PlanStep]) -> list[PlanStep]:
    """Pending steps that cannot become ready: the plan is deadlocked when this is non-empty."""
    if next_ready_step(steps) is not None:
        return []
    if any(step.status == "running" for step in steps):
        return []
    return [step for step in steps if step.status == "pending"]


def has_pending(steps: list[PlanStep]) -> bool:
    return any(step.status in {"pending", "running"} for step in steps)


def should_evaluate_replan(completed_count: int, steps: list[PlanStep], every: int) -> bool:
    if completed_count <= 0 or every <= 0:
        return False
    return completed_count % every == 0 and has_pending(steps)


def replace_pending(steps: list[PlanStep], replacement: list[PlanStep], max_steps: int) -> list[PlanStep]:
    """Keep completed progress and swap everything else for ``replacement``.

    The replacement is truncated to the remaining step budget (at least one step).
    """
    kept = [step for step in steps if step.status == "completed"]
    slots = max(1, max_steps - len(kept))
    tail = replacement[:slots]
    valid = {step.id for step in kept} | {step.id for step in tail}
    for step in tail:
        step.depends_on = [dep for dep in step.depends_on if dep in valid]
    return kept + tail


def proposal_from_payload(
    payload: dict[str, Any],
    *,
    max_steps: int,
    max_step_attempts: int,
    include_safety: bool = False,
    source: str = "model",
) -> PlanProposal | None:
    """Turn a planner-shaped reply (hierarchical or flat) into steps; ``None`` when it has none."""
    specs, meta, hierarchy = plan_from_payload(payload)
    if not specs:
        return None
    steps = build_steps(
        specs,
        max_steps=max_steps,
        max_step_attempts=max_step_attempts,
        meta=meta,
        include_safety=include_safety,
    )
    return PlanProposal(steps=steps, meta=meta, hierarchy=hierarchy, source=source)


def plan_outline(steps: list[PlanStep]) -> list[dict[str, Any]]:
    return [
        {
            "id": step.id,
            "title": step.title,
            "status": step.status,
            "tool": step.tool,
            "phase": step.phase,
            "expectedObservation": step.expected_observation,
            "successCriteria": step.success_criteria,
        }
        for step in steps
    ]
