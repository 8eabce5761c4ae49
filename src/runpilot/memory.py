from __future__ import annotations

from typing import Any

from runpilot.models import MemoryItem
from runpilot.state.store import RunStore

SELF_IMPROVEMENT_TYPE = "self-improvement"
PLANNER_SUMMARY_TYPE = "planner-summary"
PROBLEM_SOLUTION_TYPE = "problem-solution"
LONGTERM_SCOPE = "longterm"


class MemoryManager:
    """Append-only scoped notes used as planner and judge context."""

    def __init__(self, store: RunStore, *, recent_limit: int = 8) -> None:
        self.store = store
        self.recent_limit = recent_limit

    def add(
        self,
        run_id: str,
        content: str,
        *,
        scope: str = "session",
        metadata: dict[str, Any] | None = None,
    ) -> MemoryItem | None:
        text = content.strip() if isinstance(content, str) else ""
        if not text:
            return None
        item = MemoryItem(run_id=run_id, content=text, scope=scope, metadata=dict(metadata or {}))
        self.store.add_memory(item)
        return item

    def add_problem_solution(
        self,
        run_id: str,
        *,
        problem: str,
        countermeasure: str,
        **context: Any,
    ) -> MemoryItem | None:
        """Remember how a failure was worked around so later plans can reuse it."""
        if not problem.strip() or not countermeasure.strip():
            return None
        return self.add(
            run_id,
            f"Problem: {problem.strip()} · Countermeasure: {countermeasure.strip()}",
            scope=LONGTERM_SCOPE,
            metadata={
                "type": PROBLEM_SOLUTION_TYPE,
                "problem": problem.strip(),
                "countermeasure": countermeasure.strip(),
                **context,
            },
        )

    def recent(self, run_id: str, limit: int | None = None) -> list[str]:
        items = self.store.list_memory(run_id=run_id)
        window = self.recent_limit if limit is None else limit
        return [item.content for item in items[-window:]] if window > 0 else []

    def playbook(self, limit: int = 3, *, exclude_run_id: str | None = None) -> str | None:
        """Condense the newest lessons of earlier runs into one note.

        Lessons are self-improvement reviews and long-term problem/countermeasure pairs.
        """
        reviews = [
            item
            for item in self.store.list_memory(scope="session")
            if item.metadata.get("type") == SELF_IMPROVEMENT_TYPE and item.run_id != exclude_run_id
        ]
        fixes = [
            item
            for item in self.store.list_memory(scope=LONGTERM_SCOPE)
            if item.metadata.get("type") == PROBLEM_SOLUTION_TYPE and item.run_id != exclude_run_id
        ]
        if not reviews and not fixes:
            return None
        lines = ["Lessons from earlier runs:"]
        for item in reviews[-limit:] + fixes[-limit:]:
            lines.append(f"- {item.content}")
        return "\n".join(lines)

    def context(self, run_id: str) -> list[str]:
        entries = self.recent(run_id)
        playbook = self.playbook(exclude_run_id=run_id)
        if playbook:
            entries.append(playbook)
        return entries
