from pathlib import Path

from runpilot.memory import LONGTERM_SCOPE, PROBLEM_SOLUTION_TYPE, SELF_IMPROVEMENT_TYPE, MemoryManager
from runpilot.state import RunStore


def test_add_ignores_blank_content(tmp_path: Path) -> None:
    memory = MemoryManager(RunStore(tmp_path))

    assert memory.add("r1", "   ") is None
    item = memory.add("r1", "  Found the pricing page. ", metadata={"type": "observation"})

    assert item is not None
    assert item.content == "Found the pricing page."
    assert memory.recent("r1") == ["Found the pricing page."]


def test_recent_keeps_newest_entries(tmp_path: Path) -> None:
    memory = MemoryManager(RunStore(tmp_path), recent_limit=2)
    for index in range(4):
        memory.add("r1", f"note {index}")
    memory.add("r2", "other run")

    assert memory.recent("r1") == ["note 2", "note 3"]
    assert memory.recent("r1", limit=0) == []


def test_context_appends_playbook_from_other_runs(tmp_path: Path) -> None:
    memory = MemoryManager(RunStore(tmp_path))
    memory.add("old", "Wait for the cookie banner.", metadata={"type": SELF_IMPROVEMENT_TYPE})
    memory.add("r1", "Own lesson.", metadata={"type": SELF_IMPROVEMENT_TYPE})
    memory.add("r1", "Opened the site.")

    context = memory.context("r1")

    assert context[:2] == ["Own lesson.", "Opened the site."]
    assert context[-1] == "Lessons from earlier runs:\n- Wait for the cookie banner."


def test_memory_is_empty_when_tables_missing(tmp_path: Path) -> None:
    memory = MemoryManager(RunStore(tmp_path, tables_ready=False))
    memory.add("r1", "note")

    assert memory.context("r1") == []


def test_problem_solution_notes_are_long_term_and_feed_the_playbook(tmp_path: Path) -> None:
    store = RunStore(tmp_path)
    memory = MemoryManager(store)

    assert memory.add_problem_solution("old", problem="  ", countermeasure="Retry") is None
    item = memory.add_problem_solution(
        "old",
        problem="Login wall on the pricing page",
        countermeasure="Replanned the remaining steps.",
        step_title="Open pricing",
    )

    assert item is not None
    assert item.scope == LONGTERM_SCOPE
    assert item.content == "Problem: Login wall on the pricing page · Countermeasure: Replanned the remaining steps."
    assert item.metadata["type"] == PROBLEM_SOLUTION_TYPE
    assert item.metadata["step_title"] == "Open pricing"
    assert memory.playbook(exclude_run_id="old") is None
    assert memory.context("new")[-1] == (
        "Lessons from earlier runs:\n"
        "- Problem: Login wall on the pricing page · Countermeasure: Replanned the remaining steps."
    )
