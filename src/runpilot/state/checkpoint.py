from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from runpilot.config import RunSettings, resolve_preferences, resolve_settings
from runpilot.models import AgentRun, Checkpoint
from runpilot.state.store import RunStore


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def load_checkpoint(plan_state: Any, defaults: RunSettings | None = None) -> Checkpoint | None:
    """Rebuild a checkpoint from a stored plan-state mapping.

    Returns ``None`` when the mapping carries no step list, i.e. the run has not
    been planned yet. Malformed step entries are dropped rather than rejected.
    """
    if not isinstance(plan_state, dict):
        return None
    if not isinstance(plan_state.get("steps"), list):
        return None
    checkpoint = Checkpoint.from_dict(plan_state)
    checkpoint.settings = resolve_settings(plan_state, defaults)
    return checkpoint


def initial_checkpoint(plan_state: Any, defaults: RunSettings | None = None) -> Checkpoint:
    """Fresh checkpoint honouring any settings, preferences or resume marker already stored."""
    checkpoint = Checkpoint(
        settings=resolve_settings(plan_state, defaults),
        preferences=resolve_preferences(plan_state),
    )
    if isinstance(plan_state, dict):
        requested = plan_state.get("resume_requested_at")
        if isinstance(requested, str) and requested:
            checkpoint.resume_requested_at = requested
    return checkpoint


class CheckpointStore:
    """Writes checkpoints into the owning run record (last write wins)."""

    def __init__(self, store: RunStore) -> None:
        self.store = store

    def save(self, run_id: str, checkpoint: Checkpoint) -> AgentRun:
        now = _utcnow_iso()
        checkpoint.updated_at = now
        checkpoint.checkpoint_at = now
        checkpoint.checkpoint_step_id = checkpoint.active_step_id
        payload = checkpoint.to_dict()

        def _mutate(run: AgentRun) -> None:
            run.plan_state = payload
            run.active_step_id = checkpoint.active_step_id
            run.checkpointed_at = now

        return self.store.update_run(run_id, _mutate)

    def load(self, run_id: str, defaults: RunSettings | None = None) -> Checkpoint | None:
        run = self.store.get_run(run_id)
        if run is None:
            return None
        return load_checkpoint(run.plan_state, defaults)
