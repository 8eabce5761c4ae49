from runpilot.state.checkpoint import CheckpointStore, initial_checkpoint, load_checkpoint
from runpilot.state.store import RunStore, RunStoreError

__all__ = [
    "CheckpointStore",
    "RunStore",
    "RunStoreError",
    "initial_checkpoint",
    "load_checkpoint",
]
