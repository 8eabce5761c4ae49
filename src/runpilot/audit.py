from __future__ import annotations

import logging
from typing import Any

from runpilot.models import AuditEntry
from runpilot.state.store import RunStore, RunStoreError

logger = logging.getLogger(__name__)

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class AuditTrail:
    """Per-run structured decision log, mirrored to the process logger.

    Audit writes are best-effort: a persistence failure is logged and swallowed so
    the control loop keeps its state machine moving.
    """

    def __init__(self, store: RunStore, run_id: str) -> None:
        self.store = store
        self.run_id = run_id

    def append(self, level: str, message: str, metadata: dict[str, Any] | None = None) -> None:
        normalized = level if level in _LEVELS else "info"
        payload = dict(metadata or {})
        logger.log(_LEVELS[normalized], "[%s] %s", self.run_id, message, extra={"audit": payload})
        try:
            self.store.add_audit(
                AuditEntry(run_id=self.run_id, level=normalized, message=message, metadata=payload)
            )
        except RunStoreError as exc:
            logger.warning("Audit write failed for run %s: %s", self.run_id, exc)

    def info(self, message: str, **metadata: Any) -> None:
        self.append("info", message, metadata)

    def warning(self, message: str, **metadata: Any) -> None:
        self.append("warning", message, metadata)

    def error(self, message: str, **metadata: Any) -> None:
        self.append("error", message, metadata)
