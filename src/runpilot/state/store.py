from __future__ import annotations

import json
import os
import shutil
import time
from collections.abc import Callable, Iterable
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from runpilot.models import (
    AgentRun,
    AuditEntry,
    BrowserLog,
    BrowserSnapshot,
    MemoryItem,
)


class RunStoreError(RuntimeError):
    """Raised when run persistence operations fail."""


class RunStore:
    """Local JSON-envelope repository for runs and their side records.

    Every namespace lives in ``<root>/state/<namespace>.json`` as
    ``{schema_version, revision, updated_at, data}``. Writers take an exclusive
    lock file and bump the revision, so ``update_json`` can detect a concurrent
    writer and retry.

    ``tables_ready`` mirrors whether the memory/audit/browser tables exist. When
    it is false those sinks read as empty and writes are dropped; run records are
    always available.
    """

    NAMESPACES = {"runs", "memory", "audit", "browser_logs", "snapshots"}
    SIDE_NAMESPACES = ("memory", "audit", "browser_logs", "snapshots")
    SCHEMA_VERSION = 1

    def __init__(self, root: Path, *, tables_ready: bool = True) -> None:
        self.root = root.resolve()
        self.state_dir = self.root / "state"
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.artifacts_root = self.root / "artifacts"
        self.lock_file = self.state_dir / ".lock"
        self.tables_ready = tables_ready

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).replace(microsecond=0).isoformat()

    @staticmethod
    def _validate_namespace(namespace: str) -> None:
        if namespace not in RunStore.NAMESPACES:
            raise RunStoreError(f"Unsupported namespace: {namespace}")

    def _local_file(self, namespace: str) -> Path:
        return self.state_dir / f"{namespace}.json"

    @contextmanager
    def _state_lock(self, timeout_seconds: float = 3.0):
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > timeout_seconds:
                    raise RunStoreError("Timed out waiting for state lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read_raw_json(self, namespace: str) -> Any:
        local_file = self._local_file(namespace)
        if not local_file.exists():
            return None
        try:
            return json.loads(local_file.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return None

    def _write_raw_json(self, namespace: str, payload: Any) -> None:
        serialized = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
        target = self._local_file(namespace)
        staging = target.with_suffix(".json.tmp")
        try:
            staging.write_text(serialized, encoding="utf-8")
            os.replace(staging, target)
        except OSError as exc:
            raise RunStoreError(f"Failed to write namespace '{namespace}': {exc}") from exc

    def _normalize_envelope(self, raw_payload: Any, default: Any) -> dict[str, Any]:
        if (
            isinstance(raw_payload, dict)
            and "schema_version" in raw_payload
            and "data" in raw_payload
            and "revision" in raw_payload
        ):
            return {
                "schema_version": int(raw_payload.get("schema_version") or self.SCHEMA_VERSION),
                "revision": int(raw_payload.get("revision") or 1),
                "updated_at": raw_payload.get("updated_at") or self._utcnow_iso(),
                "data": raw_payload.get("data", default),
            }

        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 1,
            "updated_at": self._utcnow_iso(),
            "data": default if raw_payload is None else raw_payload,
        }

    def get_envelope(self, namespace: str, default: Any | None = None) -> dict[str, Any]:
        self._validate_namespace(namespace)
        default_value = {} if default is None else default
        return self._normalize_envelope(self._read_raw_json(namespace), default_value)

    def get_json(self, namespace: str, default: Any | None = None) -> Any:
        return self.get_envelope(namespace, default=default).get("data")

    def set_json(self, namespace: str, data: Any, expected_revision: int | None = None) -> None:
        self._validate_namespace(namespace)
        with self._state_lock():
            current = self.get_envelope(namespace, default={})
            current_revision = int(current.get("revision", 1))
            if expected_revision is not None and expected_revision != current_revision:
                raise RunStoreError(
                    f"Concurrent state update detected for namespace '{namespace}'."
                )
            self._write_raw_json(
                namespace,
                {
                    "schema_version": self.SCHEMA_VERSION,
                    "revision": current_revision + 1,
                    "updated_at": self._utcnow_iso(),
                    "data": data,
                },
            )

    def update_json(
        self,
        namespace: str,
        updater: Callable[[Any], Any],
        default: Any | None = None,
    ) -> Any:
        default_value = {} if default is None else default
        last_error: Exception | None = None
        for _ in range(4):
            current = self.get_envelope(namespace, default=default_value)
            updated = updater(current.get("data", default_value))
            try:
                self.set_json(namespace, updated, expected_revision=int(current.get("revision", 1)))
                return updated
            except RunStoreError as exc:
                last_error = exc
                if "Concurrent state update detected" not in str(exc):
                    raise
                time.sleep(0.01)
        raise RunStoreError(str(last_error) if last_error else "State update failed.")

    # Runs

    def _runs(self) -> dict[str, Any]:
        payload = self.get_json("runs", default={})
        return payload if isinstance(payload, dict) else {}

    def create_run(self, run: AgentRun) -> AgentRun:
        def _updater(payload: Any) -> dict[str, Any]:
            runs = payload if isinstance(payload, dict) else {}
            if run.id in runs:
                raise RunStoreError(f"Run already exists: {run.id}")
            runs[run.id] = run.to_dict()
            return runs

        self.update_json("runs", _updater, default={})
        return run

    def get_run(self, run_id: str) -> AgentRun | None:
        payload = self._runs().get(run_id)
        if not isinstance(payload, dict):
            return None
        return AgentRun.from_dict(payload)

    def update_run(self, run_id: str, mutate: Callable[[AgentRun], None]) -> AgentRun:
        """Apply ``mutate`` to the stored run and persist it, stamping ``updated_at``."""
        result: dict[str, AgentRun] = {}

        def _updater(payload: Any) -> dict[str, Any]:
            runs = payload if isinstance(payload, dict) else {}
            current = runs.get(run_id)
            if not isinstance(current, dict):
                raise RunStoreError(f"Run not found: {run_id}")
            run = AgentRun.from_dict(current)
            mutate(run)
            run.updated_at = self._utcnow_iso()
            runs[run_id] = run.to_dict()
            result["run"] = run
            return runs

        self.update_json("runs", _updater, default={})
        return result["run"]

    def list_runs(
        self,
        *,
        statuses: Iterable[str] | None = None,
        limit: int | None = None,
    ) -> list[AgentRun]:
        """Newest first; runs created within the same second keep insertion order reversed."""
        wanted = set(statuses) if statuses is not None else None
        ordered = [
            (position, AgentRun.from_dict(item))
            for position, item in enumerate(self._runs().values())
            if isinstance(item, dict) and (wanted is None or item.get("status") in wanted)
        ]
        ordered.sort(key=lambda pair: (pair[1].created_at, pair[0]), reverse=True)
        runs = [run for _, run in ordered]
        if limit is not None:
            runs = runs[: max(0, limit)]
        return runs

    def oldest_queued_run(self) -> AgentRun | None:
        queued = self.list_runs(statuses=["queued"])
        return queued[-1] if queued else None

    def stale_running_runs(self, older_than: datetime) -> list[AgentRun]:
        stale: list[AgentRun] = []
        for run in self.list_runs(statuses=["running"]):
            try:
                updated = datetime.fromisoformat(run.updated_at)
            except ValueError:
                stale.append(run)
                continue
            if updated.tzinfo is None:
                updated = updated.replace(tzinfo=UTC)
            if updated < older_than:
                stale.append(run)
        return stale

    def artifact_dir(self, run_id: str) -> Path:
        return self.artifacts_root / run_id

    def delete_runs(self, run_ids: Iterable[str]) -> int:
        targets = set(run_ids)
        if not targets:
            return 0
        deleted: list[str] = []

        def _updater(payload: Any) -> dict[str, Any]:
            runs = payload if isinstance(payload, dict) else {}
            deleted.clear()
            for run_id in targets:
                if run_id in runs:
                    del runs[run_id]
                    deleted.append(run_id)
            return runs

        self.update_json("runs", _updater, default={})
        if self.tables_ready:
            self.update_json(
                "memory",
                lambda payload: [
                    item
                    for item in (payload if isinstance(payload, list) else [])
                    if not (isinstance(item, dict) and item.get("run_id") in targets)
                ],
                default=[],
            )
            for namespace in ("audit", "browser_logs", "snapshots"):
                self.update_json(
                    namespace,
                    lambda payload: {
                        key: value
                        for key, value in (payload if isinstance(payload, dict) else {}).items()
                        if key not in targets
                    },
                    default={},
                )
        for run_id in deleted:
            shutil.rmtree(self.artifact_dir(run_id), ignore_errors=True)
        return len(deleted)

    # Memory

    def add_memory(self, item: MemoryItem) -> None:
        if not self.tables_ready:
            return

        def _updater(payload: Any) -> list[dict[str, Any]]:
            items = payload if isinstance(payload, list) else []
            items.append(item.to_dict())
            return items

        self.update_json("memory", _updater, default=[])

    def list_memory(
        self,
        *,
        run_id: str | None = None,
        scope: str | None = None,
    ) -> list[MemoryItem]:
        if not self.tables_ready:
            return []
        payload = self.get_json("memory", default=[])
        items = payload if isinstance(payload, list) else []
        result: list[MemoryItem] = []
        for raw in items:
            if not isinstance(raw, dict):
                continue
            if run_id is not None and raw.get("run_id") != run_id:
                continue
            if scope is not None and raw.get("scope") != scope:
                continue
            result.append(MemoryItem.from_dict(raw))
        return result

    # Audit and browser sinks

    def _append_per_run(self, namespace: str, run_id: str, record: dict[str, Any]) -> None:
        if not self.tables_ready:
            return

        def _updater(payload: Any) -> dict[str, Any]:
            grouped = payload if isinstance(payload, dict) else {}
            entries = grouped.get(run_id)
            if not isinstance(entries, list):
                entries = []
            entries.append(record)
            grouped[run_id] = entries
            return grouped

        self.update_json(namespace, _updater, default={})

    def _list_per_run(self, namespace: str, run_id: str) -> list[dict[str, Any]]:
        if not self.tables_ready:
            return []
        payload = self.get_json(namespace, default={})
        grouped = payload if isinstance(payload, dict) else {}
        entries = grouped.get(run_id)
        if not isinstance(entries, list):
            return []
        return [entry for entry in entries if isinstance(entry, dict)]

    def add_audit(self, entry: AuditEntry) -> None:
        self._append_per_run("audit", entry.run_id, entry.to_dict())

    def list_audit(self, run_id: str) -> list[dict[str, Any]]:
        return self._list_per_run("audit", run_id)

    def add_browser_log(self, log: BrowserLog) -> None:
        self._append_per_run("browser_logs", log.run_id, log.to_dict())

    def add_snapshot(self, snapshot: BrowserSnapshot) -> None:
        self._append_per_run("snapshots", snapshot.run_id, snapshot.to_dict())

    def recent_browser_logs(self, run_id: str, limit: int = 20) -> list[dict[str, Any]]:
        return self._list_per_run("browser_logs", run_id)[-limit:]

    def latest_snapshot(self, run_id: str) -> dict[str, Any] | None:
        snapshots = self._list_per_run("snapshots", run_id)
        return snapshots[-1] if snapshots else None

    def count_browser_logs(self, run_id: str) -> int:
        return len(self._list_per_run("browser_logs", run_id))

    def count_snapshots(self, run_id: str) -> int:
        return len(self._list_per_run("snapshots", run_id))
