from __future__ import annotations

import json
import os
import time
from collections.abc import Callable
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from relay.errors import StateError

STATE_DIRNAME = ".relay"


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class StateStore:
    """Revisioned JSON documents under ``.relay/state``."""

    NAMESPACES = {"epics", "issues", "runs", "events"}
    SCHEMA_VERSION = 1

    def __init__(self, repo_root: Path) -> None:
        self.repo_root = repo_root.resolve()
        self.state_dir = self.repo_root / STATE_DIRNAME / "state"
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.lock_file = self.state_dir / ".lock"

    @property
    def runs_dir(self) -> Path:
        return self.repo_root / STATE_DIRNAME / "runs"

    @staticmethod
    def _validate_namespace(namespace: str) -> None:
        if namespace not in StateStore.NAMESPACES:
            raise StateError(f"Unsupported namespace: {namespace}")

    def _file(self, namespace: str) -> Path:
        return self.state_dir / f"{namespace}.json"

    @contextmanager
    def _lock(self, timeout_seconds: float = 3.0):
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > timeout_seconds:
                    raise StateError("Timed out waiting for state lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read_raw(self, namespace: str) -> Any:
        path = self._file(namespace)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return None

    def _write_raw(self, namespace: str, payload: Any) -> None:
        path = self._file(namespace)
        tmp = path.with_name(f".{path.name}.tmp-{os.getpid()}")
        tmp.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
        os.replace(tmp, path)

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
                "updated_at": raw_payload.get("updated_at") or utcnow_iso(),
                "data": raw_payload.get("data", default),
            }

        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 0 if raw_payload is None else 1,
            "updated_at": utcnow_iso(),
            "data": default if raw_payload is None else raw_payload,
        }

    def get_envelope(self, namespace: str, default: Any | None = None) -> dict[str, Any]:
        self._validate_namespace(namespace)
        default_value = {} if default is None else default
        return self._normalize_envelope(self._read_raw(namespace), default_value)

    def get_json(self, namespace: str, default: Any | None = None) -> Any:
        return self.get_envelope(namespace, default=default).get("data")

    def set_json(self, namespace: str, data: Any, expected_revision: int | None = None) -> None:
        self._validate_namespace(namespace)
        with self._lock():
            current = self.get_envelope(namespace, default={})
            current_revision = int(current.get("revision", 0))
            if expected_revision is not None and expected_revision != current_revision:
                raise StateError(f"Concurrent state update detected for namespace '{namespace}'.")
            self._write_raw(
                namespace,
                {
                    "schema_version": self.SCHEMA_VERSION,
                    "revision": current_revision + 1,
                    "updated_at": utcnow_iso(),
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
                self.set_json(namespace, updated, expected_revision=int(current["revision"]))
                return updated
            except StateError as exc:
                last_error = exc
                if "Concurrent state update detected" not in str(exc):
                    raise
                time.sleep(0.01)
        raise StateError(str(last_error) if last_error else "State update failed.")

    def get_epics(self) -> dict[str, dict[str, Any]]:
        payload = self.get_json("epics", default={})
        return payload if isinstance(payload, dict) else {}

    def put_epic(self, epic_id: str, record: dict[str, Any]) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            epics = payload if isinstance(payload, dict) else {}
            epics[epic_id] = record
            return epics

        self.update_json("epics", _updater, default={})

    def get_runs(self) -> dict[str, dict[str, Any]]:
        payload = self.get_json("runs", default={})
        return payload if isinstance(payload, dict) else {}

    def upsert_run(self, run_id: str, updates: dict[str, Any]) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            runs = payload if isinstance(payload, dict) else {}
            run = runs.get(run_id, {})
            if not isinstance(run, dict):
                run = {}
            run.update(updates)
            runs[run_id] = run
            return runs

        self.update_json("runs", _updater, default={})

    def get_events(self) -> dict[str, Any]:
        payload = self.get_json("events", default={})
        return payload if isinstance(payload, dict) else {}

    def record_event(self, event: dict[str, Any], *, keep: int = 200) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            metrics = payload if isinstance(payload, dict) else {}
            events = metrics.get("backend_events", [])
            if not isinstance(events, list):
                events = []
            entry = dict(event)
            entry["at"] = utcnow_iso()
            events.append(entry)
            metrics["backend_events"] = events[-keep:]
            name = event.get("event")
            if name == "backend_retry":
                metrics["retry_count"] = int(metrics.get("retry_count", 0)) + 1
            if name == "backend_escalated":
                metrics["escalation_count"] = int(metrics.get("escalation_count", 0)) + 1
            return metrics

        self.update_json("events", _updater, default={})
