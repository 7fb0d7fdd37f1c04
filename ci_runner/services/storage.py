from __future__ import annotations

import copy
import json
import string
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from ci_runner.constants import DEFAULT_CONFIG, DEFAULT_DB_PATH
from ci_runner.errors import RunNotFoundError
from ci_runner.schemas import TestFramework, TestRunStatus

STATE_VERSION = 1

# Highest priority first when folding the latest status of several directories.
STATUS_PRIORITY = (
    TestRunStatus.failed,
    TestRunStatus.running,
    TestRunStatus.pending,
)


def _utcnow() -> str:
    """Return timezone-aware ISO timestamp."""
    return datetime.now(tz=timezone.utc).isoformat()


def _default_state() -> Dict[str, Any]:
    return {
        "version": STATE_VERSION,
        "counters": {"runs": 0},
        "runs": {},
        "config": dict(DEFAULT_CONFIG),
    }


def _placeholder_count(template: str, key: str) -> int:
    """Count ``{}``/``{0}`` fields; any other field name is rejected."""
    try:
        fields = [field for _text, field, _spec, _conv in string.Formatter().parse(template) if field is not None]
    except ValueError as exc:
        raise ValueError(f"{key} is not a valid template: {exc}") from exc
    for field in fields:
        if field not in ("", "0"):
            raise ValueError(f"{key} only accepts {{}} or {{0}} placeholders, got {{{field}}}.")
    return len(fields)


class LocalJsonStorage:
    """Small keyed-collection store persisted to a single JSON document.

    Collections map string keys to records. Every mutation happens under one
    lock and is flushed to disk before the lock is released; reads hand out
    deep copies so callers never share a record with a concurrent writer.
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path).resolve()
        self._lock = threading.RLock()
        self._state = self._load()

    def _load(self) -> Dict[str, Any]:
        if not self._path.exists():
            return _default_state()
        with self._path.open("r", encoding="utf-8") as handle:
            state = json.load(handle)
        state.setdefault("runs", {})
        counters = state.setdefault("counters", {})
        known = [int(key) for key in state["runs"]]
        counters["runs"] = max([int(counters.get("runs", 0))] + known)
        state_config = state.setdefault("config", {})
        for key, value in DEFAULT_CONFIG.items():
            state_config.setdefault(key, value)
        return state

    def _persist(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_name(self._path.name + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            json.dump(self._state, handle, indent=2, sort_keys=True)
        tmp_path.replace(self._path)

    def _collection(self, name: str) -> Dict[str, Any]:
        return self._state.setdefault(name, {})

    def get_config(self) -> Dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self._state.setdefault("config", dict(DEFAULT_CONFIG)))

    def update_config(self, values: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            config = self._state.setdefault("config", dict(DEFAULT_CONFIG))
            config.update(values)
            self._persist()
            return copy.deepcopy(config)

    def insert(self, collection: str, build: Callable[[int], Dict[str, Any]]) -> Dict[str, Any]:
        """Allocate the next integer key for ``collection`` and store ``build(key)``."""
        with self._lock:
            counters = self._state.setdefault("counters", {})
            item_id = int(counters.get(collection, 0)) + 1
            counters[collection] = item_id
            payload = build(item_id)
            self._collection(collection)[str(item_id)] = payload
            self._persist()
            return copy.deepcopy(payload)

    def mutate(
        self,
        collection: str,
        item_id: int,
        change: Callable[[Dict[str, Any]], Any],
    ) -> Any:
        """Apply ``change`` to a stored record atomically and return its result."""
        with self._lock:
            record = self._collection(collection).get(str(item_id))
            if record is None:
                raise RunNotFoundError(item_id)
            result = change(record)
            self._persist()
            return copy.deepcopy(result)

    def get(self, collection: str, item_id: int) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._collection(collection).get(str(item_id))
            return copy.deepcopy(record) if record is not None else None

    def delete(self, collection: str, item_id: int) -> None:
        with self._lock:
            if str(item_id) in self._collection(collection):
                del self._collection(collection)[str(item_id)]
                self._persist()

    def list(self, collection: str) -> List[Dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(list(self._collection(collection).values()))

    def filter(self, collection: str, *, key: str, value: Any) -> List[Dict[str, Any]]:
        return [item for item in self.list(collection) if item.get(key) == value]


class RunRepository:
    """Test run registry and runner configuration on top of LocalJsonStorage."""

    def __init__(self, storage: LocalJsonStorage) -> None:
        self._storage = storage

    # -- Config -------------------------------------------------------------------
    def get_config(self) -> Dict[str, Any]:
        config = self._storage.get_config()
        merged = dict(DEFAULT_CONFIG)
        merged.update({k: v for k, v in config.items() if k in DEFAULT_CONFIG})
        merged["poll_interval_seconds"] = float(merged["poll_interval_seconds"])
        merged["process_priority"] = int(merged["process_priority"])
        merged["delete_source_artifacts"] = bool(merged["delete_source_artifacts"])
        return merged

    def update_config(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        updates: Dict[str, Any] = {}
        for key, value in payload.items():
            if key not in DEFAULT_CONFIG:
                raise ValueError(f"Unknown configuration key '{key}'.")
            if value is None and key != "test_name_rewrite_rule":
                continue
            updates[key] = value

        if "default_test_framework" in updates:
            framework = TestFramework.parse(updates["default_test_framework"])
            if framework is None:
                raise ValueError("Default test framework cannot be blank.")
            updates["default_test_framework"] = framework.value

        rule = updates.get("test_name_rewrite_rule")
        if rule is not None:
            if not str(rule).strip():
                updates["test_name_rewrite_rule"] = None
            elif _placeholder_count(str(rule), "Test name rewrite rule") != 1:
                raise ValueError("Test name rewrite rule must contain exactly one placeholder.")

        template = updates.get("netcore_test_result_file")
        if template is not None and _placeholder_count(str(template), ".NET Core result file name") > 1:
            raise ValueError(".NET Core result file name accepts at most one placeholder.")

        if "poll_interval_seconds" in updates and float(updates["poll_interval_seconds"]) <= 0:
            raise ValueError("Poll interval must be a positive number of seconds.")

        for key in ("test_root_directory", "archive_root", "test_host_executable", "netcore_host_executable"):
            if key in updates and not str(updates[key]).strip():
                raise ValueError(f"{key} cannot be blank.")

        self._storage.update_config(updates)
        return self.get_config()

    # -- Runs ---------------------------------------------------------------------
    def create_run(
        self,
        working_directory: str,
        assemblies: Iterable[str],
        framework: Optional[TestFramework] = None,
        suffixes: Optional[Iterable[str]] = None,
    ) -> Dict[str, Any]:
        now = _utcnow()
        assembly_list = list(assemblies)
        suffix_list = list(suffixes) if suffixes is not None else [""]

        def _build(run_id: int) -> Dict[str, Any]:
            return {
                "id": run_id,
                "status": TestRunStatus.pending.value,
                "working_directory": working_directory,
                "test_assembly": assembly_list,
                "test_framework": framework.value if framework else None,
                "suffix": suffix_list or [""],
                "message": None,
                "artifacts": [],
                "created_at": now,
                "updated_at": now,
                "started_at": None,
                "completed_at": None,
            }

        return self._storage.insert("runs", _build)

    def get_run(self, run_id: int) -> Optional[Dict[str, Any]]:
        return self._storage.get("runs", run_id)

    def list_runs(self, *, working_directory: Optional[str] = None) -> List[Dict[str, Any]]:
        if working_directory is not None:
            items = self._storage.filter("runs", key="working_directory", value=working_directory)
        else:
            items = self._storage.list("runs")
        return sorted(items, key=lambda it: it["id"], reverse=True)

    def update_status(
        self,
        run_id: int,
        status: TestRunStatus,
        *,
        message: Optional[str] = None,
    ) -> TestRunStatus:
        """Set a run's status and return the status it had before."""
        status = TestRunStatus(status)

        def _apply(record: Dict[str, Any]) -> str:
            previous = record["status"]
            now = _utcnow()
            record["status"] = status.value
            record["updated_at"] = now
            if status == TestRunStatus.running:
                record["started_at"] = now
            elif status.is_terminal:
                record["completed_at"] = now
            if message is not None:
                record["message"] = message
            return previous

        return TestRunStatus(self._storage.mutate("runs", run_id, _apply))

    def add_artifacts(self, run_id: int, artifacts: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        def _apply(record: Dict[str, Any]) -> List[Dict[str, Any]]:
            existing = record.setdefault("artifacts", [])
            known = {item["path"] for item in existing}
            existing.extend(item for item in artifacts if item["path"] not in known)
            record["updated_at"] = _utcnow()
            return existing

        return self._storage.mutate("runs", run_id, _apply)

    def delete_run(self, run_id: int) -> None:
        self._storage.delete("runs", run_id)

    # -- Status -------------------------------------------------------------------
    def _latest_by_directory(self) -> Dict[str, Dict[str, Any]]:
        latest: Dict[str, Dict[str, Any]] = {}
        for run in self._storage.list("runs"):
            directory = run.get("working_directory")
            current = latest.get(directory)
            if current is None or run["id"] > current["id"]:
                latest[directory] = run
        return latest

    def most_recent_status(self, working_directory: Optional[str]) -> TestRunStatus:
        if not working_directory:
            return TestRunStatus.failed
        run = self._latest_by_directory().get(working_directory)
        if run is None:
            return TestRunStatus.failed
        return TestRunStatus(run["status"])

    def most_recent_status_across(self, working_directories: Optional[Iterable[str]]) -> TestRunStatus:
        if working_directories is None:
            return TestRunStatus.failed
        wanted = {directory for directory in working_directories}
        if not wanted:
            return TestRunStatus.failed
        latest = self._latest_by_directory()
        statuses = {TestRunStatus(run["status"]) for directory, run in latest.items() if directory in wanted}
        for status in STATUS_PRIORITY:
            if status in statuses:
                return status
        return TestRunStatus.succeeded


def build_repository(path: Optional[Path] = None) -> RunRepository:
    return RunRepository(LocalJsonStorage(path or Path(DEFAULT_DB_PATH)))
