"""Durable storage layer for runs, gate results, and validator results."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import shutil
import sqlite3
import tempfile
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, List, Optional

from .schema import GateResult, Run, RunResults, RunStatus, ValidatorResult

DEFAULT_DB_PATH = Path(".gatekeeper/gatekeeper.sqlite")
LOGGER = logging.getLogger(__name__)

_RUN_COLUMNS = (
    "id",
    "output_id",
    "run_type",
    "contract_run_id",
    "parent_run_id",
    "project_path",
    "base_ref",
    "target_ref",
    "task_prompt",
    "manifest_json",
    "test_file_path",
    "danger_mode",
    "bypassed_validators",
    "gate_numbers",
    "status",
    "current_gate",
    "passed",
    "failed_at",
    "failed_validator_code",
    "failure_message",
    "commit_hash",
    "commit_message",
    "committed_at",
    "created_at",
    "started_at",
    "completed_at",
)
_JSON_RUN_COLUMNS = {"bypassed_validators", "gate_numbers"}
_TIME_RUN_COLUMNS = {"committed_at", "created_at", "started_at", "completed_at"}


class RunNotFoundError(LookupError):
    """Raised when a run id does not exist in the store."""


def _as_iso(timestamp: datetime) -> str:
    """Serialise a timestamp to a timezone-aware ISO 8601 string."""
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc).isoformat()


def _from_iso(value: str) -> datetime:
    """Parse an ISO 8601 timestamp produced by `_as_iso`."""
    return datetime.fromisoformat(value)


def _optional_iso(value: Optional[datetime]) -> Optional[str]:
    return _as_iso(value) if value is not None else None


def _dump_json(data: Any, *, default: Any) -> str:
    """Convert arbitrary JSON-like payloads into a persisted string."""
    if data is None:
        serialisable = default
    else:
        if isinstance(data, (set, frozenset)):
            serialisable = sorted(data)
        else:
            serialisable = data
    return json.dumps(serialisable, default=str)


def _load_json(value: Optional[str], *, default: Any) -> Any:
    """Decode JSON columns while falling back to the provided default."""
    if not value:
        return default
    data = json.loads(value)
    if data is None:
        return default
    return data


def _optional_bool(value: Any) -> Optional[bool]:
    if value is None:
        return None
    return bool(value)


class RunStore:
    """SQLite-backed persistence for validation runs."""

    @staticmethod
    def _is_writable(path: Path) -> bool:
        parent = path.parent
        try:
            parent.mkdir(parents=True, exist_ok=True)
        except OSError:
            return False
        if path.exists():
            return os.access(path, os.W_OK)
        return os.access(parent, os.W_OK)

    @staticmethod
    def _fallback_db_path(source: Path) -> Path:
        digest = hashlib.sha1(source.as_posix().encode("utf-8")).hexdigest()[:12]
        fallback_dir = Path(tempfile.gettempdir()) / "gatekeeper" / "db" / digest
        fallback_dir.mkdir(parents=True, exist_ok=True)
        return fallback_dir / source.name

    @classmethod
    def _resolve_db_path(cls, requested: Path) -> Path:
        resolved = requested.resolve()
        if cls._is_writable(resolved):
            return resolved
        fallback = cls._fallback_db_path(resolved)
        if not fallback.exists():
            if resolved.exists() and os.access(resolved, os.R_OK):
                try:
                    shutil.copy2(resolved, fallback)
                except OSError:
                    fallback.touch(exist_ok=True)
            else:
                fallback.touch(exist_ok=True)
        if not cls._is_writable(fallback):
            raise OSError(f"Unable to locate writable database path (attempted {requested})")
        return fallback

    def __init__(self, db_path: Path | str = DEFAULT_DB_PATH) -> None:
        requested_path = Path(db_path)
        self.db_path = self._resolve_db_path(requested_path)
        if self.db_path != requested_path.resolve():
            LOGGER.warning(
                "Database path %s is not writable; using fallback %s",
                requested_path,
                self.db_path,
            )
        self._lock = threading.RLock()
        self._conn: sqlite3.Connection | None = self._open_connection()
        self._bootstrap()

    def close(self) -> None:
        if getattr(self, "_conn", None) is not None:
            try:
                self._conn.close()
            finally:
                self._conn = None

    def __enter__(self) -> "RunStore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def _open_connection(self) -> sqlite3.Connection:
        # Runs execute on worker threads; access is serialised through ``_lock``.
        connection = sqlite3.connect(str(self.db_path), check_same_thread=False)
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON")
        return connection

    @classmethod
    def from_settings(cls, settings: Any) -> "RunStore":
        return cls(settings.db_path)

    def _bootstrap(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS runs (
                id TEXT PRIMARY KEY,
                output_id TEXT,
                run_type TEXT NOT NULL,
                contract_run_id TEXT,
                parent_run_id TEXT,
                project_path TEXT NOT NULL,
                base_ref TEXT NOT NULL,
                target_ref TEXT NOT NULL,
                task_prompt TEXT NOT NULL,
                manifest_json TEXT,
                test_file_path TEXT,
                danger_mode INTEGER NOT NULL DEFAULT 0,
                bypassed_validators TEXT NOT NULL,
                gate_numbers TEXT NOT NULL,
                status TEXT NOT NULL,
                current_gate INTEGER,
                passed INTEGER,
                failed_at INTEGER,
                failed_validator_code TEXT,
                failure_message TEXT,
                commit_hash TEXT,
                commit_message TEXT,
                committed_at TEXT,
                created_at TEXT NOT NULL,
                started_at TEXT,
                completed_at TEXT
            );
            CREATE INDEX IF NOT EXISTS idx_runs_contract
                ON runs(contract_run_id);
            CREATE INDEX IF NOT EXISTS idx_runs_parent
                ON runs(parent_run_id);

            CREATE TABLE IF NOT EXISTS gate_results (
                run_id TEXT NOT NULL,
                gate_number INTEGER NOT NULL,
                gate_name TEXT NOT NULL,
                status TEXT NOT NULL,
                passed INTEGER NOT NULL,
                passed_count INTEGER NOT NULL,
                failed_count INTEGER NOT NULL,
                warning_count INTEGER NOT NULL,
                skipped_count INTEGER NOT NULL,
                total_validators INTEGER NOT NULL,
                started_at TEXT NOT NULL,
                completed_at TEXT,
                duration_ms INTEGER NOT NULL,
                PRIMARY KEY (run_id, gate_number),
                FOREIGN KEY(run_id) REFERENCES runs(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS validator_results (
                run_id TEXT NOT NULL,
                gate_number INTEGER NOT NULL,
                code TEXT NOT NULL,
                name TEXT NOT NULL,
                sort_order INTEGER NOT NULL,
                status TEXT NOT NULL,
                passed INTEGER NOT NULL,
                is_hard_block INTEGER NOT NULL,
                bypassed INTEGER NOT NULL,
                message TEXT NOT NULL,
                details TEXT NOT NULL,
                evidence TEXT,
                metrics TEXT NOT NULL,
                findings TEXT NOT NULL,
                duration_ms INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                PRIMARY KEY (run_id, code),
                FOREIGN KEY(run_id) REFERENCES runs(id) ON DELETE CASCADE
            );
            CREATE INDEX IF NOT EXISTS idx_validator_results_gate
                ON validator_results(run_id, gate_number, sort_order);
            """
        )
        self._conn.commit()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

    # Run operations ------------------------------------------------------------------
    @staticmethod
    def _run_value(run: Run, column: str) -> Any:
        value = getattr(run, column)
        if column in _JSON_RUN_COLUMNS:
            return _dump_json(value, default=[])
        if column in _TIME_RUN_COLUMNS:
            return _optional_iso(value)
        if column in {"run_type", "status"}:
            return value.value
        if isinstance(value, bool):
            return int(value)
        return value

    def create_run(self, run: Run) -> Run:
        columns = ", ".join(_RUN_COLUMNS)
        placeholders = ", ".join("?" for _ in _RUN_COLUMNS)
        with self._transaction():
            self._conn.execute(
                f"INSERT INTO runs ({columns}) VALUES ({placeholders})",
                tuple(self._run_value(run, column) for column in _RUN_COLUMNS),
            )
        return run

    def update_run(self, run_id: str, **fields: Any) -> Run:
        """Apply ``fields`` to the stored run and return the updated record."""

        current = self.require_run(run_id)
        updated = Run.model_validate({**current.model_dump(), **fields})
        assignments = ", ".join(f"{column} = ?" for column in fields)
        with self._transaction():
            self._conn.execute(
                f"UPDATE runs SET {assignments} WHERE id = ?",
                (*(self._run_value(updated, column) for column in fields), run_id),
            )
        return updated

    def get_run(self, run_id: str) -> Optional[Run]:
        with self._lock:
            row = self._conn.execute("SELECT * FROM runs WHERE id = ?", (run_id,)).fetchone()
        if not row:
            return None
        return self._row_to_run(row)

    def require_run(self, run_id: str) -> Run:
        run = self.get_run(run_id)
        if run is None:
            raise RunNotFoundError(f"Run not found: {run_id}")
        return run

    def list_runs(self, *, statuses: Optional[List[RunStatus]] = None, limit: int | None = None) -> List[Run]:
        query = "SELECT * FROM runs"
        params: List[Any] = []
        if statuses:
            placeholders = ",".join("?" for _ in statuses)
            query += f" WHERE status IN ({placeholders})"
            params.extend(status.value for status in statuses)
        query += " ORDER BY created_at DESC"
        if limit:
            query += " LIMIT ?"
            params.append(int(limit))
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [self._row_to_run(row) for row in rows]

    def child_runs(self, run_id: str) -> List[Run]:
        """Return reruns and execution runs that descend from ``run_id``."""

        with self._lock:
            rows = self._conn.execute(
                """
                SELECT * FROM runs
                WHERE parent_run_id = ? OR contract_run_id = ?
                ORDER BY created_at ASC
                """,
                (run_id, run_id),
            ).fetchall()
        return [self._row_to_run(row) for row in rows]

    def _row_to_run(self, row: sqlite3.Row) -> Run:
        payload: dict[str, Any] = {}
        for column in _RUN_COLUMNS:
            value = row[column]
            if column in _JSON_RUN_COLUMNS:
                value = _load_json(value, default=[])
            elif column in _TIME_RUN_COLUMNS:
                value = _from_iso(value) if value else None
            elif column == "danger_mode":
                value = bool(value)
            elif column == "passed":
                value = _optional_bool(value)
            payload[column] = value
        return Run(**payload)

    # Gate result operations ----------------------------------------------------------
    def record_gate_result(self, result: GateResult) -> None:
        with self._transaction():
            self._conn.execute(
                """
                INSERT INTO gate_results (
                    run_id, gate_number, gate_name, status, passed, passed_count,
                    failed_count, warning_count, skipped_count, total_validators,
                    started_at, completed_at, duration_ms
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(run_id, gate_number) DO UPDATE SET
                    status = excluded.status,
                    passed = excluded.passed,
                    passed_count = excluded.passed_count,
                    failed_count = excluded.failed_count,
                    warning_count = excluded.warning_count,
                    skipped_count = excluded.skipped_count,
                    total_validators = excluded.total_validators,
                    completed_at = excluded.completed_at,
                    duration_ms = excluded.duration_ms
                """,
                (
                    result.run_id,
                    result.gate_number,
                    result.gate_name,
                    result.status.value,
                    int(result.passed),
                    result.passed_count,
                    result.failed_count,
                    result.warning_count,
                    result.skipped_count,
                    result.total_validators,
                    _as_iso(result.started_at),
                    _optional_iso(result.completed_at),
                    result.duration_ms,
                ),
            )

    def list_gate_results(self, run_id: str) -> List[GateResult]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM gate_results WHERE run_id = ? ORDER BY gate_number ASC",
                (run_id,),
            ).fetchall()
        return [
            GateResult(
                run_id=row["run_id"],
                gate_number=row["gate_number"],
                gate_name=row["gate_name"],
                status=row["status"],
                passed=bool(row["passed"]),
                passed_count=row["passed_count"],
                failed_count=row["failed_count"],
                warning_count=row["warning_count"],
                skipped_count=row["skipped_count"],
                total_validators=row["total_validators"],
                started_at=_from_iso(row["started_at"]),
                completed_at=_from_iso(row["completed_at"]) if row["completed_at"] else None,
                duration_ms=row["duration_ms"],
            )
            for row in rows
        ]

    # Validator result operations -----------------------------------------------------
    def record_validator_result(self, result: ValidatorResult) -> None:
        with self._transaction():
            self._conn.execute(
                """
                INSERT INTO validator_results (
                    run_id, gate_number, code, name, sort_order, status, passed,
                    is_hard_block, bypassed, message, details, evidence, metrics,
                    findings, duration_ms, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(run_id, code) DO UPDATE SET
                    status = excluded.status,
                    passed = excluded.passed,
                    is_hard_block = excluded.is_hard_block,
                    bypassed = excluded.bypassed,
                    message = excluded.message,
                    details = excluded.details,
                    evidence = excluded.evidence,
                    metrics = excluded.metrics,
                    findings = excluded.findings,
                    duration_ms = excluded.duration_ms
                """,
                (
                    result.run_id,
                    result.gate_number,
                    result.code,
                    result.name,
                    result.order,
                    result.status.value,
                    int(result.passed),
                    int(result.is_hard_block),
                    int(result.bypassed),
                    result.message,
                    _dump_json(result.details, default={}),
                    result.evidence,
                    _dump_json(result.metrics, default={}),
                    _dump_json(result.findings, default=[]),
                    result.duration_ms,
                    _as_iso(result.created_at),
                ),
            )

    def list_validator_results(self, run_id: str) -> List[ValidatorResult]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT * FROM validator_results
                WHERE run_id = ?
                ORDER BY gate_number ASC, sort_order ASC
                """,
                (run_id,),
            ).fetchall()
        return [
            ValidatorResult(
                run_id=row["run_id"],
                gate_number=row["gate_number"],
                code=row["code"],
                name=row["name"],
                order=row["sort_order"],
                status=row["status"],
                passed=bool(row["passed"]),
                is_hard_block=bool(row["is_hard_block"]),
                bypassed=bool(row["bypassed"]),
                message=row["message"],
                details=_load_json(row["details"], default={}),
                evidence=row["evidence"],
                metrics=_load_json(row["metrics"], default={}),
                findings=_load_json(row["findings"], default=[]),
                duration_ms=row["duration_ms"],
                created_at=_from_iso(row["created_at"]),
            )
            for row in rows
        ]

    def get_run_results(self, run_id: str) -> RunResults:
        run = self.require_run(run_id)
        return RunResults(
            run=run,
            gates=self.list_gate_results(run_id),
            validators=self.list_validator_results(run_id),
        )


__all__ = ["RunNotFoundError", "RunStore"]
