from __future__ import annotations

from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from pathlib import Path
import json
import sqlite3
import threading
from typing import cast

from mergegate.models import TASK_STATUSES, Task, TaskMetadata, TaskStatus


_NOW_SQL = "strftime('%Y-%m-%dT%H:%M:%fZ', 'now')"


class TaskNotFoundError(KeyError):
    def __init__(self, task_id: str) -> None:
        super().__init__(task_id)
        self.task_id = task_id

    def __str__(self) -> str:
        return f"Task {self.task_id} not found"


class TaskConflictError(RuntimeError):
    """A compare-and-write found the task changed underneath the caller."""


class StateStore:
    """Sqlite-backed task store.

    Every write is a single transaction that reads the current row, applies the
    patch and writes it back, so a sweep's auto-close and a concurrent manual
    transition can never interleave inside one update.
    """

    def __init__(self, db_path: Path) -> None:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db_path = db_path
        self._lock = threading.Lock()
        self._init_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._db_path, timeout=30)
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS tasks (
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    status TEXT NOT NULL,
                    assignee TEXT NULL,
                    reviewer TEXT NULL,
                    metadata_json TEXT NOT NULL DEFAULT '{{}}',
                    version INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL DEFAULT ({_NOW_SQL}),
                    updated_at TEXT NOT NULL DEFAULT ({_NOW_SQL})
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status)")

    def create_task(
        self,
        task_id: str,
        title: str,
        *,
        status: TaskStatus = "todo",
        assignee: str | None = None,
        reviewer: str | None = None,
        metadata: Mapping[str, object] | None = None,
    ) -> Task:
        _require_status(status)
        metadata_json = json.dumps(dict(metadata or {}), sort_keys=True)
        with self._lock, self._connect() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO tasks(id, title, status, assignee, reviewer, metadata_json)
                    VALUES(?, ?, ?, ?, ?, ?)
                    """,
                    (task_id, title, status, assignee, reviewer, metadata_json),
                )
            except sqlite3.IntegrityError as exc:
                raise TaskConflictError(f"Task {task_id} already exists") from exc
            row = _select_task_row(conn, task_id)
        assert row is not None
        return _parse_task_row(row)

    def get_task(self, task_id: str) -> Task | None:
        with self._lock, self._connect() as conn:
            row = _select_task_row(conn, task_id)
        if row is None:
            return None
        return _parse_task_row(row)

    def require_task(self, task_id: str) -> Task:
        task = self.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def list_tasks(self, *, status: TaskStatus | None = None) -> tuple[Task, ...]:
        with self._lock, self._connect() as conn:
            if status is None:
                rows = conn.execute(f"SELECT {_TASK_COLUMNS} FROM tasks ORDER BY id ASC").fetchall()
            else:
                _require_status(status)
                rows = conn.execute(
                    f"SELECT {_TASK_COLUMNS} FROM tasks WHERE status = ? ORDER BY id ASC",
                    (status,),
                ).fetchall()
        return tuple(_parse_task_row(row) for row in rows)

    def update_task(
        self,
        task_id: str,
        *,
        status: TaskStatus | None = None,
        metadata: Mapping[str, object] | None = None,
        expected_version: int | None = None,
        expected_status: TaskStatus | None = None,
    ) -> Task:
        """Apply a status change and/or metadata patch as one compare-and-write.

        The metadata patch is merged key by key over the stored map; a ``None``
        value removes the key. ``expected_version`` and ``expected_status`` are
        checked against the stored row inside the same transaction and raise
        ``TaskConflictError`` on mismatch, in which case nothing is written.
        """
        if status is not None:
            _require_status(status)
        with self._lock, self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = _select_task_row(conn, task_id)
            if row is None:
                raise TaskNotFoundError(task_id)
            current = _parse_task_row(row)
            if expected_version is not None and current.version != expected_version:
                raise TaskConflictError(
                    f"Task {task_id} changed concurrently "
                    f"(expected version {expected_version}, found {current.version})"
                )
            if expected_status is not None and current.status != expected_status:
                raise TaskConflictError(
                    f"Task {task_id} is {current.status}, expected {expected_status}"
                )

            merged = merge_metadata(current.metadata.to_dict(), metadata or {})
            conn.execute(
                f"""
                UPDATE tasks
                SET status = ?,
                    metadata_json = ?,
                    version = version + 1,
                    updated_at = {_NOW_SQL}
                WHERE id = ? AND version = ?
                """,
                (
                    status or current.status,
                    json.dumps(merged, sort_keys=True),
                    task_id,
                    current.version,
                ),
            )
            updated = _select_task_row(conn, task_id)
        assert updated is not None
        return _parse_task_row(updated)


def merge_metadata(
    current: Mapping[str, object], patch: Mapping[str, object]
) -> dict[str, object]:
    merged = dict(current)
    for key, value in patch.items():
        if value is None:
            merged.pop(key, None)
        else:
            merged[key] = value
    return merged


_TASK_COLUMNS = (
    "id, title, status, assignee, reviewer, metadata_json, version, created_at, updated_at"
)


def _select_task_row(conn: sqlite3.Connection, task_id: str) -> tuple[object, ...] | None:
    return conn.execute(
        f"SELECT {_TASK_COLUMNS} FROM tasks WHERE id = ?",
        (task_id,),
    ).fetchone()


def _parse_task_row(row: tuple[object, ...]) -> Task:
    (
        task_id,
        title,
        status,
        assignee,
        reviewer,
        metadata_json,
        version,
        created_at,
        updated_at,
    ) = row
    if not isinstance(task_id, str) or not isinstance(title, str):
        raise RuntimeError("Invalid task row: id/title")
    if not isinstance(metadata_json, str) or not isinstance(version, int):
        raise RuntimeError(f"Invalid task row for {task_id}: metadata/version")
    raw_metadata = json.loads(metadata_json)
    if not isinstance(raw_metadata, dict):
        raise RuntimeError(f"Invalid task row for {task_id}: metadata must be an object")
    return Task(
        id=task_id,
        title=title,
        status=_parse_status(status),
        assignee=assignee if isinstance(assignee, str) else None,
        reviewer=reviewer if isinstance(reviewer, str) else None,
        metadata=TaskMetadata.from_dict(cast(dict[str, object], raw_metadata)),
        version=version,
        created_at=str(created_at),
        updated_at=str(updated_at),
    )


def _parse_status(value: object) -> TaskStatus:
    if not isinstance(value, str) or value not in TASK_STATUSES:
        raise RuntimeError(f"Invalid task status: {value!r}")
    return cast(TaskStatus, value)


def _require_status(status: str) -> None:
    if status not in TASK_STATUSES:
        raise ValueError(f"Unknown task status: {status!r}")
