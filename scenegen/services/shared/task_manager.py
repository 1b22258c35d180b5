"""SQLite-backed task tracking for scene generation jobs.

Each background ``generate`` call gets one row.  The row outlives the
in-process job so a client can still read the final state (and the seed that
was used) after a restart.
"""
from __future__ import annotations

import asyncio
import json
import sqlite3
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = {
    TaskStatus.COMPLETE, TaskStatus.FAILED, TaskStatus.TIMED_OUT, TaskStatus.CANCELLED,
}


@dataclass
class TaskState:
    task_id: str
    task_type: str
    status: TaskStatus
    params: Dict[str, Any]
    stage: str = ""
    percent: float = 0.0
    message: str = ""
    result: Dict[str, Any] = field(default_factory=dict)
    error: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class TaskManager:
    """SQLite-backed task manager.

    A connection is opened per operation with ``check_same_thread=False`` so
    FastAPI background threads and the event loop can share one manager.
    """

    _CREATE_TABLE = """
    CREATE TABLE IF NOT EXISTS tasks (
        task_id    TEXT PRIMARY KEY,
        task_type  TEXT NOT NULL,
        status     TEXT NOT NULL DEFAULT 'pending',
        params     TEXT NOT NULL DEFAULT '{}',
        stage      TEXT NOT NULL DEFAULT '',
        percent    REAL NOT NULL DEFAULT 0.0,
        message    TEXT NOT NULL DEFAULT '',
        result     TEXT NOT NULL DEFAULT '{}',
        error      TEXT NOT NULL DEFAULT '',
        created_at REAL NOT NULL,
        updated_at REAL NOT NULL
    )
    """

    def __init__(self, db_path: str = "data/tasks.db"):
        self._db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    # ── private ──────────────────────────────────────────────────────────────

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute(self._CREATE_TABLE)

    def _finish(self, task_id: str, status: TaskStatus, **columns: Any) -> None:
        # Terminal rows are never rewritten: a late worker update must not
        # resurrect a cancelled task.
        assignments = ", ".join(f"{name}=?" for name in columns)
        sets = f"status=?, {assignments}, updated_at=?" if columns else "status=?, updated_at=?"
        values = [status.value, *columns.values(), time.time(), task_id]
        with self._connect() as conn:
            conn.execute(
                f"UPDATE tasks SET {sets} WHERE task_id=? "
                "AND status IN ('pending', 'running')",
                values,
            )

    @staticmethod
    def _row_to_state(row: sqlite3.Row) -> TaskState:
        return TaskState(
            task_id=row["task_id"],
            task_type=row["task_type"],
            status=TaskStatus(row["status"]),
            params=json.loads(row["params"]),
            stage=row["stage"],
            percent=row["percent"],
            message=row["message"],
            result=json.loads(row["result"]),
            error=row["error"],
        )

    # ── public ───────────────────────────────────────────────────────────────

    def create_task(self, task_type: str, params: Dict[str, Any]) -> str:
        """Create a new task and return its ID."""
        task_id = str(uuid.uuid4())
        now = time.time()
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO tasks
                   (task_id, task_type, status, params, created_at, updated_at)
                   VALUES (?, ?, 'pending', ?, ?, ?)""",
                (task_id, task_type, json.dumps(params), now, now),
            )
        return task_id

    def update_progress(self, task_id: str, stage: str, percent: float, message: str) -> None:
        """Record progress and move a pending/running task to RUNNING."""
        with self._connect() as conn:
            conn.execute(
                """UPDATE tasks
                   SET status='running', stage=?, percent=?, message=?, updated_at=?
                   WHERE task_id=? AND status IN ('pending', 'running')""",
                (stage, percent, message, time.time(), task_id),
            )

    def complete_task(self, task_id: str, result: Dict[str, Any]) -> None:
        """Mark task as complete and store result."""
        self._finish(task_id, TaskStatus.COMPLETE, percent=100.0, result=json.dumps(result))

    def fail_task(self, task_id: str, error: str, stage: str = "") -> None:
        """Mark task as failed, recording the stage that failed."""
        if stage:
            self._finish(task_id, TaskStatus.FAILED, error=error, stage=stage)
        else:
            self._finish(task_id, TaskStatus.FAILED, error=error)

    def time_out_task(self, task_id: str, message: str) -> None:
        """Mark task as timed out; the engine may still finish the job later."""
        self._finish(task_id, TaskStatus.TIMED_OUT, message=message)

    def cancel_task(self, task_id: str) -> None:
        """Cancel a task."""
        self._finish(task_id, TaskStatus.CANCELLED)

    def get_status(self, task_id: str) -> Optional[TaskState]:
        """Return current task state, or None if not found."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM tasks WHERE task_id=?", (task_id,)
            ).fetchone()
        if row is None:
            return None
        return self._row_to_state(row)

    def list_active(self) -> List[TaskState]:
        """Return all tasks that are pending or running."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM tasks WHERE status IN ('pending', 'running') ORDER BY created_at"
            ).fetchall()
        return [self._row_to_state(r) for r in rows]


# ── module-level singleton ────────────────────────────────────────────────────

_task_manager: Optional[TaskManager] = None

# task_id → event the running job waits on; lives only in this process.
_cancel_events: Dict[str, asyncio.Event] = {}


def get_task_manager(db_path: Optional[str] = None) -> TaskManager:
    """Return the shared TaskManager (``paths.tasks_db`` unless ``db_path`` given)."""
    global _task_manager
    if _task_manager is None:
        from scenegen.services.shared.config import get_config
        _task_manager = TaskManager(db_path or str(get_config().get("paths.tasks_db", "data/tasks.db")))
    return _task_manager


def reset_task_manager() -> None:
    """Clear the singleton and cancel registry (mainly for testing)."""
    global _task_manager
    _task_manager = None
    _cancel_events.clear()


def register_cancel(task_id: str) -> asyncio.Event:
    """Create the cancel event a background job for ``task_id`` will watch."""
    event = asyncio.Event()
    _cancel_events[task_id] = event
    return event


def request_cancel(task_id: str) -> bool:
    """Set the job's cancel event.  False if no live job is registered."""
    event = _cancel_events.get(task_id)
    if event is None:
        return False
    event.set()
    return True


def release_cancel(task_id: str) -> None:
    _cancel_events.pop(task_id, None)
