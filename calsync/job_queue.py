from __future__ import annotations

import json
import sqlite3
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable

from calsync.models import utc_now


def _ts(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


@dataclass
class JobOptions:
    attempts: int = 3
    backoff_delay_seconds: float = 5.0
    keep_completed: int = 100
    keep_failed: int = 50


@dataclass
class Job:
    id: int
    queue: str
    name: str
    payload: dict[str, Any] = field(default_factory=dict)
    status: str = "waiting"
    attempts_made: int = 0
    max_attempts: int = 3
    backoff_delay_seconds: float = 5.0
    run_at: datetime | None = None
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "queue": self.queue,
            "name": self.name,
            "payload": self.payload,
            "status": self.status,
            "attempts_made": self.attempts_made,
            "max_attempts": self.max_attempts,
            "run_at": _ts(self.run_at) if self.run_at else None,
            "last_error": self.last_error,
        }


@dataclass
class RepeatableJob:
    key: str
    name: str
    every_seconds: float
    payload: dict[str, Any]
    next_run_at: datetime


class JobQueue:
    """Durable named job queue in SQLite.

    Jobs move ``waiting -> active -> completed | failed``; a failed attempt
    with attempts left goes back to ``waiting`` with exponential backoff.
    """

    def __init__(
        self,
        db_path: str,
        queue_name: str,
        options: JobOptions | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.queue_name = queue_name
        self.options = options or JobOptions()
        self.clock = clock
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS jobs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            queue TEXT NOT NULL,
            name TEXT NOT NULL,
            payload_json TEXT NOT NULL,
            status TEXT NOT NULL,
            attempts_made INTEGER NOT NULL DEFAULT 0,
            max_attempts INTEGER NOT NULL,
            backoff_delay REAL NOT NULL,
            run_at TEXT NOT NULL,
            created_at TEXT NOT NULL,
            finished_at TEXT,
            last_error TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_jobs_queue_status_run_at ON jobs(queue, status, run_at);

        CREATE TABLE IF NOT EXISTS repeatable_jobs (
            key TEXT PRIMARY KEY,
            queue TEXT NOT NULL,
            name TEXT NOT NULL,
            payload_json TEXT NOT NULL,
            every_seconds REAL NOT NULL,
            next_run_at TEXT NOT NULL
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    @staticmethod
    def _row_to_job(row: sqlite3.Row) -> Job:
        return Job(
            id=int(row["id"]),
            queue=str(row["queue"]),
            name=str(row["name"]),
            payload=json.loads(row["payload_json"] or "{}"),
            status=str(row["status"]),
            attempts_made=int(row["attempts_made"]),
            max_attempts=int(row["max_attempts"]),
            backoff_delay_seconds=float(row["backoff_delay"]),
            run_at=_parse_ts(row["run_at"]),
            last_error=row["last_error"],
        )

    def add(
        self,
        name: str,
        payload: dict[str, Any] | None = None,
        *,
        delay_seconds: float = 0,
        attempts: int | None = None,
    ) -> int:
        now = self.clock()
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO jobs(
                        queue, name, payload_json, status, attempts_made, max_attempts,
                        backoff_delay, run_at, created_at
                    )
                    VALUES (?, ?, ?, 'waiting', 0, ?, ?, ?, ?)
                    """,
                    (
                        self.queue_name,
                        name,
                        json.dumps(payload or {}, ensure_ascii=True),
                        int(attempts or self.options.attempts),
                        float(self.options.backoff_delay_seconds),
                        _ts(now + timedelta(seconds=max(0.0, delay_seconds))),
                        _ts(now),
                    ),
                )
                conn.commit()
                return int(cursor.lastrowid)

    def get(self, job_id: int) -> Job | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        return self._row_to_job(row) if row else None

    def list_jobs(self, status: str | None = None, limit: int = 50) -> list[Job]:
        with self._lock:
            with self._connect() as conn:
                if status is None:
                    rows = conn.execute(
                        "SELECT * FROM jobs WHERE queue = ? ORDER BY id DESC LIMIT ?",
                        (self.queue_name, max(1, limit)),
                    ).fetchall()
                else:
                    rows = conn.execute(
                        "SELECT * FROM jobs WHERE queue = ? AND status = ? ORDER BY id DESC LIMIT ?",
                        (self.queue_name, status, max(1, limit)),
                    ).fetchall()
        return [self._row_to_job(row) for row in rows]

    def counts(self) -> dict[str, int]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT status, COUNT(*) AS total FROM jobs WHERE queue = ? GROUP BY status",
                    (self.queue_name,),
                ).fetchall()
        return {str(row["status"]): int(row["total"]) for row in rows}

    def claim_next(self) -> Job | None:
        now = _ts(self.clock())
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT * FROM jobs
                    WHERE queue = ? AND status = 'waiting' AND run_at <= ?
                    ORDER BY run_at, id
                    LIMIT 1
                    """,
                    (self.queue_name, now),
                ).fetchone()
                if row is None:
                    return None
                cursor = conn.execute(
                    """
                    UPDATE jobs SET status = 'active', attempts_made = attempts_made + 1
                    WHERE id = ? AND status = 'waiting'
                    """,
                    (row["id"],),
                )
                conn.commit()
                if cursor.rowcount == 0:
                    return None
                claimed = conn.execute("SELECT * FROM jobs WHERE id = ?", (row["id"],)).fetchone()
        return self._row_to_job(claimed)

    def complete(self, job_id: int) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    "UPDATE jobs SET status = 'completed', finished_at = ?, last_error = NULL WHERE id = ?",
                    (_ts(self.clock()), job_id),
                )
                conn.commit()
            self._prune("completed", self.options.keep_completed)

    def fail(self, job_id: int, error: str) -> bool:
        """Record a failed attempt. Returns True when the job was rescheduled."""
        job = self.get(job_id)
        if job is None:
            return False
        now = self.clock()
        with self._lock:
            with self._connect() as conn:
                if job.attempts_made < job.max_attempts:
                    delay = job.backoff_delay_seconds * (2 ** (job.attempts_made - 1))
                    conn.execute(
                        "UPDATE jobs SET status = 'waiting', run_at = ?, last_error = ? WHERE id = ?",
                        (_ts(now + timedelta(seconds=delay)), error, job_id),
                    )
                    conn.commit()
                    return True
                conn.execute(
                    "UPDATE jobs SET status = 'failed', finished_at = ?, last_error = ? WHERE id = ?",
                    (_ts(now), error, job_id),
                )
                conn.commit()
            self._prune("failed", self.options.keep_failed)
        return False

    def _prune(self, status: str, keep: int) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    DELETE FROM jobs
                    WHERE queue = ? AND status = ? AND id NOT IN (
                        SELECT id FROM jobs WHERE queue = ? AND status = ?
                        ORDER BY id DESC LIMIT ?
                    )
                    """,
                    (self.queue_name, status, self.queue_name, status, max(0, keep)),
                )
                conn.commit()

    def recover_stalled(self) -> int:
        """Return jobs left ``active`` by a previous process to ``waiting``."""
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    "UPDATE jobs SET status = 'waiting', run_at = ? WHERE queue = ? AND status = 'active'",
                    (_ts(self.clock()), self.queue_name),
                )
                conn.commit()
                return int(cursor.rowcount)

    # Repeatable jobs

    def get_repeatables(self) -> list[RepeatableJob]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT * FROM repeatable_jobs WHERE queue = ? ORDER BY key",
                    (self.queue_name,),
                ).fetchall()
        return [
            RepeatableJob(
                key=str(row["key"]),
                name=str(row["name"]),
                every_seconds=float(row["every_seconds"]),
                payload=json.loads(row["payload_json"] or "{}"),
                next_run_at=datetime.fromisoformat(row["next_run_at"]),
            )
            for row in rows
        ]

    def remove_repeatable(self, key: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute("DELETE FROM repeatable_jobs WHERE key = ?", (key,))
                conn.commit()

    def add_repeatable(self, name: str, every_seconds: float, payload: dict[str, Any] | None = None) -> str:
        key = f"{self.queue_name}:{name}:{int(every_seconds * 1000)}"
        now = self.clock()
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO repeatable_jobs(key, queue, name, payload_json, every_seconds, next_run_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        payload_json = excluded.payload_json,
                        every_seconds = excluded.every_seconds
                    """,
                    (
                        key,
                        self.queue_name,
                        name,
                        json.dumps(payload or {}, ensure_ascii=True),
                        float(every_seconds),
                        _ts(now + timedelta(seconds=every_seconds)),
                    ),
                )
                conn.commit()
        return key

    def enqueue_due_repeatables(self) -> int:
        now = self.clock()
        added = 0
        for repeatable in self.get_repeatables():
            if repeatable.next_run_at > now:
                continue
            self.add(repeatable.name, repeatable.payload)
            with self._lock:
                with self._connect() as conn:
                    conn.execute(
                        "UPDATE repeatable_jobs SET next_run_at = ? WHERE key = ?",
                        (_ts(now + timedelta(seconds=repeatable.every_seconds)), repeatable.key),
                    )
                    conn.commit()
            added += 1
        return added
