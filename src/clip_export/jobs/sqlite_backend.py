"""SQLite implementations of JobRecordStore and JobQueue.

This module provides the local-first, multi-process safe backend using:
- sqlite-utils for table access
- WAL mode for concurrent readers while a worker writes
- BEGIN IMMEDIATE transactions for atomic dequeue and update
- Exponential backoff retry for database lock handling

Both classes share one database file: ``jobs`` holds records,
``queue_entries`` holds FIFO pointers.
"""

import sqlite3
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Type

from sqlite_utils import Database

from ..errors import (
    ClipExportError,
    DuplicateJobError,
    JobNotFoundError,
    JobStateError,
    QueueFault,
    StoreFault,
)
from .backends import JobQueue, JobRecordStore
from .models import Job, JobStatus, validate_update_fields


SCHEMA_SQL = """
-- Job records
CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    status TEXT NOT NULL,
    progress INTEGER NOT NULL DEFAULT 0,
    source_key TEXT NOT NULL,
    start_time REAL NOT NULL,
    duration REAL NOT NULL,
    size TEXT NOT NULL,
    remove_audio INTEGER NOT NULL,
    result_key TEXT,
    error TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status);

-- Queue entries (pointers only)
CREATE TABLE IF NOT EXISTS queue_entries (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT NOT NULL,
    enqueued_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_queue_order ON queue_entries(enqueued_at, seq);
"""

TERMINAL_STATUSES = (JobStatus.COMPLETED.value, JobStatus.FAILED.value)


def _now_iso() -> str:
    # Fixed-width timestamps keep lexical order equal to time order.
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


class SQLiteJobStore(JobRecordStore):
    """SQLite-based job record store.

    Features:
    - One shared connection per process, guarded by a lock so the API's
      thread pool and the ffmpeg monitor thread can both use it
    - Autocommit mode with explicit BEGIN IMMEDIATE for read-modify-write
    - Terminal records are rejected on update
    """

    def __init__(self, db_path: str, busy_timeout_ms: int = 5000):
        """Open (and create if needed) the job database.

        Args:
            db_path: Path to SQLite database file
            busy_timeout_ms: How long SQLite waits on a locked database
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._lock = threading.RLock()

        try:
            conn = sqlite3.connect(
                str(self.db_path),
                check_same_thread=False,
                isolation_level=None,
                timeout=busy_timeout_ms / 1000,
            )
            self.db = Database(conn)

            self.db.execute("PRAGMA journal_mode=WAL")
            self.db.execute("PRAGMA synchronous=NORMAL")
            self.db.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")

            self._create_schema()
        except sqlite3.Error as e:
            raise StoreFault(f"Cannot open job database {self.db_path}: {e}") from e

    def _create_schema(self):
        """Create tables and indexes if they don't exist."""
        self.db.executescript(SCHEMA_SQL)

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    def create(self, job: Job) -> None:
        row = {
            "id": job.id,
            "status": JobStatus(job.status).value,
            "progress": job.progress,
            "source_key": job.source_key,
            "start_time": job.start_time,
            "duration": job.duration,
            "size": job.size.value,
            "remove_audio": int(job.remove_audio),
            "result_key": job.result_key,
            "error": job.error,
            "created_at": job.created_at.isoformat(timespec="microseconds"),
            "updated_at": job.updated_at.isoformat(timespec="microseconds"),
        }

        with self._lock:
            try:
                self.db["jobs"].insert(row)
            except sqlite3.IntegrityError as e:
                raise DuplicateJobError(job.id) from e
            except sqlite3.Error as e:
                raise StoreFault(f"Failed to create job {job.id}: {e}") from e

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            try:
                rows = list(self.db["jobs"].rows_where("id = ?", [job_id]))
            except sqlite3.Error as e:
                raise StoreFault(f"Failed to read job {job_id}: {e}") from e

        if not rows:
            return None
        return self._row_to_job(rows[0])

    def update(self, job_id: str, **fields: Any) -> Job:
        values = validate_update_fields(fields)

        def _apply(conn: sqlite3.Connection) -> None:
            row = conn.execute("SELECT status FROM jobs WHERE id = ?", (job_id,)).fetchone()
            if row is None:
                raise JobNotFoundError(job_id)
            if row[0] in TERMINAL_STATUSES:
                raise JobStateError(f"Job {job_id} is {row[0]} and can no longer change")

            assignments = ", ".join(f"{column} = ?" for column in values)
            conn.execute(
                f"UPDATE jobs SET {assignments}, updated_at = ? WHERE id = ?",
                (*values.values(), _now_iso(), job_id),
            )

        self._run_immediate(_apply, StoreFault)

        job = self.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def close(self) -> None:
        with self._lock:
            self.db.conn.close()

    def _run_immediate(
        self,
        fn: Callable[[sqlite3.Connection], Any],
        fault: Type[ClipExportError],
        max_retries: int = 3,
    ) -> Any:
        """Run fn inside BEGIN IMMEDIATE with exponential backoff on SQLITE_BUSY.

        BEGIN IMMEDIATE takes the write lock up front, so two processes can
        never both read the same state and then write.
        Backoff: 100ms, 200ms, 400ms.
        """
        conn = self.db.conn
        for attempt in range(max_retries):
            with self._lock:
                try:
                    conn.execute("BEGIN IMMEDIATE")
                    try:
                        result = fn(conn)
                        conn.execute("COMMIT")
                        return result
                    except BaseException:
                        conn.execute("ROLLBACK")
                        raise
                except sqlite3.OperationalError as e:
                    if "locked" not in str(e).lower() or attempt == max_retries - 1:
                        raise fault(str(e)) from e
                except sqlite3.Error as e:
                    raise fault(str(e)) from e
            # Sleep outside the lock.
            time.sleep(0.1 * (2 ** attempt))
        raise fault("database is locked")

    @staticmethod
    def _row_to_job(row: Dict[str, Any]) -> Job:
        return Job(
            id=row["id"],
            status=JobStatus(row["status"]),
            progress=row["progress"],
            source_key=row["source_key"],
            start_time=row["start_time"],
            duration=row["duration"],
            size=row["size"],
            remove_audio=bool(row["remove_audio"]),
            result_key=row["result_key"],
            error=row["error"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )


class SQLiteJobQueue(JobQueue):
    """SQLite-based FIFO queue with atomic dequeue.

    Concurrency safety:
    - BEGIN IMMEDIATE ensures write lock from transaction start
    - DELETE ... RETURNING selects and removes the oldest entry in one
      statement, so two workers can never pop the same entry
    """

    def __init__(self, store: SQLiteJobStore):
        """Initialize queue backend.

        Args:
            store: SQLiteJobStore instance (shares same database)
        """
        self.store = store
        self.db = store.db

    def enqueue(self, job_id: str) -> None:
        with self.store.lock:
            try:
                self.db["queue_entries"].insert({"job_id": job_id, "enqueued_at": _now_iso()})
            except sqlite3.Error as e:
                raise QueueFault(f"Failed to enqueue {job_id}: {e}") from e

    def dequeue(self) -> Optional[str]:
        def _pop(conn: sqlite3.Connection) -> Optional[str]:
            rows = conn.execute(
                """
                DELETE FROM queue_entries
                WHERE seq = (
                    SELECT seq FROM queue_entries
                    ORDER BY enqueued_at ASC, seq ASC
                    LIMIT 1
                )
                RETURNING job_id
                """
            ).fetchall()
            return rows[0][0] if rows else None

        return self.store._run_immediate(_pop, QueueFault)

    def depth(self) -> int:
        with self.store.lock:
            try:
                return self.db["queue_entries"].count
            except sqlite3.Error as e:
                raise QueueFault(f"Failed to count queue entries: {e}") from e
