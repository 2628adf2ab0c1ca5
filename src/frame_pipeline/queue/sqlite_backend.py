"""SQLite implementation of JobStore.

This module provides the local-first, crash-safe job store using:
- sqlite-utils for schema management and row access
- WAL mode so API readers do not block the worker
- Single-statement conditional writes (UPDATE ... WHERE status = ?)
- Atomic dequeue via DELETE ... RETURNING
- Exponential backoff retry for database lock handling
"""

import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any, Callable, List, Optional, TypeVar

from pydantic import ValidationError
from sqlite_utils import Database

from ..errors import StoreUnavailable
from .backends import JobStore
from .models import Job, JobStatus, utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TTL_S = 24 * 3600


# SQLite schema SQL
SCHEMA_SQL = """
-- Job records (full JSON payload, status mirrored for conditional writes)
CREATE TABLE IF NOT EXISTS jobs (
    job_id TEXT PRIMARY KEY,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    expires_at REAL NOT NULL,
    payload TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_jobs_expires ON jobs(expires_at);

-- Pending-work list (autoincrement sequence gives FIFO order)
CREATE TABLE IF NOT EXISTS pending_jobs (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT NOT NULL,
    enqueued_at TEXT NOT NULL
);
"""


class SQLiteJobStore(JobStore):
    """SQLite-based job store shared by the API and the worker.

    Features:
    - One connection per store, guarded by a lock for use from worker threads
    - TTL kept as an absolute ``expires_at`` epoch; expired rows are invisible
    - Conditional upsert (``put_if``) for lost-update-free state changes
    - Blocking dequeue with a bounded wait

    Concurrency safety:
    - Every write is a single statement, so it is atomic across processes
    - WAL + busy timeout handle concurrent access from other processes
    - Exponential backoff handles residual "database is locked" errors
    """

    def __init__(
        self,
        db_path: str,
        ttl_s: int = DEFAULT_TTL_S,
        busy_timeout_s: float = 5.0,
        dequeue_poll_interval_s: float = 0.05,
        max_lock_retries: int = 3,
    ):
        """Initialize the job store.

        Args:
            db_path: Path to SQLite database file (":memory:" for tests)
            ttl_s: Lifetime of a job record after its last write
            busy_timeout_s: SQLite busy timeout for cross-process locking
            dequeue_poll_interval_s: Sleep between empty polls while waiting
            max_lock_retries: Attempts on "database is locked" before giving up

        Creates schema if database doesn't exist.
        Enables WAL mode for concurrent performance.
        """
        self.db_path = db_path
        self.ttl_s = ttl_s
        self.dequeue_poll_interval_s = dequeue_poll_interval_s
        self.max_lock_retries = max_lock_retries
        self._lock = threading.RLock()

        try:
            if db_path != ":memory:":
                Path(db_path).parent.mkdir(parents=True, exist_ok=True)

            conn = sqlite3.connect(
                db_path,
                timeout=busy_timeout_s,
                check_same_thread=False,
                isolation_level=None,  # autocommit; every write is one statement
            )
            self.db = Database(conn)

            self.db.conn.execute("PRAGMA journal_mode=WAL")
            self.db.conn.execute("PRAGMA synchronous=NORMAL")  # Faster writes, still crash-safe

            self._create_schema()
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Cannot open job store at {db_path}: {e}") from e

    def _create_schema(self):
        """Create tables and indexes if they don't exist."""
        self.db.executescript(SCHEMA_SQL)

    def _run(self, operation: Callable[[], T]) -> T:
        """Run a database operation with lock retry and error translation.

        Exponential backoff: 100ms, 200ms, 400ms delays.
        """
        for attempt in range(self.max_lock_retries):
            try:
                with self._lock:
                    return operation()
            except sqlite3.OperationalError as e:
                if "database is locked" in str(e).lower() and attempt < self.max_lock_retries - 1:
                    time.sleep(0.1 * (2 ** attempt))
                    continue
                raise StoreUnavailable(f"SQLite error: {e}") from e
            except sqlite3.Error as e:
                raise StoreUnavailable(f"SQLite error: {e}") from e
        raise StoreUnavailable("SQLite error: retries exhausted")

    def _row_for(self, job: Job) -> dict:
        return {
            "job_id": job.id,
            "status": job.status.value,
            "created_at": job.created_at.isoformat(),
            "updated_at": utcnow().isoformat(),
            "expires_at": time.time() + self.ttl_s,
            "payload": job.to_json(),
        }

    def _load(self, row: dict) -> Optional[Job]:
        try:
            return Job.from_json(row["payload"])
        except ValidationError as e:
            logger.warning("Skipping unreadable job record %s: %s", row.get("job_id"), e)
            return None

    def put(self, job: Job) -> None:
        """Upsert the full job record, refreshing its TTL."""
        row = self._row_for(job)
        self._run(lambda: self.db["jobs"].insert(row, pk="job_id", replace=True))

    def put_if(self, job: Job, expected_status: JobStatus) -> bool:
        """Upsert the full record only while the stored status is ``expected_status``."""
        row = self._row_for(job)

        def _update() -> int:
            cursor = self.db.execute(
                """
                UPDATE jobs
                SET status = ?,
                    updated_at = ?,
                    expires_at = ?,
                    payload = ?
                WHERE job_id = ? AND status = ? AND expires_at > ?
                """,
                (
                    row["status"],
                    row["updated_at"],
                    row["expires_at"],
                    row["payload"],
                    job.id,
                    expected_status.value,
                    time.time(),
                ),
            )
            return cursor.rowcount

        return self._run(_update) == 1

    def get(self, job_id: str) -> Optional[Job]:
        rows = self._run(
            lambda: list(
                self.db["jobs"].rows_where(
                    "job_id = ? AND expires_at > ?", [job_id, time.time()]
                )
            )
        )
        if not rows:
            return None
        return self._load(rows[0])

    def list_all(self) -> List[Job]:
        """Enumerate all unexpired jobs.

        Complexity: O(n) full scan (acceptable for status listings)
        """
        rows = self._run(
            lambda: list(self.db["jobs"].rows_where("expires_at > ?", [time.time()]))
        )
        jobs = []
        for row in rows:
            job = self._load(row)
            if job is not None:
                jobs.append(job)
        return jobs

    def enqueue(self, job_id: str) -> None:
        self._run(
            lambda: self.db.execute(
                "INSERT INTO pending_jobs (job_id, enqueued_at) VALUES (?, ?)",
                (job_id, utcnow().isoformat()),
            )
        )

    def dequeue(self, timeout: float = 0.0) -> Optional[str]:
        """Pop the oldest pending job id, waiting up to ``timeout`` seconds.

        Atomicity: DELETE ... RETURNING hands each id to exactly one caller,
        across threads and processes.
        """
        deadline = time.monotonic() + max(timeout, 0.0)

        while True:
            job_id = self._run(self._pop_head)
            if job_id is not None:
                return job_id

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            time.sleep(min(self.dequeue_poll_interval_s, remaining))

    def _pop_head(self) -> Optional[str]:
        cursor = self.db.execute(
            """
            DELETE FROM pending_jobs
            WHERE seq = (SELECT MIN(seq) FROM pending_jobs)
            RETURNING job_id
            """
        )
        # fetchall steps the statement to completion so the write lock is released
        rows = cursor.fetchall()
        return rows[0][0] if rows else None

    def pending_count(self) -> int:
        return self._run(lambda: self.db["pending_jobs"].count)

    def ping(self) -> bool:
        try:
            self._run(lambda: self.db.execute("SELECT 1").fetchone())
            return True
        except StoreUnavailable:
            return False

    def close(self) -> None:
        with self._lock:
            self.db.conn.close()

    def __repr__(self) -> str:
        return f"SQLiteJobStore(db_path={self.db_path!r}, ttl_s={self.ttl_s})"


def open_store(db_path: str, **kwargs: Any) -> SQLiteJobStore:
    """Open the default store backend."""
    return SQLiteJobStore(db_path, **kwargs)
