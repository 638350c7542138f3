"""SQLite implementation of JobStore.

This module provides the durable, crash-safe store using:
- sqlite-utils for schema management and dict-shaped queries
- WAL mode so readers see a consistent snapshot while workers write
- BEGIN IMMEDIATE transactions for atomic compare-and-swap transitions
- Exponential backoff retry for database lock handling
- One connection per thread (sqlite3 connections are not shared across threads)
"""

import sqlite3
import threading
import time
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Set

from sqlite_utils import Database

from .backends import DEFAULT_LIST_ORDER, JobStore
from .errors import NotFound, StoreConflict
from .models import JobPage, StateTransition, VideoJob, VideoStatus


# Largest value SQLite binds as an integer
SQLITE_MAX_INT = 2**63 - 1

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS videos (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT UNIQUE NOT NULL,
    path TEXT NOT NULL,
    original_size INTEGER NOT NULL,
    resolution TEXT,
    bitrate TEXT,
    status TEXT NOT NULL,
    queued_seq INTEGER,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    enqueued_at TEXT,
    started_at TEXT,
    finished_at TEXT,
    heartbeat_at TEXT,
    worker_id TEXT,
    attempt_count INTEGER DEFAULT 0,
    error TEXT,
    output_path TEXT,
    output_size INTEGER,
    duration_s REAL
);

CREATE INDEX IF NOT EXISTS idx_videos_status ON videos(status, seq);
CREATE INDEX IF NOT EXISTS idx_videos_dispatch ON videos(status, queued_seq);
CREATE INDEX IF NOT EXISTS idx_videos_path ON videos(path);

-- State transition log (audit trail)
CREATE TABLE IF NOT EXISTS state_transitions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT NOT NULL,
    from_state TEXT,
    to_state TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    worker_id TEXT,
    error_snippet TEXT,
    FOREIGN KEY(job_id) REFERENCES videos(id)
);

CREATE INDEX IF NOT EXISTS idx_transitions_job ON state_transitions(job_id, id);
"""

# Columns written on update (everything but the immutable identity columns).
_MUTABLE_COLUMNS = (
    "resolution", "bitrate", "status", "queued_seq", "updated_at", "enqueued_at",
    "started_at", "finished_at", "heartbeat_at", "worker_id", "attempt_count",
    "error", "output_path", "output_size", "duration_s",
)


def _encode(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat(timespec="microseconds")
    if isinstance(value, Enum):
        return value.value
    return value


class SQLiteJobStore(JobStore):
    """SQLite-backed store with atomic per-job transitions.

    Concurrency safety:
    - BEGIN IMMEDIATE takes the write lock at transaction start, so a
      read-check-write on one job cannot interleave with another writer
    - ``UPDATE ... WHERE status = ?`` is the compare-and-swap; a zero rowcount
      means another writer won and surfaces as StoreConflict
    - Listings run COUNT and SELECT inside one read transaction (WAL snapshot)
    """

    def __init__(self, db_path: str, busy_timeout_s: float = 5.0, max_retries: int = 3):
        """Initialize the store.

        Args:
            db_path: Path to SQLite database file (created if missing)
            busy_timeout_s: How long a connection waits on a locked database
            max_retries: Attempts to start a write transaction under contention
        """
        if str(db_path) == ":memory:":
            raise ValueError("SQLiteJobStore needs a file path; use InMemoryJobStore instead")
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.busy_timeout_s = busy_timeout_s
        self.max_retries = max_retries

        self._local = threading.local()
        self._connections: List[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()

        self.db.conn.execute("PRAGMA journal_mode=WAL")
        self.db.executescript(SCHEMA_SQL)

    @property
    def db(self) -> Database:
        """sqlite-utils Database bound to the calling thread's connection."""
        db = getattr(self._local, "db", None)
        if db is None:
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.busy_timeout_s,
                isolation_level=None,  # explicit BEGIN/COMMIT only
                check_same_thread=False,
            )
            conn.execute("PRAGMA synchronous=NORMAL")  # Faster writes, still crash-safe
            conn.execute("PRAGMA foreign_keys=ON")
            with self._connections_lock:
                self._connections.append(conn)
            db = Database(conn)
            self._local.db = db
        return db

    @contextmanager
    def _transaction(self, immediate: bool = True) -> Iterator[sqlite3.Connection]:
        """Run a block inside one transaction, backing off on lock contention.

        Exponential backoff: 100ms, 200ms, 400ms delays.
        """
        conn = self.db.conn
        for attempt in range(self.max_retries):
            try:
                conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
                break
            except sqlite3.OperationalError as e:
                if "database is locked" in str(e).lower() and attempt < self.max_retries - 1:
                    time.sleep(0.1 * (2 ** attempt))
                    continue
                raise
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        else:
            conn.execute("COMMIT")

    def _row_to_job(self, row: Mapping[str, Any]) -> VideoJob:
        return VideoJob.model_validate(dict(row))

    def _fetch(self, job_id: str) -> VideoJob:
        rows = list(self.db.query("SELECT * FROM videos WHERE id = ?", [job_id]))
        if not rows:
            raise NotFound(f"Job not found: {job_id}", job_id=job_id)
        return self._row_to_job(rows[0])

    def create(self, job: VideoJob) -> VideoJob:
        row = {k: _encode(v) for k, v in job.model_dump(exclude={"seq"}).items()}
        columns = ", ".join(row)
        placeholders = ", ".join("?" for _ in row)
        try:
            with self._transaction() as conn:
                cursor = conn.execute(
                    f"INSERT INTO videos ({columns}) VALUES ({placeholders})",
                    list(row.values()),
                )
                seq = cursor.lastrowid
        except sqlite3.IntegrityError:
            raise StoreConflict(f"Job already exists: {job.id}", job_id=job.id)
        return job.model_copy(update={"seq": seq})

    def get(self, job_id: str) -> VideoJob:
        return self._fetch(job_id)

    def update(
        self,
        job_id: str,
        fields: Mapping[str, Any],
        expected_status: Optional[VideoStatus] = None,
    ) -> VideoJob:
        with self._transaction() as conn:
            current = self._fetch(job_id)

            queued_seq = None
            if fields.get("status") == VideoStatus.PENDING:
                queued_seq = conn.execute(
                    "SELECT COALESCE(MAX(queued_seq), 0) + 1 FROM videos"
                ).fetchone()[0]

            new, transition = self._apply(current, fields, expected_status, queued_seq)

            assignments = ", ".join(f"{col} = ?" for col in _MUTABLE_COLUMNS)
            values = [_encode(getattr(new, col)) for col in _MUTABLE_COLUMNS]
            cursor = conn.execute(
                f"UPDATE videos SET {assignments} WHERE id = ? AND status = ?",
                values + [job_id, current.status.value],
            )
            if cursor.rowcount != 1:
                raise StoreConflict(f"Lost update race on {job_id}", job_id=job_id)

            if transition is not None:
                self._log_transition(conn, transition)

        return new

    def _log_transition(self, conn: sqlite3.Connection, transition: StateTransition) -> None:
        conn.execute(
            """
            INSERT INTO state_transitions
                (job_id, from_state, to_state, timestamp, worker_id, error_snippet)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                transition.job_id,
                _encode(transition.from_state),
                _encode(transition.to_state),
                _encode(transition.timestamp),
                transition.worker_id,
                transition.error_snippet,
            ),
        )

    def list_jobs(
        self,
        statuses: Optional[Sequence[VideoStatus]] = None,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> JobPage:
        order = [VideoStatus(s).value for s in (statuses or DEFAULT_LIST_ORDER)]
        in_clause = ", ".join("?" for _ in order)
        rank = " ".join(f"WHEN ? THEN {i}" for i in range(len(order)))

        sql = (
            f"SELECT * FROM videos WHERE status IN ({in_clause}) "
            f"ORDER BY CASE status {rank} END, seq"
        )
        params: List[Any] = order + order
        if page_size is not None:
            sql += " LIMIT ? OFFSET ?"
            # Pages far past the end must stay empty rather than overflow the binding
            offset = min((max(page, 1) - 1) * page_size, SQLITE_MAX_INT)
            params += [page_size, offset]

        with self._transaction(immediate=False):
            total = self.db.execute(
                f"SELECT COUNT(*) FROM videos WHERE status IN ({in_clause})", order
            ).fetchone()[0]
            rows = list(self.db.query(sql, params))

        return JobPage(items=[self._row_to_job(r) for r in rows], total=total)

    def pending_candidates(self, limit: int) -> List[VideoJob]:
        rows = self.db.query(
            """
            SELECT * FROM videos
            WHERE status = ?
            ORDER BY queued_seq ASC, seq ASC
            LIMIT ?
            """,
            [VideoStatus.PENDING.value, limit],
        )
        return [self._row_to_job(r) for r in rows]

    def stale_processing(self, cutoff: datetime) -> List[VideoJob]:
        rows = self.db.query(
            """
            SELECT * FROM videos
            WHERE status = ?
              AND COALESCE(heartbeat_at, started_at, updated_at) < ?
            ORDER BY seq
            """,
            [VideoStatus.PROCESSING.value, _encode(cutoff)],
        )
        return [self._row_to_job(r) for r in rows]

    def counts(self) -> Dict[VideoStatus, int]:
        counts = {status: 0 for status in VideoStatus}
        for row in self.db.query("SELECT status, COUNT(*) AS n FROM videos GROUP BY status"):
            counts[VideoStatus(row["status"])] = row["n"]
        return counts

    def transitions(self, job_id: str) -> List[StateTransition]:
        self._fetch(job_id)
        rows = self.db["state_transitions"].rows_where(
            "job_id = ?", [job_id], order_by="id"
        )
        return [StateTransition.model_validate(dict(r)) for r in rows]

    def known_paths(self) -> Set[str]:
        return {row["path"] for row in self.db.query("SELECT path FROM videos")}

    def release_thread(self) -> None:
        """Close the calling thread's connection, if it opened one."""
        db = getattr(self._local, "db", None)
        if db is None:
            return
        self._local.db = None
        with self._connections_lock:
            if db.conn in self._connections:
                self._connections.remove(db.conn)
        db.conn.close()

    def close(self) -> None:
        with self._connections_lock:
            for conn in self._connections:
                conn.close()
            self._connections.clear()
        self._local = threading.local()
