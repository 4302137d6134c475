"""SQLite job store implementation.

Provides a durable, file-based job store. This is the default when no
PostgreSQL database is configured. Writers serialize on SQLite's database
lock (``BEGIN IMMEDIATE``), which makes claims atomic across threads and
processes sharing the same file.
"""

import json
import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Generator, List, Optional, Tuple

from ..errors import PersistenceError
from ..models import ContentPlan
from .base import JobStore, JobStoreConfig, clamp_progress
from .models import (
    CLAIMED_PROGRESS,
    JobCreate,
    JobStatus,
    JobStep,
    JobUpdate,
    QueueStats,
    ScriptJob,
    utc_now,
)

logger = logging.getLogger(__name__)


# Schema version for migrations
SCHEMA_VERSION = 1

_JSON_COLUMNS = {"generation_params", "content_plan", "script_metadata"}
_DATETIME_COLUMNS = {"created_at", "updated_at", "started_at", "completed_at", "locked_at"}


def _format_datetime(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat(timespec="microseconds")


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


class SQLiteJobStore(JobStore):
    """SQLite-based job store.

    Thread-safe implementation using thread-local connections.
    """

    def __init__(self, config: JobStoreConfig):
        """Initialize SQLite job store.

        Args:
            config: Job store configuration.
        """
        self.config = config
        self.db_path = config.db_path or "./data/scriptsmith.db"
        self._local = threading.local()
        self._lock = threading.RLock()
        self._initialized = False

    def _get_connection(self) -> sqlite3.Connection:
        """Get a thread-local database connection."""
        if getattr(self._local, "connection", None) is None:
            if self.db_path != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

            # Autocommit mode: transactions are opened explicitly below
            connection = sqlite3.connect(
                self.db_path,
                timeout=self.config.timeout_seconds,
                isolation_level=None,
                check_same_thread=False,
            )
            connection.row_factory = sqlite3.Row
            self._local.connection = connection
        return self._local.connection

    @contextmanager
    def _transaction(self) -> Generator[sqlite3.Cursor, None, None]:
        """Context manager for a write transaction holding the database lock."""
        conn = self._get_connection()
        cursor = conn.cursor()
        try:
            cursor.execute("BEGIN IMMEDIATE")
            yield cursor
            cursor.execute("COMMIT")
        except sqlite3.Error as e:
            if conn.in_transaction:
                conn.rollback()
            logger.error(f"SQLite job store write failed: {e}")
            raise PersistenceError(f"Job store write failed: {e}") from e
        except Exception:
            if conn.in_transaction:
                conn.rollback()
            raise
        finally:
            cursor.close()

    @contextmanager
    def _cursor(self) -> Generator[sqlite3.Cursor, None, None]:
        """Context manager for a read-only cursor."""
        cursor = self._get_connection().cursor()
        try:
            yield cursor
        except sqlite3.Error as e:
            logger.error(f"SQLite job store read failed: {e}")
            raise PersistenceError(f"Job store read failed: {e}") from e
        finally:
            cursor.close()

    def initialize(self) -> None:
        """Initialize the database schema."""
        with self._lock:
            if self._initialized:
                return

            with self._transaction() as cursor:
                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS job_schema_version (
                        version INTEGER PRIMARY KEY,
                        applied_at TEXT NOT NULL
                    )
                """
                )

                cursor.execute("SELECT MAX(version) FROM job_schema_version")
                row = cursor.fetchone()
                current_version = row[0] if row and row[0] else 0

                if current_version < SCHEMA_VERSION:
                    self._run_migrations(cursor, current_version)

            self._initialized = True
            logger.info(f"SQLite job store initialized at {self.db_path}")

    def _run_migrations(self, cursor: sqlite3.Cursor, from_version: int) -> None:
        """Run database migrations."""
        if from_version < 1:
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS script_jobs (
                    id TEXT PRIMARY KEY,
                    parent_request_id TEXT NOT NULL,
                    owner_id TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    progress INTEGER NOT NULL DEFAULT 0,
                    current_chunk INTEGER NOT NULL DEFAULT 0,
                    total_chunks INTEGER NOT NULL DEFAULT 1,
                    current_step TEXT NOT NULL,
                    generation_params TEXT NOT NULL DEFAULT '{}',
                    content_plan TEXT,
                    priority INTEGER NOT NULL DEFAULT 5,
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    max_retries INTEGER NOT NULL DEFAULT 3,
                    error_message TEXT,
                    generated_script TEXT,
                    script_metadata TEXT,
                    processing_time_seconds REAL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    started_at TEXT,
                    completed_at TEXT,
                    locked_at TEXT,
                    locked_by TEXT
                )
            """
            )

            # At most one active job per parent request
            cursor.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS idx_script_jobs_active_request
                ON script_jobs(parent_request_id)
                WHERE status IN ('pending', 'processing')
            """
            )

            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_script_jobs_claim
                ON script_jobs(status, priority DESC, created_at ASC)
            """
            )

            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_script_jobs_owner
                ON script_jobs(owner_id)
            """
            )

            cursor.execute(
                "INSERT INTO job_schema_version (version, applied_at) VALUES (?, ?)",
                (1, _format_datetime(utc_now())),
            )

            logger.info("Applied SQLite job store migration version 1")

    def close(self) -> None:
        """Close the database connection."""
        if getattr(self._local, "connection", None) is not None:
            self._local.connection.close()
            self._local.connection = None

    def _to_column(self, name: str, value: Any) -> Any:
        """Convert a model value to its column representation."""
        if value is None:
            return None
        if name == "content_plan":
            return json.dumps(value.model_dump(mode="json"))
        if name in _JSON_COLUMNS:
            return json.dumps(value)
        if name in _DATETIME_COLUMNS:
            return _format_datetime(value)
        if name == "status":
            return JobStatus(value).value
        return value

    def _row_to_job(self, row: sqlite3.Row) -> ScriptJob:
        """Convert a database row to a ScriptJob."""
        plan = json.loads(row["content_plan"]) if row["content_plan"] else None
        return ScriptJob(
            id=row["id"],
            parent_request_id=row["parent_request_id"],
            owner_id=row["owner_id"],
            status=JobStatus(row["status"]),
            progress=row["progress"],
            current_chunk=row["current_chunk"],
            total_chunks=row["total_chunks"],
            current_step=row["current_step"],
            generation_params=json.loads(row["generation_params"] or "{}"),
            content_plan=ContentPlan.model_validate(plan) if plan else None,
            priority=row["priority"],
            retry_count=row["retry_count"],
            max_retries=row["max_retries"],
            error_message=row["error_message"],
            generated_script=row["generated_script"],
            script_metadata=json.loads(row["script_metadata"]) if row["script_metadata"] else None,
            processing_time_seconds=row["processing_time_seconds"],
            created_at=_parse_datetime(row["created_at"]),
            updated_at=_parse_datetime(row["updated_at"]),
            started_at=_parse_datetime(row["started_at"]),
            completed_at=_parse_datetime(row["completed_at"]),
            locked_at=_parse_datetime(row["locked_at"]),
            locked_by=row["locked_by"],
        )

    def _fetch(self, cursor: sqlite3.Cursor, job_id: str) -> Optional[ScriptJob]:
        cursor.execute("SELECT * FROM script_jobs WHERE id = ?", (job_id,))
        row = cursor.fetchone()
        return self._row_to_job(row) if row else None

    def _write_changes(self, cursor: sqlite3.Cursor, job_id: str, changes: Dict[str, Any]) -> None:
        # Column names come from model field names, never from user input
        assignments = ", ".join(f"{name} = ?" for name in changes)
        params = [self._to_column(name, value) for name, value in changes.items()]
        params.append(job_id)
        cursor.execute(f"UPDATE script_jobs SET {assignments} WHERE id = ?", params)

    # === Create Operations ===

    def create(self, job_create: JobCreate) -> Tuple[ScriptJob, bool]:
        """Create a job unless the parent request already has an active one."""
        job_id = str(uuid.uuid4())
        now = _format_datetime(utc_now())

        with self._transaction() as cursor:
            cursor.execute(
                "SELECT * FROM script_jobs WHERE parent_request_id = ? AND status IN ('pending', 'processing')",
                (job_create.parent_request_id,),
            )
            row = cursor.fetchone()
            if row:
                return self._row_to_job(row), False

            cursor.execute(
                """
                INSERT INTO script_jobs (
                    id, parent_request_id, owner_id, status, progress, current_chunk,
                    total_chunks, current_step, generation_params, content_plan,
                    priority, retry_count, max_retries, created_at, updated_at
                ) VALUES (?, ?, ?, ?, 0, 0, ?, ?, ?, ?, ?, 0, ?, ?, ?)
            """,
                (
                    job_id,
                    job_create.parent_request_id,
                    job_create.owner_id,
                    JobStatus.PENDING.value,
                    job_create.total_chunks,
                    JobStep.QUEUED,
                    self._to_column("generation_params", job_create.generation_params),
                    self._to_column("content_plan", job_create.content_plan),
                    job_create.priority,
                    job_create.max_retries,
                    now,
                    now,
                ),
            )
            job = self._fetch(cursor, job_id)

        logger.debug(f"Created job {job_id} for request {job_create.parent_request_id}")
        return job, True  # type: ignore[return-value]

    # === Claim Operations ===

    def claim_next(self, worker_id: Optional[str] = None) -> Optional[ScriptJob]:
        """Atomically claim the next pending job."""
        now = _format_datetime(utc_now())

        with self._transaction() as cursor:
            cursor.execute(
                """
                SELECT id FROM script_jobs
                WHERE status = 'pending'
                ORDER BY priority DESC, created_at ASC, rowid ASC
                LIMIT 1
            """
            )
            row = cursor.fetchone()
            if row is None:
                return None

            job_id = row["id"]
            cursor.execute(
                """
                UPDATE script_jobs
                SET status = ?,
                    progress = ?,
                    current_chunk = 0,
                    current_step = ?,
                    started_at = ?,
                    locked_at = ?,
                    locked_by = ?,
                    updated_at = ?
                WHERE id = ? AND status = 'pending'
            """,
                (
                    JobStatus.PROCESSING.value,
                    CLAIMED_PROGRESS,
                    JobStep.INITIALIZING,
                    now,
                    now,
                    worker_id,
                    now,
                    job_id,
                ),
            )
            job = self._fetch(cursor, job_id)

        logger.debug(f"Claimed job {job_id} for worker {worker_id}")
        return job

    # === Job Lookup and Update ===

    def get(self, job_id: str) -> Optional[ScriptJob]:
        """Get a job by ID."""
        with self._cursor() as cursor:
            return self._fetch(cursor, job_id)

    def find_active(self, parent_request_id: str) -> Optional[ScriptJob]:
        """Get the active job for a parent request."""
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM script_jobs WHERE parent_request_id = ? AND status IN ('pending', 'processing')",
                (parent_request_id,),
            )
            row = cursor.fetchone()
            return self._row_to_job(row) if row else None

    def update(self, job_id: str, update: JobUpdate) -> Optional[ScriptJob]:
        """Update a job's fields."""
        with self._transaction() as cursor:
            job = self._fetch(cursor, job_id)
            if job is None:
                return None

            changes = clamp_progress(job, update.changes())
            if not changes:
                return job

            changes["updated_at"] = utc_now()
            self._write_changes(cursor, job_id, changes)
            return self._fetch(cursor, job_id)

    def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        owner_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[ScriptJob]:
        """List jobs with optional filters."""
        query = "SELECT * FROM script_jobs WHERE 1=1"
        params: List[Any] = []

        if status:
            query += " AND status = ?"
            params.append(status.value)
        if owner_id:
            query += " AND owner_id = ?"
            params.append(owner_id)

        query += " ORDER BY created_at DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        with self._cursor() as cursor:
            cursor.execute(query, params)
            return [self._row_to_job(row) for row in cursor.fetchall()]

    # === Maintenance ===

    def requeue_stale(self, stale_after_seconds: float) -> int:
        """Recover jobs abandoned in processing."""
        now = utc_now()
        threshold = _format_datetime(now - timedelta(seconds=stale_after_seconds))
        message = f"Job abandoned after {stale_after_seconds:.0f}s in processing"

        with self._transaction() as cursor:
            cursor.execute(
                """
                UPDATE script_jobs
                SET status = 'pending',
                    retry_count = retry_count + 1,
                    progress = 0,
                    current_chunk = 0,
                    current_step = ?,
                    error_message = ?,
                    locked_at = NULL,
                    locked_by = NULL,
                    updated_at = ?
                WHERE status = 'processing' AND locked_at < ? AND retry_count < max_retries
            """,
                (JobStep.STALE_REQUEUED, message, _format_datetime(now), threshold),
            )
            requeued = cursor.rowcount

            cursor.execute(
                """
                UPDATE script_jobs
                SET status = 'failed',
                    current_step = ?,
                    error_message = ?,
                    completed_at = ?,
                    locked_at = NULL,
                    locked_by = NULL,
                    updated_at = ?
                WHERE status = 'processing' AND locked_at < ?
            """,
                (JobStep.FAILED, message, _format_datetime(now), _format_datetime(now), threshold),
            )
            failed = cursor.rowcount

        if requeued or failed:
            logger.warning(f"Recovered stale jobs: {requeued} requeued, {failed} failed")
        return requeued + failed

    # === Statistics ===

    def get_stats(self) -> QueueStats:
        """Get job store statistics."""
        with self._cursor() as cursor:
            cursor.execute("SELECT status, COUNT(*) AS count FROM script_jobs GROUP BY status")
            counts = {row["status"]: row["count"] for row in cursor.fetchall()}

            cursor.execute(
                "SELECT AVG(processing_time_seconds) FROM script_jobs "
                "WHERE status = 'completed' AND processing_time_seconds IS NOT NULL"
            )
            avg_processing_time = cursor.fetchone()[0]

            cursor.execute("SELECT MIN(created_at) FROM script_jobs WHERE status = 'pending'")
            oldest = cursor.fetchone()[0]

        oldest_age = None
        if oldest:
            oldest_age = (utc_now() - _parse_datetime(oldest)).total_seconds()

        return QueueStats(
            total_jobs=sum(counts.values()),
            pending_jobs=counts.get(JobStatus.PENDING.value, 0),
            processing_jobs=counts.get(JobStatus.PROCESSING.value, 0),
            completed_jobs=counts.get(JobStatus.COMPLETED.value, 0),
            failed_jobs=counts.get(JobStatus.FAILED.value, 0),
            avg_processing_time_seconds=avg_processing_time,
            oldest_pending_job_age_seconds=oldest_age,
        )

    # === Health Check ===

    def health_check(self) -> bool:
        """Check if the job store is healthy."""
        try:
            with self._cursor() as cursor:
                cursor.execute("SELECT 1")
            return True
        except PersistenceError:
            return False
