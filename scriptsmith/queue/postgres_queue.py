"""PostgreSQL job store implementation.

Provides a distributed, persistent job store using PostgreSQL.
Uses SKIP LOCKED for concurrent claims and a partial unique index to keep a
single active job per script request.

Requires: psycopg2-binary or psycopg2
"""

import json
import logging
import threading
import uuid
from contextlib import contextmanager
from datetime import timedelta
from typing import Any, Dict, Generator, List, Optional, Tuple

import psycopg2
import psycopg2.extras
import psycopg2.pool

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

_JSON_COLUMNS = {"generation_params", "script_metadata"}


class PostgresJobStore(JobStore):
    """PostgreSQL-based job store.

    Uses connection pooling and SKIP LOCKED for efficient,
    concurrent job processing.
    """

    def __init__(self, config: JobStoreConfig):
        """Initialize PostgreSQL job store.

        Args:
            config: Job store configuration with connection_string.

        Raises:
            ValueError: If connection_string is not provided.
        """
        if not config.connection_string:
            raise ValueError("connection_string is required for PostgreSQL job store")

        self.config = config
        self._pool: Optional[psycopg2.pool.ThreadedConnectionPool] = None
        self._pool_lock = threading.RLock()
        self._initialized = False

    def _get_pool(self) -> psycopg2.pool.ThreadedConnectionPool:
        """Get or create the connection pool."""
        if self._pool is None:
            with self._pool_lock:
                if self._pool is None:
                    timeout_ms = int(self.config.timeout_seconds * 1000)
                    self._pool = psycopg2.pool.ThreadedConnectionPool(
                        minconn=1,
                        maxconn=self.config.pool_size,
                        dsn=self.config.connection_string,
                        connect_timeout=max(1, int(self.config.timeout_seconds)),
                        options=f"-c statement_timeout={timeout_ms}",
                    )
        return self._pool

    @contextmanager
    def _connection(self) -> Generator[Any, None, None]:
        """Context manager for database connection from pool."""
        pool = self._get_pool()
        conn = pool.getconn()
        try:
            yield conn
        finally:
            pool.putconn(conn)

    @contextmanager
    def _cursor(self, commit: bool = True) -> Generator[Any, None, None]:
        """Context manager for database cursor with auto-commit."""
        try:
            with self._connection() as conn:
                cursor = conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
                try:
                    yield cursor
                    if commit:
                        conn.commit()
                except Exception:
                    conn.rollback()
                    raise
                finally:
                    cursor.close()
        except psycopg2.Error as e:
            logger.error(f"PostgreSQL job store operation failed: {e}")
            raise PersistenceError(f"Job store operation failed: {e}") from e

    def initialize(self) -> None:
        """Initialize the database schema."""
        with self._pool_lock:
            if self._initialized:
                return

            with self._cursor() as cursor:
                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS job_schema_version (
                        version INTEGER PRIMARY KEY,
                        applied_at TIMESTAMPTZ NOT NULL
                    )
                """
                )

                cursor.execute("SELECT MAX(version) FROM job_schema_version")
                row = cursor.fetchone()
                current_version = row["max"] if row and row["max"] else 0

                if current_version < SCHEMA_VERSION:
                    self._run_migrations(cursor, current_version)

            self._initialized = True
            logger.info("PostgreSQL job store initialized")

    def _run_migrations(self, cursor: Any, from_version: int) -> None:
        """Run database migrations."""
        if from_version < 1:
            cursor.execute(
                """
                DO $$ BEGIN
                    CREATE TYPE script_job_status AS ENUM (
                        'pending', 'processing', 'completed', 'failed'
                    );
                EXCEPTION
                    WHEN duplicate_object THEN null;
                END $$;
            """
            )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS script_jobs (
                    id UUID PRIMARY KEY,
                    seq BIGSERIAL,
                    parent_request_id TEXT NOT NULL,
                    owner_id TEXT NOT NULL,
                    status script_job_status NOT NULL DEFAULT 'pending',
                    progress INTEGER NOT NULL DEFAULT 0,
                    current_chunk INTEGER NOT NULL DEFAULT 0,
                    total_chunks INTEGER NOT NULL DEFAULT 1,
                    current_step TEXT NOT NULL,
                    generation_params JSONB NOT NULL DEFAULT '{}'::jsonb,
                    content_plan JSONB,
                    priority INTEGER NOT NULL DEFAULT 5,
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    max_retries INTEGER NOT NULL DEFAULT 3,
                    error_message TEXT,
                    generated_script TEXT,
                    script_metadata JSONB,
                    processing_time_seconds DOUBLE PRECISION,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                    started_at TIMESTAMPTZ,
                    completed_at TIMESTAMPTZ,
                    locked_at TIMESTAMPTZ,
                    locked_by TEXT
                )
            """
            )

            # At most one active job per parent request
            cursor.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS idx_script_jobs_active_request
                ON script_jobs (parent_request_id)
                WHERE status IN ('pending', 'processing')
            """
            )

            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_script_jobs_claim
                ON script_jobs (priority DESC, created_at ASC, seq ASC)
                WHERE status = 'pending'
            """
            )

            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_script_jobs_locked
                ON script_jobs (locked_at)
                WHERE status = 'processing'
            """
            )

            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_script_jobs_owner
                ON script_jobs (owner_id)
            """
            )

            cursor.execute(
                "INSERT INTO job_schema_version (version, applied_at) VALUES (%s, %s)",
                (1, utc_now()),
            )

            logger.info("Applied PostgreSQL job store migration version 1")

    def close(self) -> None:
        """Close the connection pool."""
        if self._pool is not None:
            self._pool.closeall()
            self._pool = None

    def _to_column(self, name: str, value: Any) -> Any:
        """Convert a model value to its column representation."""
        if value is None:
            return None
        if name == "content_plan":
            return json.dumps(value.model_dump(mode="json"))
        if name in _JSON_COLUMNS:
            return json.dumps(value)
        if name == "status":
            return JobStatus(value).value
        return value

    def _row_to_job(self, row: Dict[str, Any]) -> ScriptJob:
        """Convert a database row to a ScriptJob."""
        return ScriptJob(
            id=str(row["id"]),
            parent_request_id=row["parent_request_id"],
            owner_id=row["owner_id"],
            status=JobStatus(row["status"]),
            progress=row["progress"],
            current_chunk=row["current_chunk"],
            total_chunks=row["total_chunks"],
            current_step=row["current_step"],
            generation_params=row["generation_params"] or {},
            content_plan=ContentPlan.model_validate(row["content_plan"]) if row["content_plan"] else None,
            priority=row["priority"],
            retry_count=row["retry_count"],
            max_retries=row["max_retries"],
            error_message=row["error_message"],
            generated_script=row["generated_script"],
            script_metadata=row["script_metadata"],
            processing_time_seconds=row["processing_time_seconds"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            locked_at=row["locked_at"],
            locked_by=row["locked_by"],
        )

    # === Create Operations ===

    def create(self, job_create: JobCreate) -> Tuple[ScriptJob, bool]:
        """Create a job unless the parent request already has an active one."""
        job_id = str(uuid.uuid4())
        now = utc_now()

        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO script_jobs (
                    id, parent_request_id, owner_id, status, current_step,
                    total_chunks, generation_params, content_plan, priority,
                    max_retries, created_at, updated_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (parent_request_id) WHERE status IN ('pending', 'processing')
                DO NOTHING
                RETURNING *
            """,
                (
                    job_id,
                    job_create.parent_request_id,
                    job_create.owner_id,
                    JobStatus.PENDING.value,
                    JobStep.QUEUED,
                    job_create.total_chunks,
                    self._to_column("generation_params", job_create.generation_params),
                    self._to_column("content_plan", job_create.content_plan),
                    job_create.priority,
                    job_create.max_retries,
                    now,
                    now,
                ),
            )
            row = cursor.fetchone()

        if row:
            logger.debug(f"Created job {job_id} for request {job_create.parent_request_id}")
            return self._row_to_job(row), True

        existing = self.find_active(job_create.parent_request_id)
        if existing is None:
            # The conflicting job reached a terminal state in between
            return self.create(job_create)
        return existing, False

    # === Claim Operations ===

    def claim_next(self, worker_id: Optional[str] = None) -> Optional[ScriptJob]:
        """Atomically claim the next pending job using SKIP LOCKED."""
        now = utc_now()

        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE script_jobs
                SET status = %s,
                    progress = %s,
                    current_chunk = 0,
                    current_step = %s,
                    started_at = %s,
                    locked_at = %s,
                    locked_by = %s,
                    updated_at = %s
                WHERE id = (
                    SELECT id FROM script_jobs
                    WHERE status = 'pending'
                    ORDER BY priority DESC, created_at ASC, seq ASC
                    LIMIT 1
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING *
            """,
                (
                    JobStatus.PROCESSING.value,
                    CLAIMED_PROGRESS,
                    JobStep.INITIALIZING,
                    now,
                    now,
                    worker_id,
                    now,
                ),
            )
            row = cursor.fetchone()

        if row:
            logger.debug(f"Claimed job {row['id']} for worker {worker_id}")
            return self._row_to_job(row)
        return None

    # === Job Lookup and Update ===

    def get(self, job_id: str) -> Optional[ScriptJob]:
        """Get a job by ID."""
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM script_jobs WHERE id = %s", (job_id,))
            row = cursor.fetchone()

        if row:
            return self._row_to_job(row)
        return None

    def find_active(self, parent_request_id: str) -> Optional[ScriptJob]:
        """Get the active job for a parent request."""
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM script_jobs WHERE parent_request_id = %s AND status IN ('pending', 'processing')",
                (parent_request_id,),
            )
            row = cursor.fetchone()

        if row:
            return self._row_to_job(row)
        return None

    def update(self, job_id: str, update: JobUpdate) -> Optional[ScriptJob]:
        """Update a job's fields."""
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM script_jobs WHERE id = %s FOR UPDATE", (job_id,))
            row = cursor.fetchone()
            if not row:
                return None

            job = self._row_to_job(row)
            changes = clamp_progress(job, update.changes())
            if not changes:
                return job

            changes["updated_at"] = utc_now()
            # Column names come from model field names, never from user input
            assignments = ", ".join(f"{name} = %s" for name in changes)
            params = [self._to_column(name, value) for name, value in changes.items()]
            params.append(job_id)
            cursor.execute(f"UPDATE script_jobs SET {assignments} WHERE id = %s RETURNING *", params)
            row = cursor.fetchone()

        return self._row_to_job(row)

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
            query += " AND status = %s"
            params.append(status.value)
        if owner_id:
            query += " AND owner_id = %s"
            params.append(owner_id)

        query += " ORDER BY created_at DESC LIMIT %s OFFSET %s"
        params.extend([limit, offset])

        with self._cursor() as cursor:
            cursor.execute(query, params)
            return [self._row_to_job(row) for row in cursor.fetchall()]

    # === Maintenance ===

    def requeue_stale(self, stale_after_seconds: float) -> int:
        """Recover jobs abandoned in processing."""
        now = utc_now()
        threshold = now - timedelta(seconds=stale_after_seconds)
        message = f"Job abandoned after {stale_after_seconds:.0f}s in processing"

        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE script_jobs
                SET status = CASE WHEN retry_count < max_retries
                                  THEN 'pending'::script_job_status
                                  ELSE 'failed'::script_job_status END,
                    retry_count = CASE WHEN retry_count < max_retries
                                       THEN retry_count + 1 ELSE retry_count END,
                    progress = CASE WHEN retry_count < max_retries THEN 0 ELSE progress END,
                    current_chunk = CASE WHEN retry_count < max_retries THEN 0 ELSE current_chunk END,
                    current_step = CASE WHEN retry_count < max_retries THEN %s ELSE %s END,
                    completed_at = CASE WHEN retry_count < max_retries THEN NULL ELSE %s END,
                    error_message = %s,
                    locked_at = NULL,
                    locked_by = NULL,
                    updated_at = %s
                WHERE status = 'processing' AND locked_at < %s
            """,
                (JobStep.STALE_REQUEUED, JobStep.FAILED, now, message, now, threshold),
            )
            count = cursor.rowcount

        if count > 0:
            logger.warning(f"Recovered {count} stale jobs")
        return count

    # === Statistics ===

    def get_stats(self) -> QueueStats:
        """Get job store statistics."""
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT
                    COUNT(*) AS total,
                    COUNT(*) FILTER (WHERE status = 'pending') AS pending,
                    COUNT(*) FILTER (WHERE status = 'processing') AS processing,
                    COUNT(*) FILTER (WHERE status = 'completed') AS completed,
                    COUNT(*) FILTER (WHERE status = 'failed') AS failed,
                    AVG(processing_time_seconds) FILTER (WHERE status = 'completed') AS avg_time,
                    EXTRACT(EPOCH FROM (NOW() - MIN(created_at) FILTER (WHERE status = 'pending')))
                        AS oldest_pending_age
                FROM script_jobs
            """
            )
            row = cursor.fetchone()

        return QueueStats(
            total_jobs=row["total"] or 0,
            pending_jobs=row["pending"] or 0,
            processing_jobs=row["processing"] or 0,
            completed_jobs=row["completed"] or 0,
            failed_jobs=row["failed"] or 0,
            avg_processing_time_seconds=float(row["avg_time"]) if row["avg_time"] is not None else None,
            oldest_pending_job_age_seconds=(
                float(row["oldest_pending_age"]) if row["oldest_pending_age"] is not None else None
            ),
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
