"""PostgreSQL storage backend implementation.

Provides a production-grade persistence layer using PostgreSQL.
Supports connection pooling for improved performance.

Requires: psycopg2-binary or psycopg2
"""

import json
import logging
import threading
import uuid
from contextlib import contextmanager
from typing import Any, Dict, Generator, List, Optional

import psycopg2
import psycopg2.extras
import psycopg2.pool

from ..errors import PersistenceError
from ..models import ResearchSource
from ..utils import utc_now
from .base import StorageBackend, StorageConfig
from .models import (
    Outline,
    OutlineCreate,
    OutlineStatus,
    OutlineUpdate,
    ScriptRequest,
    ScriptRequestCreate,
    ScriptRequestUpdate,
    StoredResearchSource,
)

logger = logging.getLogger(__name__)


# Schema version for migrations
SCHEMA_VERSION = 1


class PostgresStorage(StorageBackend):
    """PostgreSQL-based storage backend.

    Uses connection pooling for efficient database access.
    """

    def __init__(self, config: StorageConfig):
        """Initialize PostgreSQL storage.

        Args:
            config: Storage configuration with connection_string.

        Raises:
            ValueError: If connection_string is not provided.
        """
        if not config.connection_string:
            raise ValueError("connection_string is required for PostgreSQL storage")

        self.config = config
        self._pool: Optional[psycopg2.pool.ThreadedConnectionPool] = None
        self._pool_lock = threading.RLock()
        self._initialized = False

        if config.auto_migrate:
            self.initialize()

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
    def _cursor(self) -> Generator[Any, None, None]:
        """Context manager for database cursor with auto-commit."""
        pool = self._get_pool()
        conn = pool.getconn()
        try:
            cursor = conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                yield cursor
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()
        except psycopg2.Error as e:
            logger.error(f"PostgreSQL storage operation failed: {e}")
            raise PersistenceError(f"Storage operation failed: {e}") from e
        finally:
            pool.putconn(conn)

    def initialize(self) -> None:
        """Initialize the database schema."""
        with self._pool_lock:
            if self._initialized:
                return

            with self._cursor() as cursor:
                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS schema_version (
                        version INTEGER PRIMARY KEY,
                        applied_at TIMESTAMPTZ NOT NULL
                    )
                """
                )

                cursor.execute("SELECT MAX(version) FROM schema_version")
                row = cursor.fetchone()
                current_version = row["max"] if row and row["max"] else 0

                if current_version < SCHEMA_VERSION:
                    self._run_migrations(cursor, current_version)

            self._initialized = True
            logger.info("PostgreSQL storage initialized")

    def _run_migrations(self, cursor: Any, from_version: int) -> None:
        """Run database migrations."""
        if from_version < 1:
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS script_requests (
                    id UUID PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    topic TEXT NOT NULL DEFAULT '',
                    completed_steps JSONB NOT NULL DEFAULT '[]'::jsonb,
                    workflow_data JSONB NOT NULL DEFAULT '{}'::jsonb,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                )
            """
            )

            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_requests_owner
                ON script_requests(owner_id)
            """
            )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS research_sources (
                    id UUID PRIMARY KEY,
                    seq BIGSERIAL,
                    parent_request_id UUID NOT NULL REFERENCES script_requests(id),
                    source_type TEXT NOT NULL,
                    title TEXT,
                    content TEXT,
                    word_count INTEGER,
                    quality_score DOUBLE PRECISION,
                    relevance DOUBLE PRECISION,
                    is_selected BOOLEAN NOT NULL DEFAULT TRUE,
                    is_starred BOOLEAN NOT NULL DEFAULT FALSE,
                    fact_check_status TEXT,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                )
            """
            )

            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_research_request
                ON research_sources(parent_request_id)
            """
            )

            cursor.execute(
                """
                DO $$ BEGIN
                    CREATE TYPE outline_status AS ENUM (
                        'pending', 'approved', 'rejected', 'regenerating'
                    );
                EXCEPTION
                    WHEN duplicate_object THEN null;
                END $$;
            """
            )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS outlines (
                    id UUID PRIMARY KEY,
                    seq BIGSERIAL,
                    parent_request_id UUID NOT NULL REFERENCES script_requests(id),
                    title TEXT NOT NULL,
                    total_minutes INTEGER NOT NULL,
                    chunk_count INTEGER NOT NULL,
                    outline_data JSONB NOT NULL,
                    status outline_status NOT NULL DEFAULT 'pending',
                    research_score DOUBLE PRECISION NOT NULL DEFAULT 0,
                    user_feedback TEXT,
                    approved_at TIMESTAMPTZ,
                    recommended_model TEXT,
                    estimated_generation_time TEXT,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                )
            """
            )

            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_outlines_request
                ON outlines(parent_request_id, created_at DESC)
            """
            )

            cursor.execute(
                "INSERT INTO schema_version (version, applied_at) VALUES (%s, %s)",
                (1, utc_now()),
            )

            logger.info("Applied PostgreSQL migration version 1")

    def close(self) -> None:
        """Close the connection pool."""
        if self._pool is not None:
            self._pool.closeall()
            self._pool = None

    def _row_to_request(self, row: Dict[str, Any]) -> ScriptRequest:
        """Convert a database row to a ScriptRequest."""
        return ScriptRequest(
            id=str(row["id"]),
            owner_id=row["owner_id"],
            title=row["title"],
            topic=row["topic"],
            completed_steps=row["completed_steps"] or [],
            workflow_data=row["workflow_data"] or {},
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _row_to_source(self, row: Dict[str, Any]) -> StoredResearchSource:
        """Convert a database row to a StoredResearchSource."""
        return StoredResearchSource(
            id=str(row["id"]),
            parent_request_id=str(row["parent_request_id"]),
            source_type=row["source_type"],
            title=row["title"],
            content=row["content"],
            word_count=row["word_count"],
            quality_score=row["quality_score"],
            relevance=row["relevance"],
            is_selected=row["is_selected"],
            is_starred=row["is_starred"],
            fact_check_status=row["fact_check_status"],
            created_at=row["created_at"],
        )

    def _row_to_outline(self, row: Dict[str, Any]) -> Outline:
        """Convert a database row to an Outline."""
        return Outline(
            id=str(row["id"]),
            parent_request_id=str(row["parent_request_id"]),
            title=row["title"],
            total_minutes=row["total_minutes"],
            chunk_count=row["chunk_count"],
            outline_data=row["outline_data"],
            status=OutlineStatus(row["status"]),
            research_score=row["research_score"],
            user_feedback=row["user_feedback"],
            approved_at=row["approved_at"],
            recommended_model=row["recommended_model"],
            estimated_generation_time=row["estimated_generation_time"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    # === Script Request Operations ===

    def create_request(self, request: ScriptRequestCreate) -> ScriptRequest:
        """Create a new script request."""
        now = utc_now()

        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO script_requests (id, owner_id, title, topic, created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING *
            """,
                (str(uuid.uuid4()), request.owner_id, request.title, request.topic, now, now),
            )
            return self._row_to_request(cursor.fetchone())

    def get_request(self, request_id: str) -> Optional[ScriptRequest]:
        """Get a script request by ID."""
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM script_requests WHERE id::text = %s", (request_id,))
            row = cursor.fetchone()
            if row:
                return self._row_to_request(row)
            return None

    def update_request(self, request_id: str, update: ScriptRequestUpdate) -> Optional[ScriptRequest]:
        """Update a script request."""
        # Column names are hard-coded below - NOT derived from user input
        updates: List[str] = []
        params: List[Any] = []

        if update.title is not None:
            updates.append("title = %s")
            params.append(update.title)
        if update.topic is not None:
            updates.append("topic = %s")
            params.append(update.topic)
        if update.completed_steps is not None:
            updates.append("completed_steps = %s")
            params.append(json.dumps(update.completed_steps))
        if update.workflow_data is not None:
            updates.append("workflow_data = %s")
            params.append(json.dumps(update.workflow_data))

        if not updates:
            return self.get_request(request_id)

        updates.append("updated_at = %s")
        params.append(utc_now())
        params.append(request_id)

        with self._cursor() as cursor:
            cursor.execute(
                f"UPDATE script_requests SET {', '.join(updates)} WHERE id::text = %s RETURNING *",
                params,
            )
            row = cursor.fetchone()
            return self._row_to_request(row) if row else None

    # === Research Operations ===

    def add_research_source(self, request_id: str, source: ResearchSource) -> StoredResearchSource:
        """Attach a research source to a script request."""
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO research_sources (
                    id, parent_request_id, source_type, title, content, word_count,
                    quality_score, relevance, is_selected, is_starred, fact_check_status,
                    created_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
            """,
                (
                    str(uuid.uuid4()),
                    request_id,
                    source.source_type,
                    source.title,
                    source.content,
                    source.word_count,
                    source.quality_score,
                    source.relevance,
                    source.is_selected,
                    source.is_starred,
                    source.fact_check_status,
                    utc_now(),
                ),
            )
            return self._row_to_source(cursor.fetchone())

    def list_research_sources(self, request_id: str, selected_only: bool = False) -> List[StoredResearchSource]:
        """List research sources of a script request."""
        query = "SELECT * FROM research_sources WHERE parent_request_id::text = %s"
        if selected_only:
            query += " AND is_selected"
        query += " ORDER BY created_at ASC, seq ASC"

        with self._cursor() as cursor:
            cursor.execute(query, (request_id,))
            return [self._row_to_source(row) for row in cursor.fetchall()]

    # === Outline Operations ===

    def create_outline(self, outline: OutlineCreate) -> Outline:
        """Create a new outline in pending status."""
        now = utc_now()

        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO outlines (
                    id, parent_request_id, title, total_minutes, chunk_count, outline_data,
                    status, research_score, recommended_model, estimated_generation_time,
                    created_at, updated_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
            """,
                (
                    str(uuid.uuid4()),
                    outline.parent_request_id,
                    outline.title,
                    outline.total_minutes,
                    outline.chunk_count,
                    json.dumps(outline.outline_data),
                    OutlineStatus.PENDING.value,
                    outline.research_score,
                    outline.recommended_model,
                    outline.estimated_generation_time,
                    now,
                    now,
                ),
            )
            return self._row_to_outline(cursor.fetchone())

    def get_outline(self, outline_id: str) -> Optional[Outline]:
        """Get an outline by ID."""
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM outlines WHERE id::text = %s", (outline_id,))
            row = cursor.fetchone()
            if row:
                return self._row_to_outline(row)
            return None

    def get_latest_outline(self, request_id: str) -> Optional[Outline]:
        """Get the most recently created outline of a script request."""
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT * FROM outlines WHERE parent_request_id::text = %s
                ORDER BY created_at DESC, seq DESC LIMIT 1
            """,
                (request_id,),
            )
            row = cursor.fetchone()
            if row:
                return self._row_to_outline(row)
            return None

    def update_outline(
        self,
        outline_id: str,
        update: OutlineUpdate,
        expected_status: Optional[OutlineStatus] = None,
    ) -> Optional[Outline]:
        """Update an outline, optionally only from an expected status."""
        # Column names are hard-coded below - NOT derived from user input
        updates: List[str] = []
        params: List[Any] = []

        if update.status is not None:
            updates.append("status = %s")
            params.append(update.status.value)
        if update.outline_data is not None:
            updates.append("outline_data = %s")
            params.append(json.dumps(update.outline_data))
        if update.user_feedback is not None:
            updates.append("user_feedback = %s")
            params.append(update.user_feedback)
        if update.approved_at is not None:
            updates.append("approved_at = %s")
            params.append(update.approved_at)

        if not updates:
            return self.get_outline(outline_id)

        updates.append("updated_at = %s")
        params.append(utc_now())
        query = f"UPDATE outlines SET {', '.join(updates)} WHERE id::text = %s"
        params.append(outline_id)
        if expected_status is not None:
            query += " AND status = %s"
            params.append(expected_status.value)
        query += " RETURNING *"

        with self._cursor() as cursor:
            cursor.execute(query, params)
            row = cursor.fetchone()
            return self._row_to_outline(row) if row else None

    # === Health Check ===

    def health_check(self) -> bool:
        """Check if the storage backend is healthy."""
        try:
            with self._cursor() as cursor:
                cursor.execute("SELECT 1")
            return True
        except PersistenceError:
            return False
