"""SQLite storage backend implementation.

Provides a file-based persistence layer using SQLite.
This is the default fallback storage when PostgreSQL is not available.
"""

import json
import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Generator, List, Optional

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


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat(timespec="microseconds") if value else None


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SQLiteStorage(StorageBackend):
    """SQLite-based storage backend.

    Thread-safe implementation using connection pooling via thread-local storage.
    """

    def __init__(self, config: StorageConfig):
        """Initialize SQLite storage.

        Args:
            config: Storage configuration.
        """
        self.config = config
        self.db_path = config.db_path or "./data/scriptsmith.db"
        self._local = threading.local()
        self._lock = threading.RLock()
        self._initialized = False

        if config.auto_migrate:
            self.initialize()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a thread-local database connection."""
        if getattr(self._local, "connection", None) is None:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

            self._local.connection = sqlite3.connect(
                self.db_path,
                timeout=self.config.timeout_seconds,
                check_same_thread=False,
            )
            self._local.connection.row_factory = sqlite3.Row
            self._local.connection.execute("PRAGMA foreign_keys = ON")
        return self._local.connection

    @contextmanager
    def _cursor(self) -> Generator[sqlite3.Cursor, None, None]:
        """Context manager for database cursor."""
        conn = self._get_connection()
        cursor = conn.cursor()
        try:
            yield cursor
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            logger.error(f"SQLite storage operation failed: {e}")
            raise PersistenceError(f"Storage operation failed: {e}") from e
        except Exception:
            conn.rollback()
            raise
        finally:
            cursor.close()

    def initialize(self) -> None:
        """Initialize the database schema."""
        with self._lock:
            if self._initialized:
                return

            with self._cursor() as cursor:
                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS schema_version (
                        version INTEGER PRIMARY KEY,
                        applied_at TEXT NOT NULL
                    )
                """
                )

                cursor.execute("SELECT MAX(version) FROM schema_version")
                row = cursor.fetchone()
                current_version = row[0] if row and row[0] else 0

                if current_version < SCHEMA_VERSION:
                    self._run_migrations(cursor, current_version)

            self._initialized = True
            logger.info(f"SQLite storage initialized at {self.db_path}")

    def _run_migrations(self, cursor: sqlite3.Cursor, from_version: int) -> None:
        """Run database migrations."""
        if from_version < 1:
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS script_requests (
                    id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    topic TEXT NOT NULL DEFAULT '',
                    completed_steps TEXT NOT NULL DEFAULT '[]',
                    workflow_data TEXT NOT NULL DEFAULT '{}',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
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
                    id TEXT PRIMARY KEY,
                    parent_request_id TEXT NOT NULL REFERENCES script_requests(id),
                    source_type TEXT NOT NULL,
                    title TEXT,
                    content TEXT,
                    word_count INTEGER,
                    quality_score REAL,
                    relevance REAL,
                    is_selected INTEGER NOT NULL DEFAULT 1,
                    is_starred INTEGER NOT NULL DEFAULT 0,
                    fact_check_status TEXT,
                    created_at TEXT NOT NULL
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
                CREATE TABLE IF NOT EXISTS outlines (
                    id TEXT PRIMARY KEY,
                    parent_request_id TEXT NOT NULL REFERENCES script_requests(id),
                    title TEXT NOT NULL,
                    total_minutes INTEGER NOT NULL,
                    chunk_count INTEGER NOT NULL,
                    outline_data TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    research_score REAL NOT NULL DEFAULT 0,
                    user_feedback TEXT,
                    approved_at TEXT,
                    recommended_model TEXT,
                    estimated_generation_time TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """
            )

            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_outlines_request
                ON outlines(parent_request_id, created_at)
            """
            )

            cursor.execute(
                "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                (1, _iso(utc_now())),
            )

            logger.info("Applied SQLite migration version 1")

    def close(self) -> None:
        """Close the database connection."""
        if getattr(self._local, "connection", None) is not None:
            self._local.connection.close()
            self._local.connection = None

    def _row_to_request(self, row: sqlite3.Row) -> ScriptRequest:
        """Convert a database row to a ScriptRequest."""
        return ScriptRequest(
            id=row["id"],
            owner_id=row["owner_id"],
            title=row["title"],
            topic=row["topic"],
            completed_steps=json.loads(row["completed_steps"]),
            workflow_data=json.loads(row["workflow_data"]),
            created_at=_from_iso(row["created_at"]),
            updated_at=_from_iso(row["updated_at"]),
        )

    def _row_to_source(self, row: sqlite3.Row) -> StoredResearchSource:
        """Convert a database row to a StoredResearchSource."""
        return StoredResearchSource(
            id=row["id"],
            parent_request_id=row["parent_request_id"],
            source_type=row["source_type"],
            title=row["title"],
            content=row["content"],
            word_count=row["word_count"],
            quality_score=row["quality_score"],
            relevance=row["relevance"],
            is_selected=bool(row["is_selected"]),
            is_starred=bool(row["is_starred"]),
            fact_check_status=row["fact_check_status"],
            created_at=_from_iso(row["created_at"]),
        )

    def _row_to_outline(self, row: sqlite3.Row) -> Outline:
        """Convert a database row to an Outline."""
        return Outline(
            id=row["id"],
            parent_request_id=row["parent_request_id"],
            title=row["title"],
            total_minutes=row["total_minutes"],
            chunk_count=row["chunk_count"],
            outline_data=json.loads(row["outline_data"]),
            status=OutlineStatus(row["status"]),
            research_score=row["research_score"],
            user_feedback=row["user_feedback"],
            approved_at=_from_iso(row["approved_at"]),
            recommended_model=row["recommended_model"],
            estimated_generation_time=row["estimated_generation_time"],
            created_at=_from_iso(row["created_at"]),
            updated_at=_from_iso(row["updated_at"]),
        )

    # === Script Request Operations ===

    def create_request(self, request: ScriptRequestCreate) -> ScriptRequest:
        """Create a new script request."""
        request_id = str(uuid.uuid4())
        now = _iso(utc_now())

        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO script_requests (id, owner_id, title, topic, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """,
                (request_id, request.owner_id, request.title, request.topic, now, now),
            )

        return self.get_request(request_id)  # type: ignore

    def get_request(self, request_id: str) -> Optional[ScriptRequest]:
        """Get a script request by ID."""
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM script_requests WHERE id = ?", (request_id,))
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
            updates.append("title = ?")
            params.append(update.title)
        if update.topic is not None:
            updates.append("topic = ?")
            params.append(update.topic)
        if update.completed_steps is not None:
            updates.append("completed_steps = ?")
            params.append(json.dumps(update.completed_steps))
        if update.workflow_data is not None:
            updates.append("workflow_data = ?")
            params.append(json.dumps(update.workflow_data))

        if updates:
            updates.append("updated_at = ?")
            params.append(_iso(utc_now()))
            params.append(request_id)

            with self._cursor() as cursor:
                cursor.execute(
                    f"UPDATE script_requests SET {', '.join(updates)} WHERE id = ?",
                    params,
                )

        return self.get_request(request_id)

    # === Research Operations ===

    def add_research_source(self, request_id: str, source: ResearchSource) -> StoredResearchSource:
        """Attach a research source to a script request."""
        source_id = str(uuid.uuid4())

        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO research_sources (
                    id, parent_request_id, source_type, title, content, word_count,
                    quality_score, relevance, is_selected, is_starred, fact_check_status,
                    created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    source_id,
                    request_id,
                    source.source_type,
                    source.title,
                    source.content,
                    source.word_count,
                    source.quality_score,
                    source.relevance,
                    int(source.is_selected),
                    int(source.is_starred),
                    source.fact_check_status,
                    _iso(utc_now()),
                ),
            )
            cursor.execute("SELECT * FROM research_sources WHERE id = ?", (source_id,))
            return self._row_to_source(cursor.fetchone())

    def list_research_sources(self, request_id: str, selected_only: bool = False) -> List[StoredResearchSource]:
        """List research sources of a script request."""
        query = "SELECT * FROM research_sources WHERE parent_request_id = ?"
        if selected_only:
            query += " AND is_selected = 1"
        query += " ORDER BY created_at ASC, rowid ASC"

        with self._cursor() as cursor:
            cursor.execute(query, (request_id,))
            return [self._row_to_source(row) for row in cursor.fetchall()]

    # === Outline Operations ===

    def create_outline(self, outline: OutlineCreate) -> Outline:
        """Create a new outline in pending status."""
        outline_id = str(uuid.uuid4())
        now = _iso(utc_now())

        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO outlines (
                    id, parent_request_id, title, total_minutes, chunk_count, outline_data,
                    status, research_score, recommended_model, estimated_generation_time,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    outline_id,
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

        return self.get_outline(outline_id)  # type: ignore

    def get_outline(self, outline_id: str) -> Optional[Outline]:
        """Get an outline by ID."""
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM outlines WHERE id = ?", (outline_id,))
            row = cursor.fetchone()
            if row:
                return self._row_to_outline(row)
            return None

    def get_latest_outline(self, request_id: str) -> Optional[Outline]:
        """Get the most recently created outline of a script request."""
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT * FROM outlines WHERE parent_request_id = ?
                ORDER BY created_at DESC, rowid DESC LIMIT 1
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
            updates.append("status = ?")
            params.append(update.status.value)
        if update.outline_data is not None:
            updates.append("outline_data = ?")
            params.append(json.dumps(update.outline_data))
        if update.user_feedback is not None:
            updates.append("user_feedback = ?")
            params.append(update.user_feedback)
        if update.approved_at is not None:
            updates.append("approved_at = ?")
            params.append(_iso(update.approved_at))

        if not updates:
            return self.get_outline(outline_id)

        updates.append("updated_at = ?")
        params.append(_iso(utc_now()))
        query = f"UPDATE outlines SET {', '.join(updates)} WHERE id = ?"
        params.append(outline_id)
        if expected_status is not None:
            query += " AND status = ?"
            params.append(expected_status.value)

        with self._cursor() as cursor:
            cursor.execute(query, params)
            changed = cursor.rowcount > 0

        if not changed:
            return None
        return self.get_outline(outline_id)

    # === Health Check ===

    def health_check(self) -> bool:
        """Check if the storage backend is healthy."""
        try:
            with self._cursor() as cursor:
                cursor.execute("SELECT 1")
            return True
        except PersistenceError:
            return False
