"""Job store factory for creating job store backends.

Provides automatic detection and creation of job store backends
based on configuration or environment variables.
"""

import logging
import os
from typing import Optional

from ..config import STORE_TIMEOUT_SECONDS
from .base import JobStore, JobStoreConfig
from .memory_queue import MemoryJobStore
from .sqlite_queue import SQLiteJobStore

logger = logging.getLogger(__name__)


def get_job_store_type() -> str:
    """Detect the job store type from environment.

    Priority order:
    1. DATABASE_URL (PostgreSQL) -> postgres
    2. Default -> sqlite

    Returns:
        Job store type string: 'postgres' or 'sqlite'
    """
    database_url = os.environ.get("DATABASE_URL", "")
    if database_url.startswith("postgresql://") or database_url.startswith("postgres://"):
        return "postgres"

    return "sqlite"


def create_job_store(
    backend_type: Optional[str] = None,
    connection_string: Optional[str] = None,
    db_path: Optional[str] = None,
    timeout_seconds: float = STORE_TIMEOUT_SECONDS,
    pool_size: int = 5,
    **extra: object,
) -> JobStore:
    """Create and initialize a job store instance.

    If backend_type is not specified, auto-detects based on environment:
    - If DATABASE_URL is set to a PostgreSQL URL, uses PostgreSQL
    - Otherwise, uses SQLite at SCRIPT_JOBS_DB_PATH

    Args:
        backend_type: Type of job store ('memory', 'sqlite', 'postgres'). Auto-detected if None.
        connection_string: Connection string for PostgreSQL.
        db_path: File path for SQLite.
        timeout_seconds: Upper bound on any single store operation.
        pool_size: Connection pool size for PostgreSQL.
        **extra: Additional backend-specific configuration.

    Returns:
        JobStore instance.

    Raises:
        ValueError: If backend_type is unknown.

    Example:
        # Auto-detect based on environment
        store = create_job_store()

        # Explicit memory store
        store = create_job_store("memory")

        # Explicit PostgreSQL
        store = create_job_store("postgres", connection_string="postgresql://...")
    """
    if backend_type is None:
        backend_type = get_job_store_type()

    if connection_string is None and backend_type == "postgres":
        connection_string = os.environ.get("DATABASE_URL")

    if db_path is None:
        db_path = os.environ.get("SCRIPT_JOBS_DB_PATH", "./data/scriptsmith.db")

    config = JobStoreConfig(
        backend_type=backend_type,
        connection_string=connection_string,
        db_path=db_path,
        timeout_seconds=timeout_seconds,
        pool_size=pool_size,
        extra=dict(extra),
    )

    if backend_type == "memory":
        logger.info("Creating in-memory job store")
        store: JobStore = MemoryJobStore(config)

    elif backend_type == "sqlite":
        logger.info(f"Creating SQLite job store at {db_path}")
        store = SQLiteJobStore(config)

    elif backend_type == "postgres":
        from .postgres_queue import PostgresJobStore

        logger.info("Creating PostgreSQL job store")
        store = PostgresJobStore(config)

    else:
        raise ValueError(f"Unknown job store backend type: {backend_type}")

    store.initialize()
    return store
