"""Entity store factory.

Requests, research and outlines live in SQLite unless DATABASE_URL points at
PostgreSQL. The SQLite file defaults to the job store's file; the two use
distinct tables.
"""

import logging
import os
from typing import Optional

from ..config import STORE_TIMEOUT_SECONDS
from .base import StorageBackend, StorageConfig
from .sqlite_storage import SQLiteStorage

logger = logging.getLogger(__name__)

POSTGRES_SCHEMES = ("postgresql://", "postgres://")
DEFAULT_DB_PATH = "./data/scriptsmith.db"


def get_storage_type() -> str:
    """Return 'postgres' when DATABASE_URL is a PostgreSQL URL, else 'sqlite'."""
    if os.environ.get("DATABASE_URL", "").startswith(POSTGRES_SCHEMES):
        return "postgres"
    return "sqlite"


def create_storage(
    backend_type: Optional[str] = None,
    connection_string: Optional[str] = None,
    db_path: Optional[str] = None,
    pool_size: int = 5,
    timeout_seconds: float = STORE_TIMEOUT_SECONDS,
    auto_migrate: bool = True,
    **extra: object,
) -> StorageBackend:
    """Create the entity store.

    Args:
        backend_type: 'sqlite' or 'postgres'; detected from DATABASE_URL if None.
        connection_string: PostgreSQL URL (defaults to DATABASE_URL).
        db_path: SQLite file (defaults to SCRIPT_DB_PATH).
        pool_size: PostgreSQL connection pool size.
        timeout_seconds: Upper bound on any single storage operation.
        auto_migrate: Create missing tables on initialization.
        **extra: Backend-specific options.

    Returns:
        A ready StorageBackend.

    Raises:
        ValueError: If backend_type is unknown.

    Example:
        storage = create_storage("sqlite", db_path="./data/scriptsmith.db")
    """
    backend_type = backend_type or get_storage_type()
    config = StorageConfig(
        backend_type=backend_type,
        connection_string=connection_string or os.environ.get("DATABASE_URL"),
        db_path=db_path or os.environ.get("SCRIPT_DB_PATH", DEFAULT_DB_PATH),
        pool_size=pool_size,
        timeout_seconds=timeout_seconds,
        auto_migrate=auto_migrate,
        extra=dict(extra),
    )

    if backend_type == "sqlite":
        logger.info(f"Opening SQLite entity store at {config.db_path}")
        return SQLiteStorage(config)
    if backend_type == "postgres":
        from .postgres_storage import PostgresStorage

        logger.info("Opening PostgreSQL entity store")
        return PostgresStorage(config)

    raise ValueError(f"Unknown storage backend type: {backend_type}")
