"""Persistence layer for Scriptsmith.

This module provides a modular storage architecture supporting:
- PostgreSQL for production deployments
- SQLite as a local fallback

Usage:
    from scriptsmith.persistence import create_storage, StorageBackend

    # Create PostgreSQL storage (requires DATABASE_URL)
    storage = create_storage("postgres", connection_string="postgresql://...")

    # Create SQLite storage (fallback)
    storage = create_storage("sqlite", db_path="./data/scriptsmith.db")

    # Use environment-based auto-detection
    storage = create_storage()  # Checks DATABASE_URL, falls back to SQLite
"""

from .base import StorageBackend, StorageConfig
from .factory import create_storage, get_storage_type
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
from .sqlite_storage import SQLiteStorage

__all__ = [
    # Base classes
    "StorageBackend",
    "StorageConfig",
    # Factory
    "create_storage",
    "get_storage_type",
    # Models
    "Outline",
    "OutlineCreate",
    "OutlineStatus",
    "OutlineUpdate",
    "ScriptRequest",
    "ScriptRequestCreate",
    "ScriptRequestUpdate",
    "StoredResearchSource",
    # Implementations
    "SQLiteStorage",
]
