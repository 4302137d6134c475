"""Job store layer for Scriptsmith.

This module provides a durable job store supporting:
- PostgreSQL for distributed deployments (SKIP LOCKED claims)
- SQLite for single-host deployments (the default)
- In-memory store for testing and local development

Usage:
    from scriptsmith.queue import create_job_store, JobCreate

    store = create_job_store()  # Checks DATABASE_URL, falls back to SQLite
    job, created = store.create(JobCreate(parent_request_id="req-1", owner_id="user-1"))
    claimed = store.claim_next(worker_id="worker-1")
"""

from .base import JobStore, JobStoreConfig
from .factory import create_job_store, get_job_store_type
from .memory_queue import MemoryJobStore
from .models import (
    ACTIVE_STATUSES,
    CLAIMED_PROGRESS,
    JobCreate,
    JobStatus,
    JobStep,
    JobUpdate,
    QueueStats,
    ScriptJob,
    utc_now,
)
from .sqlite_queue import SQLiteJobStore

__all__ = [
    # Base classes
    "JobStore",
    "JobStoreConfig",
    # Factory
    "create_job_store",
    "get_job_store_type",
    # Models
    "ACTIVE_STATUSES",
    "CLAIMED_PROGRESS",
    "JobCreate",
    "JobStatus",
    "JobStep",
    "JobUpdate",
    "QueueStats",
    "ScriptJob",
    "utc_now",
    # Implementations
    "MemoryJobStore",
    "SQLiteJobStore",
]
