"""Abstract base class for job stores.

This module defines the API contract that all job store backends must implement.
"""

import abc
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from ..config import STORE_TIMEOUT_SECONDS
from .models import JobCreate, JobStatus, JobUpdate, QueueStats, ScriptJob


@dataclass
class JobStoreConfig:
    """Configuration for job store backends.

    Attributes:
        backend_type: Type of job store backend (memory, sqlite, postgres).
        connection_string: Connection string for PostgreSQL.
        db_path: File path for SQLite.
        timeout_seconds: Upper bound on any single store operation.
        pool_size: Connection pool size (for connection-pooled backends).
        extra: Additional backend-specific configuration.
    """

    backend_type: str = "memory"
    connection_string: Optional[str] = None
    db_path: Optional[str] = None
    timeout_seconds: float = STORE_TIMEOUT_SECONDS
    pool_size: int = 5
    extra: Dict[str, Any] = field(default_factory=dict)


def clamp_progress(job: ScriptJob, changes: Dict[str, Any]) -> Dict[str, Any]:
    """Keep progress non-decreasing while a job stays in processing.

    Args:
        job: The job as currently stored.
        changes: Column changes about to be written.

    Returns:
        The changes, with progress raised to the stored value when needed.
    """
    if "progress" not in changes or changes["progress"] is None:
        return changes
    stays_processing = changes.get("status", job.status) == JobStatus.PROCESSING
    if job.status == JobStatus.PROCESSING and stays_processing:
        changes = dict(changes)
        changes["progress"] = max(job.progress, changes["progress"])
    return changes


class JobStore(abc.ABC):
    """Abstract base class for job stores.

    The store is the only shared state between API processes and workers.
    All implementations guarantee:
    - at most one active (pending or processing) job per parent request
    - claim_next moves exactly one job to processing, even under concurrency
    - progress never decreases while a job is processing
    """

    @abc.abstractmethod
    def initialize(self) -> None:
        """Initialize the job store.

        This should create tables/structures if they don't exist.
        """
        pass

    @abc.abstractmethod
    def close(self) -> None:
        """Close the job store and release resources."""
        pass

    # === Create Operations ===

    @abc.abstractmethod
    def create(self, job: JobCreate) -> Tuple[ScriptJob, bool]:
        """Create a job unless the parent request already has an active one.

        Args:
            job: The job to create.

        Returns:
            Tuple of (job, created). When an active job exists for the parent
            request it is returned with created=False.

        Raises:
            PersistenceError: If the write fails.
        """
        pass

    # === Claim Operations ===

    @abc.abstractmethod
    def claim_next(self, worker_id: Optional[str] = None) -> Optional[ScriptJob]:
        """Atomically claim the highest-priority, oldest pending job.

        The claimed job moves to processing with current_step "initializing"
        and progress 5.

        Args:
            worker_id: Optional worker identifier for tracking.

        Returns:
            The claimed ScriptJob, or None if nothing is pending.
        """
        pass

    # === Job Lookup and Update ===

    @abc.abstractmethod
    def get(self, job_id: str) -> Optional[ScriptJob]:
        """Get a job by ID.

        Args:
            job_id: The job identifier.

        Returns:
            ScriptJob or None if not found.
        """
        pass

    @abc.abstractmethod
    def find_active(self, parent_request_id: str) -> Optional[ScriptJob]:
        """Get the pending or processing job for a parent request.

        Args:
            parent_request_id: The script request identifier.

        Returns:
            ScriptJob or None if the request has no active job.
        """
        pass

    @abc.abstractmethod
    def update(self, job_id: str, update: JobUpdate) -> Optional[ScriptJob]:
        """Update a job's fields.

        Args:
            job_id: The job identifier.
            update: The fields to update.

        Returns:
            Updated ScriptJob or None if not found.

        Raises:
            PersistenceError: If the write fails.
        """
        pass

    @abc.abstractmethod
    def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        owner_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[ScriptJob]:
        """List jobs with optional filters, newest first.

        Args:
            status: Optional status filter.
            owner_id: Optional owner filter.
            limit: Maximum results to return.
            offset: Offset for pagination.

        Returns:
            List of ScriptJob objects.
        """
        pass

    # === Maintenance ===

    @abc.abstractmethod
    def requeue_stale(self, stale_after_seconds: float) -> int:
        """Recover jobs abandoned in processing.

        Jobs locked longer than the threshold go back to pending with their
        retry count incremented, or to failed once retries are exhausted.

        Args:
            stale_after_seconds: How long before a locked job is considered abandoned.

        Returns:
            Number of jobs recovered.
        """
        pass

    # === Statistics ===

    @abc.abstractmethod
    def get_stats(self) -> QueueStats:
        """Get job store statistics.

        Returns:
            QueueStats with counts and metrics.
        """
        pass

    # === Health Check ===

    @abc.abstractmethod
    def health_check(self) -> bool:
        """Check if the job store is healthy.

        Returns:
            True if healthy, False otherwise.
        """
        pass
