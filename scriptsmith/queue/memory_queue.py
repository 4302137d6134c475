"""In-memory job store implementation.

Provides a thread-safe in-memory job store for testing and local development.
"""

import heapq
import itertools
import logging
import threading
import uuid
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

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


class MemoryJobStore(JobStore):
    """In-memory job store.

    Thread-safe implementation using a priority queue (heap).
    Suitable for testing and single-process local development.

    Note: Data is not persisted and will be lost on restart.
    """

    def __init__(self, config: Optional[JobStoreConfig] = None):
        """Initialize in-memory job store.

        Args:
            config: Optional job store configuration.
        """
        self.config = config or JobStoreConfig(backend_type="memory")
        self._lock = threading.RLock()

        # Job storage by ID
        self._jobs: Dict[str, ScriptJob] = {}

        # Priority queue: (priority * -1, created_at, sequence, job_id)
        # Sequence breaks ties between jobs created in the same instant
        self._pending_queue: List[Tuple[int, datetime, int, str]] = []
        self._sequence: Dict[str, int] = {}
        self._counter = itertools.count()

        # parent_request_id -> active job id
        self._active_index: Dict[str, str] = {}

        self._initialized = False

    def initialize(self) -> None:
        """Initialize the in-memory job store."""
        with self._lock:
            if self._initialized:
                return
            self._initialized = True
            logger.info("In-memory job store initialized")

    def close(self) -> None:
        """Close the job store (no-op for memory backend)."""
        pass

    def _push_pending(self, job: ScriptJob) -> None:
        """Add a job to the pending priority queue."""
        heapq.heappush(
            self._pending_queue,
            (-job.priority, job.created_at, self._sequence[job.id], job.id),
        )

    def _store(self, job: ScriptJob) -> ScriptJob:
        """Save a job and keep the active index and heap in sync."""
        previous = self._jobs.get(job.id)
        self._jobs[job.id] = job

        if job.is_active:
            self._active_index[job.parent_request_id] = job.id
        elif self._active_index.get(job.parent_request_id) == job.id:
            del self._active_index[job.parent_request_id]

        # Stale heap entries are skipped lazily in claim_next
        if job.status == JobStatus.PENDING and (previous is None or previous.status != JobStatus.PENDING):
            self._push_pending(job)
        return job

    # === Create Operations ===

    def create(self, job_create: JobCreate) -> Tuple[ScriptJob, bool]:
        """Create a job unless the parent request already has an active one."""
        with self._lock:
            existing_id = self._active_index.get(job_create.parent_request_id)
            if existing_id is not None:
                return self._jobs[existing_id].model_copy(deep=True), False

            job_id = str(uuid.uuid4())
            now = utc_now()
            job = ScriptJob(
                id=job_id,
                parent_request_id=job_create.parent_request_id,
                owner_id=job_create.owner_id,
                status=JobStatus.PENDING,
                total_chunks=job_create.total_chunks,
                current_step=JobStep.QUEUED,
                generation_params=job_create.generation_params,
                content_plan=job_create.content_plan,
                priority=job_create.priority,
                max_retries=job_create.max_retries,
                created_at=now,
                updated_at=now,
            )
            self._sequence[job_id] = next(self._counter)
            self._store(job)

            logger.debug(f"Created job {job_id} for request {job_create.parent_request_id}")
            return job.model_copy(deep=True), True

    # === Claim Operations ===

    def claim_next(self, worker_id: Optional[str] = None) -> Optional[ScriptJob]:
        """Atomically claim the next pending job."""
        with self._lock:
            while self._pending_queue:
                _, _, _, job_id = heapq.heappop(self._pending_queue)
                job = self._jobs.get(job_id)

                # Skip if the heap entry is stale
                if job is None or job.status != JobStatus.PENDING:
                    continue

                now = utc_now()
                claimed = job.model_copy(
                    update={
                        "status": JobStatus.PROCESSING,
                        "progress": CLAIMED_PROGRESS,
                        "current_chunk": 0,
                        "current_step": JobStep.INITIALIZING,
                        "started_at": now,
                        "locked_at": now,
                        "locked_by": worker_id,
                        "updated_at": now,
                    }
                )
                self._store(claimed)

                logger.debug(f"Claimed job {job_id} for worker {worker_id}")
                return claimed.model_copy(deep=True)

            return None

    # === Job Lookup and Update ===

    def get(self, job_id: str) -> Optional[ScriptJob]:
        """Get a job by ID."""
        with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job else None

    def find_active(self, parent_request_id: str) -> Optional[ScriptJob]:
        """Get the active job for a parent request."""
        with self._lock:
            job_id = self._active_index.get(parent_request_id)
            return self.get(job_id) if job_id else None

    def update(self, job_id: str, update: JobUpdate) -> Optional[ScriptJob]:
        """Update a job's fields."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None

            changes = clamp_progress(job, update.changes())
            if not changes:
                return job.model_copy(deep=True)

            changes["updated_at"] = utc_now()
            updated = job.model_copy(update=changes)
            self._store(updated)
            return updated.model_copy(deep=True)

    def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        owner_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[ScriptJob]:
        """List jobs with optional filters."""
        with self._lock:
            jobs = list(self._jobs.values())

            if status is not None:
                jobs = [j for j in jobs if j.status == status]
            if owner_id is not None:
                jobs = [j for j in jobs if j.owner_id == owner_id]

            jobs.sort(key=lambda j: j.created_at, reverse=True)
            return [j.model_copy(deep=True) for j in jobs[offset : offset + limit]]

    # === Maintenance ===

    def requeue_stale(self, stale_after_seconds: float) -> int:
        """Recover jobs abandoned in processing."""
        with self._lock:
            now = utc_now()
            threshold = now - timedelta(seconds=stale_after_seconds)
            count = 0

            for job in list(self._jobs.values()):
                if job.status != JobStatus.PROCESSING or job.locked_at is None or job.locked_at >= threshold:
                    continue

                message = f"Job abandoned after {stale_after_seconds:.0f}s in processing"
                changes = {
                    "error_message": message,
                    "locked_at": None,
                    "locked_by": None,
                    "updated_at": now,
                }
                if job.can_retry:
                    changes.update(
                        status=JobStatus.PENDING,
                        retry_count=job.retry_count + 1,
                        progress=0,
                        current_chunk=0,
                        current_step=JobStep.STALE_REQUEUED,
                    )
                else:
                    changes.update(
                        status=JobStatus.FAILED,
                        current_step=JobStep.FAILED,
                        completed_at=now,
                    )
                self._store(job.model_copy(update=changes))
                count += 1
                logger.warning(f"Recovered stale job {job.id} -> {changes['status'].value}")

            return count

    # === Statistics ===

    def get_stats(self) -> QueueStats:
        """Get job store statistics."""
        with self._lock:
            status_counts: Dict[JobStatus, int] = {}
            processing_times = []
            oldest_pending_age = None
            now = utc_now()

            for job in self._jobs.values():
                status_counts[job.status] = status_counts.get(job.status, 0) + 1

                if job.status == JobStatus.COMPLETED and job.processing_time_seconds is not None:
                    processing_times.append(job.processing_time_seconds)

                if job.status == JobStatus.PENDING:
                    age = (now - job.created_at).total_seconds()
                    if oldest_pending_age is None or age > oldest_pending_age:
                        oldest_pending_age = age

            avg_processing_time = None
            if processing_times:
                avg_processing_time = sum(processing_times) / len(processing_times)

            return QueueStats(
                total_jobs=len(self._jobs),
                pending_jobs=status_counts.get(JobStatus.PENDING, 0),
                processing_jobs=status_counts.get(JobStatus.PROCESSING, 0),
                completed_jobs=status_counts.get(JobStatus.COMPLETED, 0),
                failed_jobs=status_counts.get(JobStatus.FAILED, 0),
                avg_processing_time_seconds=avg_processing_time,
                oldest_pending_job_age_seconds=oldest_pending_age,
            )

    # === Health Check ===

    def health_check(self) -> bool:
        """Check if the job store is healthy."""
        return True
