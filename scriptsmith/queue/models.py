"""Script job models for the job store layer.

These models describe a long-form generation job through its lifecycle:
pending, processing, then completed or failed, with retries sending a job
back to pending.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from ..models import ContentPlan
from ..utils import utc_now


class JobStatus(str, Enum):
    """Status of a script generation job."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_STATUSES = (JobStatus.PENDING, JobStatus.PROCESSING)


class JobStep:
    """Values of ``current_step`` reported to polling clients."""

    QUEUED = "queued"
    INITIALIZING = "initializing"
    PLANNING = "planning"
    RETRY_QUEUED = "retry_queued"
    STALE_REQUEUED = "stale_requeued"
    COMPLETED = "completed"
    FAILED = "failed"

    @staticmethod
    def generating(chunk_number: int, total_chunks: int) -> str:
        return f"generating_chunk_{chunk_number}_of_{total_chunks}"


# Progress reported as soon as a job is claimed
CLAIMED_PROGRESS = 5


class JobCreate(BaseModel):
    """Input model for creating a new script job.

    Attributes:
        parent_request_id: The script request this job generates for.
        owner_id: Principal that owns the parent request.
        generation_params: Opaque generation payload (title, content points, ...).
        total_chunks: Number of chunks the job is expected to generate.
        content_plan: Optional precomputed plan (e.g. from an approved outline).
        priority: Job priority (higher = claimed first).
        max_retries: Maximum number of retry attempts.
    """

    parent_request_id: str
    owner_id: str
    generation_params: Dict[str, Any] = Field(default_factory=dict)
    total_chunks: int = Field(default=1, ge=1)
    content_plan: Optional[ContentPlan] = None
    priority: int = Field(default=5, ge=-100, le=100)
    max_retries: int = Field(default=3, ge=0, le=100)


class JobUpdate(BaseModel):
    """Input model for updating a script job.

    All fields are optional - only fields that are explicitly set are written,
    so ``None`` can be used to clear a column.
    """

    status: Optional[JobStatus] = None
    progress: Optional[int] = Field(default=None, ge=0, le=100)
    current_chunk: Optional[int] = Field(default=None, ge=0)
    total_chunks: Optional[int] = Field(default=None, ge=1)
    current_step: Optional[str] = None
    content_plan: Optional[ContentPlan] = None
    retry_count: Optional[int] = Field(default=None, ge=0)
    error_message: Optional[str] = None
    generated_script: Optional[str] = None
    script_metadata: Optional[Dict[str, Any]] = None
    processing_time_seconds: Optional[float] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    locked_at: Optional[datetime] = None
    locked_by: Optional[str] = None

    def changes(self) -> Dict[str, Any]:
        """Fields explicitly set on this update."""
        return {name: getattr(self, name) for name in self.model_fields_set}


class ScriptJob(BaseModel):
    """A script generation job with full state.

    Attributes:
        id: Unique job identifier.
        parent_request_id: The script request this job generates for.
        owner_id: Principal that owns the parent request.
        status: Current job status.
        progress: Percent complete (0-100).
        current_chunk: Number of chunks finished in the current attempt.
        total_chunks: Number of chunks in the plan.
        current_step: Human-readable step label.
        generation_params: Opaque generation payload.
        content_plan: Plan the chunks are generated from.
        priority: Job priority.
        retry_count: Attempts that failed and were requeued.
        max_retries: Maximum retry attempts.
        error_message: Last error message.
        generated_script: Finished script (if completed).
        script_metadata: Word count, usage and plan details (if completed).
        processing_time_seconds: Wall time of the successful attempt.
        created_at: Job creation timestamp.
        updated_at: Last update timestamp.
        started_at: When the current attempt was claimed.
        completed_at: When the job reached a terminal state.
        locked_at: When the job was locked for processing.
        locked_by: Worker ID that locked the job.
    """

    id: str
    parent_request_id: str
    owner_id: str
    status: JobStatus = JobStatus.PENDING
    progress: int = Field(default=0, ge=0, le=100)
    current_chunk: int = 0
    total_chunks: int = 1
    current_step: str = JobStep.QUEUED
    generation_params: Dict[str, Any] = Field(default_factory=dict)
    content_plan: Optional[ContentPlan] = None
    priority: int = 5
    retry_count: int = 0
    max_retries: int = 3
    error_message: Optional[str] = None
    generated_script: Optional[str] = None
    script_metadata: Optional[Dict[str, Any]] = None
    processing_time_seconds: Optional[float] = None
    created_at: datetime
    updated_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    locked_at: Optional[datetime] = None
    locked_by: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def can_retry(self) -> bool:
        return self.retry_count < self.max_retries


class QueueStats(BaseModel):
    """Aggregated job store statistics.

    Attributes:
        total_jobs: Total number of jobs.
        pending_jobs: Jobs waiting to be claimed.
        processing_jobs: Jobs currently being processed.
        completed_jobs: Successfully completed jobs.
        failed_jobs: Jobs that failed permanently.
        avg_processing_time_seconds: Average processing time of completed jobs.
        oldest_pending_job_age_seconds: Age of oldest pending job.
    """

    total_jobs: int = 0
    pending_jobs: int = 0
    processing_jobs: int = 0
    completed_jobs: int = 0
    failed_jobs: int = 0
    avg_processing_time_seconds: Optional[float] = None
    oldest_pending_job_age_seconds: Optional[float] = None
