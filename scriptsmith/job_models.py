"""Data models for the job submission and polling API.

This module defines the request and response shapes for:
- Enqueueing a long-form generation job
- Polling a job's progress and result
- The generation parameters carried on a job
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .config import DEFAULT_JOB_PRIORITY, DEFAULT_MAX_RETRIES
from .models import ContentPoint, ResearchExcerpt
from .queue.models import JobStatus, ScriptJob


class GenerationParams(BaseModel):
    """Generation parameters stored on a job.

    Unknown keys are kept so callers can pass through extra guidance.
    ``research`` holds the source excerpts captured at submission, quoted
    in every chunk prompt.
    """

    model_config = ConfigDict(extra="allow")

    title: str
    topic: str = ""
    content_points: List[ContentPoint] = Field(default_factory=list)
    total_minutes: int
    hook: Optional[str] = None
    target_audience: Optional[str] = None
    tone: Optional[str] = None
    model: Optional[str] = None
    research: List[ResearchExcerpt] = Field(default_factory=list)


class EnqueueRequest(BaseModel):
    """Request model for submitting a generation job.

    Attributes:
        parent_request_id: The script request to generate for.
        title: Script title (defaults to the request's title).
        topic: Script topic (defaults to the request's topic).
        content_points: Points the script must cover.
        total_minutes: Target duration in minutes.
        hook: Opening hook guidance.
        target_audience: Intended audience.
        tone: Desired tone.
        model: Model override.
        priority: Job priority (higher = sooner).
        max_retries: Maximum retry attempts.
        use_approved_outline: Plan from the request's approved outline when there is one.
    """

    parent_request_id: str
    title: Optional[str] = None
    topic: Optional[str] = None
    content_points: List[ContentPoint] = Field(default_factory=list)
    total_minutes: int
    hook: Optional[str] = None
    target_audience: Optional[str] = None
    tone: Optional[str] = None
    model: Optional[str] = None
    priority: int = Field(default=DEFAULT_JOB_PRIORITY, ge=-100, le=100)
    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=0, le=10)
    use_approved_outline: bool = True


class EnqueueResponse(BaseModel):
    """Response model for job submission."""

    job_id: str
    status: JobStatus
    poll_url: str
    is_duplicate: bool = False
    message: str


class JobResult(BaseModel):
    """Finished script and its metadata."""

    script: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class JobStatusResponse(BaseModel):
    """Response model for polling a job."""

    job_id: str
    parent_request_id: str
    status: JobStatus
    progress: int
    current_step: str
    current_chunk: int
    total_chunks: int
    retry_count: int = 0
    max_retries: int = 0
    error_message: Optional[str] = None
    result: Optional[JobResult] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_job(cls, job: ScriptJob) -> "JobStatusResponse":
        result = None
        if job.status == JobStatus.COMPLETED and job.generated_script is not None:
            result = JobResult(script=job.generated_script, metadata=job.script_metadata or {})

        return cls(
            job_id=job.id,
            parent_request_id=job.parent_request_id,
            status=job.status,
            progress=job.progress,
            current_step=job.current_step,
            current_chunk=job.current_chunk,
            total_chunks=job.total_chunks,
            retry_count=job.retry_count,
            max_retries=job.max_retries,
            error_message=job.error_message,
            result=result,
            created_at=job.created_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
        )


class JobListResponse(BaseModel):
    """Response model for job listings."""

    jobs: List[JobStatusResponse]
    total: int
