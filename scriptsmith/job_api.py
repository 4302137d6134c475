"""Script Job API service.

This module provides the core API for submitting and polling long-form
generation jobs. It validates submissions synchronously, so boundary errors
(bad duration, foreign request, rate limit) are reported before anything is
queued, and leaves the generation itself to the worker.
"""

import logging
from typing import Optional

from .config import (
    ENQUEUE_RATE_LIMIT,
    ENQUEUE_RATE_WINDOW_SECONDS,
    MAX_SCRIPT_MINUTES,
    MIN_SCRIPT_MINUTES,
)
from .errors import (
    AuthenticationError,
    AuthorizationError,
    NotFoundError,
    PlanValidationError,
    RateLimitExceededError,
    ValidationError,
)
from .job_models import (
    EnqueueRequest,
    EnqueueResponse,
    GenerationParams,
    JobListResponse,
    JobStatusResponse,
)
from .metrics import record_job_submission
from .models import ContentPlan
from .persistence import OutlineStatus, ScriptRequest, StorageBackend
from .planning import ChunkPlanner, content_plan_from_outline
from .queue import JobCreate, JobStatus, JobStore, ScriptJob
from .rate_limit import MemoryRequestRateLimiter, RequestRateLimiter
from .research import prompt_research

logger = logging.getLogger(__name__)

JOB_POLL_PATH = "/api/v1/jobs/{job_id}"


def poll_url_for(job_id: str) -> str:
    return JOB_POLL_PATH.format(job_id=job_id)


def _require_principal(principal: Optional[str]) -> str:
    if not principal:
        raise AuthenticationError("Authentication required")
    return principal


class JobService:
    """Service for submitting and tracking script generation jobs.

    Attributes:
        store: The job store shared with the workers.
        storage: Entity store holding parent requests and outlines.
        rate_limiter: Per-owner submission limiter.
        planner: Planner whose bracket table sizes new jobs.
    """

    def __init__(
        self,
        store: JobStore,
        storage: StorageBackend,
        rate_limiter: Optional[RequestRateLimiter] = None,
        planner: Optional[ChunkPlanner] = None,
        rate_limit: int = ENQUEUE_RATE_LIMIT,
        rate_window_seconds: int = ENQUEUE_RATE_WINDOW_SECONDS,
        max_minutes: int = MAX_SCRIPT_MINUTES,
    ):
        self.store = store
        self.storage = storage
        self.rate_limiter = rate_limiter or MemoryRequestRateLimiter()
        self.planner = planner or ChunkPlanner()
        self.rate_limit = rate_limit
        self.rate_window_seconds = rate_window_seconds
        self.max_minutes = max_minutes

    def _get_owned_request(self, principal: str, request_id: str) -> ScriptRequest:
        parent = self.storage.get_request(request_id)
        if parent is None:
            raise NotFoundError(f"Script request {request_id} not found")
        if parent.owner_id != principal:
            logger.warning(f"Principal {principal} denied access to request {request_id}")
            raise AuthorizationError("Unauthorized access to script request")
        return parent

    def _duplicate_response(self, job: ScriptJob) -> EnqueueResponse:
        logger.info(f"Returning active job {job.id} for request {job.parent_request_id}")
        record_job_submission(is_duplicate=True)
        return EnqueueResponse(
            job_id=job.id,
            status=job.status,
            poll_url=poll_url_for(job.id),
            is_duplicate=True,
            message="A generation job is already active for this request",
        )

    def _approved_plan(self, parent: ScriptRequest, total_minutes: int) -> Optional[ContentPlan]:
        """Content plan from the request's approved outline, if it has one."""
        reference = parent.workflow_data.get("approved_outline") or {}
        outline_id = reference.get("outline_id")
        if not outline_id:
            return None

        outline = self.storage.get_outline(outline_id)
        if outline is None or outline.status != OutlineStatus.APPROVED:
            logger.warning(f"Approved outline {outline_id} of request {parent.id} is unavailable")
            return None

        try:
            return content_plan_from_outline(outline.outline_data, total_minutes)
        except PlanValidationError as e:
            logger.warning(f"Ignoring outline {outline_id}: {e}")
            return None

    def submit_job(self, principal: Optional[str], request: EnqueueRequest) -> EnqueueResponse:
        """Submit a new script generation job.

        If the parent request already has a pending or processing job, that
        job is returned instead of creating a new one.

        Args:
            principal: Caller's principal id.
            request: The job request parameters.

        Returns:
            EnqueueResponse with the job id and poll URL.

        Raises:
            AuthenticationError: If there is no principal.
            ValidationError: If the duration is out of range.
            NotFoundError: If the parent request does not exist.
            AuthorizationError: If the caller does not own the parent request.
            RateLimitExceededError: If the caller submits too often.
        """
        principal = _require_principal(principal)

        if not MIN_SCRIPT_MINUTES <= request.total_minutes <= self.max_minutes:
            raise ValidationError(
                f"Script duration must be between {MIN_SCRIPT_MINUTES} and {self.max_minutes} minutes",
                details={"total_minutes": request.total_minutes},
            )

        parent = self._get_owned_request(principal, request.parent_request_id)

        existing = self.store.find_active(parent.id)
        if existing is not None:
            return self._duplicate_response(existing)

        decision = self.rate_limiter.check(f"enqueue:{principal}", self.rate_limit, self.rate_window_seconds)
        if not decision.allowed:
            logger.warning(f"Principal {principal} exceeded the submission rate limit")
            raise RateLimitExceededError(
                f"Too many submissions, retry in {decision.retry_after}s",
                retry_after=decision.retry_after,
                limit=decision.limit,
            )

        plan = self._approved_plan(parent, request.total_minutes) if request.use_approved_outline else None
        total_chunks = plan.chunk_count if plan else self.planner.chunk_count_for(request.total_minutes)

        params = GenerationParams(
            title=request.title or parent.title,
            topic=request.topic or parent.topic,
            content_points=request.content_points,
            total_minutes=request.total_minutes,
            hook=request.hook,
            target_audience=request.target_audience,
            tone=request.tone,
            model=request.model,
            research=prompt_research(self.storage.list_research_sources(parent.id, selected_only=True)),
        )

        job, created = self.store.create(
            JobCreate(
                parent_request_id=parent.id,
                owner_id=principal,
                generation_params=params.model_dump(mode="json"),
                total_chunks=total_chunks,
                content_plan=plan,
                priority=request.priority,
                max_retries=request.max_retries,
            )
        )
        if not created:
            return self._duplicate_response(job)

        logger.info(
            f"Created job {job.id} for request {parent.id} "
            f"({request.total_minutes} min, {total_chunks} chunks{', outline plan' if plan else ''})"
        )
        record_job_submission(is_duplicate=False)

        return EnqueueResponse(
            job_id=job.id,
            status=job.status,
            poll_url=poll_url_for(job.id),
            is_duplicate=False,
            message="Job submitted successfully",
        )

    def get_job_status(self, principal: Optional[str], job_id: str) -> JobStatusResponse:
        """Get the status of a job owned by the caller.

        Args:
            principal: Caller's principal id.
            job_id: The job identifier.

        Returns:
            JobStatusResponse, including the script once completed.

        Raises:
            NotFoundError: If the job does not exist.
            AuthorizationError: If the caller does not own the job.
        """
        principal = _require_principal(principal)

        job = self.store.get(job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found")
        if job.owner_id != principal:
            logger.warning(f"Principal {principal} denied access to job {job_id}")
            raise AuthorizationError("Unauthorized access to job")

        return JobStatusResponse.from_job(job)

    def list_jobs(
        self,
        principal: Optional[str],
        status: Optional[JobStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> JobListResponse:
        """List the caller's jobs, newest first.

        Args:
            principal: Caller's principal id.
            status: Optional status to filter by.
            limit: Maximum number of jobs to return.
            offset: Number of jobs to skip.

        Returns:
            JobListResponse.
        """
        principal = _require_principal(principal)
        jobs = self.store.list_jobs(status=status, owner_id=principal, limit=limit, offset=offset)
        return JobListResponse(jobs=[JobStatusResponse.from_job(job) for job in jobs], total=len(jobs))
