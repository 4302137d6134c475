"""API routes for the script generation pipeline.

This module defines the RESTful endpoints for:
- Script requests and their research
- Job submission, polling and listing
- The scheduler trigger that runs the worker
- The outline generation and review workflow
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query, status

from ..job_models import EnqueueRequest, EnqueueResponse, JobListResponse, JobStatusResponse
from ..models import ResearchSource
from ..outline_models import (
    OutlineGenerateRequest,
    OutlineGenerateResponse,
    OutlineLatestResponse,
    OutlineRegenerateRequest,
    OutlineReviewRequest,
    OutlineReviewResponse,
)
from ..persistence import ScriptRequest, StoredResearchSource
from ..queue import JobStatus
from ..request_api import RequestCreateBody, ResearchStatusResponse
from ..services import ServiceContainer
from ..worker import RunOnceResult
from .dependencies import get_principal, get_services, verify_trigger_secret

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1")


# === Script requests ===


@router.post(
    "/requests",
    response_model=ScriptRequest,
    status_code=status.HTTP_201_CREATED,
    tags=["requests"],
    summary="Create a script request",
)
def create_request(
    body: RequestCreateBody,
    principal: str = Depends(get_principal),
    services: ServiceContainer = Depends(get_services),
) -> ScriptRequest:
    return services.request_service.create_request(principal, body)


@router.get("/requests/{request_id}", response_model=ScriptRequest, tags=["requests"], summary="Get a script request")
def get_request(
    request_id: str,
    principal: str = Depends(get_principal),
    services: ServiceContainer = Depends(get_services),
) -> ScriptRequest:
    return services.request_service.get_request(principal, request_id)


@router.post(
    "/requests/{request_id}/research",
    response_model=StoredResearchSource,
    status_code=status.HTTP_201_CREATED,
    tags=["requests"],
    summary="Attach a research source",
)
def add_research(
    request_id: str,
    source: ResearchSource,
    principal: str = Depends(get_principal),
    services: ServiceContainer = Depends(get_services),
) -> StoredResearchSource:
    return services.request_service.add_research(principal, request_id, source)


@router.get(
    "/requests/{request_id}/research",
    response_model=List[StoredResearchSource],
    tags=["requests"],
    summary="List research sources",
)
def list_research(
    request_id: str,
    principal: str = Depends(get_principal),
    services: ServiceContainer = Depends(get_services),
) -> List[StoredResearchSource]:
    return services.request_service.list_research(principal, request_id)


@router.get(
    "/requests/{request_id}/research/status",
    response_model=ResearchStatusResponse,
    tags=["requests"],
    summary="Check research adequacy",
    description="Score the selected research against the requirements for a script duration.",
)
def research_status(
    request_id: str,
    total_minutes: int = Query(..., ge=1),
    has_user_documents: bool = Query(False),
    principal: str = Depends(get_principal),
    services: ServiceContainer = Depends(get_services),
) -> ResearchStatusResponse:
    return services.request_service.research_status(principal, request_id, total_minutes, has_user_documents)


# === Jobs ===


@router.post(
    "/jobs",
    response_model=EnqueueResponse,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["jobs"],
    summary="Submit a generation job",
    description="Queue a long-form script generation. Returns the active job if one already exists for the request.",
)
def submit_job(
    submission: EnqueueRequest,
    background_tasks: BackgroundTasks,
    principal: str = Depends(get_principal),
    services: ServiceContainer = Depends(get_services),
) -> EnqueueResponse:
    response = services.job_service.submit_job(principal, submission)
    if not response.is_duplicate and services.run_worker_on_enqueue:
        background_tasks.add_task(services.worker.run_once)
    return response


@router.get("/jobs/{job_id}", response_model=JobStatusResponse, tags=["jobs"], summary="Poll a job")
def get_job(
    job_id: str,
    principal: str = Depends(get_principal),
    services: ServiceContainer = Depends(get_services),
) -> JobStatusResponse:
    return services.job_service.get_job_status(principal, job_id)


@router.get("/jobs", response_model=JobListResponse, tags=["jobs"], summary="List jobs")
def list_jobs(
    status_filter: Optional[JobStatus] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    principal: str = Depends(get_principal),
    services: ServiceContainer = Depends(get_services),
) -> JobListResponse:
    return services.job_service.list_jobs(principal, status=status_filter, limit=limit, offset=offset)


# === Scheduler trigger ===


@router.api_route(
    "/trigger",
    methods=["GET", "POST"],
    response_model=RunOnceResult,
    tags=["worker"],
    summary="Run the worker once",
    description="Called by the scheduler. Recovers stale jobs and processes at most one pending job.",
    dependencies=[Depends(verify_trigger_secret)],
)
def trigger(services: ServiceContainer = Depends(get_services)) -> RunOnceResult:
    result = services.worker.run_once()
    logger.info(f"Trigger run finished: {result.outcome}")
    return result


# === Outlines ===


@router.post("/outlines", response_model=OutlineGenerateResponse, tags=["outlines"], summary="Generate an outline")
def generate_outline(
    body: OutlineGenerateRequest,
    principal: str = Depends(get_principal),
    services: ServiceContainer = Depends(get_services),
) -> OutlineGenerateResponse:
    return services.outline_workflow.generate(principal, body)


@router.get("/outlines", response_model=OutlineLatestResponse, tags=["outlines"], summary="Get the latest outline")
def get_latest_outline(
    parent_request_id: str = Query(...),
    principal: str = Depends(get_principal),
    services: ServiceContainer = Depends(get_services),
) -> OutlineLatestResponse:
    outline = services.outline_workflow.get_latest(principal, parent_request_id)
    return OutlineLatestResponse(outline=outline, has_outline=outline is not None)


@router.post(
    "/outlines/review",
    response_model=OutlineReviewResponse,
    tags=["outlines"],
    summary="Approve or reject an outline",
)
def review_outline(
    body: OutlineReviewRequest,
    principal: str = Depends(get_principal),
    services: ServiceContainer = Depends(get_services),
) -> OutlineReviewResponse:
    outline = services.outline_workflow.review(principal, body)
    return OutlineReviewResponse(outline=outline, message=f"Outline {body.status} successfully")


@router.put(
    "/outlines/review",
    response_model=OutlineReviewResponse,
    tags=["outlines"],
    summary="Request a regenerated outline",
)
def regenerate_outline(
    body: OutlineRegenerateRequest,
    principal: str = Depends(get_principal),
    services: ServiceContainer = Depends(get_services),
) -> OutlineReviewResponse:
    outline = services.outline_workflow.regenerate(principal, body.outline_id, body.feedback)
    return OutlineReviewResponse(outline=outline, message="Outline marked for regeneration")
