"""Scriptsmith package.

Asynchronous long-form script generation: jobs are queued through the API,
planned into chunks and generated by a scheduler-driven worker.

Requires Python 3.9 or higher.
"""

from .config import LLM_MODEL_NAME, MAX_SCRIPT_MINUTES, PROCESSING_BUDGET_SECONDS
from .errors import (
    AuthenticationError,
    AuthorizationError,
    FatalGenerationError,
    GenerationTimeoutError,
    InsufficientResearchError,
    InvalidTransitionError,
    NotFoundError,
    PersistenceError,
    PlanValidationError,
    RateLimitExceededError,
    RetryableGenerationError,
    ScriptEngineError,
    UpstreamGenerationError,
    ValidationError,
)
from .generation import GenerationClient, get_llm
from .job_api import JobService
from .job_models import EnqueueRequest, EnqueueResponse, JobStatusResponse
from .models import (
    AdequacyResult,
    ChunkAssignment,
    ContentPlan,
    ContentPoint,
    PlanStrategy,
    ResearchSource,
)
from .notifier import WebhookNotifier
from .orchestrator import GenerationOrchestrator, stitch_chunks
from .outline import OutlineGenerator, OutlineWorkflow
from .planning import ChunkPlanner, chunk_count_for_minutes
from .queue import JobStatus, JobStore, ScriptJob, create_job_store
from .rate_limit import RateLimiter
from .research import ResearchValidator
from .retry import RetryPolicy
from .services import ServiceContainer
from .worker import ScriptWorker

__all__ = [
    # Config
    "LLM_MODEL_NAME",
    "MAX_SCRIPT_MINUTES",
    "PROCESSING_BUDGET_SECONDS",
    # Errors
    "ScriptEngineError",
    "ValidationError",
    "InvalidTransitionError",
    "AuthenticationError",
    "AuthorizationError",
    "NotFoundError",
    "InsufficientResearchError",
    "RateLimitExceededError",
    "UpstreamGenerationError",
    "RetryableGenerationError",
    "GenerationTimeoutError",
    "FatalGenerationError",
    "PlanValidationError",
    "PersistenceError",
    # Models
    "AdequacyResult",
    "ChunkAssignment",
    "ContentPlan",
    "ContentPoint",
    "PlanStrategy",
    "ResearchSource",
    # Job store
    "JobStatus",
    "JobStore",
    "ScriptJob",
    "create_job_store",
    # Pipeline
    "ChunkPlanner",
    "chunk_count_for_minutes",
    "ResearchValidator",
    "OutlineGenerator",
    "OutlineWorkflow",
    "GenerationClient",
    "get_llm",
    "RateLimiter",
    "GenerationOrchestrator",
    "stitch_chunks",
    "RetryPolicy",
    "ScriptWorker",
    "WebhookNotifier",
    # Services
    "JobService",
    "EnqueueRequest",
    "EnqueueResponse",
    "JobStatusResponse",
    "ServiceContainer",
]
