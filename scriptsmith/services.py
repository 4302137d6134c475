"""Wiring of the stores, clients and services used by the API and CLI."""

import logging
from dataclasses import dataclass
from typing import Optional

from .config import PROCESSING_BUDGET_SECONDS, TRIGGER_SECRET
from .generation import GenerationClient
from .job_api import JobService
from .notifier import WebhookNotifier
from .orchestrator import GenerationOrchestrator
from .outline import OutlineGenerator, OutlineWorkflow
from .persistence import StorageBackend, create_storage
from .planning import ChunkPlanner
from .queue import JobStore, create_job_store
from .rate_limit import RateLimiter, RequestRateLimiter, create_request_rate_limiter
from .request_api import RequestService
from .research import ResearchValidator
from .retry import RetryPolicy
from .worker import ScriptWorker

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    """Everything a process needs to serve requests and run jobs.

    Attributes:
        store: Job store.
        storage: Entity store (requests, research, outlines).
        client: Generation client with its own rate limiter.
        job_service: Job submission and polling.
        request_service: Script request management.
        outline_workflow: Outline generation and review.
        worker: RunOnce worker.
        trigger_secret: Shared secret for the scheduler trigger.
        run_worker_on_enqueue: Whether the API runs the worker right after
            a new job is queued.
    """

    store: JobStore
    storage: StorageBackend
    client: GenerationClient
    job_service: JobService
    request_service: RequestService
    outline_workflow: OutlineWorkflow
    worker: ScriptWorker
    trigger_secret: str = TRIGGER_SECRET
    run_worker_on_enqueue: bool = True

    @classmethod
    def build(
        cls,
        store: Optional[JobStore] = None,
        storage: Optional[StorageBackend] = None,
        client: Optional[GenerationClient] = None,
        request_rate_limiter: Optional[RequestRateLimiter] = None,
        notifier: Optional[WebhookNotifier] = None,
        validator: Optional[ResearchValidator] = None,
        trigger_secret: Optional[str] = None,
        budget_seconds: float = PROCESSING_BUDGET_SECONDS,
        run_worker_on_enqueue: bool = True,
    ) -> "ServiceContainer":
        """Assemble a container, creating anything not supplied from the environment.

        Args:
            store: Job store (defaults to ``create_job_store()``).
            storage: Entity store (defaults to ``create_storage()``).
            client: Generation client (defaults to one with a fresh rate limiter).
            request_rate_limiter: Submission limiter (Redis when REDIS_URL is set).
            notifier: Webhook notifier (configured from SCRIPT_WEBHOOK_URL).
            validator: Research gate.
            trigger_secret: Trigger secret (defaults to SCRIPT_TRIGGER_SECRET).
            budget_seconds: Time budget of one worker run.
            run_worker_on_enqueue: Run the worker after each new job.

        Returns:
            A ready ServiceContainer.
        """
        store = store or create_job_store()
        storage = storage or create_storage()
        client = client or GenerationClient(rate_limiter=RateLimiter())
        validator = validator or ResearchValidator()
        planner = ChunkPlanner(client)

        orchestrator = GenerationOrchestrator(store, client, planner=planner)
        worker = ScriptWorker(
            store,
            orchestrator,
            retry_policy=RetryPolicy(),
            notifier=notifier or WebhookNotifier(),
            budget_seconds=budget_seconds,
        )

        container = cls(
            store=store,
            storage=storage,
            client=client,
            job_service=JobService(
                store,
                storage,
                rate_limiter=request_rate_limiter or create_request_rate_limiter(),
                planner=planner,
            ),
            request_service=RequestService(storage, validator),
            outline_workflow=OutlineWorkflow(storage, OutlineGenerator(client), validator),
            worker=worker,
            trigger_secret=TRIGGER_SECRET if trigger_secret is None else trigger_secret,
            run_worker_on_enqueue=run_worker_on_enqueue,
        )
        logger.info(f"Services ready (worker {worker.worker_id}, budget {budget_seconds:.0f}s)")
        return container

    def close(self) -> None:
        """Release store connections and stop webhook delivery."""
        if self.worker.notifier is not None:
            self.worker.notifier.shutdown(wait=False)
        self.store.close()
        self.storage.close()
