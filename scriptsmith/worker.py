"""Scheduler-driven worker that processes one job per invocation.

Each ``run_once`` call recovers abandoned jobs, claims the next pending job
and runs the whole generation inside a fixed time budget. Redundant
invocations are harmless: the claim is atomic, so two workers never process
the same job.
"""

import logging
import socket
import threading
import time
import uuid
from typing import Optional

from pydantic import BaseModel

from .config import PROCESSING_BUDGET_SECONDS, STALE_JOB_BUDGET_MULTIPLIER
from .errors import PersistenceError
from .metrics import (
    record_job_status_change,
    record_stale_requeued,
    record_worker_run,
    track_job_execution,
    update_queue_size,
)
from .notifier import (
    EVENT_JOB_COMPLETED,
    EVENT_JOB_FAILED,
    EVENT_JOB_RETRYING,
    WebhookNotifier,
    job_event_payload,
)
from .orchestrator import GenerationOrchestrator
from .queue import JobStatus, JobStep, JobStore, JobUpdate, ScriptJob, utc_now
from .retry import RetryPolicy
from .utils import Deadline

logger = logging.getLogger(__name__)


class RunOutcome:
    """Values of ``RunOnceResult.outcome``."""

    IDLE = "idle"
    COMPLETED = "completed"
    RETRYING = "retrying"
    FAILED = "failed"


class RunOnceResult(BaseModel):
    """Summary of one worker invocation.

    Attributes:
        outcome: idle, completed, retrying or failed.
        job_id: The job processed, if any.
        stale_requeued: Jobs recovered by the staleness sweep.
        duration_seconds: Wall time spent on the job.
        error_message: Failure message when the attempt failed.
    """

    outcome: str
    job_id: Optional[str] = None
    stale_requeued: int = 0
    duration_seconds: float = 0.0
    error_message: Optional[str] = None


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"


class ScriptWorker:
    """Claims and processes generation jobs.

    Attributes:
        store: The job store shared with the API.
        orchestrator: Runs the chunked generation for a claimed job.
        retry_policy: Decides the fate of failed attempts.
        notifier: Optional webhook notifier for terminal and retry events.
        budget_seconds: Time budget for one job attempt.
        worker_id: Identifier written to ``locked_by``.
    """

    def __init__(
        self,
        store: JobStore,
        orchestrator: GenerationOrchestrator,
        retry_policy: Optional[RetryPolicy] = None,
        notifier: Optional[WebhookNotifier] = None,
        budget_seconds: float = PROCESSING_BUDGET_SECONDS,
        worker_id: Optional[str] = None,
    ):
        self.store = store
        self.orchestrator = orchestrator
        self.retry_policy = retry_policy or RetryPolicy()
        self.notifier = notifier
        self.budget_seconds = budget_seconds
        self.worker_id = worker_id or default_worker_id()

    @property
    def stale_after_seconds(self) -> float:
        return self.budget_seconds * STALE_JOB_BUDGET_MULTIPLIER

    def _notify(self, event: str, job: ScriptJob) -> None:
        if self.notifier is not None:
            self.notifier.notify(event, job_event_payload(job))

    def sweep_stale(self) -> int:
        """Requeue or fail jobs abandoned in processing.

        Returns:
            Number of jobs recovered.
        """
        count = self.store.requeue_stale(self.stale_after_seconds)
        record_stale_requeued(count)
        if count:
            logger.warning(f"Staleness sweep recovered {count} job(s)")
        return count

    def _complete(self, job: ScriptJob, script: str, metadata: dict, elapsed: float) -> ScriptJob:
        update = JobUpdate(
            status=JobStatus.COMPLETED,
            progress=100,
            current_chunk=job.total_chunks,
            current_step=JobStep.COMPLETED,
            generated_script=script,
            script_metadata=metadata,
            processing_time_seconds=round(elapsed, 2),
            completed_at=utc_now(),
            error_message=None,
            locked_at=None,
            locked_by=None,
        )
        try:
            completed = self.store.update(job.id, update)
        except PersistenceError:
            logger.exception(f"Job {job.id}: failed to persist completed script")
            raise
        if completed is None:
            logger.error(f"Job {job.id}: disappeared before completion was recorded")
            raise PersistenceError(f"Job {job.id} not found while recording completion")
        record_job_status_change(JobStatus.PROCESSING.value, JobStatus.COMPLETED.value)
        return completed

    def run_once(self) -> RunOnceResult:
        """Process at most one job.

        Returns:
            RunOnceResult describing what happened.

        Raises:
            PersistenceError: If the store cannot be read or the final
                state of the job cannot be written.
        """
        stale = self.sweep_stale()

        job = self.store.claim_next(worker_id=self.worker_id)
        if job is None:
            logger.debug("No pending jobs")
            record_worker_run(RunOutcome.IDLE)
            return RunOnceResult(outcome=RunOutcome.IDLE, stale_requeued=stale)

        record_job_status_change(JobStatus.PENDING.value, JobStatus.PROCESSING.value)
        logger.info(f"Worker {self.worker_id} claimed job {job.id} (attempt {job.retry_count + 1})")

        deadline = Deadline(self.budget_seconds)
        started = time.monotonic()

        try:
            with track_job_execution(job.id, job.total_chunks) as span:
                result = self.orchestrator.run(job, deadline)
                span.set_attribute("job.word_count", result.metadata.get("word_count", 0))
        except Exception as e:
            elapsed = time.monotonic() - started
            logger.exception(f"Job {job.id} attempt failed after {elapsed:.1f}s: {e}")
            current = self.store.get(job.id) or job
            decision = self.retry_policy.handle_failure(self.store, current, e)
            outcome = RunOutcome.RETRYING if decision.will_retry else RunOutcome.FAILED
            record_worker_run(outcome)
            self._notify(EVENT_JOB_RETRYING if decision.will_retry else EVENT_JOB_FAILED, decision.job)
            return RunOnceResult(
                outcome=outcome,
                job_id=job.id,
                stale_requeued=stale,
                duration_seconds=round(elapsed, 2),
                error_message=decision.error_message,
            )

        elapsed = time.monotonic() - started
        completed = self._complete(job, result.script, result.metadata, elapsed)
        logger.info(f"Job {job.id} completed in {elapsed:.1f}s ({result.metadata.get('word_count', 0)} words)")
        record_worker_run(RunOutcome.COMPLETED)
        self._notify(EVENT_JOB_COMPLETED, completed)

        return RunOnceResult(
            outcome=RunOutcome.COMPLETED,
            job_id=job.id,
            stale_requeued=stale,
            duration_seconds=round(elapsed, 2),
        )

    def run_forever(
        self,
        poll_interval: float = 5.0,
        stop_event: Optional[threading.Event] = None,
        max_jobs: Optional[int] = None,
    ) -> int:
        """Keep processing jobs until stopped.

        Args:
            poll_interval: Seconds to wait when the queue is empty.
            stop_event: Set to stop the loop between jobs.
            max_jobs: Stop after this many processed jobs.

        Returns:
            Number of jobs processed.
        """
        stop_event = stop_event or threading.Event()
        processed = 0
        logger.info(f"Worker {self.worker_id} started (budget {self.budget_seconds:.0f}s)")

        while not stop_event.is_set():
            result = self.run_once()
            update_queue_size(self.store.get_stats())

            if result.outcome == RunOutcome.IDLE:
                stop_event.wait(poll_interval)
                continue

            processed += 1
            if max_jobs is not None and processed >= max_jobs:
                break

        logger.info(f"Worker {self.worker_id} stopped after {processed} job(s)")
        return processed
