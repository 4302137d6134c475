"""Retry decisions for failed generation attempts.

A failed attempt either goes back to pending for another full run or ends
the job. Priority and creation time are left alone on retry, so a retried
job keeps its place relative to jobs submitted after it.
"""

import logging
from typing import Optional

from pydantic import BaseModel

from .errors import (
    FatalGenerationError,
    PersistenceError,
    RetryableGenerationError,
    ValidationError,
)
from .metrics import record_job_status_change, record_retry_decision
from .queue import JobStatus, JobStep, JobStore, JobUpdate, ScriptJob, utc_now

logger = logging.getLogger(__name__)

# Upper bound on stored error messages
MAX_ERROR_MESSAGE_LENGTH = 1000


class RetryDecision(BaseModel):
    """Outcome of handling one failed attempt.

    Attributes:
        will_retry: True if the job went back to pending.
        retryable: Whether the error itself was classified as retryable.
        job: The job as persisted after the decision.
        error_message: Message stored on the job.
    """

    will_retry: bool
    retryable: bool
    job: ScriptJob
    error_message: str


def error_message_for(error: BaseException) -> str:
    message = getattr(error, "message", None) or str(error) or type(error).__name__
    return message[:MAX_ERROR_MESSAGE_LENGTH]


class RetryPolicy:
    """Decides whether a failed attempt is retried.

    Example:
        policy = RetryPolicy()
        decision = policy.handle_failure(store, job, error)
        if not decision.will_retry:
            notify_failure(decision.job)
    """

    def classify(self, error: BaseException) -> bool:
        """Return True if ``error`` is worth another attempt.

        Upstream timeouts, rate limits and server errors, store failures,
        network-level errors and anything unrecognised are retryable.
        Rejected requests and invalid input are not.
        """
        if isinstance(error, RetryableGenerationError):
            return True
        return not isinstance(error, (FatalGenerationError, ValidationError))

    def handle_failure(
        self,
        store: JobStore,
        job: ScriptJob,
        error: BaseException,
    ) -> RetryDecision:
        """Persist the outcome of a failed attempt.

        Args:
            store: The job store.
            job: The job whose attempt failed.
            error: What went wrong.

        Returns:
            RetryDecision describing the stored state.

        Raises:
            PersistenceError: If the job cannot be updated.
        """
        retryable = self.classify(error)
        message = error_message_for(error)
        will_retry = retryable and job.retry_count < job.max_retries

        if will_retry:
            update = JobUpdate(
                status=JobStatus.PENDING,
                retry_count=job.retry_count + 1,
                current_step=JobStep.RETRY_QUEUED,
                error_message=message,
                progress=0,
                current_chunk=0,
                locked_at=None,
                locked_by=None,
            )
        else:
            update = JobUpdate(
                status=JobStatus.FAILED,
                current_step=JobStep.FAILED,
                error_message=message,
                completed_at=utc_now(),
                locked_at=None,
                locked_by=None,
            )

        updated: Optional[ScriptJob] = store.update(job.id, update)
        if updated is None:
            raise PersistenceError(f"Job {job.id} not found while recording failure")

        record_retry_decision(will_retry)
        record_job_status_change(job.status.value, updated.status.value)

        if will_retry:
            logger.warning(
                f"Job {job.id} attempt failed ({type(error).__name__}); "
                f"requeued as retry {updated.retry_count}/{job.max_retries}"
            )
        else:
            reason = "retries exhausted" if retryable else "not retryable"
            logger.error(f"Job {job.id} failed permanently ({reason}): {message}")

        return RetryDecision(
            will_retry=will_retry,
            retryable=retryable,
            job=updated,
            error_message=message,
        )
