"""Tests for retry decisions."""

import pytest

from scriptsmith.errors import (
    FatalGenerationError,
    GenerationTimeoutError,
    PersistenceError,
    RetryableGenerationError,
    ValidationError,
)
from scriptsmith.queue import JobCreate, JobStatus, JobStep, JobUpdate
from scriptsmith.retry import MAX_ERROR_MESSAGE_LENGTH, RetryPolicy, error_message_for


def failing_job(store, max_retries=3, retry_count=0):
    """A claimed job with some progress, ready to fail."""
    job, _ = store.create(
        JobCreate(parent_request_id="req-1", owner_id="user-1", max_retries=max_retries, priority=7, total_chunks=4)
    )
    store.claim_next(worker_id="worker-1")
    return store.update(job.id, JobUpdate(retry_count=retry_count, progress=60, current_chunk=2))


class TestClassify:
    """Tests for error classification."""

    @pytest.mark.parametrize(
        "error",
        [
            RetryableGenerationError("503 from upstream"),
            GenerationTimeoutError("budget exhausted"),
            PersistenceError("database locked"),
            ConnectionError("reset by peer"),
            RuntimeError("unexpected"),
        ],
    )
    def test_retryable(self, error):
        """Test errors worth another attempt."""
        assert RetryPolicy().classify(error) is True

    @pytest.mark.parametrize(
        "error",
        [FatalGenerationError("400 bad request"), ValidationError("bad duration")],
    )
    def test_not_retryable(self, error):
        """Test errors that will fail again."""
        assert RetryPolicy().classify(error) is False

    def test_error_message_truncated(self):
        """Test that stored messages are bounded."""
        assert len(error_message_for(RuntimeError("x" * 5000))) == MAX_ERROR_MESSAGE_LENGTH

    def test_error_message_falls_back_to_type(self):
        """Test a message for exceptions without text."""
        assert error_message_for(TimeoutError()) == "TimeoutError"


class TestHandleFailure:
    """Tests for RetryPolicy.handle_failure."""

    def test_retry_requeues(self, memory_store):
        """Test that a retryable failure goes back to pending."""
        job = failing_job(memory_store)

        decision = RetryPolicy().handle_failure(memory_store, job, RetryableGenerationError("rate limited"))

        assert decision.will_retry is True
        stored = memory_store.get(job.id)
        assert stored.status == JobStatus.PENDING
        assert stored.retry_count == 1
        assert stored.current_step == JobStep.RETRY_QUEUED
        assert stored.error_message == "rate limited"
        assert stored.progress == 0
        assert stored.current_chunk == 0
        assert stored.locked_by is None
        assert stored.priority == 7
        assert stored.created_at == job.created_at
        assert memory_store.claim_next().id == job.id

    def test_last_retry_reaches_max(self, memory_store):
        """Test that the final retry brings retry_count up to max_retries."""
        job = failing_job(memory_store, max_retries=3, retry_count=2)

        decision = RetryPolicy().handle_failure(memory_store, job, RetryableGenerationError("timeout"))

        assert decision.will_retry is True
        assert decision.job.status == JobStatus.PENDING
        assert decision.job.retry_count == 3

    def test_exhausted_retries_fail(self, memory_store):
        """Test that a job with no retries left fails permanently."""
        job = failing_job(memory_store, max_retries=3, retry_count=3)

        decision = RetryPolicy().handle_failure(memory_store, job, RetryableGenerationError("timeout"))

        assert decision.will_retry is False
        assert decision.retryable is True
        stored = memory_store.get(job.id)
        assert stored.status == JobStatus.FAILED
        assert stored.current_step == JobStep.FAILED
        assert stored.retry_count == 3
        assert stored.completed_at is not None
        assert memory_store.find_active("req-1") is None

    def test_fatal_error_fails_immediately(self, memory_store):
        """Test that non-retryable errors skip the remaining retries."""
        job = failing_job(memory_store)

        decision = RetryPolicy().handle_failure(memory_store, job, FatalGenerationError("invalid request"))

        assert decision.will_retry is False
        assert decision.retryable is False
        assert decision.job.status == JobStatus.FAILED
        assert decision.job.retry_count == 0
        assert decision.job.error_message == "invalid request"

    def test_missing_job(self, memory_store, monkeypatch):
        """Test that a vanished job is a persistence failure."""
        job = failing_job(memory_store)
        monkeypatch.setattr(memory_store, "update", lambda job_id, update: None)

        with pytest.raises(PersistenceError):
            RetryPolicy().handle_failure(memory_store, job, RuntimeError("boom"))
