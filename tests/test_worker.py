"""Tests for the scheduler-driven worker."""

import threading
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from scriptsmith.errors import FatalGenerationError, RetryableGenerationError
from scriptsmith.job_models import GenerationParams
from scriptsmith.notifier import EVENT_JOB_COMPLETED, EVENT_JOB_FAILED, EVENT_JOB_RETRYING
from scriptsmith.orchestrator import GenerationOrchestrator
from scriptsmith.planning import distribute_mechanically
from scriptsmith.queue import JobCreate, JobStatus, JobStep, JobUpdate, utc_now
from scriptsmith.worker import RunOutcome, ScriptWorker


@pytest.fixture
def notifier():
    """A notifier that records events instead of posting them."""
    return MagicMock()


@pytest.fixture
def worker(memory_store, fake_client, notifier):
    """A worker over the in-memory store and the scripted client."""
    return ScriptWorker(
        memory_store,
        GenerationOrchestrator(memory_store, fake_client),
        notifier=notifier,
        budget_seconds=300,
        worker_id="worker-test",
    )


@pytest.fixture
def submit(memory_store, content_points):
    """Submit a planned job to the store."""

    def _submit(parent="req-1", max_retries=3, priority=0):
        plan = distribute_mechanically(content_points, 3, 36)
        params = GenerationParams(title="The History of Tides", content_points=content_points, total_minutes=36)
        job, _ = memory_store.create(
            JobCreate(
                parent_request_id=parent,
                owner_id="user-1",
                generation_params=params.model_dump(mode="json"),
                total_chunks=3,
                content_plan=plan,
                max_retries=max_retries,
                priority=priority,
            )
        )
        return job

    return _submit


class TestRunOnce:
    """Tests for ScriptWorker.run_once."""

    def test_idle(self, worker, notifier):
        """Test a run with nothing to do."""
        result = worker.run_once()

        assert result.outcome == RunOutcome.IDLE
        assert result.job_id is None
        notifier.notify.assert_not_called()

    def test_completes_job(self, worker, submit, memory_store, notifier):
        """Test processing a job to completion."""
        job = submit()

        result = worker.run_once()

        assert result.outcome == RunOutcome.COMPLETED
        assert result.job_id == job.id
        stored = memory_store.get(job.id)
        assert stored.status == JobStatus.COMPLETED
        assert stored.progress == 100
        assert stored.current_step == JobStep.COMPLETED
        assert stored.current_chunk == 3
        assert stored.generated_script.startswith("Part 1 narration.")
        assert stored.script_metadata["chunk_count"] == 3
        assert stored.processing_time_seconds is not None
        assert stored.completed_at is not None
        assert stored.locked_by is None
        assert memory_store.find_active("req-1") is None

        event, payload = notifier.notify.call_args[0]
        assert event == EVENT_JOB_COMPLETED
        assert payload["job_id"] == job.id
        assert payload["status"] == "completed"
        assert payload["chunk_count"] == 3

    def test_one_job_per_run(self, worker, submit, memory_store):
        """Test that a run processes at most one job."""
        first = submit("req-a", priority=5)
        second = submit("req-b")

        assert worker.run_once().job_id == first.id
        assert memory_store.get(second.id).status == JobStatus.PENDING

    def test_retryable_failure_requeues(self, worker, submit, fake_client, memory_store, notifier):
        """Test that a transient failure sends the job back to pending."""
        job = submit()
        fake_client.script("chunk", "Part one.", RetryableGenerationError("upstream timed out"))

        result = worker.run_once()

        assert result.outcome == RunOutcome.RETRYING
        assert result.error_message == "upstream timed out"
        stored = memory_store.get(job.id)
        assert stored.status == JobStatus.PENDING
        assert stored.retry_count == 1
        assert stored.progress == 0
        assert stored.content_plan is not None
        assert notifier.notify.call_args[0][0] == EVENT_JOB_RETRYING

    def test_retry_then_complete(self, worker, submit, fake_client, memory_store):
        """Test that a requeued job is picked up and finished by the next run."""
        job = submit()
        fake_client.script("chunk", RetryableGenerationError("rate limited"))

        assert worker.run_once().outcome == RunOutcome.RETRYING
        assert worker.run_once().outcome == RunOutcome.COMPLETED

        stored = memory_store.get(job.id)
        assert stored.status == JobStatus.COMPLETED
        assert stored.retry_count == 1

    def test_fatal_failure(self, worker, submit, fake_client, memory_store, notifier):
        """Test that a fatal failure ends the job."""
        job = submit()
        fake_client.script("chunk", FatalGenerationError("invalid request"))

        result = worker.run_once()

        assert result.outcome == RunOutcome.FAILED
        stored = memory_store.get(job.id)
        assert stored.status == JobStatus.FAILED
        assert stored.error_message == "invalid request"
        assert stored.generated_script is None
        assert notifier.notify.call_args[0][0] == EVENT_JOB_FAILED

    def test_exhausted_retries(self, worker, submit, fake_client, memory_store):
        """Test that a job failing on every attempt ends up failed."""
        job = submit(max_retries=1)
        fake_client.script("chunk", RetryableGenerationError("one"), RetryableGenerationError("two"))

        outcomes = [worker.run_once().outcome for _ in range(3)]

        assert outcomes == [RunOutcome.RETRYING, RunOutcome.FAILED, RunOutcome.IDLE]
        stored = memory_store.get(job.id)
        assert stored.status == JobStatus.FAILED
        assert stored.retry_count == 1
        assert stored.error_message == "two"

    def test_sweeps_stale_jobs_first(self, worker, submit, memory_store):
        """Test that an abandoned job is recovered and processed."""
        job = submit()
        memory_store.claim_next(worker_id="crashed-worker")
        memory_store.update(
            job.id,
            JobUpdate(locked_at=utc_now() - timedelta(seconds=worker.stale_after_seconds + 60)),
        )

        result = worker.run_once()

        assert result.stale_requeued == 1
        assert result.outcome == RunOutcome.COMPLETED
        assert memory_store.get(job.id).retry_count == 1

    def test_stale_threshold(self, worker):
        """Test that staleness is twice the budget."""
        assert worker.stale_after_seconds == 600

    def test_without_notifier(self, memory_store, fake_client, submit):
        """Test that notifications are optional."""
        submit()
        worker = ScriptWorker(memory_store, GenerationOrchestrator(memory_store, fake_client))
        assert worker.run_once().outcome == RunOutcome.COMPLETED


class TestRunForever:
    """Tests for ScriptWorker.run_forever."""

    def test_stops_after_max_jobs(self, worker, submit):
        """Test the job limit."""
        submit("req-a")
        submit("req-b")
        submit("req-c")

        assert worker.run_forever(poll_interval=0, max_jobs=2) == 2

    def test_stops_on_event(self, worker):
        """Test that a set stop event ends the loop."""
        stop = threading.Event()
        stop.set()
        assert worker.run_forever(poll_interval=0, stop_event=stop) == 0
