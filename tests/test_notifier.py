"""Tests for webhook notifications."""

import hashlib
import hmac
import json
from unittest.mock import MagicMock, patch

import pytest
import requests

from scriptsmith.notifier import (
    EVENT_HEADER,
    EVENT_JOB_COMPLETED,
    EVENT_JOB_FAILED,
    SIGNATURE_HEADER,
    WebhookNotifier,
    job_event_payload,
    sign_payload,
)
from scriptsmith.queue import JobCreate, JobStatus, JobUpdate


def ok_response(status_code=200):
    response = MagicMock()
    response.status_code = status_code
    return response


@pytest.fixture
def notifier():
    """An enabled notifier that never waits between attempts."""
    hook = WebhookNotifier(url="https://hooks.example.com/scripts", secret="s3cret", retries=2, retry_delay=0)
    yield hook
    hook.shutdown()


class TestPayloads:
    """Tests for payload construction and signing."""

    def test_sign_payload(self):
        """Test the signature format."""
        body = b'{"event": "x"}'
        expected = hmac.new(b"s3cret", body, hashlib.sha256).hexdigest()
        assert sign_payload("s3cret", body) == f"sha256={expected}"

    def test_job_event_payload(self, memory_store):
        """Test the job summary sent to subscribers."""
        job, _ = memory_store.create(JobCreate(parent_request_id="req-1", owner_id="user-1"))
        job = memory_store.update(
            job.id,
            JobUpdate(
                status=JobStatus.COMPLETED,
                progress=100,
                generated_script="The full script",
                script_metadata={"word_count": 5200, "chunk_count": 3},
            ),
        )

        payload = job_event_payload(job)

        assert payload["job_id"] == job.id
        assert payload["status"] == "completed"
        assert payload["word_count"] == 5200
        assert payload["chunk_count"] == 3
        assert "generated_script" not in payload
        assert "error_message" not in payload


class TestWebhookNotifier:
    """Tests for WebhookNotifier delivery."""

    def test_disabled_without_url(self):
        """Test that a notifier without a URL sends nothing."""
        hook = WebhookNotifier(url="")
        with patch("scriptsmith.notifier.requests.post") as post:
            assert hook.notify(EVENT_JOB_COMPLETED, {"job_id": "j"}) is None
        post.assert_not_called()
        hook.shutdown()

    def test_signed_delivery(self, notifier):
        """Test a successful signed delivery."""
        with patch("scriptsmith.notifier.requests.post", return_value=ok_response()) as post:
            result = notifier.deliver(EVENT_JOB_COMPLETED, {"job_id": "job-1"})

        assert result.success is True
        assert result.attempts == 1
        assert result.status_code == 200

        args, kwargs = post.call_args
        assert args[0] == "https://hooks.example.com/scripts"
        body = kwargs["data"]
        assert json.loads(body)["event"] == EVENT_JOB_COMPLETED
        assert json.loads(body)["data"] == {"job_id": "job-1"}
        assert kwargs["headers"][EVENT_HEADER] == EVENT_JOB_COMPLETED
        assert kwargs["headers"][SIGNATURE_HEADER] == sign_payload("s3cret", body)
        assert kwargs["timeout"] == notifier.timeout

    def test_unsigned_without_secret(self):
        """Test that no signature header is sent without a secret."""
        hook = WebhookNotifier(url="https://hooks.example.com/scripts", secret="")
        with patch("scriptsmith.notifier.requests.post", return_value=ok_response()) as post:
            hook.deliver(EVENT_JOB_FAILED, {"job_id": "job-1"})
        assert SIGNATURE_HEADER not in post.call_args[1]["headers"]
        hook.shutdown()

    def test_retries_then_succeeds(self, notifier):
        """Test that a transient failure is retried."""
        with patch(
            "scriptsmith.notifier.requests.post",
            side_effect=[requests.ConnectionError("refused"), ok_response()],
        ) as post:
            result = notifier.deliver(EVENT_JOB_COMPLETED, {"job_id": "job-1"})

        assert result.success is True
        assert result.attempts == 2
        assert post.call_count == 2

    def test_gives_up_after_retries(self, notifier):
        """Test that delivery stops after the configured attempts."""
        failing = ok_response(500)
        failing.raise_for_status.side_effect = requests.HTTPError("500 Server Error")

        with patch("scriptsmith.notifier.requests.post", return_value=failing) as post:
            result = notifier.deliver(EVENT_JOB_FAILED, {"job_id": "job-1"})

        assert result.success is False
        assert result.attempts == 3
        assert result.status_code == 500
        assert "500" in result.error
        assert post.call_count == 3

    def test_notify_runs_in_background(self, notifier):
        """Test that notify returns a future resolving to the delivery result."""
        with patch("scriptsmith.notifier.requests.post", return_value=ok_response()):
            future = notifier.notify(EVENT_JOB_COMPLETED, {"job_id": "job-1"})
            result = future.result(timeout=5)

        assert result.success is True
