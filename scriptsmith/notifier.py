"""Webhook notifications for job lifecycle events.

Deliveries run on a small thread pool owned by the notifier so the worker
never waits on a subscriber. A failed delivery is logged and reported in
its DeliveryResult; it never changes job state.
"""

import hashlib
import hmac
import json
import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Dict, Optional

import requests
from pydantic import BaseModel

from .config import (
    WEBHOOK_MAX_RETRIES,
    WEBHOOK_RETRY_DELAY_SECONDS,
    WEBHOOK_SECRET,
    WEBHOOK_TIMEOUT_SECONDS,
    WEBHOOK_URL,
)
from .metrics import record_webhook_delivery
from .queue import ScriptJob
from .utils import utc_now

logger = logging.getLogger(__name__)

EVENT_JOB_COMPLETED = "script_job.completed"
EVENT_JOB_FAILED = "script_job.failed"
EVENT_JOB_RETRYING = "script_job.retrying"

SIGNATURE_HEADER = "X-Scriptsmith-Signature"
EVENT_HEADER = "X-Scriptsmith-Event"


class DeliveryResult(BaseModel):
    """Outcome of one webhook delivery."""

    event: str
    success: bool
    attempts: int
    status_code: Optional[int] = None
    error: Optional[str] = None


def sign_payload(secret: str, body: bytes) -> str:
    """HMAC-SHA256 signature of ``body``, formatted as ``sha256=<hex>``."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def job_event_payload(job: ScriptJob) -> Dict[str, Any]:
    """Payload describing a job for webhook subscribers.

    The generated script itself is not included; subscribers poll for it.
    """
    payload: Dict[str, Any] = {
        "job_id": job.id,
        "parent_request_id": job.parent_request_id,
        "status": job.status.value,
        "progress": job.progress,
        "retry_count": job.retry_count,
        "max_retries": job.max_retries,
    }
    if job.error_message:
        payload["error_message"] = job.error_message
    if job.script_metadata:
        payload["word_count"] = job.script_metadata.get("word_count")
        payload["chunk_count"] = job.script_metadata.get("chunk_count")
    return payload


class WebhookNotifier:
    """Posts signed JSON events to a configured URL.

    A notifier without a URL is disabled: ``notify`` returns None and
    nothing is sent.

    Example:
        notifier = WebhookNotifier("https://hooks.example.com/scripts", secret="s3cret")
        notifier.notify(EVENT_JOB_COMPLETED, job_event_payload(job))
    """

    def __init__(
        self,
        url: Optional[str] = None,
        secret: Optional[str] = None,
        timeout: float = WEBHOOK_TIMEOUT_SECONDS,
        retries: int = WEBHOOK_MAX_RETRIES,
        retry_delay: float = WEBHOOK_RETRY_DELAY_SECONDS,
        max_workers: int = 2,
    ):
        self.url = url if url is not None else WEBHOOK_URL
        self.secret = secret if secret is not None else WEBHOOK_SECRET
        self.timeout = timeout
        self.retries = retries
        self.retry_delay = retry_delay
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="webhook")

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    def notify(self, event: str, payload: Dict[str, Any]) -> Optional["Future[DeliveryResult]"]:
        """Schedule delivery of ``event`` and return immediately.

        Args:
            event: Event name (e.g. ``script_job.completed``).
            payload: JSON-serialisable event data.

        Returns:
            A future resolving to the DeliveryResult, or None when disabled.
        """
        if not self.enabled:
            return None
        return self._executor.submit(self.deliver, event, payload)

    def deliver(self, event: str, payload: Dict[str, Any]) -> DeliveryResult:
        """Deliver one event synchronously with bounded retries.

        Args:
            event: Event name.
            payload: JSON-serialisable event data.

        Returns:
            DeliveryResult with the final outcome.
        """
        body = json.dumps(
            {"event": event, "sent_at": utc_now().isoformat(), "data": payload},
            default=str,
        ).encode("utf-8")
        headers = {"Content-Type": "application/json", EVENT_HEADER: event}
        if self.secret:
            headers[SIGNATURE_HEADER] = sign_payload(self.secret, body)

        attempts = 0
        status_code: Optional[int] = None
        error: Optional[str] = None

        for attempt in range(self.retries + 1):
            attempts = attempt + 1
            try:
                response = requests.post(self.url, data=body, headers=headers, timeout=self.timeout)
                status_code = response.status_code
                response.raise_for_status()
                logger.info(f"Delivered {event} webhook ({status_code})")
                record_webhook_delivery(event, True)
                return DeliveryResult(event=event, success=True, attempts=attempts, status_code=status_code)
            except requests.RequestException as e:
                error = str(e)
                logger.warning(f"Webhook {event} attempt {attempts} failed: {e}")
                if attempt < self.retries:
                    time.sleep(self.retry_delay)

        logger.error(f"Giving up on {event} webhook after {attempts} attempts")
        record_webhook_delivery(event, False)
        return DeliveryResult(
            event=event,
            success=False,
            attempts=attempts,
            status_code=status_code,
            error=error,
        )

    def shutdown(self, wait: bool = True) -> None:
        """Stop the delivery pool."""
        self._executor.shutdown(wait=wait)
