"""Prometheus metrics and OpenTelemetry tracing for Scriptsmith.

This module provides observability instrumentation for the generation pipeline:
- Prometheus metrics for system monitoring
- OpenTelemetry tracing for request correlation and debugging

Usage:
    from scriptsmith.metrics import (
        job_submissions_total,
        job_status_changes_total,
        job_duration_seconds,
        get_tracer,
    )

    # Metrics are automatically updated when using instrumented services
    # Access metrics endpoint at /metrics on the API server
"""

import logging
import time
from contextlib import contextmanager
from functools import wraps
from typing import Any, Callable, Generator, Optional

from opentelemetry import trace
from prometheus_client import Counter, Gauge, Histogram, Info
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from .queue.models import QueueStats

logger = logging.getLogger(__name__)

# ============================================================================
# Prometheus Metrics Definitions
# ============================================================================

# --- Job Metrics ---
job_submissions_total = Counter(
    "scriptsmith_job_submissions_total",
    "Total number of job submissions",
    ["is_duplicate"],
)

job_status_changes_total = Counter(
    "scriptsmith_job_status_changes_total",
    "Total number of job status changes",
    ["from_status", "to_status"],
)

job_duration_seconds = Histogram(
    "scriptsmith_job_duration_seconds",
    "Job execution duration in seconds",
    ["status"],
    buckets=(1, 5, 10, 30, 60, 120, 180, 240, 300, 600),
)

jobs_in_progress = Gauge(
    "scriptsmith_jobs_in_progress",
    "Number of jobs currently being processed by this process",
)

job_errors_total = Counter(
    "scriptsmith_job_errors_total",
    "Total number of job execution errors",
    ["error_type"],
)

retry_decisions_total = Counter(
    "scriptsmith_retry_decisions_total",
    "Total number of retry policy decisions",
    ["decision"],  # retry, fail
)

stale_jobs_requeued_total = Counter(
    "scriptsmith_stale_jobs_requeued_total",
    "Total number of abandoned jobs recovered by the staleness sweep",
)

# --- Worker Metrics ---
worker_runs_total = Counter(
    "scriptsmith_worker_runs_total",
    "Total number of RunOnce invocations",
    ["outcome"],  # idle, completed, retrying, failed
)

# --- Generation Metrics ---
chunks_generated_total = Counter(
    "scriptsmith_chunks_generated_total",
    "Total number of script chunks generated",
    ["plan_strategy"],
)

generation_calls_total = Counter(
    "scriptsmith_generation_calls_total",
    "Total number of calls to the generation service",
    ["stage", "outcome"],
)

generation_duration_seconds = Histogram(
    "scriptsmith_generation_duration_seconds",
    "Generation service call duration in seconds",
    ["stage"],
    buckets=(0.5, 1, 2.5, 5, 10, 20, 30, 60, 120),
)

generation_tokens_total = Counter(
    "scriptsmith_generation_tokens_total",
    "Total number of tokens reported by the generation service",
    ["kind"],  # input, output
)

plans_total = Counter(
    "scriptsmith_content_plans_total",
    "Total number of content plans built",
    ["strategy"],
)

# --- Outline Metrics ---
outline_transitions_total = Counter(
    "scriptsmith_outline_transitions_total",
    "Total number of outline workflow transitions",
    ["status"],  # pending, approved, rejected, regenerating
)

research_gate_total = Counter(
    "scriptsmith_research_gate_total",
    "Total number of research adequacy checks",
    ["adequate"],
)

# --- Queue Metrics ---
queue_size = Gauge(
    "scriptsmith_queue_size",
    "Current number of jobs by status",
    ["status"],
)

# --- Webhook Metrics ---
webhook_deliveries_total = Counter(
    "scriptsmith_webhook_deliveries_total",
    "Total number of webhook delivery attempts",
    ["event", "success"],
)

# --- API Metrics ---
api_requests_total = Counter(
    "scriptsmith_api_requests_total",
    "Total number of API requests",
    ["method", "endpoint", "status_code"],
)

api_request_duration_seconds = Histogram(
    "scriptsmith_api_request_duration_seconds",
    "API request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# --- System Info ---
system_info = Info(
    "scriptsmith_system",
    "Scriptsmith system information",
)


# ============================================================================
# OpenTelemetry Tracing
# ============================================================================


def get_tracer(name: str = "scriptsmith") -> trace.Tracer:
    """Get an OpenTelemetry tracer.

    Spans are no-ops until an SDK tracer provider is installed by the host.

    Args:
        name: The name of the tracer (typically the module name).

    Returns:
        An OpenTelemetry tracer.
    """
    return trace.get_tracer(name)


# ============================================================================
# Instrumentation Helpers
# ============================================================================


@contextmanager
def track_job_execution(job_id: str, total_chunks: int) -> Generator[trace.Span, None, None]:
    """Context manager to track job execution metrics and tracing.

    Args:
        job_id: The job identifier.
        total_chunks: Number of chunks in the job's plan.

    Yields:
        The active span.

    Example:
        with track_job_execution(job.id, job.total_chunks):
            orchestrator.run(job, deadline)
    """
    tracer = get_tracer()
    start_time = time.time()

    jobs_in_progress.inc()

    try:
        with tracer.start_as_current_span(
            "job.execute",
            attributes={"job.id": job_id, "job.total_chunks": total_chunks},
        ) as span:
            yield span
            duration = time.time() - start_time
            job_duration_seconds.labels(status="completed").observe(duration)
            span.set_attribute("job.duration_seconds", duration)
    except Exception as e:
        duration = time.time() - start_time
        job_duration_seconds.labels(status="failed").observe(duration)
        job_errors_total.labels(error_type=type(e).__name__).inc()
        raise
    finally:
        jobs_in_progress.dec()


@contextmanager
def track_generation_call(stage: str) -> Generator[None, None, None]:
    """Context manager to time one call to the generation service.

    Args:
        stage: The pipeline stage (planning, outline, chunk).
    """
    tracer = get_tracer()
    start_time = time.time()

    with tracer.start_as_current_span(f"generation.{stage}", attributes={"generation.stage": stage}):
        try:
            yield
        except Exception:
            generation_calls_total.labels(stage=stage, outcome="error").inc()
            raise
        finally:
            generation_duration_seconds.labels(stage=stage).observe(time.time() - start_time)
        generation_calls_total.labels(stage=stage, outcome="success").inc()


def track_api_request(method: str, endpoint: str, status_code: int, duration: float) -> None:
    """Record API request metrics.

    Args:
        method: HTTP method.
        endpoint: Request endpoint.
        status_code: Response status code.
        duration: Request duration in seconds.
    """
    api_requests_total.labels(method=method, endpoint=endpoint, status_code=str(status_code)).inc()
    api_request_duration_seconds.labels(method=method, endpoint=endpoint).observe(duration)


def record_job_submission(is_duplicate: bool = False) -> None:
    """Record a job submission metric.

    Args:
        is_duplicate: Whether this was a duplicate submission.
    """
    job_submissions_total.labels(is_duplicate=str(is_duplicate).lower()).inc()


def record_job_status_change(from_status: str, to_status: str) -> None:
    """Record a job status change metric.

    Args:
        from_status: Previous job status.
        to_status: New job status.
    """
    job_status_changes_total.labels(from_status=from_status, to_status=to_status).inc()


def record_retry_decision(will_retry: bool) -> None:
    retry_decisions_total.labels(decision="retry" if will_retry else "fail").inc()


def record_stale_requeued(count: int) -> None:
    if count:
        stale_jobs_requeued_total.inc(count)


def record_worker_run(outcome: str) -> None:
    worker_runs_total.labels(outcome=outcome).inc()


def record_chunk_generated(plan_strategy: str) -> None:
    chunks_generated_total.labels(plan_strategy=plan_strategy).inc()


def record_token_usage(input_tokens: int, output_tokens: int) -> None:
    generation_tokens_total.labels(kind="input").inc(input_tokens)
    generation_tokens_total.labels(kind="output").inc(output_tokens)


def record_plan(strategy: str) -> None:
    plans_total.labels(strategy=strategy).inc()


def record_outline_transition(status: str) -> None:
    """Record an outline entering ``status``.

    Args:
        status: The new outline status.
    """
    outline_transitions_total.labels(status=status).inc()


def record_research_gate(adequate: bool) -> None:
    research_gate_total.labels(adequate=str(adequate).lower()).inc()


def record_webhook_delivery(event: str, success: bool) -> None:
    webhook_deliveries_total.labels(event=event, success=str(success).lower()).inc()


def update_queue_size(stats: QueueStats) -> None:
    """Update the queue size gauges from store statistics.

    Args:
        stats: Current job store statistics.
    """
    queue_size.labels(status="pending").set(stats.pending_jobs)
    queue_size.labels(status="processing").set(stats.processing_jobs)
    queue_size.labels(status="completed").set(stats.completed_jobs)
    queue_size.labels(status="failed").set(stats.failed_jobs)


def set_system_info(version: str = "0.1.0", **kwargs: Any) -> None:
    """Set system information.

    Args:
        version: The application version.
        **kwargs: Additional info to include.
    """
    info = {"version": version}
    info.update(kwargs)
    system_info.info(info)


def traced(
    name: Optional[str] = None,
    attributes: Optional[dict] = None,
) -> Callable:
    """Decorator to add tracing to a function.

    Args:
        name: Span name (defaults to function name).
        attributes: Additional span attributes.

    Returns:
        Decorated function.

    Example:
        @traced("outline.generate", {"component": "outline"})
        def generate():
            pass
    """

    def decorator(func: Callable) -> Callable:
        span_name = name or func.__name__

        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            tracer = get_tracer()
            with tracer.start_as_current_span(span_name, attributes=attributes or {}):
                return func(*args, **kwargs)

        return wrapper

    return decorator


class MetricsMiddleware(BaseHTTPMiddleware):
    """Middleware recording request count and latency per route template."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        response = await call_next(request)

        route = request.scope.get("route")
        endpoint = getattr(route, "path", None) or request.url.path
        track_api_request(request.method, endpoint, response.status_code, time.time() - start_time)
        return response


# ============================================================================
# Exports
# ============================================================================

__all__ = [
    # Prometheus metrics
    "job_submissions_total",
    "job_status_changes_total",
    "job_duration_seconds",
    "jobs_in_progress",
    "job_errors_total",
    "retry_decisions_total",
    "stale_jobs_requeued_total",
    "worker_runs_total",
    "chunks_generated_total",
    "generation_calls_total",
    "generation_duration_seconds",
    "generation_tokens_total",
    "plans_total",
    "outline_transitions_total",
    "research_gate_total",
    "queue_size",
    "webhook_deliveries_total",
    "api_requests_total",
    "api_request_duration_seconds",
    "system_info",
    # OpenTelemetry
    "get_tracer",
    # Instrumentation helpers
    "track_job_execution",
    "track_generation_call",
    "track_api_request",
    "record_job_submission",
    "record_job_status_change",
    "record_retry_decision",
    "record_stale_requeued",
    "record_worker_run",
    "record_chunk_generated",
    "record_token_usage",
    "record_plan",
    "record_outline_transition",
    "record_research_gate",
    "record_webhook_delivery",
    "update_queue_size",
    "set_system_info",
    "traced",
    "MetricsMiddleware",
]
