#!/usr/bin/env python3
"""Scriptsmith - CLI entrypoint for running workers and inspecting jobs."""

import argparse
import logging
import os
import sys
from pathlib import Path

from .config import DEFAULT_OUTPUT_DIR, PROCESSING_BUDGET_SECONDS, STALE_JOB_BUDGET_MULTIPLIER
from .queue import JobStatus, create_job_store
from .services import ServiceContainer
from .utils import generate_filename

logger = logging.getLogger(__name__)


def run_worker(args: argparse.Namespace) -> int:
    if not os.environ.get("OPENAI_API_KEY"):
        print("Error: OPENAI_API_KEY environment variable is required")
        return 1

    services = ServiceContainer.build(budget_seconds=args.budget)
    try:
        if args.once:
            result = services.worker.run_once()
            print(f"Outcome: {result.outcome}")
            if result.job_id:
                print(f"  Job: {result.job_id}")
                print(f"  Duration: {result.duration_seconds:.1f}s")
            if result.error_message:
                print(f"  Error: {result.error_message}")
            return 0

        processed = services.worker.run_forever(poll_interval=args.poll_interval, max_jobs=args.max_jobs)
        print(f"Processed {processed} job(s)")
        return 0
    except KeyboardInterrupt:
        print("\nWorker interrupted")
        return 130
    finally:
        services.close()


def run_sweep(args: argparse.Namespace) -> int:
    store = create_job_store()
    try:
        count = store.requeue_stale(args.budget * STALE_JOB_BUDGET_MULTIPLIER)
    finally:
        store.close()
    print(f"Recovered {count} stale job(s)")
    return 0


def show_status(args: argparse.Namespace) -> int:
    store = create_job_store()
    try:
        job = store.get(args.job_id)
    finally:
        store.close()

    if job is None:
        print(f"Error: Job {args.job_id} not found")
        return 1

    print(f"Job: {job.id}")
    print(f"  Request: {job.parent_request_id}")
    print(f"  Status: {job.status.value}")
    print(f"  Progress: {job.progress}% ({job.current_step})")
    print(f"  Chunks: {job.current_chunk}/{job.total_chunks}")
    print(f"  Retries: {job.retry_count}/{job.max_retries}")
    if job.error_message:
        print(f"  Last error: {job.error_message}")
    if job.script_metadata:
        print(f"  Words: {job.script_metadata.get('word_count')}")
    return 0


def export_script(args: argparse.Namespace) -> int:
    store = create_job_store()
    try:
        job = store.get(args.job_id)
    finally:
        store.close()

    if job is None:
        print(f"Error: Job {args.job_id} not found")
        return 1
    if job.status != JobStatus.COMPLETED or job.generated_script is None:
        print(f"Error: Job {args.job_id} has no finished script (status: {job.status.value})")
        return 1

    out_dir = Path(args.out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    title = (job.script_metadata or {}).get("title") or job.generation_params.get("title") or job.id
    filepath = out_dir / generate_filename(title)

    try:
        with open(filepath, "w", encoding="utf-8") as f:
            f.write(job.generated_script)
    except (OSError, UnicodeEncodeError) as e:
        print(f"Error: Failed to write script to '{filepath}': {e}")
        return 1

    print(f"Wrote {filepath}")
    return 0


def main():
    """Main entry point for the Scriptsmith CLI."""
    parser = argparse.ArgumentParser(
        description="Scriptsmith - Long-form script generation worker and tools",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Process one pending job and exit (for cron-style schedulers)
  python -m scriptsmith worker --once

  # Keep polling for jobs
  python -m scriptsmith worker --poll-interval 10

  # Recover jobs abandoned by crashed workers
  python -m scriptsmith sweep

  # Save a finished script as Markdown
  python -m scriptsmith export <job-id> --out-dir ./scripts
""",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="info",
        choices=["debug", "info", "warning", "error", "critical"],
        help="Log level (default: info)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    worker_parser = subparsers.add_parser("worker", help="Run the job worker")
    worker_parser.add_argument("--once", action="store_true", help="Process at most one job and exit")
    worker_parser.add_argument(
        "--poll-interval",
        type=float,
        default=5.0,
        help="Seconds to wait when no job is pending (default: 5)",
    )
    worker_parser.add_argument("--max-jobs", type=int, default=None, help="Stop after this many jobs")
    worker_parser.add_argument(
        "--budget",
        type=float,
        default=PROCESSING_BUDGET_SECONDS,
        help=f"Seconds allowed per job attempt (default: {PROCESSING_BUDGET_SECONDS:.0f})",
    )
    worker_parser.set_defaults(handler=run_worker)

    sweep_parser = subparsers.add_parser("sweep", help="Requeue jobs abandoned in processing")
    sweep_parser.add_argument(
        "--budget",
        type=float,
        default=PROCESSING_BUDGET_SECONDS,
        help="Per-attempt budget used to derive the staleness threshold",
    )
    sweep_parser.set_defaults(handler=run_sweep)

    status_parser = subparsers.add_parser("status", help="Show a job's status")
    status_parser.add_argument("job_id", help="Job identifier")
    status_parser.set_defaults(handler=show_status)

    export_parser = subparsers.add_parser("export", help="Write a finished script to a Markdown file")
    export_parser.add_argument("job_id", help="Job identifier")
    export_parser.add_argument(
        "--out-dir",
        type=str,
        default=DEFAULT_OUTPUT_DIR,
        help=f"Output directory (default: {DEFAULT_OUTPUT_DIR})",
    )
    export_parser.set_defaults(handler=export_script)

    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    sys.exit(args.handler(args))


if __name__ == "__main__":
    main()
