#!/usr/bin/env python3
"""Scriptsmith API Server.

Usage:
    python -m scriptsmith.server [--host HOST] [--port PORT] [--reload]

    or:

    uvicorn scriptsmith.api:create_app --factory --host 0.0.0.0 --port 8000
"""

import argparse
import logging
import os
from typing import List

import uvicorn

from .config import PROCESSING_BUDGET_SECONDS, TRIGGER_SECRET, WEBHOOK_URL
from .persistence import get_storage_type
from .queue import get_job_store_type

logger = logging.getLogger(__name__)


def preflight() -> List[str]:
    """Collect configuration problems worth reporting before serving.

    None of these stop the server: requests and polling still work, but
    generation or the scheduler trigger will not.

    Returns:
        Human-readable warnings, empty when fully configured.
    """
    warnings = []
    if not os.environ.get("OPENAI_API_KEY"):
        warnings.append("OPENAI_API_KEY is not set; outline and script generation will fail")
    if not TRIGGER_SECRET:
        warnings.append("SCRIPT_TRIGGER_SECRET is not set; /api/v1/trigger refuses every caller")
    return warnings


def main():
    """Main entry point for the API server."""
    parser = argparse.ArgumentParser(
        description="Scriptsmith API Server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Serve on localhost
    python -m scriptsmith.server

    # Serve behind a load balancer
    SCRIPT_TRIGGER_SECRET=... python -m scriptsmith.server --host 0.0.0.0 --port 8080 --workers 4

    # Development with auto-reload
    python -m scriptsmith.server --reload --log-level debug
""",
    )
    parser.add_argument("--host", type=str, default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8000, help="Bind port (default: 8000)")
    parser.add_argument("--reload", action="store_true", help="Reload on code changes (forces one worker)")
    parser.add_argument("--workers", type=int, default=1, help="Uvicorn worker processes (default: 1)")
    parser.add_argument(
        "--log-level",
        type=str,
        default="info",
        choices=["debug", "info", "warning", "error", "critical"],
        help="Log level (default: info)",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    for warning in preflight():
        logger.warning(warning)

    print("=" * 60)
    print("SCRIPTSMITH API SERVER")
    print("=" * 60)
    print(f"Listening: http://{args.host}:{args.port} ({1 if args.reload else args.workers} worker(s))")
    print(f"Job store: {get_job_store_type()}, entity store: {get_storage_type()}")
    print(f"Job budget: {PROCESSING_BUDGET_SECONDS:.0f}s per attempt")
    print(f"Trigger: {'protected' if TRIGGER_SECRET else 'disabled'}")
    print(f"Webhooks: {WEBHOOK_URL or 'disabled'}")
    print(f"OpenAPI docs: http://{args.host}:{args.port}/docs")
    print("=" * 60)

    uvicorn.run(
        "scriptsmith.api.app:create_app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        workers=1 if args.reload else args.workers,
        log_level=args.log_level,
        factory=True,
    )


if __name__ == "__main__":
    main()
