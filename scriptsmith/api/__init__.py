"""FastAPI application for the Scriptsmith pipeline.

Usage:
    from scriptsmith.api import create_app

    app = create_app()  # Services built from the environment
"""

from .app import create_app
from .routes import router

__all__ = ["create_app", "router"]
