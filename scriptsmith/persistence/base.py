"""Abstract base class for entity storage backends.

This module defines the API contract that all storage backends must implement.
"""

import abc
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..config import STORE_TIMEOUT_SECONDS
from ..models import ResearchSource
from .models import (
    Outline,
    OutlineCreate,
    OutlineStatus,
    OutlineUpdate,
    ScriptRequest,
    ScriptRequestCreate,
    ScriptRequestUpdate,
    StoredResearchSource,
)


@dataclass
class StorageConfig:
    """Configuration for storage backends.

    Attributes:
        backend_type: Type of storage backend (sqlite, postgres).
        connection_string: Database connection string (for SQL backends).
        db_path: File path for file-based backends (SQLite).
        pool_size: Connection pool size (for connection-pooled backends).
        timeout_seconds: Upper bound on any single storage operation.
        auto_migrate: Whether to auto-run migrations on init.
        extra: Additional backend-specific configuration.
    """

    backend_type: str = "sqlite"
    connection_string: Optional[str] = None
    db_path: Optional[str] = None
    pool_size: int = 5
    timeout_seconds: float = STORE_TIMEOUT_SECONDS
    auto_migrate: bool = True
    extra: Dict[str, Any] = field(default_factory=dict)


class StorageBackend(abc.ABC):
    """Abstract base class for storage backends.

    All storage backends must implement this interface to provide
    persistence for script requests, outlines and research sources.

    The interface supports:
    - Script request CRUD with workflow step tracking
    - Outline storage with conditional status transitions
    - Research sources per request
    """

    @abc.abstractmethod
    def initialize(self) -> None:
        """Initialize the storage backend.

        This should create tables/schemas if they don't exist
        and run any pending migrations.
        """
        pass

    @abc.abstractmethod
    def close(self) -> None:
        """Close the storage backend and release resources."""
        pass

    # === Script Request Operations ===

    @abc.abstractmethod
    def create_request(self, request: ScriptRequestCreate) -> ScriptRequest:
        """Create a new script request.

        Args:
            request: The request data to create.

        Returns:
            The created ScriptRequest with generated ID and timestamps.
        """
        pass

    @abc.abstractmethod
    def get_request(self, request_id: str) -> Optional[ScriptRequest]:
        """Get a script request by ID.

        Args:
            request_id: The request identifier.

        Returns:
            ScriptRequest or None if not found.
        """
        pass

    @abc.abstractmethod
    def update_request(self, request_id: str, update: ScriptRequestUpdate) -> Optional[ScriptRequest]:
        """Update a script request.

        Args:
            request_id: The request identifier.
            update: The fields to update.

        Returns:
            Updated ScriptRequest or None if not found.
        """
        pass

    # === Research Operations ===

    @abc.abstractmethod
    def add_research_source(self, request_id: str, source: ResearchSource) -> StoredResearchSource:
        """Attach a research source to a script request.

        Args:
            request_id: The request identifier.
            source: The source to store.

        Returns:
            The stored source with generated ID.
        """
        pass

    @abc.abstractmethod
    def list_research_sources(self, request_id: str, selected_only: bool = False) -> List[StoredResearchSource]:
        """List research sources of a script request, oldest first.

        Args:
            request_id: The request identifier.
            selected_only: Only return sources selected for generation.

        Returns:
            List of stored sources.
        """
        pass

    # === Outline Operations ===

    @abc.abstractmethod
    def create_outline(self, outline: OutlineCreate) -> Outline:
        """Create a new outline in pending status.

        Args:
            outline: The outline data to create.

        Returns:
            The created Outline with generated ID and timestamps.
        """
        pass

    @abc.abstractmethod
    def get_outline(self, outline_id: str) -> Optional[Outline]:
        """Get an outline by ID.

        Args:
            outline_id: The outline identifier.

        Returns:
            Outline or None if not found.
        """
        pass

    @abc.abstractmethod
    def get_latest_outline(self, request_id: str) -> Optional[Outline]:
        """Get the most recently created outline of a script request.

        Args:
            request_id: The request identifier.

        Returns:
            Outline or None if the request has no outline.
        """
        pass

    @abc.abstractmethod
    def update_outline(
        self,
        outline_id: str,
        update: OutlineUpdate,
        expected_status: Optional[OutlineStatus] = None,
    ) -> Optional[Outline]:
        """Update an outline.

        When expected_status is given the update only applies if the outline
        is still in that status, which makes transitions safe against
        concurrent reviewers.

        Args:
            outline_id: The outline identifier.
            update: The fields to update.
            expected_status: Status the outline must currently have.

        Returns:
            Updated Outline, or None if not found or the status did not match.
        """
        pass

    # === Health Check ===

    @abc.abstractmethod
    def health_check(self) -> bool:
        """Check if the storage backend is healthy.

        Returns:
            True if healthy, False otherwise.
        """
        pass
