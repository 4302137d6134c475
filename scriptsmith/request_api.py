"""Script request service.

Script requests are the parent entity of outlines, research sources and
generation jobs. This service covers the small amount of request
management the pipeline needs: creating a request, reading it back and
attaching research.
"""

import logging
from typing import List, Optional

from pydantic import BaseModel, Field

from .errors import AuthenticationError, AuthorizationError, NotFoundError
from .models import AdequacyResult, DuplicateSourcePair, ResearchSource
from .persistence import ScriptRequest, ScriptRequestCreate, StorageBackend, StoredResearchSource
from .research import ResearchValidator, adequacy_percentage

logger = logging.getLogger(__name__)


class RequestCreateBody(BaseModel):
    """Request model for creating a script request."""

    title: str = Field(..., min_length=1)
    topic: str = ""


class ResearchStatusResponse(BaseModel):
    """Research adequacy of a request for a given duration.

    Attributes:
        request_id: The script request.
        total_minutes: Duration the research was checked against.
        adequacy: Full research gate result.
        adequacy_percentage: Progress toward the requirements (0-100).
        duplicates: Pairs of selected sources with heavily overlapping content.
    """

    request_id: str
    total_minutes: int
    adequacy: AdequacyResult
    adequacy_percentage: int
    duplicates: List[DuplicateSourcePair] = Field(default_factory=list)


class RequestService:
    """Creates script requests and manages their research.

    Attributes:
        storage: Entity store.
        validator: Research gate used for research status checks.
    """

    def __init__(self, storage: StorageBackend, validator: Optional[ResearchValidator] = None):
        self.storage = storage
        self.validator = validator or ResearchValidator()

    def _get_owned_request(self, principal: Optional[str], request_id: str) -> ScriptRequest:
        if not principal:
            raise AuthenticationError("Authentication required")

        request = self.storage.get_request(request_id)
        if request is None:
            raise NotFoundError(f"Script request {request_id} not found")
        if request.owner_id != principal:
            logger.warning(f"Principal {principal} denied access to request {request_id}")
            raise AuthorizationError("Unauthorized access to script request")
        return request

    def create_request(self, principal: Optional[str], body: RequestCreateBody) -> ScriptRequest:
        if not principal:
            raise AuthenticationError("Authentication required")

        request = self.storage.create_request(
            ScriptRequestCreate(owner_id=principal, title=body.title, topic=body.topic)
        )
        logger.info(f"Created script request {request.id}")
        return request

    def get_request(self, principal: Optional[str], request_id: str) -> ScriptRequest:
        return self._get_owned_request(principal, request_id)

    def add_research(
        self,
        principal: Optional[str],
        request_id: str,
        source: ResearchSource,
    ) -> StoredResearchSource:
        """Attach a research source to a request the caller owns."""
        request = self._get_owned_request(principal, request_id)
        stored = self.storage.add_research_source(request.id, source)
        logger.info(f"Added {source.source_type} research source to request {request.id}")
        return stored

    def list_research(self, principal: Optional[str], request_id: str) -> List[StoredResearchSource]:
        request = self._get_owned_request(principal, request_id)
        return self.storage.list_research_sources(request.id)

    def research_status(
        self,
        principal: Optional[str],
        request_id: str,
        total_minutes: int,
        has_user_documents: bool = False,
    ) -> ResearchStatusResponse:
        """Check the request's selected research against a script duration.

        Args:
            principal: Caller's principal id.
            request_id: The script request.
            total_minutes: Target script duration.
            has_user_documents: Whether the user has uploaded documents
                outside the research list.

        Returns:
            ResearchStatusResponse.
        """
        request = self._get_owned_request(principal, request_id)
        sources = self.storage.list_research_sources(request.id, selected_only=True)
        has_documents = has_user_documents or any(source.source_type == "document" for source in sources)

        adequacy = self.validator.is_adequate(sources, total_minutes, has_documents)
        return ResearchStatusResponse(
            request_id=request.id,
            total_minutes=total_minutes,
            adequacy=adequacy,
            adequacy_percentage=adequacy_percentage(adequacy),
            duplicates=self.validator.find_duplicate_sources(sources),
        )
