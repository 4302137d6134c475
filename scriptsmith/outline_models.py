"""Request and response models for the outline workflow."""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from .models import AdequacyResult, ContentPoint
from .persistence.models import Outline


class OutlineGenerateRequest(BaseModel):
    """Request to generate an outline for a script request.

    Attributes:
        parent_request_id: The script request the outline is for.
        title: Script title (defaults to the request's title).
        topic: Script topic (defaults to the request's topic).
        content_points: Points the script must cover.
        total_minutes: Target script duration.
        hook: Opening hook guidance.
        target_audience: Intended audience.
        tone: Desired tone.
        has_user_documents: Whether the user uploaded their own research.
    """

    parent_request_id: str
    title: Optional[str] = None
    topic: Optional[str] = None
    content_points: List[ContentPoint] = Field(default_factory=list)
    total_minutes: int = Field(..., ge=1)
    hook: Optional[str] = None
    target_audience: Optional[str] = None
    tone: Optional[str] = None
    has_user_documents: bool = False


class OutlineGenerateResponse(BaseModel):
    """Result of a successful outline generation."""

    outline_id: str
    outline: Dict[str, Any]
    research_score: float
    chunk_count: int
    research_details: AdequacyResult
    recommended_model: str
    estimated_generation_time: str


class OutlineLatestResponse(BaseModel):
    """Most recent outline of a script request, if any."""

    outline: Optional[Outline] = None
    has_outline: bool = False


class OutlineReviewRequest(BaseModel):
    """Approve or reject an outline.

    Attributes:
        outline_id: The outline under review.
        status: ``approved`` or ``rejected``.
        feedback: Reviewer comments.
        edits: Top-level outline fields to replace on approval.
    """

    outline_id: str
    status: Literal["approved", "rejected"]
    feedback: Optional[str] = None
    edits: Optional[Dict[str, Any]] = None


class OutlineRegenerateRequest(BaseModel):
    """Mark an outline as superseded so a new one can be generated."""

    outline_id: str
    feedback: Optional[str] = None


class OutlineReviewResponse(BaseModel):
    """Result of an outline transition."""

    success: bool = True
    outline: Outline
    message: str
