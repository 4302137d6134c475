"""Data models for the entity store.

These models cover the records the generation pipeline reads and writes
besides jobs:
- Script requests (the parent entity that owns outlines, research and jobs)
- Outlines and their approval workflow
- Research sources attached to a request
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..models import ResearchSource


class ScriptRequestCreate(BaseModel):
    """Input model for creating a script request."""

    owner_id: str
    title: str = Field(..., min_length=1)
    topic: str = ""


class ScriptRequestUpdate(BaseModel):
    """Input model for updating a script request.

    All fields are optional - only provided fields will be updated.
    """

    title: Optional[str] = None
    topic: Optional[str] = None
    completed_steps: Optional[List[str]] = None
    workflow_data: Optional[Dict[str, Any]] = None


class ScriptRequest(BaseModel):
    """The parent entity a user works on.

    Attributes:
        id: Unique request identifier.
        owner_id: Principal that owns the request.
        title: Working title of the script.
        topic: Subject of the script.
        completed_steps: Workflow steps the user has finished.
        workflow_data: Per-step snapshots (e.g. the approved outline).
        created_at: Creation timestamp.
        updated_at: Last update timestamp.
    """

    id: str
    owner_id: str
    title: str
    topic: str = ""
    completed_steps: List[str] = Field(default_factory=list)
    workflow_data: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime


class OutlineStatus(str, Enum):
    """Status of an outline in the approval workflow."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    REGENERATING = "regenerating"


class OutlineCreate(BaseModel):
    """Input model for creating an outline."""

    parent_request_id: str
    title: str
    total_minutes: int = Field(..., ge=1)
    chunk_count: int = Field(..., ge=1)
    outline_data: Dict[str, Any]
    research_score: float = Field(default=0.0, ge=0, le=1)
    recommended_model: Optional[str] = None
    estimated_generation_time: Optional[str] = None


class OutlineUpdate(BaseModel):
    """Input model for updating an outline.

    All fields are optional - only provided fields will be updated.
    """

    status: Optional[OutlineStatus] = None
    outline_data: Optional[Dict[str, Any]] = None
    user_feedback: Optional[str] = None
    approved_at: Optional[datetime] = None


class Outline(BaseModel):
    """A generated outline awaiting or past review.

    Attributes:
        id: Unique outline identifier.
        parent_request_id: The script request this outline belongs to.
        title: Outline title.
        total_minutes: Target script length.
        chunk_count: Number of generation chunks the outline is split into.
        outline_data: The section tree (chunks, sections, takeaways).
        status: Current workflow status.
        research_score: Research score at generation time.
        user_feedback: Reviewer feedback.
        approved_at: When the outline was approved.
        recommended_model: Model suggested for the full generation.
        estimated_generation_time: Human-readable estimate (e.g. "16-19 minutes").
        created_at: Creation timestamp.
        updated_at: Last update timestamp.
    """

    id: str
    parent_request_id: str
    title: str
    total_minutes: int
    chunk_count: int
    outline_data: Dict[str, Any]
    status: OutlineStatus = OutlineStatus.PENDING
    research_score: float = 0.0
    user_feedback: Optional[str] = None
    approved_at: Optional[datetime] = None
    recommended_model: Optional[str] = None
    estimated_generation_time: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class StoredResearchSource(ResearchSource):
    """A research source as persisted against a script request."""

    id: str
    parent_request_id: str
    created_at: datetime
