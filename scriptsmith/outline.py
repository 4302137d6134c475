"""Outline generation and the outline approval workflow.

Scripts of MIN_OUTLINE_MINUTES or longer get a detailed outline before full
generation. The outline goes through a small state machine:

    pending -> approved      (terminal for this record)
    pending -> rejected      (terminal)
    pending -> regenerating  (superseded; a new outline is generated)

Only pending outlines can move. Every transition requires the caller to own
the parent script request.
"""

import logging
import math
from typing import Any, Dict, List, Optional, Sequence

from .config import (
    MIN_OUTLINE_MINUTES,
    OUTLINE_MAX_TOKENS,
    OUTLINE_TEMPERATURE,
    PREMIUM_MODEL_NAME,
    PREMIUM_MODEL_SCORE_THRESHOLD,
    STANDARD_MODEL_NAME,
)
from .errors import (
    AuthenticationError,
    AuthorizationError,
    InsufficientResearchError,
    InvalidTransitionError,
    NotFoundError,
    UpstreamGenerationError,
    ValidationError,
)
from .generation import GenerationClient, extract_json
from .metrics import record_outline_transition, record_research_gate, traced
from .models import ContentPoint, ResearchExcerpt
from .outline_models import OutlineGenerateRequest, OutlineGenerateResponse, OutlineReviewRequest
from .persistence import (
    Outline,
    OutlineCreate,
    OutlineStatus,
    OutlineUpdate,
    ScriptRequest,
    ScriptRequestUpdate,
    StorageBackend,
)
from .planning import chunk_count_for_minutes, minutes_from_seconds
from .research import ResearchValidator, format_research_for_prompt, prompt_research
from .utils import utc_now

logger = logging.getLogger(__name__)

# Step recorded on the parent request once an outline is approved
OUTLINE_APPROVAL_STEP = "outline_approval"

# Rough wall time of one chunk generation, for the user-facing estimate
MINUTES_PER_CHUNK_ESTIMATE = 4


def validate_outline_structure(outline: Any) -> bool:
    """Check that a generated outline has the shape the pipeline relies on.

    The outline needs a numeric ``total_minutes`` and a non-empty ``chunks``
    list; each chunk needs a ``chunk_number`` and a ``sections`` list whose
    entries all have ``title``, ``timestamp`` and ``content``.
    """
    if not isinstance(outline, dict):
        return False

    total_minutes = outline.get("total_minutes")
    if isinstance(total_minutes, bool) or not isinstance(total_minutes, (int, float)) or total_minutes <= 0:
        return False

    chunks = outline.get("chunks")
    if not isinstance(chunks, list) or not chunks:
        return False

    for chunk in chunks:
        if not isinstance(chunk, dict) or not chunk.get("chunk_number"):
            return False
        sections = chunk.get("sections")
        if not isinstance(sections, list):
            return False
        for section in sections:
            if not isinstance(section, dict):
                return False
            if not section.get("title") or not section.get("timestamp") or not section.get("content"):
                return False

    return True


def recommended_model_for(research_score: float) -> str:
    """Model to suggest for full generation given the research score."""
    if research_score > PREMIUM_MODEL_SCORE_THRESHOLD:
        return PREMIUM_MODEL_NAME
    return STANDARD_MODEL_NAME


def estimate_generation_time(chunk_count: int) -> str:
    """Human-readable wall time estimate, e.g. ``"16-19 minutes"``."""
    minutes = chunk_count * MINUTES_PER_CHUNK_ESTIMATE
    return f"{minutes}-{minutes + 3} minutes"


OUTLINE_SYSTEM_PROMPT = """You are creating a DETAILED OUTLINE for a {total_minutes}-minute script that will be generated in {chunk_count} chunks.

Create an outline that:
1. Assigns each content point to EXACTLY ONE chunk (no duplicates)
2. Uses the EXACT titles of the content points as section titles, word for word
3. Includes a timestamp for each section
4. Provides clear transitions between chunks
5. Balances content across chunks
6. Opens with an introduction and hook in chunk 1 and closes with a conclusion in the last chunk

For each section give specific guidance: examples, statistics, context and
the key points to make.

Respond with JSON only, in this format:
{{
  "title": "Full Script Title",
  "total_minutes": {total_minutes},
  "overview": "One paragraph summary of the whole script",
  "chunks": [
    {{
      "chunk_number": 1,
      "time_range": "0:00-12:00",
      "theme": "Opening theme",
      "sections": [
        {{
          "timestamp": "0:00",
          "title": "Exact title from the content points",
          "duration": 3,
          "content": "What to cover in this section",
          "key_points": ["Specific point 1", "Specific point 2"],
          "narrative_note": "How to present this"
        }}
      ],
      "transition_to_next": "How to bridge to the next chunk"
    }}
  ],
  "key_takeaways": ["Main takeaway 1", "Main takeaway 2"]
}}"""

OUTLINE_HUMAN_PROMPT = """SCRIPT DETAILS:
- Title: {title}
- Topic: {topic}
- Target Audience: {target_audience}
- Tone: {tone}
- Hook: {hook}

CONTENT POINTS TO COVER:
{content_points}
{research}
CHUNK STRUCTURE:
{chunk_structure}
{feedback}
Return valid JSON only."""


def _format_outline_points(content_points: List[ContentPoint]) -> str:
    if not content_points:
        return "No specific content points provided - create logical sections based on the topic."

    lines = []
    for idx, point in enumerate(content_points, start=1):
        duration = minutes_from_seconds(point.duration_seconds)
        lines.append(f"{idx}. {point.title}")
        lines.append(f"   - Description: {point.description or 'N/A'}")
        lines.append(f"   - Duration: {f'{duration} minutes' if duration else 'Flexible'}")
        lines.append(f"   - Key Takeaway: {point.key_takeaway or 'N/A'}")
    return "\n".join(lines)


def _format_chunk_structure(total_minutes: int, chunk_count: int) -> str:
    minutes_per_chunk = math.ceil(total_minutes / chunk_count)
    lines = []
    for i in range(chunk_count):
        start = i * minutes_per_chunk
        end = min((i + 1) * minutes_per_chunk, total_minutes)
        lines.append(f"Chunk {i + 1}: Minutes {start}-{end} ({end - start} minutes)")
    return "\n".join(lines)


class OutlineGenerator:
    """Asks the generation service for a structured outline."""

    def __init__(self, client: GenerationClient):
        self.client = client

    def generate(
        self,
        title: str,
        topic: str,
        content_points: List[ContentPoint],
        total_minutes: int,
        chunk_count: int,
        hook: Optional[str] = None,
        target_audience: Optional[str] = None,
        tone: Optional[str] = None,
        previous_feedback: Optional[str] = None,
        research: Optional[Sequence[ResearchExcerpt]] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Generate an outline document.

        Args:
            title: Script title.
            topic: Script topic.
            content_points: Points the outline must place.
            total_minutes: Target duration.
            chunk_count: Number of chunks to outline.
            hook: Opening hook guidance.
            target_audience: Intended audience.
            tone: Desired tone.
            previous_feedback: Reviewer feedback on the outline this one replaces.
            research: Source excerpts to ground the outline in.
            timeout: Request timeout in seconds.

        Returns:
            The outline as a dict.

        Raises:
            UpstreamGenerationError: If the call fails or the response is not
                a well-formed outline.
        """
        feedback = ""
        if previous_feedback:
            feedback = f"\nREVIEWER FEEDBACK ON THE PREVIOUS OUTLINE (address all of it):\n{previous_feedback}\n"
        research_block = format_research_for_prompt(research or [])

        result = self.client.generate(
            system=OUTLINE_SYSTEM_PROMPT,
            human=OUTLINE_HUMAN_PROMPT,
            variables={
                "title": title,
                "topic": topic,
                "target_audience": target_audience or "General viewers",
                "tone": tone or "Informative and engaging",
                "hook": hook or "Create a compelling hook",
                "content_points": _format_outline_points(content_points),
                "chunk_structure": _format_chunk_structure(total_minutes, chunk_count),
                "feedback": feedback,
                "research": f"\n{research_block}\n" if research_block else "",
                "total_minutes": total_minutes,
                "chunk_count": chunk_count,
            },
            temperature=OUTLINE_TEMPERATURE,
            max_tokens=OUTLINE_MAX_TOKENS,
            timeout=timeout,
            stage="outline",
        )

        try:
            outline = extract_json(result.text)
        except ValueError as e:
            logger.error(f"Could not parse outline JSON ({len(result.text)} characters): {e}")
            raise UpstreamGenerationError("Failed to generate outline. Please try again.") from e

        if not validate_outline_structure(outline):
            logger.error("Generated outline has invalid structure")
            raise UpstreamGenerationError("Generated outline validation failed. Please try again.")

        expected = {point.title for point in content_points}
        placed = {section["title"] for chunk in outline["chunks"] for section in chunk["sections"]}
        if expected - placed:
            logger.warning(f"Outline is missing {len(expected - placed)} content point title(s)")

        return outline


class OutlineWorkflow:
    """Outline generation, retrieval and review transitions.

    Attributes:
        storage: Entity store holding requests, research and outlines.
        generator: Outline generator.
        validator: Research gate.
    """

    def __init__(
        self,
        storage: StorageBackend,
        generator: OutlineGenerator,
        validator: Optional[ResearchValidator] = None,
        min_minutes: int = MIN_OUTLINE_MINUTES,
    ):
        self.storage = storage
        self.generator = generator
        self.validator = validator or ResearchValidator()
        self.min_minutes = min_minutes

    # === Ownership ===

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

    def _get_owned_outline(self, principal: Optional[str], outline_id: str) -> Outline:
        if not principal:
            raise AuthenticationError("Authentication required")

        outline = self.storage.get_outline(outline_id)
        if outline is None:
            raise NotFoundError(f"Outline {outline_id} not found")
        self._get_owned_request(principal, outline.parent_request_id)
        return outline

    # === Generation ===

    @traced("outline.generate")
    def generate(self, principal: Optional[str], request: OutlineGenerateRequest) -> OutlineGenerateResponse:
        """Generate and persist a pending outline.

        Args:
            principal: Caller's principal id.
            request: Generation parameters.

        Returns:
            OutlineGenerateResponse describing the new outline.

        Raises:
            ValidationError: If the duration is below the outline minimum.
            AuthorizationError: If the caller does not own the request.
            InsufficientResearchError: If the research gate fails.
            UpstreamGenerationError: If outline generation fails.
        """
        if request.total_minutes < self.min_minutes:
            raise ValidationError(
                f"Outline generation is only available for {self.min_minutes}+ minute scripts",
                details={"total_minutes": request.total_minutes, "min_minutes": self.min_minutes},
            )

        parent = self._get_owned_request(principal, request.parent_request_id)
        sources = self.storage.list_research_sources(parent.id, selected_only=True)
        has_user_documents = request.has_user_documents or any(s.source_type == "document" for s in sources)

        adequacy = self.validator.is_adequate(sources, request.total_minutes, has_user_documents)
        record_research_gate(adequacy.is_adequate)
        if not adequacy.is_adequate:
            logger.info(
                f"Research gate refused outline for request {parent.id}: "
                f"{len(adequacy.gaps)} gap(s), score {adequacy.score.overall_score}"
            )
            raise InsufficientResearchError(adequacy)

        chunk_count = chunk_count_for_minutes(request.total_minutes)
        previous = self.storage.get_latest_outline(parent.id)
        previous_feedback = previous.user_feedback if previous and previous.status != OutlineStatus.APPROVED else None

        title = request.title or parent.title
        outline_data = self.generator.generate(
            title=title,
            topic=request.topic or parent.topic or title,
            content_points=request.content_points,
            total_minutes=request.total_minutes,
            chunk_count=chunk_count,
            hook=request.hook,
            target_audience=request.target_audience,
            tone=request.tone,
            previous_feedback=previous_feedback,
            research=prompt_research(sources),
        )

        research_score = adequacy.score.overall_score
        outline = self.storage.create_outline(
            OutlineCreate(
                parent_request_id=parent.id,
                title=outline_data.get("title") or title,
                total_minutes=request.total_minutes,
                chunk_count=chunk_count,
                outline_data=outline_data,
                research_score=research_score,
                recommended_model=recommended_model_for(research_score),
                estimated_generation_time=estimate_generation_time(chunk_count),
            )
        )
        record_outline_transition(OutlineStatus.PENDING.value)
        logger.info(f"Outline {outline.id} generated for request {parent.id} ({chunk_count} chunks)")

        return OutlineGenerateResponse(
            outline_id=outline.id,
            outline=outline.outline_data,
            research_score=research_score,
            chunk_count=chunk_count,
            research_details=adequacy,
            recommended_model=outline.recommended_model,
            estimated_generation_time=outline.estimated_generation_time,
        )

    def get_latest(self, principal: Optional[str], parent_request_id: str) -> Optional[Outline]:
        """Most recent outline of a request, or None if it has none."""
        self._get_owned_request(principal, parent_request_id)
        return self.storage.get_latest_outline(parent_request_id)

    # === Transitions ===

    def _transition(self, outline: Outline, target: OutlineStatus, update: OutlineUpdate) -> Outline:
        if outline.status != OutlineStatus.PENDING:
            raise InvalidTransitionError("outline", outline.status.value, target.value)

        updated = self.storage.update_outline(outline.id, update, expected_status=OutlineStatus.PENDING)
        if updated is None:
            # Lost a race with another reviewer
            current = self.storage.get_outline(outline.id)
            if current is None:
                raise NotFoundError(f"Outline {outline.id} not found")
            raise InvalidTransitionError("outline", current.status.value, target.value)

        record_outline_transition(target.value)
        logger.info(f"Outline {outline.id} moved to {target.value}")
        return updated

    def approve(
        self,
        principal: Optional[str],
        outline_id: str,
        feedback: Optional[str] = None,
        edits: Optional[Dict[str, Any]] = None,
    ) -> Outline:
        """Approve a pending outline.

        Without edits ``outline_data`` is left untouched. Edits replace the
        top-level keys they name; every other key is preserved.

        Args:
            principal: Caller's principal id.
            outline_id: Outline to approve.
            feedback: Reviewer comments.
            edits: Top-level outline fields to replace.

        Returns:
            The approved outline.

        Raises:
            ValidationError: If the edited outline no longer has a usable
                chunk and section structure.
        """
        outline = self._get_owned_outline(principal, outline_id)
        now = utc_now()

        update = OutlineUpdate(status=OutlineStatus.APPROVED, approved_at=now, user_feedback=feedback)
        if edits:
            update.outline_data = {
                **outline.outline_data,
                **edits,
                "user_edited": True,
                "edited_at": now.isoformat(),
            }
            if not validate_outline_structure(update.outline_data):
                raise ValidationError("Edited outline is missing required chunk or section fields")

        approved = self._transition(outline, OutlineStatus.APPROVED, update)
        self._record_approval(approved)
        return approved

    def _record_approval(self, outline: Outline) -> None:
        """Mark the approval step on the parent request and snapshot the outline reference."""
        parent = self.storage.get_request(outline.parent_request_id)
        if parent is None:
            raise NotFoundError(f"Script request {outline.parent_request_id} not found")

        completed_steps = list(parent.completed_steps)
        if OUTLINE_APPROVAL_STEP not in completed_steps:
            completed_steps.append(OUTLINE_APPROVAL_STEP)

        workflow_data = dict(parent.workflow_data)
        workflow_data["approved_outline"] = {
            "outline_id": outline.id,
            "approved_at": outline.approved_at.isoformat() if outline.approved_at else None,
            "chunk_count": outline.chunk_count,
            "total_minutes": outline.total_minutes,
        }

        self.storage.update_request(
            parent.id,
            ScriptRequestUpdate(completed_steps=completed_steps, workflow_data=workflow_data),
        )

    def reject(self, principal: Optional[str], outline_id: str, feedback: Optional[str] = None) -> Outline:
        """Reject a pending outline, storing the reviewer's feedback."""
        outline = self._get_owned_outline(principal, outline_id)
        return self._transition(
            outline,
            OutlineStatus.REJECTED,
            OutlineUpdate(status=OutlineStatus.REJECTED, user_feedback=feedback),
        )

    def regenerate(self, principal: Optional[str], outline_id: str, feedback: Optional[str] = None) -> Outline:
        """Mark a pending outline as superseded.

        The caller generates again afterwards; the new outline is a new
        record and the feedback stored here is folded into its prompt.
        """
        outline = self._get_owned_outline(principal, outline_id)
        return self._transition(
            outline,
            OutlineStatus.REGENERATING,
            OutlineUpdate(status=OutlineStatus.REGENERATING, user_feedback=feedback),
        )

    def review(self, principal: Optional[str], request: OutlineReviewRequest) -> Outline:
        """Apply an approve or reject review."""
        if request.status == OutlineStatus.APPROVED.value:
            return self.approve(principal, request.outline_id, request.feedback, request.edits)
        return self.reject(principal, request.outline_id, request.feedback)
