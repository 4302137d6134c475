"""Content planning for multi-chunk script generation.

A long script is generated in several bounded chunks. The planner decides
which content points each chunk covers so that every point is covered by
exactly one chunk and no chunk re-covers material assigned elsewhere.
"""

import logging
import math
import re
from collections import Counter
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pydantic import ValidationError as PydanticValidationError

from .config import (
    CHUNK_THRESHOLDS,
    MAX_CHUNK_COUNT,
    PLANNING_MAX_TOKENS,
    PLANNING_TEMPERATURE,
)
from .errors import PlanValidationError, UpstreamGenerationError
from .generation import GenerationClient, extract_json
from .models import (
    ChunkAssignment,
    ContentPlan,
    ContentPoint,
    PlanStrategy,
    Section,
    TimeRange,
)

logger = logging.getLogger(__name__)

_CLOCK_TIME = re.compile(r"^\s*(\d+(?:\.\d+)?)(?::(\d{1,2}))?\s*$")
_LEADING_NUMBER = re.compile(r"^\s*(\d+(?:\.\d+)?)")


def chunk_count_for_minutes(
    total_minutes: float,
    thresholds: Sequence[Tuple[int, int]] = CHUNK_THRESHOLDS,
    max_chunks: int = MAX_CHUNK_COUNT,
) -> int:
    """Number of chunks a script of ``total_minutes`` is generated in.

    Args:
        total_minutes: Target script duration.
        thresholds: Ascending ``(max minutes, chunk count)`` brackets.
        max_chunks: Chunk count for durations beyond the last bracket.

    Returns:
        The chunk count of the first bracket that fits the duration.
    """
    for max_minutes, count in thresholds:
        if total_minutes <= max_minutes:
            return count
    return max_chunks


def minutes_from_seconds(seconds: Optional[float]) -> Optional[int]:
    """Round a duration in seconds up to whole minutes."""
    if seconds is None:
        return None
    return int(math.ceil(seconds / 60))


def even_time_ranges(total_minutes: float, chunk_count: int) -> List[TimeRange]:
    """Split ``total_minutes`` into ``chunk_count`` equal consecutive ranges."""
    minutes_per_chunk = total_minutes / chunk_count
    return [
        TimeRange(start_minute=i * minutes_per_chunk, end_minute=(i + 1) * minutes_per_chunk)
        for i in range(chunk_count)
    ]


def time_only_plan(total_minutes: int, chunk_count: int) -> ContentPlan:
    """Plan with evenly divided time ranges and no assigned sections.

    Used when the request has no content points.
    """
    chunks = [
        ChunkAssignment(chunk_number=i + 1, time_range=time_range)
        for i, time_range in enumerate(even_time_ranges(total_minutes, chunk_count))
    ]
    return ContentPlan(chunks=chunks, strategy=PlanStrategy.TIME_ONLY, total_minutes=total_minutes)


def distribute_mechanically(content_points: List[ContentPoint], chunk_count: int, total_minutes: int) -> ContentPlan:
    """Partition content points into contiguous groups in input order.

    Each chunk takes the next ``ceil(len(points) / chunk_count)`` points, so
    trailing chunks may be short or empty. The result is always a true
    partition of the input.
    """
    minutes_per_chunk = total_minutes / chunk_count
    points_per_chunk = max(1, math.ceil(len(content_points) / chunk_count))
    default_seconds = minutes_per_chunk * 60 / points_per_chunk

    chunks: List[ChunkAssignment] = []
    for i, time_range in enumerate(even_time_ranges(total_minutes, chunk_count)):
        group = content_points[i * points_per_chunk : (i + 1) * points_per_chunk]
        sections = [
            Section(
                title=point.title,
                description=point.description,
                estimated_minutes=math.ceil((point.duration_seconds or default_seconds) / 60),
            )
            for point in group
        ]
        chunks.append(ChunkAssignment(chunk_number=i + 1, time_range=time_range, assigned_sections=sections))

    return ContentPlan(chunks=chunks, strategy=PlanStrategy.MECHANICAL, total_minutes=total_minutes)


def forbidden_sections(plan: ContentPlan, index: int) -> List[str]:
    """Titles assigned to every chunk of ``plan`` except the one at ``index``."""
    return plan.forbidden_sections(index)


def validate_partition(plan: ContentPlan, content_points: List[ContentPoint]) -> None:
    """Check that ``plan`` covers every content point exactly once.

    Raises:
        PlanValidationError: If a title is missing, duplicated or unknown.
    """
    expected = Counter(point.title for point in content_points)
    actual = Counter(plan.all_titles())
    if expected == actual:
        return

    missing = sorted((expected - actual).elements())
    extra = sorted((actual - expected).elements())
    raise PlanValidationError(
        "Content plan does not cover every content point exactly once",
        details={"missing": missing, "unexpected_or_duplicated": extra},
    )


def _parse_clock(value: str) -> Optional[float]:
    """Parse ``"12"``, ``"12.5"`` or ``"12:30"`` into minutes."""
    match = _CLOCK_TIME.match(value)
    if not match:
        return None
    minutes = float(match.group(1))
    if match.group(2) is not None:
        minutes += int(match.group(2)) / 60
    return minutes


def parse_time_range(value: Any) -> Optional[TimeRange]:
    """Parse a ``"start-end"`` range such as ``"0-15"`` or ``"0:00-11:15"``.

    Returns:
        The TimeRange, or None if ``value`` is not a well-formed range.
    """
    if not isinstance(value, str) or "-" not in value:
        return None
    start_text, _, end_text = value.partition("-")
    start = _parse_clock(start_text)
    end = _parse_clock(end_text)
    if start is None or end is None or end < start:
        return None
    return TimeRange(start_minute=start, end_minute=end)


def parse_duration_minutes(value: Any) -> float:
    """Read a section duration such as ``6``, ``"6"`` or ``"6 minutes"``.

    Anything without a leading number counts as zero minutes.
    """
    if isinstance(value, bool) or value is None:
        return 0.0
    if isinstance(value, (int, float)):
        return max(float(value), 0.0)
    match = _LEADING_NUMBER.match(str(value))
    return float(match.group(1)) if match else 0.0


def content_plan_from_outline(outline_data: Dict[str, Any], total_minutes: Optional[int] = None) -> ContentPlan:
    """Convert an approved outline's chunk tree into a content plan.

    Args:
        outline_data: Outline document with a ``chunks`` list; each chunk has
            ``sections`` with ``title``, ``content``, ``duration`` and
            optional ``key_points``.
        total_minutes: Script duration; read from the outline when omitted.

    Returns:
        ContentPlan with strategy ``outline``.

    Raises:
        PlanValidationError: If the outline has no chunks or a section cannot
            be read (for example a section without a title).
    """
    raw_chunks = outline_data.get("chunks") or []
    if not raw_chunks:
        raise PlanValidationError("Outline has no chunks")

    if total_minutes is None:
        total_minutes = int(outline_data.get("total_minutes") or 0)

    fallback_ranges = even_time_ranges(total_minutes or len(raw_chunks), len(raw_chunks))
    chunks: List[ChunkAssignment] = []
    try:
        for i, raw in enumerate(raw_chunks):
            sections = []
            for section in raw.get("sections") or []:
                if not section.get("title"):
                    raise PlanValidationError(f"Outline chunk {i + 1} has a section without a title")
                sections.append(
                    Section(
                        title=str(section["title"]),
                        description=str(section.get("content") or ""),
                        estimated_minutes=parse_duration_minutes(section.get("duration")),
                        key_points=[str(point) for point in section.get("key_points") or []],
                    )
                )
            chunks.append(
                ChunkAssignment(
                    chunk_number=i + 1,
                    time_range=parse_time_range(raw.get("time_range")) or fallback_ranges[i],
                    assigned_sections=sections,
                    theme=raw.get("theme"),
                    transition_to_next=raw.get("transition_to_next"),
                )
            )
    except (AttributeError, TypeError, ValueError, PydanticValidationError) as e:
        raise PlanValidationError(f"Outline cannot be converted to a content plan: {e}") from e

    return ContentPlan(chunks=chunks, strategy=PlanStrategy.OUTLINE, total_minutes=total_minutes)


PLANNING_SYSTEM_PROMPT = """You are planning how to distribute content across {chunk_count} chunks for a {total_minutes}-minute script.

Create a content distribution plan that:
1. Assigns each content point to EXACTLY ONE chunk
2. Balances content across chunks (similar amount of content per chunk)
3. Groups related topics together when possible
4. Ensures logical flow and narrative progression
5. Uses the EXACT content point titles as section titles

Respond with JSON only, in this format:
{{
  "chunks": [
    {{
      "chunk_number": 1,
      "time_range": "0-15",
      "assigned_sections": [
        {{"title": "Exact Section Title", "description": "What to cover", "estimated_minutes": 5}}
      ]
    }}
  ]
}}

Rules:
- Return exactly {chunk_count} chunks
- Each section title must appear in EXACTLY ONE chunk
- All content points must be assigned"""

PLANNING_HUMAN_PROMPT = """TITLE: {title}
TOPIC: {topic}

CONTENT POINTS TO DISTRIBUTE:
{content_points}

CHUNK STRUCTURE:
{chunk_structure}

Return valid JSON only."""


def _format_content_points(content_points: List[ContentPoint]) -> str:
    lines = []
    for idx, point in enumerate(content_points, start=1):
        duration = minutes_from_seconds(point.duration_seconds)
        lines.append(f'{idx}. "{point.title}"')
        lines.append(f"   Description: {point.description or 'N/A'}")
        lines.append(f"   Duration: {f'{duration} minutes' if duration else 'Flexible'}")
        lines.append(f"   Key Takeaway: {point.key_takeaway or 'N/A'}")
    return "\n".join(lines)


class ChunkPlanner:
    """Builds content plans, asking the generation service first.

    The service's proposal is only accepted if it partitions the content
    points exactly; otherwise (or if the service fails) the planner falls
    back to a mechanical partition.
    """

    def __init__(
        self,
        client: Optional[GenerationClient] = None,
        thresholds: Sequence[Tuple[int, int]] = CHUNK_THRESHOLDS,
        max_chunks: int = MAX_CHUNK_COUNT,
    ):
        """Initialize the planner.

        Args:
            client: Generation client. Without one, plans are always mechanical.
            thresholds: Chunk count bracket table.
            max_chunks: Chunk count beyond the last bracket.
        """
        self.client = client
        self.thresholds = thresholds
        self.max_chunks = max_chunks

    def chunk_count_for(self, total_minutes: float) -> int:
        return chunk_count_for_minutes(total_minutes, self.thresholds, self.max_chunks)

    def plan(
        self,
        content_points: List[ContentPoint],
        total_minutes: int,
        chunk_count: Optional[int] = None,
        title: str = "",
        topic: str = "",
        timeout: Optional[float] = None,
    ) -> ContentPlan:
        """Plan a script.

        Args:
            content_points: Points the script must cover, in order.
            total_minutes: Target duration.
            chunk_count: Number of chunks; derived from the duration if None.
            title: Script title, for the planning prompt.
            topic: Script topic, for the planning prompt.
            timeout: Timeout for the planning call.

        Returns:
            A ContentPlan partitioning ``content_points``.
        """
        if chunk_count is None:
            chunk_count = self.chunk_count_for(total_minutes)

        if not content_points:
            logger.info(f"No content points, using time-only plan with {chunk_count} chunks")
            return time_only_plan(total_minutes, chunk_count)

        if self.client is None:
            return distribute_mechanically(content_points, chunk_count, total_minutes)

        try:
            plan = self._plan_with_model(content_points, total_minutes, chunk_count, title, topic, timeout)
            logger.info(f"Model plan accepted: {len(content_points)} points across {chunk_count} chunks")
            return plan
        except PlanValidationError as e:
            logger.warning(f"Model plan rejected ({e.message}), using mechanical distribution")
        except UpstreamGenerationError as e:
            logger.warning(f"Content planning call failed ({e.message}), using mechanical distribution")

        return distribute_mechanically(content_points, chunk_count, total_minutes)

    def _plan_with_model(
        self,
        content_points: List[ContentPoint],
        total_minutes: int,
        chunk_count: int,
        title: str,
        topic: str,
        timeout: Optional[float],
    ) -> ContentPlan:
        time_ranges = even_time_ranges(total_minutes, chunk_count)
        chunk_structure = "\n".join(
            f"Chunk {i + 1}: Minutes {time_range.label()}" for i, time_range in enumerate(time_ranges)
        )

        result = self.client.generate(
            system=PLANNING_SYSTEM_PROMPT,
            human=PLANNING_HUMAN_PROMPT,
            variables={
                "chunk_count": chunk_count,
                "total_minutes": total_minutes,
                "title": title or "Untitled",
                "topic": topic or title or "N/A",
                "content_points": _format_content_points(content_points),
                "chunk_structure": chunk_structure,
            },
            temperature=PLANNING_TEMPERATURE,
            max_tokens=PLANNING_MAX_TOKENS,
            timeout=timeout,
            stage="planning",
        )

        plan = self.parse_plan(result.text, content_points, total_minutes, chunk_count)
        validate_partition(plan, content_points)
        return plan

    def parse_plan(
        self,
        text: str,
        content_points: List[ContentPoint],
        total_minutes: int,
        chunk_count: int,
    ) -> ContentPlan:
        """Parse a model's plan response into a ContentPlan.

        Time ranges are always the even split; the model only decides which
        sections go where.

        Raises:
            PlanValidationError: If the response is not a plan with
                ``chunk_count`` chunks.
        """
        try:
            data = extract_json(text)
        except ValueError as e:
            raise PlanValidationError(f"Could not parse content plan: {e}") from e

        raw_chunks = data.get("chunks") if isinstance(data, dict) else None
        if not isinstance(raw_chunks, list):
            raise PlanValidationError("Content plan has no chunks list")
        if len(raw_chunks) != chunk_count:
            raise PlanValidationError(f"Content plan has {len(raw_chunks)} chunks, expected {chunk_count}")

        descriptions = {point.title: point.description for point in content_points}
        time_ranges = even_time_ranges(total_minutes, chunk_count)

        try:
            chunks = []
            for i, raw in enumerate(raw_chunks):
                sections = [
                    Section(
                        title=section["title"],
                        description=section.get("description") or descriptions.get(section["title"], ""),
                        estimated_minutes=float(section.get("estimated_minutes") or 0),
                    )
                    for section in raw.get("assigned_sections") or []
                ]
                chunks.append(ChunkAssignment(chunk_number=i + 1, time_range=time_ranges[i], assigned_sections=sections))
        except (KeyError, TypeError, AttributeError, ValueError, PydanticValidationError) as e:
            raise PlanValidationError(f"Malformed chunk in content plan: {e}") from e

        return ContentPlan(chunks=chunks, strategy=PlanStrategy.MODEL, total_minutes=total_minutes)
