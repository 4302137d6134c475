"""Pydantic models for planning, research scoring and generation.

Note: This module uses typing.List for compatibility with Python 3.8+,
though the project requires Python 3.9+ for other features.
"""

from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class ContentPoint(BaseModel):
    """A unit of content the user wants covered in the script."""

    title: str = Field(..., min_length=1)
    description: str = ""
    duration_seconds: Optional[int] = Field(default=None, ge=0)
    key_takeaway: Optional[str] = None


class Section(BaseModel):
    """A content point as assigned to a chunk."""

    title: str
    description: str = ""
    estimated_minutes: float = 0
    key_points: List[str] = Field(default_factory=list)


class TimeRange(BaseModel):
    """A span of the finished script, in minutes from the start."""

    start_minute: float = Field(..., ge=0)
    end_minute: float = Field(..., ge=0)

    @property
    def duration_minutes(self) -> float:
        return self.end_minute - self.start_minute

    def label(self) -> str:
        """Format the range as ``"start-end"`` (e.g. ``"11.25-22.5"``)."""
        return f"{self.start_minute:g}-{self.end_minute:g}"


class ChunkAssignment(BaseModel):
    """One bounded generation unit of a content plan."""

    chunk_number: int = Field(..., ge=1)
    time_range: TimeRange
    assigned_sections: List[Section] = Field(default_factory=list)
    theme: Optional[str] = None
    transition_to_next: Optional[str] = None

    def section_titles(self) -> List[str]:
        return [section.title for section in self.assigned_sections]


class PlanStrategy(str, Enum):
    """How a content plan was produced."""

    MODEL = "model"  # proposed by the generation service and validated
    MECHANICAL = "mechanical"  # contiguous groups in input order
    TIME_ONLY = "time_only"  # no content points, time ranges only
    OUTLINE = "outline"  # derived from an approved outline


class ContentPlan(BaseModel):
    """Assignment of content points to ordered chunks.

    Every input content point appears in exactly one chunk.
    """

    chunks: List[ChunkAssignment]
    strategy: PlanStrategy
    total_minutes: int

    @property
    def chunk_count(self) -> int:
        return len(self.chunks)

    def all_titles(self) -> List[str]:
        """All assigned section titles in chunk order."""
        return [title for chunk in self.chunks for title in chunk.section_titles()]

    def forbidden_sections(self, index: int) -> List[str]:
        """Titles assigned to every chunk other than the one at ``index``."""
        return [title for i, chunk in enumerate(self.chunks) if i != index for title in chunk.section_titles()]


# === Research ===


class ResearchSource(BaseModel):
    """A piece of research material attached to a script request."""

    source_type: str = "web"  # synthesis, document, web, ...
    title: Optional[str] = None
    content: Optional[str] = None
    word_count: Optional[int] = Field(default=None, ge=0)
    quality_score: Optional[float] = Field(default=None, ge=0, le=1)
    relevance: Optional[float] = Field(default=None, ge=0, le=1)
    is_selected: bool = True
    is_starred: bool = False
    fact_check_status: Optional[str] = None


class ResearchExcerpt(BaseModel):
    """Short quotation of a research source carried into generation prompts."""

    title: str = "Source"
    excerpt: str


class ResearchBreakdown(BaseModel):
    """Counts of selected sources by kind."""

    synthesis: int = 0
    documents: int = 0
    web: int = 0
    verified: int = 0
    starred: int = 0


class ResearchScore(BaseModel):
    """Aggregate research quality over the selected sources."""

    overall_score: float = Field(..., ge=0, le=1)
    total_words: int
    source_count: int
    average_quality: float
    breakdown: ResearchBreakdown


class ResearchRequirements(BaseModel):
    """Minimums a script duration bracket imposes on research."""

    min_words: int
    min_sources: int
    min_quality: float


class ResearchGap(BaseModel):
    """A single shortfall against the requirements."""

    gap_type: str  # words, sources, quality
    message: str
    severity: str  # critical, warning
    current: float
    required: float


class Recommendation(BaseModel):
    """An action the user can take to strengthen the research."""

    action: str
    title: str
    description: str
    priority: str  # high, medium, low


class AdequacyResult(BaseModel):
    """Outcome of the research gate."""

    is_adequate: bool
    score: ResearchScore
    requirements: ResearchRequirements
    current: Dict[str, float] = Field(default_factory=dict)  # words, sources, quality
    gaps: List[ResearchGap] = Field(default_factory=list)
    recommendations: List[Recommendation] = Field(default_factory=list)


class DuplicateSourcePair(BaseModel):
    """Two selected sources whose content overlaps heavily."""

    first_index: int
    second_index: int
    similarity: float
    recommendation: str


# === Generation ===


class GenerationUsage(BaseModel):
    """Token usage reported by the generation service."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: "GenerationUsage") -> "GenerationUsage":
        return GenerationUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


class GenerationResult(BaseModel):
    """Text and usage returned by one generation call."""

    text: str
    usage: GenerationUsage = Field(default_factory=GenerationUsage)
    model: Optional[str] = None


class ChunkValidation(BaseModel):
    """Result of checking a generated chunk against its assignment."""

    is_valid: bool
    missing_sections: List[str] = Field(default_factory=list)
    forbidden_mentions: List[str] = Field(default_factory=list)
    word_count: int = 0
