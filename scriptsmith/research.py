"""Research adequacy scoring for long-form scripts.

Scores the selected research sources of a script request and gates outline
generation on duration-specific minimums, surfacing concrete
recommendations when the research falls short.
"""

import logging
import math
from typing import Dict, List, Optional, Sequence

from .config import (
    BASELINE_RESEARCH_REQUIREMENTS,
    MIN_OUTLINE_MINUTES,
    PROMPT_RESEARCH_EXCERPT_CHARS,
    PROMPT_RESEARCH_SOURCES,
    RESEARCH_REQUIREMENTS,
    RESEARCH_SCORE_WEIGHTS,
    RESEARCH_SOURCE_SATURATION,
    RESEARCH_WORD_SATURATION,
)
from .models import (
    AdequacyResult,
    DuplicateSourcePair,
    Recommendation,
    ResearchBreakdown,
    ResearchExcerpt,
    ResearchGap,
    ResearchRequirements,
    ResearchScore,
    ResearchSource,
)
from .utils import count_words, word_similarity

logger = logging.getLogger(__name__)

# Source types with a quality bonus over the base score
SOURCE_TYPE_BONUS: Dict[str, float] = {
    "document": 0.2,
    "web": 0.1,
}

# Characters of each source compared when looking for duplicates
FINGERPRINT_LENGTH = 500
DUPLICATE_THRESHOLD = 0.7
NEAR_IDENTICAL_THRESHOLD = 0.9

# Specialised documents are recommended from this duration on
DOCUMENT_RECOMMENDATION_MINUTES = 45


def requirements_for_duration(
    minutes: float,
    table: Optional[Dict[int, Dict[str, float]]] = None,
    baseline: Optional[Dict[str, float]] = None,
    baseline_below: int = MIN_OUTLINE_MINUTES,
) -> ResearchRequirements:
    """Look up the research minimums for a script duration.

    Args:
        minutes: Script duration.
        table: Brackets keyed by their upper bound in minutes.
        baseline: Requirements for scripts shorter than ``baseline_below``.
        baseline_below: Duration below which the baseline applies.

    Returns:
        Requirements of the first bracket whose bound is >= ``minutes``, or
        of the largest bracket for longer scripts.
    """
    table = table if table is not None else RESEARCH_REQUIREMENTS
    baseline = baseline if baseline is not None else BASELINE_RESEARCH_REQUIREMENTS

    if minutes < baseline_below:
        values = baseline
    else:
        bounds = sorted(table)
        bound = next((b for b in bounds if minutes <= b), bounds[-1])
        values = table[bound]

    return ResearchRequirements(
        min_words=int(values["min_words"]),
        min_sources=int(values["min_sources"]),
        min_quality=float(values["min_quality"]),
    )


def source_word_count(source: ResearchSource) -> int:
    """Words in a source: its recorded count, else counted from the content."""
    if source.word_count is not None:
        return source.word_count
    return count_words(source.content)


def source_quality(source: ResearchSource) -> float:
    """Quality of a single source in [0, 1].

    Uses the source's own ``quality_score`` when it has one; otherwise a
    heuristic over its type, verification, length and relevance.
    """
    if source.quality_score is not None:
        return source.quality_score

    if source.source_type == "synthesis":
        score = 1.0
    else:
        score = 0.5 + SOURCE_TYPE_BONUS.get(source.source_type, 0.0)

    if source.is_starred:
        score += 0.1
    if source.fact_check_status == "verified":
        score += 0.1

    words = source_word_count(source)
    if words > 1000:
        score += 0.15
    elif words > 500:
        score += 0.10
    elif words > 200:
        score += 0.05
    elif words < 50:
        score -= 0.2  # snippet

    if source.relevance is not None:
        score += (source.relevance - 0.75) * 0.2

    return min(1.0, max(0.0, score))


class ResearchValidator:
    """Scores research and decides whether it is adequate for a duration.

    The requirement table and score weights are injectable so deployments
    can tune policy without code changes.
    """

    def __init__(
        self,
        requirements: Optional[Dict[int, Dict[str, float]]] = None,
        baseline: Optional[Dict[str, float]] = None,
        weights: Optional[Dict[str, float]] = None,
    ):
        self.requirements = requirements if requirements is not None else RESEARCH_REQUIREMENTS
        self.baseline = baseline if baseline is not None else BASELINE_RESEARCH_REQUIREMENTS
        self.weights = weights if weights is not None else RESEARCH_SCORE_WEIGHTS

    def requirements_for(self, minutes: float) -> ResearchRequirements:
        return requirements_for_duration(minutes, self.requirements, self.baseline)

    def score(self, sources: Sequence[ResearchSource]) -> ResearchScore:
        """Aggregate the selected sources into a research score.

        Args:
            sources: Research sources; unselected ones are ignored.

        Returns:
            ResearchScore with the weighted overall score rounded to 2 places.
        """
        selected = [source for source in sources if source.is_selected]
        breakdown = ResearchBreakdown()

        if not selected:
            return ResearchScore(
                overall_score=0.0,
                total_words=0,
                source_count=0,
                average_quality=0.0,
                breakdown=breakdown,
            )

        total_words = 0
        quality_sum = 0.0
        for source in selected:
            total_words += source_word_count(source)
            quality_sum += source_quality(source)

            if source.source_type == "synthesis":
                breakdown.synthesis += 1
            elif source.source_type == "document":
                breakdown.documents += 1
            elif source.source_type == "web":
                breakdown.web += 1
            if source.fact_check_status == "verified":
                breakdown.verified += 1
            if source.is_starred:
                breakdown.starred += 1

        average_quality = quality_sum / len(selected)
        overall = (
            min(1.0, len(selected) / RESEARCH_SOURCE_SATURATION) * self.weights["sources"]
            + min(1.0, total_words / RESEARCH_WORD_SATURATION) * self.weights["words"]
            + average_quality * self.weights["quality"]
        )

        return ResearchScore(
            overall_score=round(min(1.0, overall), 2),
            total_words=total_words,
            source_count=len(selected),
            average_quality=round(average_quality, 2),
            breakdown=breakdown,
        )

    def is_adequate(
        self,
        sources: Sequence[ResearchSource],
        total_minutes: float,
        has_user_documents: bool = False,
    ) -> AdequacyResult:
        """Check research against the minimums for ``total_minutes``.

        Deterministic for identical input.

        Args:
            sources: Research sources of the request.
            total_minutes: Target script duration.
            has_user_documents: Whether the user uploaded their own documents.

        Returns:
            AdequacyResult with gaps and recommendations.
        """
        requirements = self.requirements_for(total_minutes)
        score = self.score(sources)
        gaps: List[ResearchGap] = []
        recommendations: List[Recommendation] = []

        if score.total_words < requirements.min_words:
            missing_words = requirements.min_words - score.total_words
            gaps.append(
                ResearchGap(
                    gap_type="words",
                    message=f"Insufficient research content: {score.total_words} words (need {requirements.min_words})",
                    severity="critical",
                    current=score.total_words,
                    required=requirements.min_words,
                )
            )
            recommendations.append(
                Recommendation(
                    action="add_research",
                    title="Add More Research Sources",
                    description=f"Add {math.ceil(missing_words / 500)} more comprehensive sources",
                    priority="high",
                )
            )

        if score.source_count < requirements.min_sources:
            gaps.append(
                ResearchGap(
                    gap_type="sources",
                    message=(
                        f"Insufficient research sources: {score.source_count} sources "
                        f"(need {requirements.min_sources})"
                    ),
                    severity="critical",
                    current=score.source_count,
                    required=requirements.min_sources,
                )
            )
            recommendations.append(
                Recommendation(
                    action="run_enhanced_research",
                    title="Run Enhanced Research",
                    description="Use deeper research to gather more comprehensive sources",
                    priority="high",
                )
            )

        if score.overall_score < requirements.min_quality:
            gaps.append(
                ResearchGap(
                    gap_type="quality",
                    message=(
                        f"Research quality below threshold: {score.overall_score:.2f} "
                        f"(need {requirements.min_quality})"
                    ),
                    severity="warning",
                    current=score.overall_score,
                    required=requirements.min_quality,
                )
            )
            if not has_user_documents:
                recommendations.append(
                    Recommendation(
                        action="upload_documents",
                        title="Upload Your Own Research",
                        description="Add documents with detailed information on your topic",
                        priority="medium",
                    )
                )

        if score.breakdown.synthesis == 0:
            recommendations.append(
                Recommendation(
                    action="run_synthesis_research",
                    title="Add Synthesis Research",
                    description="Run deep research to generate comprehensive synthesis sources",
                    priority="medium",
                )
            )

        if not has_user_documents and total_minutes >= DOCUMENT_RECOMMENDATION_MINUTES:
            recommendations.append(
                Recommendation(
                    action="upload_documents",
                    title="Upload Specialized Documents",
                    description=(
                        f"For {DOCUMENT_RECOMMENDATION_MINUTES}+ minute content, custom research documents "
                        "significantly improve quality"
                    ),
                    priority="low",
                )
            )

        result = AdequacyResult(
            is_adequate=not gaps,
            score=score,
            requirements=requirements,
            current={
                "words": score.total_words,
                "sources": score.source_count,
                "quality": score.average_quality,
            },
            gaps=gaps,
            recommendations=recommendations,
        )
        logger.debug(
            f"Research for {total_minutes} minutes: score={score.overall_score}, "
            f"adequate={result.is_adequate}, gaps={len(gaps)}"
        )
        return result

    def find_duplicate_sources(self, sources: Sequence[ResearchSource]) -> List[DuplicateSourcePair]:
        """Find pairs of selected sources whose openings overlap heavily.

        Compares the first 500 characters of every source longer than 100
        characters using Jaccard similarity over words longer than 3
        characters.

        Returns:
            Pairs with similarity above 0.7, indexes into ``sources``.
        """
        fingerprints = [
            (idx, source.content.lower()[:FINGERPRINT_LENGTH])
            for idx, source in enumerate(sources)
            if source.is_selected and source.content and len(source.content) > 100
        ]

        duplicates: List[DuplicateSourcePair] = []
        for i, (first_idx, first) in enumerate(fingerprints):
            for second_idx, second in fingerprints[i + 1 :]:
                similarity = word_similarity(first, second)
                if similarity > DUPLICATE_THRESHOLD:
                    duplicates.append(
                        DuplicateSourcePair(
                            first_index=first_idx,
                            second_index=second_idx,
                            similarity=round(similarity, 2),
                            recommendation=(
                                "Remove one source" if similarity > NEAR_IDENTICAL_THRESHOLD else "Review for overlap"
                            ),
                        )
                    )
        return duplicates


def adequacy_percentage(result: AdequacyResult) -> int:
    """How close the research is to the requirements, as a 0-100 integer.

    The mean of the word, source and quality ratios, each capped at 100.
    """
    requirements = result.requirements
    current = result.current

    def ratio(value: float, required: float) -> float:
        if required <= 0:
            return 100.0
        return min(100.0, value / required * 100)

    word_percent = ratio(current.get("words", 0), requirements.min_words)
    source_percent = ratio(current.get("sources", 0), requirements.min_sources)
    quality_percent = ratio(current.get("quality", 0), requirements.min_quality)

    return int((word_percent + source_percent + quality_percent) // 3)


def prompt_research(
    sources: Sequence[ResearchSource],
    limit: int = PROMPT_RESEARCH_SOURCES,
    excerpt_chars: int = PROMPT_RESEARCH_EXCERPT_CHARS,
) -> List[ResearchExcerpt]:
    """Pick the research quoted in generation prompts.

    Starred sources come first, then the rest in the order given. Sources
    without content are skipped.

    Args:
        sources: Selected research sources of the request.
        limit: Maximum number of sources to quote.
        excerpt_chars: Characters of each source's content to quote.

    Returns:
        Up to ``limit`` excerpts.
    """
    with_content = [source for source in sources if source.content and source.content.strip()]
    ordered = sorted(with_content, key=lambda source: not source.is_starred)
    return [
        ResearchExcerpt(title=source.title or "Source", excerpt=source.content.strip()[:excerpt_chars])
        for source in ordered[:limit]
    ]


def format_research_for_prompt(excerpts: Sequence[ResearchExcerpt]) -> str:
    """Render research excerpts as a numbered ``RESEARCH SOURCES`` block.

    Returns an empty string when there is nothing to quote, so prompts
    without research stay unchanged.
    """
    if not excerpts:
        return ""
    lines = ["RESEARCH SOURCES:"]
    for i, item in enumerate(excerpts, 1):
        lines.append(f"{i}. {item.title}: {item.excerpt}...")
    return "\n".join(lines)
