"""Tests for research adequacy scoring."""

import pytest

from scriptsmith.models import ResearchSource
from scriptsmith.research import (
    ResearchValidator,
    adequacy_percentage,
    format_research_for_prompt,
    prompt_research,
    requirements_for_duration,
    source_quality,
)


def make_sources(count, words, quality=0.9):
    return [
        ResearchSource(source_type="synthesis", title=f"Source {i}", word_count=words, quality_score=quality)
        for i in range(count)
    ]


TIDE_TEXT = (
    "Tides are the rise and fall of sea levels caused by the combined effects of the "
    "gravitational forces exerted by the moon and the sun and the rotation of the earth. "
    "Coastal communities have tracked them for centuries."
)


class TestRequirements:
    """Tests for the duration bracket table."""

    @pytest.mark.parametrize(
        "minutes,min_words,min_sources",
        [(35, 7000, 10), (38, 8500, 12), (45, 10000, 15), (60, 13000, 20), (90, 13000, 20)],
    )
    def test_brackets(self, minutes, min_words, min_sources):
        """Test bracket lookup by duration."""
        requirements = requirements_for_duration(minutes)
        assert requirements.min_words == min_words
        assert requirements.min_sources == min_sources

    def test_short_scripts_use_baseline(self):
        """Test that durations below the outline minimum use the baseline."""
        requirements = requirements_for_duration(20)
        assert requirements.min_words == 3000
        assert requirements.min_sources == 5

    def test_injected_table(self):
        """Test that a custom table replaces the defaults."""
        validator = ResearchValidator(requirements={60: {"min_words": 100, "min_sources": 1, "min_quality": 0.1}})
        result = validator.is_adequate(make_sources(1, 200), 40)

        assert result.requirements.min_words == 100
        assert result.is_adequate is True


class TestSourceQuality:
    """Tests for per-source quality."""

    def test_explicit_score_wins(self):
        """Test that a recorded quality score is used as-is."""
        assert source_quality(ResearchSource(source_type="web", quality_score=0.42)) == 0.42

    def test_synthesis_is_high_quality(self):
        """Test the synthesis base score."""
        assert source_quality(ResearchSource(source_type="synthesis", word_count=100)) == 1.0

    def test_snippet_penalty(self):
        """Test that very short sources are penalized."""
        assert source_quality(ResearchSource(source_type="web", word_count=20)) == pytest.approx(0.4)

    def test_verified_and_starred_bonus(self):
        """Test the verification and star bonuses."""
        source = ResearchSource(source_type="web", word_count=300, is_starred=True, fact_check_status="verified")
        assert source_quality(source) == pytest.approx(0.85)


class TestResearchValidator:
    """Tests for ResearchValidator."""

    def test_empty_research(self):
        """Test scoring with no sources."""
        score = ResearchValidator().score([])
        assert score.overall_score == 0.0
        assert score.source_count == 0

    def test_unselected_sources_ignored(self):
        """Test that deselected sources do not count."""
        sources = make_sources(2, 800)
        sources[1].is_selected = False

        score = ResearchValidator().score(sources)
        assert score.source_count == 1
        assert score.total_words == 800

    def test_word_count_from_content(self):
        """Test counting words when no count is recorded."""
        score = ResearchValidator().score([ResearchSource(content="one two three four")])
        assert score.total_words == 4

    def test_weak_research_is_inadequate(self, weak_research):
        """Test 1500 words across 3 sources for a 35-minute script."""
        result = ResearchValidator().is_adequate(weak_research, 35)

        assert result.is_adequate is False
        assert {gap.gap_type for gap in result.gaps} == {"words", "sources", "quality"}
        actions = [rec.action for rec in result.recommendations]
        assert "add_research" in actions
        assert "run_enhanced_research" in actions
        assert "upload_documents" in actions
        assert "run_synthesis_research" in actions
        assert result.current["words"] == 1500
        assert result.current["sources"] == 3

    def test_user_documents_suppress_upload_recommendation(self, weak_research):
        """Test that users with documents are not asked to upload more."""
        result = ResearchValidator().is_adequate(weak_research, 35, has_user_documents=True)
        assert "upload_documents" not in [rec.action for rec in result.recommendations]

    def test_strong_research_is_adequate(self, strong_research):
        """Test research that clears the 60-minute bracket."""
        result = ResearchValidator().is_adequate(strong_research, 60)

        assert result.is_adequate is True
        assert result.gaps == []
        assert result.score.overall_score == pytest.approx(0.97)

    def test_deterministic(self, weak_research):
        """Test that identical input gives identical results."""
        validator = ResearchValidator()
        first = validator.is_adequate(weak_research, 40)
        second = validator.is_adequate(list(weak_research), 40)
        assert first == second

    def test_adequacy_percentage(self, weak_research):
        """Test the mean of capped word, source and quality ratios."""
        result = ResearchValidator().is_adequate(weak_research, 35)
        assert adequacy_percentage(result) == 48

    def test_adequacy_percentage_capped(self, strong_research):
        """Test that exceeding every minimum gives 100."""
        result = ResearchValidator().is_adequate(strong_research, 35)
        assert adequacy_percentage(result) == 100


class TestDuplicateSources:
    """Tests for duplicate source detection."""

    def test_identical_sources_flagged(self):
        """Test that near-identical sources are reported."""
        sources = [ResearchSource(content=TIDE_TEXT), ResearchSource(content=TIDE_TEXT)]

        duplicates = ResearchValidator().find_duplicate_sources(sources)

        assert len(duplicates) == 1
        assert duplicates[0].first_index == 0
        assert duplicates[0].second_index == 1
        assert duplicates[0].recommendation == "Remove one source"

    def test_distinct_sources_not_flagged(self):
        """Test that unrelated sources are not reported."""
        other = (
            "Volcanic eruptions release magma, ash and gases from beneath the crust. "
            "Geologists monitor seismic swarms and ground deformation for warning signs."
        )
        sources = [ResearchSource(content=TIDE_TEXT), ResearchSource(content=other)]
        assert ResearchValidator().find_duplicate_sources(sources) == []

    def test_short_sources_skipped(self):
        """Test that short sources are not compared."""
        sources = [ResearchSource(content="Tides rise."), ResearchSource(content="Tides rise.")]
        assert ResearchValidator().find_duplicate_sources(sources) == []


class TestPromptResearch:
    """Tests for the research quoted in generation prompts."""

    def test_starred_first_and_limited(self):
        """Test that starred sources lead and at most five are quoted."""
        sources = [ResearchSource(title=f"Source {i}", content=f"Finding number {i}.") for i in range(7)]
        sources[4].is_starred = True

        excerpts = prompt_research(sources)

        assert [item.title for item in excerpts] == ["Source 4", "Source 0", "Source 1", "Source 2", "Source 3"]

    def test_excerpt_truncated_and_empty_skipped(self):
        """Test that long content is cut and sources without content are skipped."""
        sources = [
            ResearchSource(title="Empty", content="   "),
            ResearchSource(content=TIDE_TEXT),
        ]

        excerpts = prompt_research(sources)

        assert len(excerpts) == 1
        assert excerpts[0].title == "Source"
        assert excerpts[0].excerpt == TIDE_TEXT[:200]

    def test_format_for_prompt(self):
        """Test the numbered research block."""
        excerpts = prompt_research([ResearchSource(title="Tide Tables", content="High water runs late.")])

        assert format_research_for_prompt(excerpts) == "RESEARCH SOURCES:\n1. Tide Tables: High water runs late...."
        assert format_research_for_prompt([]) == ""
