"""Tests for chunk planning."""

import json

import pytest

from scriptsmith.errors import PlanValidationError, RetryableGenerationError
from scriptsmith.models import ContentPoint, PlanStrategy
from scriptsmith.planning import (
    ChunkPlanner,
    chunk_count_for_minutes,
    content_plan_from_outline,
    distribute_mechanically,
    forbidden_sections,
    parse_duration_minutes,
    parse_time_range,
    time_only_plan,
    validate_partition,
)


def plan_response(groups):
    """Build a planning response assigning ``groups`` of titles to chunks."""
    return json.dumps(
        {
            "chunks": [
                {
                    "chunk_number": i + 1,
                    "time_range": "0-1",
                    "assigned_sections": [{"title": title, "estimated_minutes": 5} for title in group],
                }
                for i, group in enumerate(groups)
            ]
        }
    )


class TestChunkCount:
    """Tests for the chunk count bracket table."""

    @pytest.mark.parametrize(
        "minutes,expected",
        [(35, 3), (40, 3), (41, 4), (45, 4), (50, 4), (51, 5), (90, 5), (10, 3)],
    )
    def test_default_brackets(self, minutes, expected):
        """Test the default bracket table."""
        assert chunk_count_for_minutes(minutes) == expected

    def test_custom_brackets(self):
        """Test a custom bracket table."""
        assert chunk_count_for_minutes(25, thresholds=[(20, 2), (30, 3)], max_chunks=6) == 3
        assert chunk_count_for_minutes(31, thresholds=[(20, 2), (30, 3)], max_chunks=6) == 6


class TestMechanicalPlans:
    """Tests for the deterministic planning fallbacks."""

    def test_time_only_plan(self):
        """Test a 45-minute request without content points."""
        plan = time_only_plan(45, 4)

        assert plan.strategy == PlanStrategy.TIME_ONLY
        assert plan.chunk_count == 4
        for i, chunk in enumerate(plan.chunks):
            assert chunk.assigned_sections == []
            assert chunk.time_range.start_minute == pytest.approx(i * 11.25)
            assert chunk.time_range.duration_minutes == pytest.approx(11.25)

    def test_distribute_mechanically_is_contiguous(self, content_points):
        """Test contiguous groups in input order."""
        plan = distribute_mechanically(content_points, 4, 45)

        assert plan.strategy == PlanStrategy.MECHANICAL
        assert [chunk.section_titles() for chunk in plan.chunks] == [
            ["Why Tides Happen", "Spring and Neap Tides"],
            ["Tidal Bores", "Tides in History"],
            ["Tidal Energy", "Tides on Other Worlds"],
            [],
        ]
        validate_partition(plan, content_points)

    def test_distribute_uses_point_durations(self, content_points):
        """Test that a point's own duration sets its estimate."""
        plan = distribute_mechanically(content_points, 3, 36)
        assert plan.chunks[0].assigned_sections[0].estimated_minutes == 7

    def test_forbidden_sections(self, content_points):
        """Test that forbidden titles are everything assigned elsewhere."""
        plan = distribute_mechanically(content_points, 3, 36)

        forbidden = forbidden_sections(plan, 1)

        assert "Tidal Bores" not in forbidden
        assert "Tides in History" not in forbidden
        assert set(forbidden) == {"Why Tides Happen", "Spring and Neap Tides", "Tidal Energy", "Tides on Other Worlds"}


class TestValidatePartition:
    """Tests for partition validation."""

    def test_missing_point(self, content_points):
        """Test that a dropped point is rejected."""
        plan = distribute_mechanically(content_points[:-1], 3, 36)
        with pytest.raises(PlanValidationError) as exc_info:
            validate_partition(plan, content_points)
        assert exc_info.value.details["missing"] == ["Tides on Other Worlds"]

    def test_duplicate_titles_are_counted(self):
        """Test that duplicated input titles must each be assigned once."""
        points = [ContentPoint(title="Intro"), ContentPoint(title="Intro")]
        plan = distribute_mechanically(points[:1], 1, 10)
        with pytest.raises(PlanValidationError):
            validate_partition(plan, points)


class TestChunkPlanner:
    """Tests for ChunkPlanner."""

    def test_no_content_points_uses_time_only(self, fake_client):
        """Test that a plan without points never calls the service."""
        plan = ChunkPlanner(fake_client).plan([], 45)

        assert plan.strategy == PlanStrategy.TIME_ONLY
        assert plan.chunk_count == 4
        assert fake_client.calls == []

    def test_model_plan_accepted(self, fake_client, content_points):
        """Test that a valid model plan is used."""
        titles = [point.title for point in content_points]
        fake_client.script("planning", plan_response([titles[:3], titles[3:5], titles[5:]]))

        plan = ChunkPlanner(fake_client).plan(content_points, 36, title="Tides")

        assert plan.strategy == PlanStrategy.MODEL
        assert plan.chunks[0].section_titles() == titles[:3]
        assert plan.chunks[0].assigned_sections[0].description == "Gravity of the moon and sun"
        assert plan.chunks[2].time_range.label() == "24-36"
        call = fake_client.calls_for("planning")[0]
        assert call["temperature"] == 0.3
        assert call["variables"]["chunk_count"] == 3

    def test_fenced_model_plan(self, fake_client, content_points):
        """Test that JSON inside a fenced block is parsed."""
        titles = [point.title for point in content_points]
        fake_client.script("planning", "Here you go:\n```json\n" + plan_response([titles[:2], titles[2:4], titles[4:]]) + "\n```")

        plan = ChunkPlanner(fake_client).plan(content_points, 36)
        assert plan.strategy == PlanStrategy.MODEL

    def test_duplicated_assignment_falls_back(self, fake_client, content_points):
        """Test that a plan assigning a point twice is rejected."""
        titles = [point.title for point in content_points]
        fake_client.script("planning", plan_response([titles[:3], titles[2:5], titles[5:]]))

        plan = ChunkPlanner(fake_client).plan(content_points, 36)

        assert plan.strategy == PlanStrategy.MECHANICAL
        validate_partition(plan, content_points)

    def test_wrong_chunk_count_falls_back(self, fake_client, content_points):
        """Test that a plan with the wrong chunk count is rejected."""
        titles = [point.title for point in content_points]
        fake_client.script("planning", plan_response([titles[:3], titles[3:]]))

        plan = ChunkPlanner(fake_client).plan(content_points, 36)
        assert plan.strategy == PlanStrategy.MECHANICAL

    def test_unparseable_response_falls_back(self, fake_client, content_points):
        """Test that prose instead of JSON is rejected."""
        fake_client.script("planning", "I think chunk one should cover the basics.")

        plan = ChunkPlanner(fake_client).plan(content_points, 36)
        assert plan.strategy == PlanStrategy.MECHANICAL

    def test_upstream_error_falls_back(self, fake_client, content_points):
        """Test that a failed planning call still produces a plan."""
        fake_client.script("planning", RetryableGenerationError("service unavailable"))

        plan = ChunkPlanner(fake_client).plan(content_points, 36)

        assert plan.strategy == PlanStrategy.MECHANICAL
        validate_partition(plan, content_points)

    def test_explicit_chunk_count(self, content_points):
        """Test overriding the bracket table."""
        plan = ChunkPlanner().plan(content_points, 36, chunk_count=2)
        assert plan.chunk_count == 2


class TestOutlinePlans:
    """Tests for converting approved outlines into plans."""

    @pytest.mark.parametrize(
        "value,start,end",
        [("0-15", 0, 15), ("0:00-11:15", 0, 11.25), ("12.5-25", 12.5, 25)],
    )
    def test_parse_time_range(self, value, start, end):
        """Test accepted time range formats."""
        time_range = parse_time_range(value)
        assert time_range.start_minute == pytest.approx(start)
        assert time_range.end_minute == pytest.approx(end)

    @pytest.mark.parametrize("value", ["", "abc", "15-10", None, 12])
    def test_parse_time_range_invalid(self, value):
        """Test malformed time ranges."""
        assert parse_time_range(value) is None

    def test_content_plan_from_outline(self, outline_document, content_points):
        """Test that outline chunks become plan chunks."""
        plan = content_plan_from_outline(outline_document)

        assert plan.strategy == PlanStrategy.OUTLINE
        assert plan.total_minutes == 36
        assert plan.chunk_count == 3
        first = plan.chunks[0]
        assert first.section_titles() == ["Why Tides Happen", "Spring and Neap Tides"]
        assert first.assigned_sections[0].key_points == ["Why Tides Happen point"]
        assert first.theme == "Theme 1"
        assert first.transition_to_next == "Bridge 1"
        assert first.time_range.label() == "0-12"
        validate_partition(plan, content_points)

    def test_outline_without_chunks(self):
        """Test that an outline without chunks is rejected."""
        with pytest.raises(PlanValidationError):
            content_plan_from_outline({"title": "Empty", "chunks": []})

    @pytest.mark.parametrize(
        "value,minutes",
        [(6, 6.0), (4.5, 4.5), ("6", 6.0), ("6 minutes", 6.0), (" 2.5 min", 2.5), ("about 6", 0.0), (None, 0.0), (True, 0.0)],
    )
    def test_parse_duration_minutes(self, value, minutes):
        """Test numeric and free-text section durations."""
        assert parse_duration_minutes(value) == pytest.approx(minutes)

    def test_outline_with_text_durations(self, outline_document):
        """Test that durations written as text still produce a plan."""
        for chunk in outline_document["chunks"]:
            for section in chunk["sections"]:
                section["duration"] = f"{section['duration']} minutes"

        plan = content_plan_from_outline(outline_document)

        assert [section.estimated_minutes for section in plan.chunks[0].assigned_sections] == [6.0, 6.0]

    def test_outline_section_without_title(self, outline_document):
        """Test that an untitled section is a plan error, not a crash."""
        del outline_document["chunks"][1]["sections"][0]["title"]

        with pytest.raises(PlanValidationError, match="without a title"):
            content_plan_from_outline(outline_document)

    def test_outline_with_malformed_sections(self, outline_document):
        """Test that sections of the wrong type are reported as plan errors."""
        outline_document["chunks"][0]["sections"] = ["Why Tides Happen"]

        with pytest.raises(PlanValidationError):
            content_plan_from_outline(outline_document)
