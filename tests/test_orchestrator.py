"""Tests for chunk-by-chunk script generation."""

import pytest

from scriptsmith.errors import FatalGenerationError, GenerationTimeoutError, PersistenceError
from scriptsmith.job_models import GenerationParams
from scriptsmith.models import PlanStrategy, ResearchExcerpt
from scriptsmith.orchestrator import (
    CHUNK_SEPARATOR,
    GenerationOrchestrator,
    find_placeholders,
    remove_duplicate_sections,
    stitch_chunks,
    validate_chunk,
)
from scriptsmith.planning import ChunkPlanner, content_plan_from_outline, distribute_mechanically
from scriptsmith.queue import JobCreate, JobStatus, JobStep
from scriptsmith.utils import Deadline


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def claim_job(store, content_points, total_minutes=36, content_plan=None, **params):
    """Create a job and claim it, returning the processing job."""
    generation_params = GenerationParams(
        title="The History of Tides",
        topic="tides",
        content_points=content_points,
        total_minutes=total_minutes,
        **params,
    )
    store.create(
        JobCreate(
            parent_request_id="req-1",
            owner_id="user-1",
            generation_params=generation_params.model_dump(mode="json"),
            total_chunks=content_plan.chunk_count if content_plan else 3,
            content_plan=content_plan,
        )
    )
    return store.claim_next(worker_id="worker-1")


@pytest.fixture
def progress_log(memory_store, monkeypatch):
    """Progress values written to the store, in order."""
    log = []
    original = memory_store.update

    def update(job_id, job_update):
        changes = job_update.changes()
        if "progress" in changes:
            log.append(changes["progress"])
        return original(job_id, job_update)

    monkeypatch.setattr(memory_store, "update", update)
    return log


class TestStitching:
    """Tests for joining chunks into one script."""

    def test_joins_with_separator(self):
        """Test that chunks are joined in order."""
        assert stitch_chunks(["One.", "Two.", "Three."]) == CHUNK_SEPARATOR.join(["One.", "Two.", "Three."])

    def test_removes_meta_commentary(self):
        """Test that process commentary never reaches the script."""
        chunks = [
            "Here is part 1 of the script:\n# The History of Tides\nThe sea breathes twice a day.",
            "(Part 2 of 3)\nThe moon pulls.\n[Continued in next part]",
            "Let me write the conclusion now.\nAnd so the tides go on.",
        ]

        script = stitch_chunks(chunks)

        assert "Here is part 1" not in script
        assert "Part 2 of 3" not in script
        assert "Continued in next part" not in script
        assert "Let me write" not in script
        assert "# The History of Tides" in script
        assert "And so the tides go on." in script

    def test_drops_repeated_titles_in_later_chunks(self):
        """Test that later chunks do not repeat the script title."""
        chunks = ["# Tides\nIntro.", "# Tides\n## Tidal Bores\nRivers run backwards."]

        script = stitch_chunks(chunks)

        assert script.count("# Tides") == 1
        assert "## Tidal Bores" in script

    def test_skips_empty_chunks(self):
        """Test that chunks that are entirely commentary leave no gap."""
        assert stitch_chunks(["One.", "Here is the next section:", "Two."]) == f"One.{CHUNK_SEPARATOR}Two."

    def test_drops_repeated_sections_across_chunks(self):
        """Test that a section header repeated in a later chunk keeps only the first copy."""
        chunks = [
            "## Tidal Bores\nRivers run backwards when the tide rises.\n\n## Spring Tides\nSun and moon align.",
            "### tidal bores\nAgain the rivers turn around.\n\n## Tides in History\nNaval battles turned on tides.",
        ]

        script = stitch_chunks(chunks)

        assert script.lower().count("tidal bores") == 1
        assert "Again the rivers turn around." not in script
        assert "## Tides in History\nNaval battles turned on tides." in script

    def test_drops_near_identical_sections(self):
        """Test that a section with a new header but the same text is dropped."""
        body = "The tidal bore surges upstream against the river current every spring season."
        chunks = [f"## Tidal Bores\n{body}", f"## Bore Waves\n{body}\n\n## Tides in History\nNaval battles."]

        script = stitch_chunks(chunks)

        assert "Bore Waves" not in script
        assert script.count(body) == 1
        assert "Naval battles." in script

    def test_remove_duplicate_sections(self):
        """Test that the first section with a header wins within one script."""
        script = "# Tides\n\n## Intro\nHello.\n\n## Moon\nThe moon pulls.\n\n## INTRO\nHello again.\n\n---\n\n## Close\nBye."

        cleaned = remove_duplicate_sections(script)

        assert cleaned == "# Tides\n\n## Intro\nHello.\n\n## Moon\nThe moon pulls.\n\n---\n\n## Close\nBye."

    def test_find_placeholders(self):
        """Test placeholder detection."""
        found = find_placeholders("Intro. [Continue with more examples] Outro. To be continued")
        assert found == ["[Continue with more examples]", "To be continued"]


class TestValidateChunk:
    """Tests for per-chunk validation."""

    def test_valid_chunk(self, content_points):
        """Test a chunk covering exactly its sections."""
        plan = distribute_mechanically(content_points, 3, 36)
        text = "### Why Tides Happen\nGravity.\n### Spring and Neap Tides\nAlignment."

        validation = validate_chunk(text, plan.chunks[0], plan.forbidden_sections(0))

        assert validation.is_valid is True
        assert validation.word_count == 11

    def test_missing_and_forbidden(self, content_points):
        """Test that missing and forbidden sections are reported."""
        plan = distribute_mechanically(content_points, 3, 36)
        text = "why tides happen, and a word on TIDAL ENERGY."

        validation = validate_chunk(text, plan.chunks[0], plan.forbidden_sections(0))

        assert validation.is_valid is False
        assert validation.missing_sections == ["Spring and Neap Tides"]
        assert validation.forbidden_mentions == ["Tidal Energy"]


class TestGenerationOrchestrator:
    """Tests for GenerationOrchestrator.run."""

    def test_generates_every_chunk(self, memory_store, fake_client, content_points):
        """Test a full run with a mechanical plan."""
        job = claim_job(memory_store, content_points)
        orchestrator = GenerationOrchestrator(memory_store, fake_client)

        result = orchestrator.run(job, Deadline(300))

        assert len(fake_client.calls_for("chunk")) == 3
        assert result.plan.strategy == PlanStrategy.MECHANICAL
        assert result.script.count(CHUNK_SEPARATOR) == 2
        assert result.script.index("Part 1") < result.script.index("Part 2") < result.script.index("Part 3")
        assert result.metadata["chunk_count"] == 3
        assert result.metadata["plan_strategy"] == "mechanical"
        assert result.metadata["usage"] == {"input_tokens": 300, "output_tokens": 600, "total_tokens": 900}
        assert result.metadata["models"] == ["fake-model"]
        assert result.metadata["chunk_warnings"] == []
        assert result.metadata["word_count"] > 0

    def test_plan_persisted_on_job(self, memory_store, fake_client, content_points):
        """Test that a plan made during the run is stored on the job."""
        job = claim_job(memory_store, content_points, total_minutes=45)

        GenerationOrchestrator(memory_store, fake_client).run(job, Deadline(300))

        stored = memory_store.get(job.id)
        assert stored.content_plan is not None
        assert stored.total_chunks == 4
        assert stored.current_chunk == 4
        assert stored.status == JobStatus.PROCESSING

    def test_stored_plan_is_reused(self, memory_store, fake_client, content_points, outline_document):
        """Test that a job with a plan never calls the planner."""
        plan = content_plan_from_outline(outline_document)
        job = claim_job(memory_store, content_points, content_plan=plan)

        result = GenerationOrchestrator(memory_store, fake_client).run(job, Deadline(300))

        assert fake_client.calls_for("planning") == []
        assert result.plan.strategy == PlanStrategy.OUTLINE
        first_call = fake_client.calls_for("chunk")[0]["variables"]
        assert "Theme 1" in first_call["position_requirements"]
        assert "Bridge 1" in first_call["transition"]
        assert fake_client.calls_for("chunk")[2]["variables"]["transition"] == ""

    def test_prompts_scope_sections(self, memory_store, fake_client, content_points):
        """Test that each prompt names its own sections and forbids the rest."""
        job = claim_job(memory_store, content_points)

        GenerationOrchestrator(memory_store, fake_client).run(job, Deadline(300))

        middle = fake_client.calls_for("chunk")[1]["variables"]
        assert "Tidal Bores" in middle["sections"]
        assert "Tides in History" in middle["sections"]
        assert "Why Tides Happen" in middle["forbidden"]
        assert "Tides on Other Worlds" in middle["forbidden"]
        assert "Tidal Bores" not in middle["forbidden"]
        assert middle["chunk_number"] == 2
        assert middle["total_chunks"] == 3
        assert middle["time_range"] == "12-24"
        assert middle["target_words"] == 1560
        assert "MIDDLE" in middle["position_requirements"]

    def test_hook_in_first_chunk(self, memory_store, fake_client, content_points):
        """Test that the hook only reaches the opening prompt."""
        job = claim_job(memory_store, content_points, hook="What if the moon vanished?")

        GenerationOrchestrator(memory_store, fake_client).run(job, Deadline(300))

        calls = fake_client.calls_for("chunk")
        assert "What if the moon vanished?" in calls[0]["variables"]["position_requirements"]
        assert "What if the moon vanished?" not in calls[1]["variables"]["position_requirements"]
        assert "FINAL" in calls[2]["variables"]["position_requirements"]

    def test_research_in_every_prompt(self, memory_store, fake_client, content_points):
        """Test that the research captured on the job is quoted in each chunk prompt."""
        research = [ResearchExcerpt(title="Tide Tables", excerpt="High water arrives about fifty minutes later")]
        job = claim_job(memory_store, content_points, research=research)

        GenerationOrchestrator(memory_store, fake_client).run(job, Deadline(300))

        for call in fake_client.calls_for("chunk"):
            assert "RESEARCH SOURCES:" in call["variables"]["research"]
            assert "1. Tide Tables: High water arrives about fifty minutes later..." in call["variables"]["research"]

    def test_no_research_leaves_prompt_unchanged(self, memory_store, fake_client, content_points):
        """Test that jobs without research send an empty research block."""
        job = claim_job(memory_store, content_points)

        GenerationOrchestrator(memory_store, fake_client).run(job, Deadline(300))

        assert fake_client.calls_for("chunk")[0]["variables"]["research"] == ""

    def test_model_override_reaches_client(self, memory_store, fake_client, content_points):
        """Test that the job's model is requested for every chunk."""
        job = claim_job(memory_store, content_points, model="gpt-premium")

        result = GenerationOrchestrator(memory_store, fake_client).run(job, Deadline(300))

        assert [call["model"] for call in fake_client.calls_for("chunk")] == ["gpt-premium"] * 3
        assert result.metadata["models"] == ["gpt-premium"]

    def test_progress_is_monotonic(self, memory_store, fake_client, content_points, progress_log):
        """Test that progress is written after each chunk and only grows."""
        job = claim_job(memory_store, content_points)

        GenerationOrchestrator(memory_store, fake_client).run(job, Deadline(300))

        assert progress_log == [33, 67, 100]
        assert memory_store.get(job.id).current_step == JobStep.generating(3, 3)

    def test_chunk_warnings_recorded(self, memory_store, fake_client, content_points):
        """Test that a chunk straying into forbidden sections is flagged."""
        job = claim_job(memory_store, content_points)
        fake_client.script("chunk", "Why Tides Happen. Spring and Neap Tides. Also Tidal Energy.")

        result = GenerationOrchestrator(memory_store, fake_client).run(job, Deadline(300))

        warnings = result.metadata["chunk_warnings"]
        assert len(warnings) == 1
        assert warnings[0]["chunk_number"] == 1
        assert warnings[0]["forbidden_mentions"] == ["Tidal Energy"]

    def test_upstream_failure_aborts(self, memory_store, fake_client, content_points):
        """Test that a failed chunk stops the attempt."""
        job = claim_job(memory_store, content_points)
        fake_client.script("chunk", "Part one.", FatalGenerationError("bad request"))

        with pytest.raises(FatalGenerationError):
            GenerationOrchestrator(memory_store, fake_client).run(job, Deadline(300))

        assert len(fake_client.calls_for("chunk")) == 2
        assert memory_store.get(job.id).current_chunk == 1

    def test_expired_budget(self, memory_store, fake_client, content_points):
        """Test that no work starts once the budget is spent."""
        job = claim_job(memory_store, content_points)

        with pytest.raises(GenerationTimeoutError):
            GenerationOrchestrator(memory_store, fake_client).run(job, Deadline(0))

        assert fake_client.calls == []

    def test_budget_runs_out_mid_job(self, memory_store, fake_client, content_points, monkeypatch):
        """Test that the budget is checked before every chunk."""
        clock = FakeClock()
        original = fake_client.generate

        def slow_generate(*args, **kwargs):
            result = original(*args, **kwargs)
            clock.now += 100
            return result

        monkeypatch.setattr(fake_client, "generate", slow_generate)
        plan = distribute_mechanically(content_points, 3, 36)
        job = claim_job(memory_store, content_points, content_plan=plan)

        with pytest.raises(GenerationTimeoutError):
            GenerationOrchestrator(memory_store, fake_client).run(job, Deadline(150, clock=clock))

        assert len(fake_client.calls_for("chunk")) == 2

    def test_call_timeout_bounded_by_budget(self, memory_store, fake_client, content_points):
        """Test that no call may outlive the attempt's budget."""
        plan = distribute_mechanically(content_points, 3, 36)
        job = claim_job(memory_store, content_points, content_plan=plan)

        GenerationOrchestrator(memory_store, fake_client, request_timeout=600).run(job, Deadline(60))

        assert all(call["timeout"] <= 60 for call in fake_client.calls)

    def test_vanished_job(self, memory_store, fake_client, content_points, monkeypatch):
        """Test that a missing job record is a persistence failure."""
        job = claim_job(memory_store, content_points)
        monkeypatch.setattr(memory_store, "update", lambda job_id, update: None)

        with pytest.raises(PersistenceError):
            GenerationOrchestrator(memory_store, fake_client, planner=ChunkPlanner()).run(job, Deadline(300))
