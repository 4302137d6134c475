"""Chunk-by-chunk script generation for a claimed job.

The orchestrator runs inside the worker process and calls the generation
client directly. For each chunk of the job's content plan it sends a prompt
scoped to that chunk's sections, names the sections reserved for other
chunks as forbidden, and persists progress as soon as the chunk is done so
polling clients see live progress.

Any failure aborts the attempt. Text accumulated so far is discarded; the
retry policy decides whether the whole job runs again from chunk 1.
"""

import logging
import re
from typing import Any, Dict, List, Optional, Set, Tuple

from pydantic import BaseModel

from .config import (
    CHUNK_MAX_TOKENS,
    CHUNK_TEMPERATURE,
    LLM_REQUEST_TIMEOUT_SECONDS,
    WORDS_PER_MINUTE,
)
from .errors import PersistenceError
from .generation import GenerationClient
from .job_models import GenerationParams
from .metrics import record_chunk_generated, record_plan
from .models import ChunkAssignment, ChunkValidation, ContentPlan, GenerationUsage
from .planning import ChunkPlanner
from .queue import JobStep, JobStore, JobUpdate, ScriptJob
from .research import format_research_for_prompt
from .utils import Deadline, count_words, word_similarity

logger = logging.getLogger(__name__)

CHUNK_SEPARATOR = "\n\n---\n\n"

# Header lines within this many lines of a later chunk's start are dropped
HEADER_SCAN_LINES = 5

# Section headers (## or ###) and how much of a section body identifies it
SECTION_HEADER = re.compile(r"^\s*#{2,3}\s+(.+?)\s*#*\s*$")
SECTION_FINGERPRINT_CHARS = 500
DUPLICATE_SECTION_SIMILARITY = 0.8

# Lines the model adds about the writing process rather than the script
META_COMMENTARY_PATTERNS = [
    re.compile(r"^\s*(here is|here's|below is)\b.*\b(part|chunk|section|script)\b", re.IGNORECASE),
    re.compile(r"^\s*\(?(part|chunk) \d+ of \d+\)?\s*:?\s*$", re.IGNORECASE),
    re.compile(r"^\s*\[?\s*(to be continued|continued in (the )?next (part|chunk|section))", re.IGNORECASE),
    re.compile(r"^\s*\[\s*(end of|continue|rest of)\b.*\]\s*$", re.IGNORECASE),
    re.compile(r"^\s*(i will|i'll|let me) (now )?(write|continue|generate)\b", re.IGNORECASE),
]

PLACEHOLDER_PATTERNS = [
    re.compile(r"\[continue.*\]", re.IGNORECASE),
    re.compile(r"\[rest of.*\]", re.IGNORECASE),
    re.compile(r"\[add more.*\]", re.IGNORECASE),
    re.compile(r"\[insert.*\]", re.IGNORECASE),
    re.compile(r"to be continued", re.IGNORECASE),
]


class OrchestrationResult(BaseModel):
    """Finished script of one successful attempt."""

    script: str
    metadata: Dict[str, Any]
    plan: ContentPlan


def is_meta_commentary(line: str) -> bool:
    return any(pattern.search(line) for pattern in META_COMMENTARY_PATTERNS)


def _split_sections(text: str) -> List[Tuple[Optional[str], List[str]]]:
    """Split text into (header key, lines) blocks at ##/### headers.

    Title lines and ``---`` separators start an unkeyed block so they are
    never dropped with the section above them.
    """
    blocks: List[Tuple[Optional[str], List[str]]] = [(None, [])]
    for line in text.splitlines():
        match = SECTION_HEADER.match(line)
        if match:
            blocks.append((match.group(1).strip().lower(), [line]))
        elif line.strip() == "---" or line.lstrip().startswith("# "):
            blocks.append((None, [line]))
        else:
            blocks[-1][1].append(line)
    return blocks


def _drop_repeated_sections(text: str, seen_headers: Set[str], fingerprints: List[str]) -> str:
    kept: List[str] = []
    for header, lines in _split_sections(text):
        if header is not None:
            fingerprint = "\n".join(lines[1:]).strip()[:SECTION_FINGERPRINT_CHARS]
            if header in seen_headers or any(
                word_similarity(fingerprint, seen) > DUPLICATE_SECTION_SIMILARITY for seen in fingerprints
            ):
                logger.info(f"Dropping repeated section '{header}'")
                continue
            seen_headers.add(header)
            if fingerprint:
                fingerprints.append(fingerprint)
        kept.extend(lines)
    return "\n".join(kept).strip()


def remove_duplicate_sections(script: str) -> str:
    """Drop sections that repeat an earlier one.

    The first ``##``/``###`` section with a given header (case-insensitive)
    wins; later ones are removed with their content. A section whose
    opening text is nearly identical to an earlier section's is removed
    even under a different header.
    """
    return _drop_repeated_sections(script, set(), [])


def stitch_chunks(chunks: List[str]) -> str:
    """Join generated chunks into one script.

    Meta-commentary lines are removed from every chunk, and header lines at
    the top of every chunk after the first are dropped so the script keeps
    a single title. Sections repeating an earlier chunk's section are
    dropped as in ``remove_duplicate_sections``.
    """
    seen_headers: Set[str] = set()
    fingerprints: List[str] = []
    processed = []
    for index, chunk in enumerate(chunks):
        lines = []
        for line_number, line in enumerate(chunk.strip().splitlines()):
            if is_meta_commentary(line):
                continue
            if index > 0 and line_number < HEADER_SCAN_LINES and line.lstrip().startswith("# "):
                continue
            lines.append(line)
        processed.append(_drop_repeated_sections("\n".join(lines), seen_headers, fingerprints))
    return CHUNK_SEPARATOR.join(part for part in processed if part)


def find_placeholders(text: str) -> List[str]:
    """Placeholder snippets left in generated text (e.g. ``[continue...]``)."""
    return [match.group(0) for pattern in PLACEHOLDER_PATTERNS for match in pattern.finditer(text)]


def _mentions(text: str, title: str) -> bool:
    return title.lower() in text.lower()


def validate_chunk(text: str, chunk: ChunkAssignment, forbidden: List[str]) -> ChunkValidation:
    """Check a generated chunk against its assignment.

    A chunk is valid when every assigned section title appears in it and no
    forbidden title does. Problems are reported, not raised.
    """
    missing = [title for title in chunk.section_titles() if not _mentions(text, title)]
    mentioned = [title for title in forbidden if _mentions(text, title)]
    return ChunkValidation(
        is_valid=not missing and not mentioned,
        missing_sections=missing,
        forbidden_mentions=mentioned,
        word_count=count_words(text),
    )


CHUNK_SYSTEM_PROMPT = """You are an expert long-form scriptwriter. You write one part of a longer script at a time.
Write complete, spoken-word script text in a conversational, engaging tone.
Include timestamps throughout and [Visual: ...] cues for production.
Never use placeholders or shortcuts, and never comment on the writing process."""

CHUNK_HUMAN_PROMPT = """Write PART {chunk_number} of {total_chunks} of the script.

SCRIPT CONTEXT:
- Title: {title}
- Topic: {topic}
- Target Audience: {target_audience}
- Tone: {tone}
- This part: Minutes {time_range} ({duration} minutes, about {target_words} words)

PART REQUIREMENTS:
{position_requirements}

SECTIONS YOU MUST WRITE, IN ORDER:
{sections}
{research}
FORBIDDEN SECTIONS (covered in other parts, do NOT write about them):
{forbidden}
{transition}
Write the complete part now:"""


def _position_requirements(index: int, total: int, chunk: ChunkAssignment, hook: Optional[str]) -> str:
    start = chunk.time_range.start_minute
    end = chunk.time_range.end_minute
    if total == 1:
        lines = [
            f"- {f'Open with this hook: {hook}' if hook else 'Open with a compelling hook'}",
            "- Cover the whole script and end with a strong conclusion and call to action",
        ]
    elif index == 0:
        lines = [
            "- Start with a compelling introduction and hook",
            f"- {f'Use this hook: {hook}' if hook else 'Create an engaging opening'}",
            "- Set up the main promise of the script and preview what is coming",
            "- Include timestamps starting from [0:00]",
        ]
    elif index == total - 1:
        lines = [
            f"- This is the FINAL part (minutes {start:g}-{end:g})",
            "- Continue naturally from the previous part",
            "- End with a strong conclusion summarizing the key points and a call to action",
        ]
    else:
        lines = [
            f"- This is a MIDDLE part (minutes {start:g}-{end:g})",
            "- Continue naturally from the previous part, without re-introducing the script",
            "- Include smooth transitions between topics",
        ]
    if chunk.theme:
        lines.append(f"- Theme of this part: {chunk.theme}")
    return "\n".join(lines)


def _format_sections(chunk: ChunkAssignment) -> str:
    if not chunk.assigned_sections:
        return "No fixed sections - continue the script's narrative for this time range."

    blocks = []
    for idx, section in enumerate(chunk.assigned_sections, start=1):
        block = [f'{idx}. "{section.title}"']
        if section.estimated_minutes:
            block[0] += f" ({section.estimated_minutes:g} minutes)"
        block.append(f"   Start this section with the header: ### {section.title}")
        if section.description:
            block.append(f"   Cover: {section.description}")
        for point in section.key_points:
            block.append(f"   - {point}")
        blocks.append("\n".join(block))
    return "\n".join(blocks)


def _format_forbidden(forbidden: List[str]) -> str:
    if not forbidden:
        return "None"
    return "\n".join(f'- "{title}"' for title in forbidden)


class GenerationOrchestrator:
    """Generates a job's script chunk by chunk.

    Attributes:
        store: Job store progress is written to.
        client: Generation client used for every chunk.
        planner: Planner used when the job has no stored plan.
    """

    def __init__(
        self,
        store: JobStore,
        client: GenerationClient,
        planner: Optional[ChunkPlanner] = None,
        request_timeout: float = LLM_REQUEST_TIMEOUT_SECONDS,
        words_per_minute: int = WORDS_PER_MINUTE,
    ):
        self.store = store
        self.client = client
        self.planner = planner or ChunkPlanner(client)
        self.request_timeout = request_timeout
        self.words_per_minute = words_per_minute

    def _update(self, job_id: str, update: JobUpdate) -> ScriptJob:
        job = self.store.update(job_id, update)
        if job is None:
            raise PersistenceError(f"Job {job_id} disappeared during generation")
        return job

    def _call_timeout(self, deadline: Deadline) -> float:
        return min(self.request_timeout, deadline.remaining())

    def resolve_plan(self, job: ScriptJob, params: GenerationParams, deadline: Deadline) -> ContentPlan:
        """The job's stored plan, or a new plan persisted on the job."""
        if job.content_plan is not None:
            return job.content_plan

        deadline.check("planning")
        self._update(job.id, JobUpdate(current_step=JobStep.PLANNING))

        plan = self.planner.plan(
            params.content_points,
            params.total_minutes,
            title=params.title,
            topic=params.topic,
            timeout=self._call_timeout(deadline),
        )
        record_plan(plan.strategy.value)
        self._update(job.id, JobUpdate(content_plan=plan, total_chunks=plan.chunk_count))
        logger.info(f"Job {job.id}: planned {plan.chunk_count} chunks ({plan.strategy.value})")
        return plan

    def run(self, job: ScriptJob, deadline: Deadline) -> OrchestrationResult:
        """Generate the full script for ``job``.

        Args:
            job: A job in processing status.
            deadline: Time budget for this attempt.

        Returns:
            OrchestrationResult with the stitched script and metadata.

        Raises:
            GenerationTimeoutError: If the budget runs out.
            UpstreamGenerationError: If a generation call fails.
            PersistenceError: If progress cannot be written.
        """
        params = GenerationParams.model_validate(job.generation_params)
        plan = self.resolve_plan(job, params, deadline)
        total = plan.chunk_count

        texts: List[str] = []
        usage = GenerationUsage()
        models = set()
        warnings: List[Dict[str, Any]] = []
        research_block = format_research_for_prompt(params.research)

        for index, chunk in enumerate(plan.chunks):
            chunk_number = index + 1
            deadline.check(f"chunk {chunk_number} of {total}")
            self._update(job.id, JobUpdate(current_step=JobStep.generating(chunk_number, total)))

            forbidden = plan.forbidden_sections(index)
            duration = chunk.time_range.duration_minutes
            result = self.client.generate(
                system=CHUNK_SYSTEM_PROMPT,
                human=CHUNK_HUMAN_PROMPT,
                variables={
                    "chunk_number": chunk_number,
                    "total_chunks": total,
                    "title": params.title,
                    "topic": params.topic or params.title,
                    "target_audience": params.target_audience or "General viewers",
                    "tone": params.tone or "Informative and engaging",
                    "time_range": chunk.time_range.label(),
                    "duration": f"{duration:g}",
                    "target_words": round(duration * self.words_per_minute),
                    "position_requirements": _position_requirements(index, total, chunk, params.hook),
                    "sections": _format_sections(chunk),
                    "research": f"\n{research_block}\n" if research_block else "",
                    "forbidden": _format_forbidden(forbidden),
                    "transition": (
                        f"\nEND THIS PART WITH THIS TRANSITION: {chunk.transition_to_next}\n"
                        if chunk.transition_to_next and index < total - 1
                        else ""
                    ),
                },
                temperature=CHUNK_TEMPERATURE,
                max_tokens=CHUNK_MAX_TOKENS,
                timeout=self._call_timeout(deadline),
                stage="chunk",
                model=params.model,
            )

            texts.append(result.text)
            usage = usage + result.usage
            if result.model:
                models.add(result.model)
            record_chunk_generated(plan.strategy.value)

            validation = validate_chunk(result.text, chunk, forbidden)
            if not validation.is_valid:
                logger.warning(
                    f"Job {job.id} chunk {chunk_number}: {len(validation.missing_sections)} missing section(s), "
                    f"{len(validation.forbidden_mentions)} forbidden mention(s)"
                )
                warnings.append({"chunk_number": chunk_number, **validation.model_dump(exclude={"is_valid"})})

            self._update(
                job.id,
                JobUpdate(
                    current_chunk=chunk_number,
                    progress=round(chunk_number / total * 100),
                    current_step=JobStep.generating(chunk_number, total),
                ),
            )
            logger.info(f"Job {job.id}: chunk {chunk_number}/{total} done ({validation.word_count} words)")

        script = stitch_chunks(texts)
        word_count = count_words(script)
        metadata = {
            "title": params.title,
            "word_count": word_count,
            "target_minutes": params.total_minutes,
            "estimated_minutes": round(word_count / self.words_per_minute, 1),
            "chunk_count": total,
            "plan_strategy": plan.strategy.value,
            "usage": usage.model_dump(),
            "models": sorted(models),
            "chunk_warnings": warnings,
            "placeholders": find_placeholders(script),
        }
        return OrchestrationResult(script=script, metadata=metadata, plan=plan)
