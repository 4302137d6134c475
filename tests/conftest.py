"""Shared fixtures for the Scriptsmith test suite."""

import json
from collections import defaultdict
from typing import Any, Dict, List, Optional

import pytest

from scriptsmith.errors import FatalGenerationError
from scriptsmith.models import ContentPoint, GenerationResult, GenerationUsage, ResearchSource
from scriptsmith.persistence import ScriptRequestCreate, create_storage
from scriptsmith.queue import create_job_store


class FakeGenerationClient:
    """Stand-in for GenerationClient that replays scripted responses.

    Responses are queued per stage (planning, outline, chunk). A queued item
    may be a string (returned as the text) or an exception (raised). When a
    stage has nothing queued, chunks echo their assigned sections and every
    other stage fails with FatalGenerationError.
    """

    def __init__(self):
        self.responses: Dict[str, List[Any]] = defaultdict(list)
        self.calls: List[Dict[str, Any]] = []

    def script(self, stage: str, *responses: Any) -> "FakeGenerationClient":
        self.responses[stage].extend(responses)
        return self

    def calls_for(self, stage: str) -> List[Dict[str, Any]]:
        return [call for call in self.calls if call["stage"] == stage]

    def generate(
        self,
        system: str,
        human: str,
        variables: Optional[Dict[str, Any]] = None,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
        timeout: Optional[float] = None,
        stage: str = "generation",
        model: Optional[str] = None,
    ) -> GenerationResult:
        variables = variables or {}
        self.calls.append(
            {
                "stage": stage,
                "variables": variables,
                "temperature": temperature,
                "max_tokens": max_tokens,
                "timeout": timeout,
                "model": model,
            }
        )

        if self.responses[stage]:
            item = self.responses[stage].pop(0)
            if isinstance(item, BaseException):
                raise item
            text = item
        elif stage == "chunk":
            text = f"Part {variables.get('chunk_number')} narration.\n\n{variables.get('sections', '')}"
        else:
            raise FatalGenerationError(f"No scripted response for stage {stage}")

        return GenerationResult(
            text=text,
            usage=GenerationUsage(input_tokens=100, output_tokens=200, total_tokens=300),
            model=model or "fake-model",
        )


@pytest.fixture
def context():
    """Shared state between pytest-bdd steps."""
    return {}


@pytest.fixture
def fake_client():
    """A scripted generation client."""
    return FakeGenerationClient()


@pytest.fixture
def memory_store():
    """Create an in-memory job store for testing."""
    store = create_job_store("memory")
    yield store
    store.close()


@pytest.fixture
def storage(tmp_path):
    """Create an SQLite entity store in a temporary directory."""
    backend = create_storage("sqlite", db_path=str(tmp_path / "entities.db"))
    yield backend
    backend.close()


@pytest.fixture
def script_request(storage):
    """A script request owned by user-1."""
    return storage.create_request(ScriptRequestCreate(owner_id="user-1", title="The History of Tides", topic="tides"))


@pytest.fixture
def content_points():
    """Six content points for a long-form script."""
    return [
        ContentPoint(title="Why Tides Happen", description="Gravity of the moon and sun", duration_seconds=420),
        ContentPoint(title="Spring and Neap Tides", description="Alignment effects"),
        ContentPoint(title="Tidal Bores", description="Rivers running backwards"),
        ContentPoint(title="Tides in History", description="D-Day planning"),
        ContentPoint(title="Tidal Energy", description="Turbines and barrages"),
        ContentPoint(title="Tides on Other Worlds", description="Io and Europa"),
    ]


def make_sources(count: int, words: int, source_type: str = "synthesis", quality: Optional[float] = 0.9):
    return [
        ResearchSource(source_type=source_type, title=f"Source {i}", word_count=words, quality_score=quality)
        for i in range(count)
    ]


@pytest.fixture
def strong_research():
    """Research that clears every bracket up to 60 minutes."""
    return make_sources(20, 800)


@pytest.fixture
def weak_research():
    """1500 words across three web sources."""
    return make_sources(3, 500, source_type="web", quality=None)


@pytest.fixture
def outline_document(content_points):
    """A well-formed three-chunk outline placing every content point once."""
    titles = [point.title for point in content_points]
    chunks = []
    for i in range(3):
        chunks.append(
            {
                "chunk_number": i + 1,
                "time_range": f"{i * 12}:00-{(i + 1) * 12}:00",
                "theme": f"Theme {i + 1}",
                "sections": [
                    {
                        "timestamp": f"{i * 12 + j * 6}:00",
                        "title": title,
                        "duration": 6,
                        "content": f"Cover {title}",
                        "key_points": [f"{title} point"],
                    }
                    for j, title in enumerate(titles[i * 2 : i * 2 + 2])
                ],
                "transition_to_next": f"Bridge {i + 1}",
            }
        )
    return {"title": "The History of Tides", "total_minutes": 36, "chunks": chunks, "key_takeaways": ["Moon"]}


@pytest.fixture
def outline_json(outline_document):
    return json.dumps(outline_document)
