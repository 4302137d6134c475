"""Tests for the SQLite entity store."""

import pytest

from scriptsmith.models import ResearchSource
from scriptsmith.persistence import (
    OutlineCreate,
    OutlineStatus,
    OutlineUpdate,
    ScriptRequestCreate,
    ScriptRequestUpdate,
    create_storage,
)


def outline_create(request_id, title="Outline"):
    return OutlineCreate(
        parent_request_id=request_id,
        title=title,
        total_minutes=36,
        chunk_count=3,
        outline_data={"chunks": []},
        research_score=0.97,
    )


class TestScriptRequests:
    """Tests for script request storage."""

    def test_create_and_get(self, storage):
        """Test creating and reading a request."""
        created = storage.create_request(ScriptRequestCreate(owner_id="user-1", title="Deep Sea Vents"))

        fetched = storage.get_request(created.id)

        assert fetched.id == created.id
        assert fetched.owner_id == "user-1"
        assert fetched.workflow_data == {}

    def test_get_missing(self, storage):
        """Test reading a request that does not exist."""
        assert storage.get_request("missing") is None

    def test_update_workflow_data(self, storage, script_request):
        """Test that JSON columns round-trip."""
        updated = storage.update_request(
            script_request.id,
            ScriptRequestUpdate(completed_steps=["outline"], workflow_data={"approved_outline": {"outline_id": "o-1"}}),
        )

        assert updated.completed_steps == ["outline"]
        assert storage.get_request(script_request.id).workflow_data["approved_outline"]["outline_id"] == "o-1"
        assert updated.updated_at >= script_request.updated_at

    def test_update_missing(self, storage):
        """Test updating a request that does not exist."""
        assert storage.update_request("missing", ScriptRequestUpdate(title="x")) is None


class TestResearchSources:
    """Tests for research source storage."""

    def test_list_in_insertion_order(self, storage, script_request):
        """Test that sources are listed oldest first."""
        for i in range(3):
            storage.add_research_source(script_request.id, ResearchSource(title=f"Source {i}"))

        titles = [source.title for source in storage.list_research_sources(script_request.id)]

        assert titles == ["Source 0", "Source 1", "Source 2"]

    def test_selected_only(self, storage, script_request):
        """Test filtering out deselected sources."""
        storage.add_research_source(script_request.id, ResearchSource(title="Kept"))
        storage.add_research_source(script_request.id, ResearchSource(title="Dropped", is_selected=False))

        selected = storage.list_research_sources(script_request.id, selected_only=True)

        assert [source.title for source in selected] == ["Kept"]
        assert len(storage.list_research_sources(script_request.id)) == 2


class TestOutlines:
    """Tests for outline storage."""

    def test_create_pending(self, storage, script_request):
        """Test that new outlines start pending."""
        outline = storage.create_outline(outline_create(script_request.id))

        assert outline.status == OutlineStatus.PENDING
        assert storage.get_outline(outline.id).research_score == 0.97

    def test_latest_outline(self, storage, script_request):
        """Test that the newest outline wins."""
        storage.create_outline(outline_create(script_request.id, "First"))
        second = storage.create_outline(outline_create(script_request.id, "Second"))

        assert storage.get_latest_outline(script_request.id).id == second.id
        assert storage.get_latest_outline("other-request") is None

    def test_conditional_update(self, storage, script_request):
        """Test that an update with a stale expected status is refused."""
        outline = storage.create_outline(outline_create(script_request.id))

        approved = storage.update_outline(
            outline.id, OutlineUpdate(status=OutlineStatus.APPROVED), expected_status=OutlineStatus.PENDING
        )
        refused = storage.update_outline(
            outline.id, OutlineUpdate(status=OutlineStatus.REJECTED), expected_status=OutlineStatus.PENDING
        )

        assert approved.status == OutlineStatus.APPROVED
        assert refused is None
        assert storage.get_outline(outline.id).status == OutlineStatus.APPROVED


class TestFactory:
    """Tests for create_storage."""

    def test_sqlite_default(self, tmp_path, monkeypatch):
        """Test that SQLite is used without a PostgreSQL URL."""
        monkeypatch.delenv("DATABASE_URL", raising=False)
        backend = create_storage(db_path=str(tmp_path / "default.db"))

        assert backend.health_check() is True
        backend.close()

    def test_unknown_backend(self):
        """Test that unknown backends are rejected."""
        with pytest.raises(ValueError):
            create_storage("mongodb")
