"""Tests for script request and research management."""

import pytest

from scriptsmith.errors import AuthenticationError, AuthorizationError, NotFoundError
from scriptsmith.models import ResearchSource
from scriptsmith.request_api import RequestCreateBody, RequestService


@pytest.fixture
def service(storage):
    return RequestService(storage)


class TestRequests:
    """Tests for creating and reading requests."""

    def test_create_and_get(self, service):
        """Test creating a request owned by the caller."""
        created = service.create_request("user-1", RequestCreateBody(title="Deep Sea Vents", topic="oceanography"))

        fetched = service.get_request("user-1", created.id)

        assert fetched.owner_id == "user-1"
        assert fetched.title == "Deep Sea Vents"
        assert fetched.completed_steps == []

    def test_create_requires_principal(self, service):
        """Test that anonymous callers cannot create requests."""
        with pytest.raises(AuthenticationError):
            service.create_request("", RequestCreateBody(title="Anything"))

    def test_get_foreign_request(self, service, script_request):
        """Test that requests are private to their owner."""
        with pytest.raises(AuthorizationError):
            service.get_request("user-2", script_request.id)

    def test_get_missing_request(self, service):
        """Test reading a request that does not exist."""
        with pytest.raises(NotFoundError):
            service.get_request("user-1", "missing")


class TestResearch:
    """Tests for research sources and research status."""

    def test_add_and_list(self, service, script_request):
        """Test attaching research to a request."""
        stored = service.add_research(
            "user-1",
            script_request.id,
            ResearchSource(source_type="document", title="Tide tables", word_count=1200),
        )

        listed = service.list_research("user-1", script_request.id)

        assert [source.id for source in listed] == [stored.id]
        assert listed[0].parent_request_id == script_request.id
        assert listed[0].word_count == 1200

    def test_add_to_foreign_request(self, service, script_request):
        """Test that research cannot be attached to another user's request."""
        with pytest.raises(AuthorizationError):
            service.add_research("user-2", script_request.id, ResearchSource(title="Sneaky"))

    def test_status_with_weak_research(self, service, script_request, weak_research):
        """Test the research status of an under-researched request."""
        for source in weak_research:
            service.add_research("user-1", script_request.id, source)

        status = service.research_status("user-1", script_request.id, total_minutes=35)

        assert status.adequacy.is_adequate is False
        assert status.adequacy_percentage == 48
        assert status.adequacy.recommendations

    def test_status_ignores_deselected_sources(self, service, script_request, strong_research):
        """Test that only selected sources count."""
        for source in strong_research:
            service.add_research("user-1", script_request.id, source.model_copy(update={"is_selected": False}))

        status = service.research_status("user-1", script_request.id, total_minutes=35)

        assert status.adequacy.score.source_count == 0

    def test_uploaded_documents_count(self, service, script_request, weak_research):
        """Test that a document source suppresses the upload recommendation."""
        for source in weak_research:
            service.add_research("user-1", script_request.id, source)
        service.add_research("user-1", script_request.id, ResearchSource(source_type="document", word_count=100))

        status = service.research_status("user-1", script_request.id, total_minutes=35)

        assert "upload_documents" not in [rec.action for rec in status.adequacy.recommendations]

    def test_status_reports_duplicates(self, service, script_request):
        """Test duplicate detection in the research status."""
        text = (
            "Hydrothermal vents support entire ecosystems without sunlight, relying on "
            "chemosynthetic bacteria that convert hydrogen sulfide into energy for tube worms."
        )
        service.add_research("user-1", script_request.id, ResearchSource(content=text))
        service.add_research("user-1", script_request.id, ResearchSource(content=text))

        status = service.research_status("user-1", script_request.id, total_minutes=35)

        assert len(status.duplicates) == 1
