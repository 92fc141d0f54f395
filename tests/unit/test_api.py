"""Tests for the HTTP surface."""

import pytest
from unittest.mock import AsyncMock, patch

from fastapi.testclient import TestClient

from quickbook.core.conversation import get_event_router
from quickbook.core.conversation.router import EventRouter
from quickbook.core.conversation.store import ConversationStore
from quickbook.core.intent.extractor import IntentExtractor
from quickbook.main import app

from tests.factories import SALON_ID, MockClaudeResponse, intent_json, make_repository, tomorrow


@pytest.fixture
def mock_claude_client():
    """Create mock Claude client."""
    client = AsyncMock()
    client.generate.return_value = MockClaudeResponse(
        content=intent_json(serviceName="Haircut", date=tomorrow().isoformat(), time="15:00")
    )
    return client


@pytest.fixture
def client(mock_claude_client):
    """Test client wired to an in-memory router (lifespan not run)."""
    repository = make_repository()
    event_router = EventRouter(
        repository,
        store=ConversationStore(ttl_seconds=600),
        extractor=IntentExtractor(claude_client=mock_claude_client, timeout_seconds=1),
    )
    app.dependency_overrides[get_event_router] = lambda: event_router
    yield TestClient(app)
    app.dependency_overrides.clear()


def _event(**overrides) -> dict:
    body = {
        "transport_event_id": "wamid.1",
        "conversation_key": {"salon_id": SALON_ID, "customer_handle": "+15550001"},
        "type": "text",
        "text": "Haircut tomorrow at 3pm",
    }
    body.update(overrides)
    return body


class TestEventsEndpoint:
    """Test POST /events."""

    def test_text_event_returns_offer(self, client):
        response = client.post("/events", json=_event())

        assert response.status_code == 200
        data = response.json()
        assert data["kind"] == "interactive"
        assert [o["label"] for o in data["options"]] == ["15:00 Anna", "14:00 Anna", "16:00 Anna"]

    def test_text_reply_has_no_options_key(self, client):
        response = client.post(
            "/events",
            json=_event(type="interactive_reply", text=None, payload_id="slot_gone0"),
        )

        assert response.status_code == 200
        assert response.json()["kind"] == "text"
        assert "options" not in response.json()

    def test_redelivery_same_reply(self, client, mock_claude_client):
        first = client.post("/events", json=_event())
        second = client.post("/events", json=_event())

        assert second.json() == first.json()
        assert mock_claude_client.generate.call_count == 1

    @pytest.mark.parametrize(
        "overrides",
        [
            {"text": ""},
            {"text": None},
            {"type": "interactive_reply", "text": None},
            {"type": "voice"},
            {"transport_event_id": ""},
            {"conversation_key": {"salon_id": SALON_ID}},
        ],
    )
    def test_malformed_event_rejected(self, client, mock_claude_client, overrides):
        response = client.post("/events", json=_event(**overrides))

        assert response.status_code == 422
        assert response.json()["error"] == "malformed_event"
        mock_claude_client.generate.assert_not_called()


class TestHealthEndpoints:
    """Test health probes."""

    def test_live(self, client):
        response = client.get("/health/live")

        assert response.status_code == 200
        assert response.json()["status"] == "alive"

    def test_ready_without_database(self, client):
        with patch(
            "quickbook.api.routes.health.check_db_health", AsyncMock(return_value=False)
        ), patch(
            "quickbook.api.routes.health.check_redis_health", AsyncMock(return_value=True)
        ):
            response = client.get("/health/ready")

        assert response.status_code == 503
        assert response.json()["checks"] == {"database": "failed", "redis": "ok"}

    def test_ready_with_redis_down(self, client):
        with patch(
            "quickbook.api.routes.health.check_db_health", AsyncMock(return_value=True)
        ), patch(
            "quickbook.api.routes.health.check_redis_health", AsyncMock(return_value=False)
        ):
            response = client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["status"] == "ready"
