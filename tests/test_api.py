"""Tests for the FastAPI endpoints."""

from __future__ import annotations

import json
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from orchestrator.chat import ChatReply
from orchestrator.models import AgentEvent, PlanTier
from orchestrator.server import app


@pytest.fixture
def mock_orchestrator():
    """Attach a mock orchestrator to app state (mirrors the lifespan)."""
    orchestrator = MagicMock()
    orchestrator.handle.return_value = ChatReply(
        content="Link de pago generado exitosamente: https://buy.stripe.com/abc",
        session_id="test-session-1",
        request_id="req-1",
        tools_used=["create_payment_link"],
        iterations=1,
        needs_tools=True,
        confidence=100,
    )
    orchestrator.stream.return_value = iter([
        AgentEvent.thinking(),
        AgentEvent.chunk("Hola"),
        AgentEvent.done({"request_id": "req-1", "success": True}),
    ])
    orchestrator.engine.stats.return_value = {
        "cache_hits": 3, "cache_misses": 1, "avg_decision_ms": 0.4, "cache_size": 1,
    }
    orchestrator.monitor.aggregated_stats.return_value = {
        "total_requests": 4,
        "avg_response_ms": 820,
        "avg_decision_ms": 1,
        "tool_usage_rate": 0.25,
        "streaming_rate": 0.5,
        "fallback_rate": 0.0,
        "error_rate": 0.0,
        "decision_cache_rate": 0.75,
        "top_models": [{"model": "claude-sonnet-4-5", "count": 4}],
        "top_providers": [{"provider": "anthropic", "count": 4}],
    }

    app.state.orchestrator = orchestrator
    yield orchestrator
    app.state.orchestrator = None


@pytest.fixture
def client(mock_orchestrator):
    """FastAPI test client with the mock orchestrator wired up."""
    return TestClient(app)


def _body(**overrides):
    return {"message": "Genera un link de pago por $500", "session_id": "test-session-1",
            "tenant_id": "acme", **overrides}


class TestHealthEndpoint:
    def test_health_returns_ok(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["service"] == "agent-orchestrator"

    def test_root_lists_endpoints(self, client):
        assert client.get("/").json()["stats"] == "/api/stats"


class TestChatEndpoint:
    def test_chat_returns_response(self, client):
        response = client.post("/api/chat", json=_body())
        assert response.status_code == 200
        data = response.json()
        assert data["session_id"] == "test-session-1"
        assert data["tools_used"] == ["create_payment_link"]
        assert data["needs_tools"] is True
        assert "https://buy.stripe.com/abc" in data["reply"]

    def test_chat_builds_turn(self, client, mock_orchestrator):
        client.post(
            "/api/chat",
            json=_body(chatbot_id="bot1", plan="PRO"),
            headers={"X-Request-ID": "req-xyz"},
        )
        turn = mock_orchestrator.handle.call_args[0][0]
        assert turn.tenant_id == "acme"
        assert turn.chatbot_id == "bot1"
        assert turn.plan is PlanTier.PRO
        assert turn.request_id == "req-xyz"

    def test_request_id_is_echoed(self, client):
        response = client.post("/api/chat", json=_body(), headers={"X-Request-ID": "req-xyz"})
        assert response.headers["X-Request-ID"] == "req-xyz"

    @pytest.mark.parametrize(
        "body",
        [
            _body(message=""),
            _body(message="x" * 4001),
            {"message": "hola", "tenant_id": "acme"},
            {"message": "hola", "session_id": "s1"},
            _body(plan="GOLD"),
        ],
    )
    def test_chat_validates_input(self, client, body):
        assert client.post("/api/chat", json=body).status_code == 422

    def test_chat_handles_orchestrator_error(self, client, mock_orchestrator):
        mock_orchestrator.handle.side_effect = RuntimeError("LLM exploded")
        response = client.post("/api/chat", json=_body())
        assert response.status_code == 500
        # Internals are not leaked
        assert "exploded" not in response.text

    def test_chat_503_before_startup(self, client, mock_orchestrator):
        app.state.orchestrator = None
        response = client.post("/api/chat", json=_body())
        assert response.status_code == 503


class TestStreamEndpoint:
    def test_streams_sse_events(self, client):
        response = client.post("/api/chat/stream", json=_body())

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        events = [
            json.loads(line[len("data: "):])
            for line in response.text.splitlines() if line.startswith("data: ")
        ]
        assert [e["type"] for e in events] == ["thinking", "chunk", "done"]
        assert events[-1]["metadata"]["request_id"] == "req-1"

    def test_stream_error_ends_with_done(self, client, mock_orchestrator):
        def broken(turn):
            yield AgentEvent.thinking()
            raise RuntimeError("boom")

        mock_orchestrator.stream.side_effect = broken
        response = client.post("/api/chat/stream", json=_body())

        types = [
            json.loads(line[len("data: "):])["type"]
            for line in response.text.splitlines() if line.startswith("data: ")
        ]
        assert types == ["thinking", "error", "done"]


class TestStatsEndpoint:
    def test_stats(self, client, mock_orchestrator):
        response = client.get("/api/stats", params={"window_seconds": 600})

        assert response.status_code == 200
        data = response.json()
        assert data["window_seconds"] == 600
        assert data["total_requests"] == 4
        assert data["decision_cache_rate"] == 0.75
        assert data["top_models"][0]["model"] == "claude-sonnet-4-5"
        assert data["decision_engine"]["cache_hits"] == 3
        mock_orchestrator.monitor.aggregated_stats.assert_called_once_with(600)

    def test_window_is_bounded(self, client):
        assert client.get("/api/stats", params={"window_seconds": 1}).status_code == 422
