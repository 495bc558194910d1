"""Integration tests for REST API endpoints.

Uses httpx AsyncClient with ASGITransport for async HTTP testing and a
real AgentRunner over scripted fake providers.
"""

import json

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from talon.agent.compression import MemoryCompressor
from talon.agent.context_guard import ContextWindowGuard
from talon.agent.errors import ProviderError
from talon.agent.fallback import FallbackExecutor
from talon.agent.models import SessionStore
from talon.agent.router import ModelRouter
from talon.agent.runner import AgentRunner
from talon.agent.tools import ToolRegistry
from talon.api.rest import create_app
from talon.config import ProviderSettings
from talon.main import build_app
from tests.conftest import FakeProvider, make_route, make_settings


def _make_app(settings, routes, sessions: SessionStore):
    router = ModelRouter(routes, settings.model)
    executor = FallbackExecutor.from_settings(router.routes(), settings)
    runner = AgentRunner(
        router, executor, ToolRegistry(),
        MemoryCompressor(router, executor, settings), ContextWindowGuard(settings), settings,
    )
    return create_app(runner, sessions, router, settings, executor=executor)


def _sse_events(body: str) -> list[dict]:
    return [
        json.loads(line[len("data: "):])
        for line in body.split("\n")
        if line.startswith("data: ")
    ]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def sessions():
    return SessionStore()


@pytest.fixture
def provider():
    return FakeProvider("alpha")


@pytest_asyncio.fixture
async def client(settings, sessions, provider):
    app = _make_app(settings, [make_route("alpha", 1, provider)], sessions)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


# ---------------------------------------------------------------------------
# /chat
# ---------------------------------------------------------------------------


class TestChat:
    @pytest.mark.asyncio
    async def test_chat(self, client, sessions):
        resp = await client.post("/chat", json={"message": "Hello"})

        assert resp.status_code == 200
        data = resp.json()
        assert data["response"] == "reply from alpha"
        assert data["provider_id"] == "alpha"
        assert data["final_state"] == "idle"
        assert data["error"] is None
        assert len(sessions.get(data["session_id"]).get_history()) == 2

    @pytest.mark.asyncio
    async def test_session_continues(self, client, sessions):
        await client.post("/chat", json={"message": "one", "session_id": "s-1"})
        await client.post("/chat", json={"message": "two", "session_id": "s-1"})
        assert len(sessions.get("s-1").get_history()) == 4

    @pytest.mark.asyncio
    async def test_complexity_passed(self, client, provider):
        resp = await client.post("/chat", json={"message": "Hi", "complexity": "complex"})
        assert resp.status_code == 200
        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_invalid_json(self, client):
        resp = await client.post("/chat", content=b"{not json", headers={"content-type": "application/json"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "Invalid JSON body"

    @pytest.mark.asyncio
    async def test_missing_message(self, client):
        resp = await client.post("/chat", json={"session_id": "x"})
        assert resp.status_code == 400
        assert "message" in resp.json()["error"]

    @pytest.mark.asyncio
    async def test_invalid_complexity(self, client):
        resp = await client.post("/chat", json={"message": "Hi", "complexity": "trivial"})
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_turn_error_reported(self, settings, sessions):
        failing = FakeProvider("alpha", [ProviderError("Invalid API key", status_code=401)])
        app = _make_app(settings, [make_route("alpha", 1, failing)], sessions)
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
            resp = await c.post("/chat", json={"message": "Hi"})

        data = resp.json()
        assert data["final_state"] == "error"
        assert data["error_kind"] == "auth"
        assert data["attempts"][0]["error"]["kind"] == "auth"


class TestChatStream:
    @pytest.mark.asyncio
    async def test_stream_events(self, client):
        resp = await client.post("/chat/stream", json={"message": "Hello", "session_id": "s-2"})

        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        assert resp.headers["cache-control"] == "no-cache"
        events = _sse_events(resp.text)
        assert [e["type"] for e in events] == ["thinking", "text", "done"]
        assert all(e["session_id"] == "s-2" for e in events)
        assert events[1]["text"] == "reply from alpha"

    @pytest.mark.asyncio
    async def test_stream_missing_message(self, client):
        resp = await client.post("/chat/stream", json={})
        assert resp.status_code == 400


class TestEndChat:
    @pytest.mark.asyncio
    async def test_end_existing(self, client, sessions):
        await client.post("/chat", json={"message": "Hi", "session_id": "s-3"})
        resp = await client.delete("/chat/s-3")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ended", "session_id": "s-3"}
        assert "s-3" not in sessions

    @pytest.mark.asyncio
    async def test_end_unknown(self, client):
        resp = await client.delete("/chat/nope")
        assert resp.status_code == 404


class TestInfoEndpoints:
    @pytest.mark.asyncio
    async def test_providers(self, client):
        resp = await client.get("/providers")
        assert resp.status_code == 200
        data = resp.json()
        assert data["default_model"] == "alpha/alpha-model"
        assert data["providers"] == [{
            "provider_id": "alpha",
            "model": "alpha-model",
            "models": [],
            "priority": 1,
            "quality": 0,
            "cooling_down": False,
        }]

    @pytest.mark.asyncio
    async def test_health(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "healthy"
        assert resp.json()["providers"] == 1

    @pytest.mark.asyncio
    async def test_health_without_providers(self, settings, sessions):
        app = _make_app(settings, [], sessions)
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
            resp = await c.get("/health")
        assert resp.status_code == 503


class TestBuildApp:
    @pytest.mark.asyncio
    async def test_lifespan_wires_components(self):
        settings = make_settings(
            model="opencode/big-pickle",
            providers={"opencode": ProviderSettings()},
        )
        app = build_app(settings)

        async with app.router.lifespan_context(app):
            async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
                health = await c.get("/health")
                providers = await c.get("/providers")

            assert "runner" in app.state.components

        assert health.status_code == 200
        assert providers.json()["providers"][0]["model"] == "big-pickle"
