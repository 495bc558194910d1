"""Tests for MemoryCompressor -- triggers, summarization call, failure handling."""

import pytest

from talon.agent.compression import MemoryCompressor
from talon.agent.context_guard import estimate_tokens
from talon.agent.fallback import FallbackExecutor
from talon.agent.models import ConversationSession, Message
from talon.agent.prompts import COMPRESSION_SYSTEM_PROMPT
from talon.agent.router import ModelRouter
from talon.agent.schemas import Role, ToolCall
from tests.conftest import FakeProvider, make_route, make_settings


def _compressor(settings, *routes) -> MemoryCompressor:
    router = ModelRouter(list(routes), settings.model)
    executor = FallbackExecutor.from_settings(router.routes(), settings)
    return MemoryCompressor(router, executor, settings)


def _session(count: int, content_chars: int = 10) -> ConversationSession:
    session = ConversationSession("sess-c")
    for i in range(count):
        role = Role.USER if i % 2 == 0 else Role.ASSISTANT
        session.append_message(Message(role=role, content=f"m{i}".ljust(content_chars, ".")))
    return session


@pytest.fixture
def compression_settings():
    return make_settings(
        compression_enabled=True,
        compression_keep_recent=10,
        compression_message_threshold=100,
    )


class TestShouldCompress:
    def test_disabled(self):
        settings = make_settings(compression_enabled=False)
        compressor = _compressor(settings, make_route("p1", 1))
        assert not compressor.should_compress(_session(500))

    def test_message_threshold(self, compression_settings):
        compressor = _compressor(compression_settings, make_route("p1", 1))
        assert not compressor.should_compress(_session(100))
        assert compressor.should_compress(_session(101))

    def test_never_below_keep_recent(self, compression_settings):
        compressor = _compressor(compression_settings, make_route("p1", 1))
        assert not compressor.should_compress(_session(10, content_chars=40_000), window=1000)

    def test_token_ratio(self, compression_settings):
        compressor = _compressor(compression_settings, make_route("p1", 1))
        session = _session(50, content_chars=400)  # ~5200 tokens
        assert compressor.should_compress(session, window=6000)
        assert not compressor.should_compress(session, window=100_000)

    def test_boundary_respected(self, compression_settings):
        compressor = _compressor(compression_settings, make_route("p1", 1))
        session = _session(150)
        session.mark_compressed(140)
        assert not compressor.should_compress(session)


class TestFormatting:
    def test_roles_and_tool_calls(self, compression_settings):
        compressor = _compressor(compression_settings, make_route("p1", 1))
        text = compressor.format_for_compression([
            Message.user("hello"),
            Message.assistant("", [ToolCall(id="c1", name="search")]),
            Message.tool("x" * 5000, "c1"),
        ])
        lines = text.split("\n")
        assert lines[0] == "[USER]: hello"
        assert lines[1] == "[ASSISTANT]: (called tools: search)"
        assert text.count("x") <= 200 * 4
        assert "...[truncated]" in text


class TestCompress:
    @pytest.mark.asyncio
    async def test_large_history(self, compression_settings):
        provider = FakeProvider("p1", ["User Profile:\n- likes tests"])
        compressor = _compressor(compression_settings, make_route("p1", 1, provider))
        session = _session(500)

        assert compressor.should_compress(session)
        result = await compressor.compress(session)

        assert result is not None
        assert result.compressed == 490
        assert result.provider_id == "p1"
        assert len(session.get_history()) == 10
        assert session.get_history()[0].content.startswith("m490")
        assert session.get_summary() == "User Profile:\n- likes tests"

        session.append_message(Message.user("new"))
        assert len(session.get_history()) == 11

        messages, options = provider.calls[0]
        assert messages[0].content == COMPRESSION_SYSTEM_PROMPT
        assert "[USER]: m0" in messages[1].content
        assert "m489" in messages[1].content
        assert "m490" not in messages[1].content
        assert options.temperature == compression_settings.compression_temperature
        assert options.tools is None

    @pytest.mark.asyncio
    async def test_old_summary_in_prompt(self, compression_settings):
        provider = FakeProvider("p1", ["merged"])
        compressor = _compressor(compression_settings, make_route("p1", 1, provider))
        session = _session(120)
        session.set_summary("User is called Ada")

        await compressor.compress(session)

        assert "User is called Ada" in provider.calls[0][0][1].content
        assert session.get_summary() == "merged"

    @pytest.mark.asyncio
    async def test_uses_cheapest_provider(self, compression_settings):
        cheap = FakeProvider("cheap", ["summary"])
        pricey = FakeProvider("pricey", ["summary"])
        compressor = _compressor(
            compression_settings,
            make_route("pricey", 5, pricey, quality=9),
            make_route("cheap", 0, cheap, quality=1),
        )
        await compressor.compress(_session(120))
        assert len(cheap.calls) == 1
        assert pricey.calls == []

    @pytest.mark.asyncio
    async def test_failure_is_noop(self, compression_settings):
        provider = FakeProvider("p1", [Exception("Something unexpected")] * 3)
        compressor = _compressor(compression_settings, make_route("p1", 1, provider))
        session = _session(120)
        session.set_summary("keep me")

        assert await compressor.compress(session) is None
        assert len(session.get_history()) == 120
        assert session.get_summary() == "keep me"

    @pytest.mark.asyncio
    async def test_empty_summary_is_noop(self, compression_settings):
        compressor = _compressor(compression_settings, make_route("p1", 1, FakeProvider("p1", ["   "])))
        session = _session(120)
        assert await compressor.compress(session) is None
        assert len(session.get_history()) == 120

    @pytest.mark.asyncio
    async def test_no_provider(self, compression_settings):
        compressor = _compressor(compression_settings)
        session = _session(120)
        assert await compressor.compress(session) is None
        assert len(session.get_history()) == 120

    @pytest.mark.asyncio
    async def test_nothing_to_compress(self, compression_settings):
        provider = FakeProvider("p1")
        compressor = _compressor(compression_settings, make_route("p1", 1, provider))
        assert await compressor.compress(_session(10)) is None
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_summary_truncated(self):
        settings = make_settings(
            compression_enabled=True, compression_keep_recent=2,
            compression_message_threshold=5, max_summary_tokens=50,
        )
        compressor = _compressor(settings, make_route("p1", 1, FakeProvider("p1", ["s" * 5000])))
        session = _session(10)

        result = await compressor.compress(session)

        assert estimate_tokens(session.get_summary()) <= 50
        assert result.summary_tokens <= 50
