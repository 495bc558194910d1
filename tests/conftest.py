"""Shared fixtures for Talon tests.

No network and no database: providers are scripted fakes that return
canned completions or raise canned errors, in order.
"""

from __future__ import annotations

import pytest

from talon.agent.compression import MemoryCompressor
from talon.agent.context_guard import ContextWindowGuard
from talon.agent.fallback import FallbackExecutor
from talon.agent.models import ConversationSession, Message
from talon.agent.router import ModelRouter, ProviderRoute
from talon.agent.runner import AgentRunner
from talon.agent.schemas import CallOptions, Completion, ToolCall
from talon.agent.tools import ToolRegistry
from talon.config import Settings

# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeProvider:
    """Provider that replays scripted responses.

    Each script item is a Completion, a plain string (text completion) or
    an exception instance to raise. When the script runs out it answers
    with "reply from <provider_id>".
    """

    def __init__(self, provider_id: str, responses: list | None = None, default_model: str = "fake-model"):
        self.provider_id = provider_id
        self.default_model = default_model
        self.responses = list(responses or [])
        self.calls: list[tuple[list[Message], CallOptions]] = []

    async def call(self, messages, options: CallOptions) -> Completion:
        self.calls.append((list(messages), options))
        if not self.responses:
            return Completion(content=f"reply from {self.provider_id}")
        item = self.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, str):
            return Completion(content=item)
        return item


def tool_completion(*calls: tuple[str, str, dict], content: str = "") -> Completion:
    """Completion requesting tool calls given as (id, name, arguments)."""
    return Completion(
        content=content,
        finish_reason="tool_calls",
        tool_calls=[ToolCall(id=cid, name=name, arguments=args) for cid, name, args in calls],
    )


def make_settings(**overrides) -> Settings:
    """Settings with fast, deterministic defaults for tests."""
    values = {
        "agent_id": "test-agent",
        "agent_name": "Talon",
        "model": "alpha/alpha-model",
        "fallback_retry_delay": 0.0,
        "rate_limit_cooldown": 30.0,
        "llm_timeout": 5.0,
        "compression_enabled": False,
    }
    values.update(overrides)
    return Settings(**values)


def make_route(
    provider_id: str,
    priority: int,
    provider=None,
    quality: int = 0,
    models: tuple[str, ...] = (),
    model: str | None = None,
) -> ProviderRoute:
    return ProviderRoute(
        provider_id=provider_id,
        model=model or f"{provider_id}-model",
        priority=priority,
        provider=provider or FakeProvider(provider_id),
        quality=quality,
        models=models,
    )


def build_runner(
    settings: Settings,
    routes: list[ProviderRoute],
    tools: ToolRegistry | None = None,
    bus=None,
) -> AgentRunner:
    router = ModelRouter(routes, settings.model)
    executor = FallbackExecutor.from_settings(router.routes(), settings)
    return AgentRunner(
        router,
        executor,
        tools or ToolRegistry(),
        MemoryCompressor(router, executor, settings),
        ContextWindowGuard(settings),
        settings,
        bus=bus,
    )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def session() -> ConversationSession:
    return ConversationSession("sess-1")


@pytest.fixture
def echo_tools() -> ToolRegistry:
    """ToolRegistry with an echo tool and a tool that always fails."""
    registry = ToolRegistry()

    async def echo(args: dict) -> str:
        return f"Echo: {args.get('message', 'default')}"

    async def broken(args: dict) -> str:
        raise RuntimeError("tool exploded")

    registry.register_function(
        "echo",
        echo,
        description="Echo a message back",
        parameters={
            "type": "object",
            "properties": {"message": {"type": "string"}},
            "required": ["message"],
        },
    )
    registry.register_function("broken", broken, description="Always fails")
    return registry
