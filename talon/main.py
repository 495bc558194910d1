"""Talon entry point.

Wiring order: settings, provider routes, fallback executor, guard and
compressor, event bus, runner, then the HTTP app served by uvicorn. The
components live inside the Starlette lifespan so they share uvicorn's loop.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from starlette.applications import Starlette

from talon.agent.compression import MemoryCompressor
from talon.agent.context_guard import ContextWindowGuard
from talon.agent.fallback import FallbackExecutor
from talon.agent.models import SessionStore
from talon.agent.providers import create_provider
from talon.agent.router import ModelRouter
from talon.agent.runner import AgentRunner
from talon.agent.tools import ToolRegistry
from talon.config import Settings
from talon.events import ALL_EVENTS, Event, EventBus

logger = logging.getLogger(__name__)


async def create_components(settings: Settings, tools: ToolRegistry | None = None) -> dict:
    """Build every component, dependencies first.

    1. ModelRouter - one provider per configured credential
    2. FallbackExecutor - shares the router's routes (read-only)
    3. ContextWindowGuard, MemoryCompressor
    4. EventBus - lifecycle events, logged at debug level
    5. AgentRunner
    """
    router = ModelRouter.from_settings(settings, create_provider)
    executor = FallbackExecutor.from_settings(router.routes(), settings)

    if tools is None:
        tools = ToolRegistry(max_output_chars=settings.tool_output_max_chars)

    guard = ContextWindowGuard(settings)
    compressor = MemoryCompressor(router, executor, settings)

    bus = EventBus()

    async def log_event(event: Event) -> None:
        logger.debug("Event %s", event.to_dict())

    bus.on(ALL_EVENTS, log_event)
    await bus.start()

    runner = AgentRunner(router, executor, tools, compressor, guard, settings, bus=bus)

    return {
        "router": router,
        "executor": executor,
        "tools": tools,
        "guard": guard,
        "compressor": compressor,
        "bus": bus,
        "runner": runner,
        "sessions": SessionStore(max_sessions=settings.max_sessions),
    }


async def shutdown_components(components: dict) -> None:
    """Stop the bus, then close provider HTTP clients."""
    logger.info("Shutting down Talon...")

    bus = components.get("bus")
    if bus:
        await bus.stop()

    router = components.get("router")
    if router:
        for route in router.routes():
            close = getattr(route.provider, "close", None)
            if close is not None:
                await close()

    logger.info("Talon shutdown complete.")


def build_app(settings: Settings) -> Starlette:
    """Starlette app whose components are built and torn down by its lifespan."""
    components: dict = {}

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        components.update(await create_components(settings))
        app.state.components = components

        logger.info(
            "Talon ready: %s (%s), %d provider(s), max_iterations=%d",
            settings.agent_name,
            settings.agent_id,
            len(components["router"].routes()),
            settings.max_iterations,
        )
        try:
            yield
        finally:
            await shutdown_components(components)

    from talon.api.rest import create_app

    return create_app(
        runner=_Deferred(components, "runner"),
        sessions=_Deferred(components, "sessions"),
        router=_Deferred(components, "router"),
        settings=settings,
        executor=_Deferred(components, "executor"),
        lifespan=lifespan,
    )


class _Deferred:
    """Stands in for a component the lifespan has not built yet.

    Routes are registered when the app is built; the runner, store and
    router they close over only exist once startup has run.
    """

    __slots__ = ("_registry", "_name")

    def __init__(self, registry: dict, name: str) -> None:
        self._registry = registry
        self._name = name

    def _target(self):
        try:
            return self._registry[self._name]
        except KeyError:
            raise RuntimeError(f"'{self._name}' is not available before application startup") from None

    def __getattr__(self, attr):
        return getattr(self._target(), attr)

    def __len__(self):
        return len(self._target())


def main() -> None:
    settings = Settings()

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logger.info("Starting Talon %s (%s) with default model %s", settings.agent_name, settings.agent_id, settings.model)

    if not any(conf.has_credential(pid) for pid, conf in settings.providers.items()):
        logger.warning("No provider credentials configured; every turn will fail with no-provider-configured")

    uvicorn.run(build_app(settings), host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
