"""Model router -- picks ranked (provider, model) candidates per task complexity.

Routes are built once at startup from configuration and never change
afterwards, so a router can be shared by every session's turns.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from talon.agent.models import Provider
from talon.agent.schemas import TaskComplexity
from talon.config import ProviderSettings, Settings

logger = logging.getLogger(__name__)

CHEAP_MODEL_HINTS = (
    "minimax-m2.5-free",
    "big-pickle",
    "glm-5-free",
    "deepseek-chat",
    "gpt-4o-mini",
    "deepseek/deepseek-chat-v3-0324",
)
REASONING_MODEL_HINTS = ("deepseek-reasoner", "o3-mini", "claude-opus", "gpt-4o")

ProviderFactory = Callable[[str, ProviderSettings, Settings], Provider]


@dataclass(frozen=True)
class ProviderRoute:
    """A configured provider. Immutable after startup."""

    provider_id: str
    model: str  # provider default model
    priority: int  # lower = cheaper, tried first
    provider: Provider = field(compare=False, repr=False)
    quality: int = 0  # higher = better for complex tasks
    models: tuple[str, ...] = ()


@dataclass(frozen=True)
class RouteChoice:
    """A routing decision: which provider, which model. No live handle."""

    provider_id: str
    model: str


class ModelRouter:
    """Maps a task complexity to ranked RouteChoice candidates.

    - simple / summarize: cheapest provider (lowest priority) first
    - moderate: the globally configured default model first
    - complex: highest quality first, lowest priority as tie-break
    An empty result means no provider has a usable credential.
    """

    def __init__(self, routes: list[ProviderRoute], default_model: str) -> None:
        self._routes: tuple[ProviderRoute, ...] = tuple(
            sorted(routes, key=lambda r: r.priority)
        )
        self._by_id: dict[str, ProviderRoute] = {r.provider_id: r for r in self._routes}
        self._default_model = default_model
        if not self._routes:
            logger.warning("No LLM providers configured -- agent will not be able to respond")

    @classmethod
    def from_settings(cls, settings: Settings, factory: ProviderFactory) -> ModelRouter:
        """Build routes for every provider with a usable credential."""
        routes: list[ProviderRoute] = []
        for provider_id, conf in settings.providers.items():
            if not conf.has_credential(provider_id):
                logger.debug("Skipping provider %s -- no API key", provider_id)
                continue
            models = tuple(conf.models)
            provider = factory(provider_id, conf, settings)
            default = (
                models[0] if models
                else getattr(provider, "default_model", "") or _fallback_model(provider_id, settings)
            )
            routes.append(ProviderRoute(
                provider_id=provider_id,
                model=default,
                priority=conf.resolved_priority(provider_id),
                provider=provider,
                quality=conf.resolved_quality(provider_id),
                models=models,
            ))
            logger.info("Provider initialized: %s (model=%s)", provider_id, default)
        return cls(routes, settings.model)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def has_providers(self) -> bool:
        return bool(self._routes)

    def get(self, provider_id: str) -> ProviderRoute | None:
        return self._by_id.get(provider_id)

    def routes(self) -> tuple[ProviderRoute, ...]:
        """All routes in ascending priority order."""
        return self._routes

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    def route(self, complexity: TaskComplexity | str) -> list[RouteChoice]:
        """Ranked candidates for a task; [] when nothing is configured."""
        if not self._routes:
            return []
        complexity = TaskComplexity(complexity)

        if len(self._routes) == 1:
            only = self._routes[0]
            return [RouteChoice(only.provider_id, self._select_model(only, complexity))]

        if complexity in (TaskComplexity.SIMPLE, TaskComplexity.SUMMARIZE):
            ranked = list(self._routes)
        elif complexity == TaskComplexity.COMPLEX:
            ranked = sorted(self._routes, key=lambda r: (-r.quality, r.priority))
        else:
            ranked = self._default_first()

        choices = [RouteChoice(ranked[0].provider_id, self._select_model(ranked[0], complexity))]
        choices.extend(RouteChoice(r.provider_id, r.model) for r in ranked[1:])
        return choices

    def select(self, complexity: TaskComplexity | str) -> RouteChoice | None:
        """Top candidate for a task, or None when nothing is configured."""
        choices = self.route(complexity)
        return choices[0] if choices else None

    def _default_first(self) -> list[ProviderRoute]:
        provider_id, _, _ = self._default_model.partition("/")
        default = self._by_id.get(provider_id)
        if default is None:
            return list(self._routes)
        return [default] + [r for r in self._routes if r is not default]

    def _select_model(self, route: ProviderRoute, complexity: TaskComplexity) -> str:
        """Pick a model from the provider's list that suits the complexity."""
        if complexity == TaskComplexity.MODERATE:
            provider_id, _, model = self._default_model.partition("/")
            if provider_id == route.provider_id and model:
                return model
            return route.model
        if not route.models:
            return route.model
        hints = (
            REASONING_MODEL_HINTS if complexity == TaskComplexity.COMPLEX else CHEAP_MODEL_HINTS
        )
        for model in route.models:
            if any(hint in model for hint in hints):
                return model
        return route.models[0]


def _fallback_model(provider_id: str, settings: Settings) -> str:
    if provider_id == settings.default_provider_id:
        return settings.default_model_name
    return "unknown"
