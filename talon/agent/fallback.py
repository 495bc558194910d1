"""Fallback executor -- runs a model call across providers until one succeeds.

Providers are tried in ascending priority order (a preferred provider may
go first, once). Auth failures abort immediately, context overflow is
handed back to the caller for truncation, everything else moves on to the
next provider after a short delay.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field

import httpx

from talon.agent.errors import ContextOverflowError, FallbackExhaustedError, NoProviderConfiguredError
from talon.agent.models import Message
from talon.agent.router import ProviderRoute, RouteChoice
from talon.agent.schemas import Attempt, CallOptions, Completion, ErrorClassification, ErrorKind
from talon.config import Settings

logger = logging.getLogger(__name__)

_STATUS_KINDS: dict[int, ErrorKind] = {
    401: ErrorKind.AUTH,
    403: ErrorKind.AUTH,
    402: ErrorKind.BILLING,
    408: ErrorKind.TIMEOUT,
    504: ErrorKind.TIMEOUT,
    413: ErrorKind.CONTEXT_OVERFLOW,
    429: ErrorKind.RATE_LIMIT,
}

# Checked in order; first match wins
_MARKERS: list[tuple[ErrorKind, tuple[str, ...]]] = [
    (ErrorKind.AUTH, (
        "unauthorized", "invalid api key", "invalid_api_key", "incorrect api key",
        "authentication", "forbidden", "permission denied",
    )),
    (ErrorKind.BILLING, (
        "quota", "insufficient credits", "insufficient_quota", "insufficient balance",
        "billing", "payment required", "credit",
    )),
    (ErrorKind.RATE_LIMIT, ("rate limit", "rate_limit", "ratelimit", "too many requests")),
    (ErrorKind.CONTEXT_OVERFLOW, (
        "context length", "context_length", "maximum context", "context window",
        "too many tokens", "prompt is too long", "reduce the length", "token limit",
    )),
    (ErrorKind.TIMEOUT, ("timeout", "timed out", "etimedout", "econnreset", "deadline exceeded")),
]

# "429 Too Many Requests" style messages with no status attribute
_LEADING_STATUS = re.compile(r"^(\d{3})\b")

_NON_RETRYABLE = frozenset({ErrorKind.AUTH, ErrorKind.CONTEXT_OVERFLOW})


def classify_error(error: BaseException) -> ErrorClassification:
    """Classify a raw provider error. Pure function of the error."""
    kind = _classify_kind(error)
    return ErrorClassification(kind=kind, retryable=kind not in _NON_RETRYABLE)


def _classify_kind(error: BaseException) -> ErrorKind:
    if isinstance(error, (TimeoutError, asyncio.TimeoutError, httpx.TimeoutException)):
        return ErrorKind.TIMEOUT

    status = getattr(error, "status_code", None)
    if status is None and isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
    if isinstance(status, int) and status in _STATUS_KINDS:
        return _STATUS_KINDS[status]

    text = str(error).strip().lower()
    for kind, markers in _MARKERS:
        if any(marker in text for marker in markers):
            return kind
    match = _LEADING_STATUS.match(text)
    if match and int(match.group(1)) in _STATUS_KINDS:
        return _STATUS_KINDS[int(match.group(1))]
    return ErrorKind.UNKNOWN


class ProviderBackoff:
    """Per-provider rate-limit cooldowns shared by all sessions.

    Reads are lock-free; writes are serialized through an asyncio.Lock.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._until: dict[str, float] = {}
        self._lock = asyncio.Lock()

    async def record_rate_limit(self, provider_id: str, seconds: float) -> None:
        if seconds <= 0:
            return
        async with self._lock:
            until = self._clock() + seconds
            self._until[provider_id] = max(until, self._until.get(provider_id, 0.0))
        logger.info("Provider %s cooling down for %.1fs after rate limit", provider_id, seconds)

    async def clear(self, provider_id: str) -> None:
        async with self._lock:
            self._until.pop(provider_id, None)

    def is_cooling(self, provider_id: str) -> bool:
        until = self._until.get(provider_id)
        return until is not None and until > self._clock()


@dataclass
class FallbackResult:
    """Successful execution: the completion plus every attempt made."""

    completion: Completion
    provider_id: str
    model: str
    attempts: list[Attempt] = field(default_factory=list)
    total_latency_ms: int = 0


class FallbackExecutor:
    """Executes a provider call with ordered fallback.

    The executor owns an id -> ProviderRoute table (read-only once the
    app has started) and never shares the provider handles it calls.
    """

    def __init__(
        self,
        routes: Iterable[ProviderRoute] = (),
        *,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        call_timeout: float | None = None,
        rate_limit_cooldown: float = 0.0,
        backoff: ProviderBackoff | None = None,
    ) -> None:
        self._routes: dict[str, ProviderRoute] = {}
        self._order: int = 0
        self._registered: dict[str, int] = {}
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._call_timeout = call_timeout
        self._rate_limit_cooldown = rate_limit_cooldown
        self.backoff = backoff or ProviderBackoff()
        for route in routes:
            self.register_provider(route)

    @classmethod
    def from_settings(
        cls,
        routes: Iterable[ProviderRoute],
        settings: Settings,
        backoff: ProviderBackoff | None = None,
    ) -> FallbackExecutor:
        return cls(
            routes,
            max_retries=settings.fallback_max_retries,
            retry_delay=settings.fallback_retry_delay,
            call_timeout=settings.llm_timeout,
            rate_limit_cooldown=settings.rate_limit_cooldown,
            backoff=backoff,
        )

    def register_provider(self, route: ProviderRoute) -> None:
        """Register a provider route. Re-registering an id replaces it."""
        if route.provider_id not in self._registered:
            self._registered[route.provider_id] = self._order
            self._order += 1
        self._routes[route.provider_id] = route

    def has_providers(self) -> bool:
        return bool(self._routes)

    def get_providers(self) -> list[ProviderRoute]:
        """Registered routes in ascending priority (registration order breaks ties)."""
        return sorted(
            self._routes.values(),
            key=lambda r: (r.priority, self._registered[r.provider_id]),
        )

    def plan(
        self,
        candidates: Sequence[RouteChoice] | None = None,
        preferred_provider_id: str | None = None,
    ) -> list[RouteChoice]:
        """Attempt order for one execution, capped at max_retries."""
        routes = self.get_providers()
        models: dict[str, str] = {}
        if candidates:
            models = {c.provider_id: c.model for c in candidates}
            routes = [r for r in routes if r.provider_id in models]

        ordered: list[ProviderRoute] = []
        if preferred_provider_id is not None:
            preferred = next((r for r in routes if r.provider_id == preferred_provider_id), None)
            if preferred is not None:
                ordered.append(preferred)
        ordered.extend(r for r in routes if r.provider_id != preferred_provider_id)

        ready = [r for r in ordered if not self.backoff.is_cooling(r.provider_id)]
        if ready and len(ready) < len(ordered):
            skipped = [r.provider_id for r in ordered if r not in ready]
            logger.info("Skipping providers in rate-limit cooldown: %s", skipped)
            ordered = ready

        return [
            RouteChoice(r.provider_id, models.get(r.provider_id) or r.model)
            for r in ordered[: self._max_retries]
        ]

    async def execute(
        self,
        messages: Sequence[Message],
        options: CallOptions,
        *,
        candidates: Sequence[RouteChoice] | None = None,
        preferred_provider_id: str | None = None,
        on_attempt: Callable[[Attempt], None] | None = None,
    ) -> FallbackResult:
        """Call providers in order until one succeeds.

        Raises:
            NoProviderConfiguredError: nothing to try.
            FallbackExhaustedError: auth abort, or every candidate failed.
            ContextOverflowError: the provider rejected the context size.
        """
        plan = self.plan(candidates, preferred_provider_id)
        if not plan:
            raise NoProviderConfiguredError()

        attempts: list[Attempt] = []
        started = time.monotonic()

        for index, choice in enumerate(plan):
            route = self._routes[choice.provider_id]
            call_options = options.model_copy(update={"model": choice.model})
            attempt_start = time.monotonic()
            try:
                completion = await asyncio.wait_for(
                    route.provider.call(messages, call_options),
                    timeout=self._call_timeout if self._call_timeout else None,
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                classification = classify_error(e)
                attempt = Attempt(
                    provider_id=choice.provider_id,
                    model=choice.model,
                    success=False,
                    latency_ms=_elapsed_ms(attempt_start),
                    error=classification,
                    message=str(e)[:500] or type(e).__name__,
                )
                attempts.append(attempt)
                if on_attempt:
                    on_attempt(attempt)
                logger.warning(
                    "Provider %s/%s failed (%s, retryable=%s): %s",
                    choice.provider_id, choice.model,
                    classification.kind, classification.retryable, attempt.message,
                )

                if classification.kind == ErrorKind.AUTH:
                    raise FallbackExhaustedError(
                        f"Authentication failed for provider {choice.provider_id}",
                        kind=ErrorKind.AUTH,
                        attempts=attempts,
                    ) from e
                if classification.kind == ErrorKind.CONTEXT_OVERFLOW:
                    raise ContextOverflowError(
                        f"Provider {choice.provider_id} rejected the context size",
                        attempts=attempts,
                    ) from e
                if classification.kind == ErrorKind.RATE_LIMIT:
                    cooldown = getattr(e, "retry_after", None) or self._rate_limit_cooldown
                    await self.backoff.record_rate_limit(choice.provider_id, cooldown)

                if index < len(plan) - 1 and self._retry_delay > 0:
                    await asyncio.sleep(self._retry_delay)
                continue

            attempt = Attempt(
                provider_id=choice.provider_id,
                model=choice.model,
                success=True,
                latency_ms=_elapsed_ms(attempt_start),
            )
            attempts.append(attempt)
            if on_attempt:
                on_attempt(attempt)
            if len(attempts) > 1:
                logger.info(
                    "Fallback succeeded on %s after %d attempts",
                    choice.provider_id, len(attempts),
                )
            return FallbackResult(
                completion=completion,
                provider_id=choice.provider_id,
                model=choice.model,
                attempts=attempts,
                total_latency_ms=_elapsed_ms(started),
            )

        last = attempts[-1].error
        kind = last.kind if last else ErrorKind.UNKNOWN
        logger.error("All %d providers failed; last error: %s", len(attempts), kind)
        raise FallbackExhaustedError(
            f"All providers failed (last error: {kind})",
            kind=kind,
            attempts=attempts,
        )


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)
