"""Exception taxonomy for turn execution.

Provider-level failures are resolved inside the fallback executor; only
the exceptions below ever reach the turn orchestrator.
"""

from __future__ import annotations

from talon.agent.schemas import Attempt, ContextBudget, ErrorKind


class TalonError(Exception):
    """Base class for errors raised by the turn execution core."""

    kind: ErrorKind = ErrorKind.UNKNOWN


class ProviderError(TalonError):
    """Raw failure reported by a provider call.

    Concrete providers raise this with whatever the backend told them;
    classify_error() turns it into an ErrorClassification.
    """

    def __init__(
        self,
        message: str,
        *,
        provider_id: str | None = None,
        status_code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.provider_id = provider_id
        self.status_code = status_code
        self.retry_after = retry_after


class NoProviderConfiguredError(TalonError):
    """No provider has a usable credential. Not a retry target."""

    kind = ErrorKind.NO_PROVIDER

    def __init__(self, message: str = "No LLM provider configured") -> None:
        super().__init__(message)


class ContextOverflowError(TalonError):
    """Context does not fit the model window even after truncation."""

    kind = ErrorKind.CONTEXT_OVERFLOW

    def __init__(
        self,
        message: str,
        *,
        budget: ContextBudget | None = None,
        attempts: list[Attempt] | None = None,
    ) -> None:
        super().__init__(message)
        self.budget = budget
        self.attempts = list(attempts or [])


class FallbackExhaustedError(TalonError):
    """Every candidate failed, or a non-retryable error aborted execution."""

    def __init__(self, message: str, *, kind: ErrorKind, attempts: list[Attempt]) -> None:
        super().__init__(message)
        self.kind = kind
        self.attempts = list(attempts)

    def describe_attempts(self) -> str:
        """Render the cause chain, one provider per line."""
        lines = []
        for attempt in self.attempts:
            kind = attempt.error.kind if attempt.error else "ok"
            lines.append(f"- {attempt.provider_id}/{attempt.model}: {kind} ({attempt.latency_ms} ms)")
        return "\n".join(lines)
