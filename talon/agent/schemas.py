"""Pydantic DTOs shared by the turn execution components.

These models define the data contract between the orchestrator, the
router, the fallback executor, the context guard and the compressor.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class Role(StrEnum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class TaskComplexity(StrEnum):
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"
    SUMMARIZE = "summarize"


class TurnState(StrEnum):
    IDLE = "idle"
    THINKING = "thinking"
    TOOL_EXECUTING = "tool_executing"
    COMPRESSING = "compressing"
    RESPONDING = "responding"
    ERROR = "error"


class ErrorKind(StrEnum):
    AUTH = "auth"
    RATE_LIMIT = "rate-limit"
    TIMEOUT = "timeout"
    BILLING = "billing"
    CONTEXT_OVERFLOW = "context-overflow"
    UNKNOWN = "unknown"
    NO_PROVIDER = "no-provider-configured"
    TOOL_FAILURE = "tool-failure"
    ITERATION_CAP = "iteration-cap-exceeded"
    CANCELLED = "cancelled"


class ErrorClassification(BaseModel):
    """Result of inspecting a raw provider error."""

    model_config = ConfigDict(frozen=True)

    kind: ErrorKind
    retryable: bool


class Attempt(BaseModel):
    """One provider invocation inside a fallback execution."""

    provider_id: str
    model: str
    success: bool
    latency_ms: int
    error: ErrorClassification | None = None
    message: str | None = None


class ToolCall(BaseModel):
    """A model request to invoke a tool."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class TokenUsage(BaseModel):
    input: int = 0
    output: int = 0

    @property
    def total(self) -> int:
        return self.input + self.output

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(input=self.input + other.input, output=self.output + other.output)


class CallOptions(BaseModel):
    """Options passed to Provider.call()."""

    model: str = ""  # filled per attempt by the fallback executor
    max_tokens: int = 4096
    temperature: float = 0.7
    tools: list[dict[str, Any]] | None = None


class Completion(BaseModel):
    """Parsed provider response."""

    content: str = ""
    finish_reason: str | None = None
    tool_calls: list[ToolCall] = Field(default_factory=list)
    usage: TokenUsage = Field(default_factory=TokenUsage)


class ContextBudget(BaseModel):
    """Token accounting for one context evaluation."""

    model: str
    window: int
    used: int
    remaining: int  # never negative
    warn_threshold: int
    hard_floor: int

    @property
    def should_warn(self) -> bool:
        return self.used > self.window - self.warn_threshold

    @property
    def should_block(self) -> bool:
        return self.used > self.window - self.hard_floor

    @property
    def limit(self) -> int:
        """Largest usage that does not breach the hard floor."""
        return max(0, self.window - self.hard_floor)


class ToolOutcome(BaseModel):
    """Result of dispatching one tool call. Failures are data, not exceptions."""

    output: str
    success: bool
    duration_ms: int = 0


class ToolResult(BaseModel):
    """Representation of a tool call executed during a turn."""

    tool_call_id: str
    tool_name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    result: str | None = None
    error: str | None = None
    duration_ms: int | None = None


class TurnResult(BaseModel):
    """Everything that happened during a turn, collected from the event stream."""

    session_id: str
    response_text: str = ""
    tool_results: list[ToolResult] = Field(default_factory=list)
    attempts: list[Attempt] = Field(default_factory=list)
    usage: TokenUsage = Field(default_factory=TokenUsage)
    provider_id: str | None = None
    model: str | None = None
    iterations: int = 0
    error: str | None = None
    error_kind: ErrorKind | None = None
    final_state: TurnState = TurnState.IDLE
