"""Agent module -- turn execution core for Talon agents.

Public API:
    AgentRunner         - Turn orchestrator (run_turn / complete_turn)
    ModelRouter         - Complexity -> ranked provider candidates
    FallbackExecutor    - Ordered provider calls with error classification
    ContextWindowGuard  - Token estimation, window lookup, truncation
    MemoryCompressor    - History summarization trigger
    ToolRegistry        - Tool dispatch contract

Sessions:
    ConversationSession, SessionStore, Message, StreamEvent
"""

from talon.agent.compression import CompressionResult, MemoryCompressor
from talon.agent.context_guard import ContextWindowGuard, estimate_tokens
from talon.agent.errors import (
    ContextOverflowError,
    FallbackExhaustedError,
    NoProviderConfiguredError,
    ProviderError,
    TalonError,
)
from talon.agent.fallback import FallbackExecutor, FallbackResult, ProviderBackoff, classify_error
from talon.agent.models import ConversationSession, Message, SessionStore, StreamEvent
from talon.agent.router import ModelRouter, ProviderRoute, RouteChoice
from talon.agent.runner import AgentRunner
from talon.agent.schemas import ErrorKind, TaskComplexity, TurnResult, TurnState
from talon.agent.tools import ToolRegistry

__all__ = [
    "AgentRunner",
    "CompressionResult",
    "ContextOverflowError",
    "ContextWindowGuard",
    "ConversationSession",
    "ErrorKind",
    "FallbackExecutor",
    "FallbackExhaustedError",
    "FallbackResult",
    "Message",
    "MemoryCompressor",
    "ModelRouter",
    "NoProviderConfiguredError",
    "ProviderBackoff",
    "ProviderError",
    "ProviderRoute",
    "RouteChoice",
    "SessionStore",
    "StreamEvent",
    "TalonError",
    "TaskComplexity",
    "ToolRegistry",
    "TurnResult",
    "TurnState",
    "classify_error",
    "estimate_tokens",
]
