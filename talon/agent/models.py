"""Conversation data models and the collaborator contracts.

Kept apart from runner.py so the guard, compressor and fallback executor
can import them without pulling in the orchestrator.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Protocol, Sequence, runtime_checkable

from talon.agent.schemas import (
    Attempt,
    CallOptions,
    Completion,
    ErrorKind,
    Role,
    TokenUsage,
    ToolCall,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Message:
    """A single message in a conversation. Never mutated once appended."""

    role: str  # system, user, assistant or tool
    content: str
    tool_calls: tuple[ToolCall, ...] = ()
    tool_call_id: str | None = None  # set on tool messages

    @classmethod
    def system(cls, content: str) -> Message:
        return cls(role=Role.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> Message:
        return cls(role=Role.USER, content=content)

    @classmethod
    def assistant(cls, content: str, tool_calls: Sequence[ToolCall] = ()) -> Message:
        return cls(role=Role.ASSISTANT, content=content, tool_calls=tuple(tool_calls))

    @classmethod
    def tool(cls, content: str, tool_call_id: str) -> Message:
        return cls(role=Role.TOOL, content=content, tool_call_id=tool_call_id)

    def to_dict(self) -> dict[str, Any]:
        """OpenAI chat-completions wire format."""
        data: dict[str, Any] = {"role": str(self.role), "content": self.content}
        if self.tool_calls:
            data["tool_calls"] = [
                {
                    "id": tc.id,
                    "type": "function",
                    "function": {"name": tc.name, "arguments": json.dumps(tc.arguments)},
                }
                for tc in self.tool_calls
            ]
        if self.tool_call_id:
            data["tool_call_id"] = self.tool_call_id
        return data


@dataclass
class StreamEvent:
    """A single event from a turn, in emission order."""

    type: str  # thinking, text, tool_call, tool_result, done, error
    text: str = ""
    tool_name: str = ""
    tool_id: str = ""
    tool_input: dict = field(default_factory=dict)
    success: bool = True
    iteration: int = 0
    provider_id: str | None = None
    model: str | None = None
    usage: TokenUsage | None = None
    attempts: list[Attempt] = field(default_factory=list)
    error_kind: ErrorKind | None = None

    def to_dict(self) -> dict[str, Any]:
        """JSON-safe dict for SSE payloads."""
        data: dict[str, Any] = {"type": self.type, "iteration": self.iteration}
        if self.text:
            data["text"] = self.text
        if self.type in ("tool_call", "tool_result"):
            data["tool_name"] = self.tool_name
            data["tool_id"] = self.tool_id
        if self.type == "tool_call":
            data["tool_input"] = self.tool_input
        if self.type == "tool_result":
            data["success"] = self.success
        if self.provider_id:
            data["provider_id"] = self.provider_id
            data["model"] = self.model
        if self.usage is not None:
            data["usage"] = self.usage.model_dump()
        if self.attempts:
            data["attempts"] = [a.model_dump(mode="json") for a in self.attempts]
        if self.error_kind is not None:
            data["error_kind"] = str(self.error_kind)
        return data


# ---------------------------------------------------------------------------
# Collaborator contracts
# ---------------------------------------------------------------------------


@runtime_checkable
class Provider(Protocol):
    """An LLM backend behind the uniform call contract."""

    async def call(self, messages: Sequence[Message], options: CallOptions) -> Completion: ...


@runtime_checkable
class Tool(Protocol):
    """A typed tool handler resolved once at startup."""

    name: str
    description: str
    parameters: dict[str, Any]

    async def execute(self, args: dict[str, Any]) -> str: ...


class Session(Protocol):
    """The conversation store the core reads from and appends to."""

    session_id: str

    def append_message(self, message: Message) -> None: ...

    def get_history(self) -> list[Message]: ...

    def get_summary(self) -> str: ...

    def set_summary(self, text: str) -> None: ...

    def mark_compressed(self, count: int) -> None: ...


# ---------------------------------------------------------------------------
# In-memory session implementation
# ---------------------------------------------------------------------------


class ConversationSession:
    """Append-only conversation with a compression boundary.

    Compression never removes messages. It advances ``compressed_count``
    so get_history() only returns the messages the summary does not cover.
    """

    def __init__(self, session_id: str, summary: str = "") -> None:
        self.session_id = session_id
        self._messages: list[Message] = []
        self._summary = summary
        self.compressed_count = 0
        self.compression_count = 0

    def append_message(self, message: Message) -> None:
        self._messages.append(message)

    def get_history(self) -> list[Message]:
        return self._messages[self.compressed_count:]

    def all_messages(self) -> list[Message]:
        return list(self._messages)

    def get_summary(self) -> str:
        return self._summary

    def set_summary(self, text: str) -> None:
        self._summary = text

    def mark_compressed(self, count: int) -> None:
        """Move the boundary past ``count`` more messages of the current history."""
        if count <= 0:
            return
        self.compressed_count = min(len(self._messages), self.compressed_count + count)
        self.compression_count += 1

    def __len__(self) -> int:
        return len(self.get_history())


class SessionStore:
    """LRU map of session id -> ConversationSession, with per-session turn locks."""

    def __init__(self, max_sessions: int = 100) -> None:
        self._max_sessions = max_sessions
        self._sessions: OrderedDict[str, ConversationSession] = OrderedDict()
        self._locks: dict[str, asyncio.Lock] = {}

    def get_or_create(self, session_id: str) -> ConversationSession:
        if session_id in self._sessions:
            self._sessions.move_to_end(session_id)
            return self._sessions[session_id]

        while len(self._sessions) >= self._max_sessions:
            evicted, _ = self._sessions.popitem(last=False)
            self._locks.pop(evicted, None)
            logger.debug("Evicted session %s (LRU)", evicted)

        session = ConversationSession(session_id)
        self._sessions[session_id] = session
        return session

    def get(self, session_id: str) -> ConversationSession | None:
        return self._sessions.get(session_id)

    def drop(self, session_id: str) -> bool:
        self._locks.pop(session_id, None)
        return self._sessions.pop(session_id, None) is not None

    def lock(self, session_id: str) -> asyncio.Lock:
        """Lock serializing turns of one session."""
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions
