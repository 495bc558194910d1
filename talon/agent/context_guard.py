"""Context window guard -- token estimation, window lookup and truncation.

Token counts are a chars/4 heuristic. Swapping in a real tokenizer only
needs a different ``estimate_tokens``; callers depend on the contract
(text in, non-negative int out, 0 for empty text).
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass
from typing import Sequence

from talon.agent.errors import ContextOverflowError
from talon.agent.models import Message
from talon.agent.schemas import ContextBudget, Role
from talon.config import Settings

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4
MESSAGE_OVERHEAD_TOKENS = 4  # role + framing per message
DEFAULT_CONTEXT_WINDOW = 128_000

# A known name matches a longer model id only when followed by one of these
_VARIANT_SEPARATORS = ("-", ":", "@", "_")

MODEL_CONTEXT_WINDOWS: dict[str, int] = {
    "gpt-4o": 128_000,
    "gpt-4o-mini": 128_000,
    "gpt-4-turbo": 128_000,
    "gpt-4.1": 1_000_000,
    "gpt-4": 8_192,
    "gpt-4-32k": 32_768,
    "gpt-3.5-turbo": 16_385,
    "o1": 200_000,
    "o1-mini": 128_000,
    "o3-mini": 200_000,
    "deepseek-chat": 64_000,
    "deepseek-reasoner": 64_000,
    "claude": 200_000,
    "llama3.1": 128_000,
    "llama3": 8_192,
    "gemini-1.5-pro": 2_000_000,
    "gemini-1.5-flash": 1_000_000,
    "gemini-2.0-flash": 1_000_000,
}


def estimate_tokens(text: str) -> int:
    """Estimate tokens for text. 0 for the empty string, never negative."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_message_tokens(message: Message) -> int:
    tokens = estimate_tokens(message.content) + MESSAGE_OVERHEAD_TOKENS
    for tc in message.tool_calls:
        tokens += estimate_tokens(tc.name) + estimate_tokens(json.dumps(tc.arguments))
    return tokens


def estimate_messages_tokens(messages: Sequence[Message]) -> int:
    """Estimate total tokens for a message list (0 for an empty list)."""
    return sum(estimate_message_tokens(m) for m in messages)


def resolve_context_window(
    model: str,
    overrides: dict[str, int] | None = None,
    default: int = DEFAULT_CONTEXT_WINDOW,
) -> int:
    """Look up a model's window, case-insensitively.

    Exact names win; otherwise the longest known name that prefixes the
    bare model id up to a variant separator (so "deepseek/deepseek-chat-v3"
    resolves like "deepseek-chat", but "llama3.2" does not match "llama3").
    Unknown models get ``default``.
    """
    table = {k.lower(): v for k, v in MODEL_CONTEXT_WINDOWS.items()}
    if overrides:
        table.update({k.lower(): v for k, v in overrides.items()})

    name = (model or "").strip().lower()
    if not name:
        return default
    if name in table:
        return table[name]

    bare = name.rsplit("/", 1)[-1]
    if bare in table:
        return table[bare]

    for key in sorted(table, key=len, reverse=True):
        if bare.startswith(key) and bare[len(key)] in _VARIANT_SEPARATORS:
            return table[key]
    return default


def truncate_to_tokens(text: str, max_tokens: int) -> str:
    """Cut text so it estimates at or below max_tokens."""
    max_chars = max(0, max_tokens) * CHARS_PER_TOKEN
    if len(text) <= max_chars:
        return text
    marker = "\n...[truncated]"
    if max_chars <= len(marker):
        return text[:max_chars]
    return text[: max_chars - len(marker)] + marker


@dataclass
class GuardResult:
    """Messages that fit the window plus the budget they were measured against."""

    messages: list[Message]
    budget: ContextBudget
    dropped: int = 0


class ContextWindowGuard:
    """Evaluates a message list against a model window and truncates it to fit.

    Truncation drops the oldest non-system message first. An assistant
    message carrying tool calls is dropped together with its tool
    results so no orphaned tool message is ever sent. System messages
    are never dropped: if they alone breach the hard floor the guard
    raises ContextOverflowError.
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def window_for(self, model: str) -> int:
        return resolve_context_window(
            model,
            overrides=self._settings.context_windows,
            default=self._settings.context_default_window,
        )

    def evaluate(self, messages: Sequence[Message], model: str) -> ContextBudget:
        window = self.window_for(model)
        used = estimate_messages_tokens(messages)
        # Small windows keep at least half their tokens usable
        hard_floor = min(self._settings.context_hard_floor, window // 2)
        warn_threshold = max(hard_floor, min(self._settings.context_warn_threshold, window * 3 // 4))
        return ContextBudget(
            model=model,
            window=window,
            used=used,
            remaining=max(0, window - used),
            warn_threshold=warn_threshold,
            hard_floor=hard_floor,
        )

    def fit(
        self,
        messages: Sequence[Message],
        model: str,
        limit: int | None = None,
    ) -> GuardResult:
        """Return messages that fit under the hard floor (or an explicit token limit).

        Raises ContextOverflowError when only system messages remain and
        they are still over budget.
        """
        budget = self.evaluate(messages, model)
        target = budget.limit if limit is None else min(limit, budget.limit)

        if budget.should_warn and budget.used <= target:
            logger.warning(
                "Context window warning: model=%s used=%d remaining=%d (window=%d)",
                model, budget.used, budget.remaining, budget.window,
            )

        if budget.used <= target:
            return GuardResult(messages=list(messages), budget=budget)

        logger.warning(
            "Context window critical: model=%s used=%d limit=%d -- truncating",
            model, budget.used, target,
        )
        kept = list(messages)
        dropped = 0
        used = budget.used
        while used > target:
            index = self._oldest_droppable(kept)
            if index is None:
                break
            removed = self._drop_at(kept, index)
            dropped += len(removed)
            used -= estimate_messages_tokens(removed)

        final = self.evaluate(kept, model)
        if final.used > target:
            raise ContextOverflowError(
                f"Context overflow: {final.used} tokens of system content exceed "
                f"the {target}-token budget for {model}",
                budget=final,
            )

        logger.info(
            "Truncated context for %s: dropped %d messages (%d -> %d tokens)",
            model, dropped, budget.used, final.used,
        )
        return GuardResult(messages=kept, budget=final, dropped=dropped)

    @staticmethod
    def _oldest_droppable(messages: list[Message]) -> int | None:
        for i, msg in enumerate(messages):
            if msg.role != Role.SYSTEM:
                return i
        return None

    @staticmethod
    def _drop_at(messages: list[Message], index: int) -> list[Message]:
        """Remove messages[index] and any tool results that would be orphaned."""
        removed = [messages.pop(index)]
        call_ids = {tc.id for tc in removed[0].tool_calls}
        if call_ids:
            i = index
            while i < len(messages):
                msg = messages[i]
                if msg.role == Role.TOOL and msg.tool_call_id in call_ids:
                    removed.append(messages.pop(i))
                else:
                    i += 1
        return removed


def repair_tool_pairs(messages: Sequence[Message]) -> list[Message]:
    """Make tool calls and tool results pair up before sending a context.

    Tool results whose assistant call is not in the list are dropped.
    An assistant call with missing results (e.g. a cancelled turn) is
    replaced by a plain copy without tool calls, or dropped when it has
    no text. History itself is never modified.
    """
    answered = {m.tool_call_id for m in messages if m.role == Role.TOOL}
    seen_calls: set[str] = set()
    result: list[Message] = []
    for msg in messages:
        if msg.role == Role.ASSISTANT and msg.tool_calls:
            if all(tc.id in answered for tc in msg.tool_calls):
                seen_calls.update(tc.id for tc in msg.tool_calls)
                result.append(msg)
            elif msg.content:
                result.append(Message.assistant(msg.content))
            else:
                logger.debug("Dropping assistant tool call with missing results")
            continue
        if msg.role == Role.TOOL and msg.tool_call_id not in seen_calls:
            logger.debug("Dropping orphaned tool message %s", msg.tool_call_id)
            continue
        result.append(msg)
    return result
