"""Memory compression -- folds old history into the session's running summary.

Triggered when history grows past a message count or a share of the
model window. The N most recent messages are never sent for compression
and stay verbatim. A failed summarization is a no-op: the turn goes on
with uncompressed history.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass

from talon.agent.context_guard import estimate_messages_tokens, estimate_tokens, truncate_to_tokens
from talon.agent.fallback import FallbackExecutor
from talon.agent.models import Message, Session
from talon.agent.prompts import COMPRESSION_SYSTEM_PROMPT, build_compression_prompt
from talon.agent.router import ModelRouter
from talon.agent.schemas import CallOptions, TaskComplexity
from talon.config import Settings

logger = logging.getLogger(__name__)


@dataclass
class CompressionResult:
    compressed: int  # messages folded into the summary
    summary_tokens: int
    provider_id: str
    model: str
    duration_ms: int


class MemoryCompressor:
    """Decides when to compress and drives the summarization call."""

    def __init__(
        self,
        router: ModelRouter,
        executor: FallbackExecutor,
        settings: Settings,
    ) -> None:
        self._router = router
        self._executor = executor
        self._settings = settings

    @property
    def keep_recent(self) -> int:
        return self._settings.compression_keep_recent

    def should_compress(self, session: Session, window: int | None = None) -> bool:
        """Check the message-count and token-ratio triggers."""
        if not self._settings.compression_enabled:
            return False
        history = session.get_history()
        if len(history) <= self.keep_recent:
            return False
        if len(history) > self._settings.compression_message_threshold:
            return True
        if window:
            tokens = estimate_messages_tokens(history) + estimate_tokens(session.get_summary())
            return tokens > window * self._settings.compression_token_ratio
        return False

    def messages_for_compression(self, session: Session) -> list[Message]:
        """Everything except the most recent keep_recent messages."""
        history = session.get_history()
        cutoff = len(history) - self.keep_recent
        if cutoff <= 0:
            return []
        return history[:cutoff]

    def format_for_compression(self, messages: Sequence[Message]) -> str:
        lines = []
        limit = self._settings.compression_message_max_tokens
        for msg in messages:
            content = msg.content
            if msg.tool_calls:
                calls = ", ".join(tc.name for tc in msg.tool_calls)
                content = f"{content}\n(called tools: {calls})" if content else f"(called tools: {calls})"
            lines.append(f"[{str(msg.role).upper()}]: {truncate_to_tokens(content, limit)}")
        return "\n".join(lines)

    async def compress(self, session: Session) -> CompressionResult | None:
        """Summarize old messages into the session summary.

        Returns None (leaving the session untouched) when there is nothing
        to compress, no provider is available, or the call fails.
        """
        old_messages = self.messages_for_compression(session)
        if not old_messages:
            return None

        candidates = self._router.route(TaskComplexity.SUMMARIZE)
        if not candidates:
            logger.warning("No provider available for memory compression")
            return None

        old_summary = session.get_summary()
        prompt = build_compression_prompt(
            old_summary,
            self.format_for_compression(old_messages),
            max_tokens=self._settings.max_summary_tokens,
        )
        start = time.monotonic()
        logger.debug(
            "Compressing memory for %s: %d messages via %s",
            session.session_id, len(old_messages), candidates[0].provider_id,
        )

        try:
            result = await self._executor.execute(
                [Message.system(COMPRESSION_SYSTEM_PROMPT), Message.user(prompt)],
                CallOptions(
                    max_tokens=self._settings.compression_max_tokens,
                    temperature=self._settings.compression_temperature,
                ),
                candidates=candidates,
                preferred_provider_id=candidates[0].provider_id,
            )
        except Exception as e:
            logger.error("Memory compression failed -- keeping old summary: %s", e)
            return None

        summary = result.completion.content.strip()
        if not summary:
            logger.warning("Memory compression returned an empty summary -- keeping old summary")
            return None

        summary = truncate_to_tokens(summary, self._settings.max_summary_tokens)
        session.set_summary(summary)
        session.mark_compressed(len(old_messages))

        outcome = CompressionResult(
            compressed=len(old_messages),
            summary_tokens=estimate_tokens(summary),
            provider_id=result.provider_id,
            model=result.model,
            duration_ms=int((time.monotonic() - start) * 1000),
        )
        logger.info(
            "Memory compressed for %s: %d messages -> summary (%d tokens, %s/%s, %d ms)",
            session.session_id, outcome.compressed, outcome.summary_tokens,
            outcome.provider_id, outcome.model, outcome.duration_ms,
        )
        return outcome
