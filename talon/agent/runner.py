"""Agent runner -- drives one conversational turn from user input to answer.

Per turn: optionally compress old history, then loop
  build context -> guard -> model call (router + fallback) -> tools
until the model answers without tool calls or the iteration cap is hit.
Everything the turn does is reported as an ordered stream of StreamEvents:

  thinking -> [tool_call -> tool_result]* -> text* -> done   (or error)

The runner keeps no per-session state between turns; all of it lives in
the Session passed to run_turn(), so one runner serves many sessions.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncGenerator
from dataclasses import dataclass, field

from talon.agent.compression import MemoryCompressor
from talon.agent.context_guard import ContextWindowGuard, repair_tool_pairs, truncate_to_tokens
from talon.agent.errors import (
    ContextOverflowError,
    FallbackExhaustedError,
    NoProviderConfiguredError,
    TalonError,
)
from talon.agent.fallback import FallbackExecutor
from talon.agent.models import Message, Session, StreamEvent
from talon.agent.prompts import SUMMARY_HEADER, build_system_prompt
from talon.agent.router import ModelRouter, RouteChoice
from talon.agent.schemas import (
    Attempt,
    CallOptions,
    ErrorKind,
    TaskComplexity,
    TokenUsage,
    ToolCall,
    ToolOutcome,
    ToolResult,
    TurnResult,
    TurnState,
)
from talon.agent.tools import ToolRegistry
from talon.config import Settings
from talon.events import (
    MEMORY_COMPRESSED,
    MODEL_USED,
    TOOL_EXECUTED,
    TURN_COMPLETED,
    TURN_FAILED,
    TURN_STARTED,
    Event,
    EventBus,
)

logger = logging.getLogger(__name__)

ITERATION_LIMIT_MESSAGE = (
    "I reached my maximum iteration limit. Here's what I have so far -- "
    "let me know if you'd like me to continue."
)
PENDING_OUTPUT_CHARS = 2000

_TRANSITIONS: dict[TurnState, frozenset[TurnState]] = {
    TurnState.IDLE: frozenset({TurnState.COMPRESSING, TurnState.THINKING, TurnState.ERROR}),
    TurnState.COMPRESSING: frozenset({TurnState.THINKING, TurnState.ERROR}),
    TurnState.THINKING: frozenset({
        TurnState.THINKING, TurnState.TOOL_EXECUTING, TurnState.RESPONDING, TurnState.ERROR,
    }),
    TurnState.TOOL_EXECUTING: frozenset({TurnState.THINKING, TurnState.ERROR}),
    TurnState.RESPONDING: frozenset({TurnState.IDLE, TurnState.ERROR}),
    TurnState.ERROR: frozenset({TurnState.IDLE}),
}


@dataclass
class _Turn:
    """Mutable state of one turn. Created at turn start, dropped at turn end."""

    session_id: str
    state: TurnState = TurnState.IDLE
    iteration: int = 0  # completed tool-call cycles
    model_calls: int = 0
    usage: TokenUsage = field(default_factory=TokenUsage)
    attempts: list[Attempt] = field(default_factory=list)
    pending: list[tuple[str, str, bool]] = field(default_factory=list)  # name, output, success
    provider_id: str | None = None
    model: str | None = None

    def transition(self, new: TurnState) -> None:
        if new not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal turn transition {self.state} -> {new}")
        logger.debug("Turn %s: %s -> %s", self.session_id, self.state, new)
        self.state = new


class AgentRunner:
    """Turn orchestrator.

    Collaborators are injected: the router picks candidates, the executor
    calls providers with fallback, the guard fits the context, the
    compressor maintains the summary, and the tool registry runs tools.
    """

    def __init__(
        self,
        router: ModelRouter,
        executor: FallbackExecutor,
        tools: ToolRegistry,
        compressor: MemoryCompressor | None,
        guard: ContextWindowGuard,
        settings: Settings,
        bus: EventBus | None = None,
    ) -> None:
        self._router = router
        self._executor = executor
        self._tools = tools
        self._compressor = compressor
        self._guard = guard
        self._settings = settings
        self._bus = bus

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run_turn(
        self,
        session: Session,
        user_message: str,
        *,
        complexity: TaskComplexity | str = TaskComplexity.MODERATE,
        cancel: asyncio.Event | None = None,
    ) -> AsyncGenerator[StreamEvent, None]:
        """Run one turn, yielding events as they happen.

        ``cancel`` is checked before every model call and every tool
        dispatch. Events already yielded are never retracted.
        """
        turn = _Turn(session_id=session.session_id)
        await self._publish(TURN_STARTED, session.session_id, complexity=str(complexity))

        try:
            try:
                complexity = TaskComplexity(complexity)
            except ValueError:
                raise TalonError(f"Unknown task complexity {complexity!r}") from None
            candidates = self._router.route(complexity)
            if not candidates:
                raise NoProviderConfiguredError(
                    "No LLM provider configured. Add an API key for at least one provider."
                )
            route = candidates[0]

            session.append_message(Message.user(user_message))

            if self._compressor is not None:
                window = self._guard.window_for(route.model)
                if self._compressor.should_compress(session, window):
                    turn.transition(TurnState.COMPRESSING)
                    outcome = await self._compressor.compress(session)
                    if outcome is not None:
                        await self._publish(
                            MEMORY_COMPRESSED, session.session_id,
                            compressed=outcome.compressed, provider_id=outcome.provider_id,
                        )
                        yield StreamEvent(
                            type="thinking",
                            text=f"Compressed {outcome.compressed} old messages into memory summary",
                        )

            async for event in self._loop(turn, session, route, candidates, cancel):
                yield event
        except asyncio.CancelledError:
            raise
        except TalonError as e:
            async for event in self._fail(turn, e):
                yield event
        except Exception as e:
            logger.exception("Unexpected error during turn %s", session.session_id)
            async for event in self._fail(turn, e):
                yield event

    async def complete_turn(
        self,
        session: Session,
        user_message: str,
        *,
        complexity: TaskComplexity | str = TaskComplexity.MODERATE,
        cancel: asyncio.Event | None = None,
    ) -> TurnResult:
        """Run a turn to the end and collect its events into a TurnResult."""
        result = TurnResult(session_id=session.session_id)
        texts: list[str] = []
        calls: dict[str, ToolCall] = {}

        async for event in self.run_turn(session, user_message, complexity=complexity, cancel=cancel):
            if event.type == "text":
                texts.append(event.text)
            elif event.type == "tool_call":
                calls[event.tool_id] = ToolCall(
                    id=event.tool_id, name=event.tool_name, arguments=event.tool_input,
                )
            elif event.type == "tool_result":
                call = calls.get(event.tool_id)
                result.tool_results.append(ToolResult(
                    tool_call_id=event.tool_id,
                    tool_name=event.tool_name,
                    arguments=call.arguments if call else {},
                    result=event.text if event.success else None,
                    error=None if event.success else event.text,
                ))
            elif event.type in ("done", "error"):
                result.attempts = list(event.attempts)
                result.iterations = event.iteration
                result.provider_id = event.provider_id
                result.model = event.model
                if event.usage is not None:
                    result.usage = event.usage
                if event.type == "error":
                    result.error = event.text
                    result.error_kind = event.error_kind
                    result.final_state = TurnState.ERROR

        result.response_text = "\n\n".join(t for t in texts if t)
        return result

    # ------------------------------------------------------------------
    # Turn loop
    # ------------------------------------------------------------------

    async def _loop(
        self,
        turn: _Turn,
        session: Session,
        route: RouteChoice,
        candidates: list[RouteChoice],
        cancel: asyncio.Event | None,
    ) -> AsyncGenerator[StreamEvent, None]:
        max_iterations = self._settings.max_iterations
        tools = self._tools.definitions() if len(self._tools) else None
        overflow_limit: int | None = None

        while True:
            if cancel is not None and cancel.is_set():
                async for event in self._cancelled(turn):
                    yield event
                return

            turn.transition(TurnState.THINKING)
            final_call = turn.iteration >= max_iterations
            yield StreamEvent(
                type="thinking",
                text=f"Iteration {turn.iteration + 1}...",
                iteration=turn.iteration + 1,
            )

            context = self._guard.fit(
                self._build_context(session), route.model, limit=overflow_limit,
            )
            options = CallOptions(
                max_tokens=self._settings.max_tokens,
                temperature=self._settings.temperature,
                tools=None if final_call else tools,
            )
            logger.info(
                "Agent loop iteration: session=%s iteration=%d provider=%s model=%s tokens=%d",
                turn.session_id, turn.iteration + 1, route.provider_id, route.model,
                context.budget.used,
            )

            try:
                result = await self._executor.execute(
                    context.messages,
                    options,
                    candidates=candidates,
                    preferred_provider_id=route.provider_id,
                )
            except ContextOverflowError as e:
                turn.attempts.extend(e.attempts)
                if overflow_limit is None and not final_call:
                    overflow_limit = max(1, context.budget.used // 2)
                    turn.iteration += 1
                    logger.warning(
                        "Provider reported context overflow -- retrying with %d-token limit",
                        overflow_limit,
                    )
                    continue
                raise
            except FallbackExhaustedError as e:
                turn.attempts.extend(e.attempts)
                if turn.pending:
                    yield StreamEvent(
                        type="text",
                        text="Here are the tool results I gathered before the error:\n\n"
                        + self._summarize_pending(turn),
                        iteration=turn.iteration + 1,
                    )
                raise

            turn.model_calls += 1
            turn.attempts.extend(result.attempts)
            turn.usage = turn.usage + result.completion.usage
            turn.provider_id = result.provider_id
            turn.model = result.model
            completion = result.completion
            await self._publish(
                MODEL_USED, turn.session_id,
                provider_id=result.provider_id, model=result.model,
                iteration=turn.iteration + 1, attempts=len(result.attempts),
            )

            if completion.tool_calls and not final_call:
                turn.transition(TurnState.TOOL_EXECUTING)
                session.append_message(Message.assistant(completion.content, completion.tool_calls))
                for call in completion.tool_calls:
                    if cancel is not None and cancel.is_set():
                        async for event in self._cancelled(turn):
                            yield event
                        return
                    yield StreamEvent(
                        type="tool_call",
                        tool_name=call.name,
                        tool_id=call.id,
                        tool_input=dict(call.arguments),
                        iteration=turn.iteration + 1,
                    )
                    outcome = await self._tools.dispatch(call.name, call.arguments)
                    session.append_message(Message.tool(outcome.output, call.id))
                    await self._record_tool(turn, call, outcome)
                    yield StreamEvent(
                        type="tool_result",
                        text=outcome.output,
                        tool_name=call.name,
                        tool_id=call.id,
                        success=outcome.success,
                        iteration=turn.iteration + 1,
                    )
                turn.iteration += 1
                continue

            turn.transition(TurnState.RESPONDING)
            text = completion.content
            if completion.tool_calls:
                logger.warning(
                    "Max iterations reached for session %s (max_iterations=%d)",
                    turn.session_id, max_iterations,
                )
                text = self._iteration_limit_text(turn, text)
            elif not text and turn.pending:
                logger.warning(
                    "LLM returned empty content after %d tool calls -- "
                    "synthesizing response from tool results",
                    len(turn.pending),
                )
                text = self._summarize_pending(turn)
            turn.pending.clear()

            if text:
                session.append_message(Message.assistant(text))
                yield StreamEvent(type="text", text=text, iteration=turn.iteration + 1)

            turn.transition(TurnState.IDLE)
            await self._publish(
                TURN_COMPLETED, turn.session_id,
                provider_id=turn.provider_id, model=turn.model,
                model_calls=turn.model_calls, iterations=turn.iteration,
                input_tokens=turn.usage.input, output_tokens=turn.usage.output,
            )
            yield StreamEvent(
                type="done",
                iteration=turn.iteration + 1,
                provider_id=turn.provider_id,
                model=turn.model,
                usage=turn.usage,
                attempts=list(turn.attempts),
            )
            return

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _build_context(self, session: Session) -> list[Message]:
        """System prompt + summary + recent history, tool pairs intact."""
        messages = [Message.system(build_system_prompt(
            self._settings.agent_name,
            self._settings.system_prompt,
            self._tools.describe(),
        ))]
        summary = session.get_summary()
        if summary:
            summary = truncate_to_tokens(summary, self._settings.max_summary_tokens)
            messages.append(Message.system(f"{SUMMARY_HEADER}\n{summary}"))
        recent = session.get_history()[-self._settings.max_history_messages:]
        messages.extend(repair_tool_pairs(recent))
        return messages

    async def _record_tool(self, turn: _Turn, call: ToolCall, outcome: ToolOutcome) -> None:
        turn.pending.append((call.name, outcome.output[:PENDING_OUTPUT_CHARS], outcome.success))
        if not outcome.success:
            logger.info("Tool %s failed (folded into history): %s", call.name, outcome.output[:200])
        await self._publish(
            TOOL_EXECUTED, turn.session_id,
            tool=call.name, success=outcome.success, duration_ms=outcome.duration_ms,
        )

    @staticmethod
    def _summarize_pending(turn: _Turn) -> str:
        parts = []
        for name, output, success in turn.pending:
            if success:
                parts.append(f"**{name}:**\n{output}")
            else:
                parts.append(f"**{name}:** (failed) {output}")
        return "\n\n".join(parts)

    def _iteration_limit_text(self, turn: _Turn, text: str) -> str:
        parts = [p for p in (text, self._summarize_pending(turn)) if p]
        parts.append(ITERATION_LIMIT_MESSAGE)
        return "\n\n---\n".join(parts)

    async def _cancelled(self, turn: _Turn) -> AsyncGenerator[StreamEvent, None]:
        logger.info("Turn %s cancelled in state %s", turn.session_id, turn.state)
        turn.transition(TurnState.ERROR)
        turn.transition(TurnState.IDLE)
        await self._publish(TURN_FAILED, turn.session_id, kind=str(ErrorKind.CANCELLED))
        yield StreamEvent(
            type="error",
            text="Turn cancelled",
            error_kind=ErrorKind.CANCELLED,
            iteration=turn.iteration + 1,
            provider_id=turn.provider_id,
            model=turn.model,
            usage=turn.usage,
            attempts=list(turn.attempts),
        )

    async def _fail(self, turn: _Turn, error: Exception) -> AsyncGenerator[StreamEvent, None]:
        """Report a turn failure as the final error event."""
        kind = error.kind if isinstance(error, TalonError) else ErrorKind.UNKNOWN
        attempts = list(turn.attempts)

        if isinstance(error, FallbackExhaustedError):
            logger.error("All LLM providers failed for session %s: %s", turn.session_id, error)
            text = f"LLM error: {error}\n\nAll providers failed. Please check your API keys and try again."
            chain = error.describe_attempts()
            if chain:
                text = f"{text}\n\nAttempts:\n{chain}"
        elif isinstance(error, ContextOverflowError):
            logger.error("Context overflow for session %s: %s", turn.session_id, error)
            text = f"The conversation no longer fits the model's context window: {error}"
        elif isinstance(error, NoProviderConfiguredError):
            logger.error("No provider configured")
            text = str(error)
        elif type(error) is TalonError:
            logger.warning("Turn %s rejected: %s", turn.session_id, error)
            text = str(error)
        else:
            text = "I encountered an error processing your request. Please try again."

        if turn.state != TurnState.ERROR:
            turn.transition(TurnState.ERROR)
        turn.transition(TurnState.IDLE)
        await self._publish(TURN_FAILED, turn.session_id, kind=str(kind), error=str(error))
        yield StreamEvent(
            type="error",
            text=text,
            error_kind=kind,
            iteration=turn.iteration + 1,
            provider_id=turn.provider_id,
            model=turn.model,
            usage=turn.usage,
            attempts=attempts,
        )

    async def _publish(self, event_type: str, session_id: str, **data) -> None:
        if self._bus is None:
            return
        await self._bus.emit(Event(
            type=event_type,
            agent_id=self._settings.agent_id,
            session_id=session_id,
            data=data,
        ))

