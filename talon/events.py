"""Lifecycle event bus for agent turns.

AgentRunner publishes one event per lifecycle step of a turn. Subscribers
are async callables; each runs isolated, so a failing subscriber is logged
and skipped. Publishing never blocks a turn: events go through a bounded
queue drained by a background task, and overflow is dropped with a warning.

The bus is injected where it is needed; nothing reaches it through a
module-level singleton.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

TURN_STARTED = "turn.started"
MODEL_USED = "model.used"
TOOL_EXECUTED = "tool.executed"
MEMORY_COMPRESSED = "memory.compressed"
TURN_COMPLETED = "turn.completed"
TURN_FAILED = "turn.failed"
ALL_EVENTS = "*"

Subscriber = Callable[["Event"], Awaitable[None]]


@dataclass
class Event:
    """One lifecycle event of one agent turn."""

    type: str
    agent_id: str
    data: dict[str, Any] = field(default_factory=dict)
    session_id: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "agent_id": self.agent_id,
            "session_id": self.session_id,
            "timestamp": self.timestamp.isoformat(),
            "data": self.data,
        }


class EventBus:
    """Fan-out of turn events to subscribers, off the turn's critical path.

    Subscribe to one event type with on(type, fn), or to every event with
    on("*", fn). Delivery order follows publish order.
    """

    def __init__(self, max_queue: int = 1000) -> None:
        self._subscribers: dict[str, list[Subscriber]] = defaultdict(list)
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=max_queue)
        self._worker: asyncio.Task | None = None
        self.dropped = 0

    def on(self, event_type: str, subscriber: Subscriber) -> None:
        self._subscribers[event_type].append(subscriber)
        logger.debug("Subscribed %s to '%s'", _name(subscriber), event_type)

    async def emit(self, event: Event) -> None:
        """Queue an event for delivery. Drops it when the queue is full."""
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("Event queue full, dropped %s (total dropped: %d)", event.type, self.dropped)

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    @property
    def pending(self) -> int:
        """Events queued but not yet delivered."""
        return self._queue.qsize()

    async def start(self) -> None:
        if self.running:
            return
        self._worker = asyncio.create_task(self._deliver_forever(), name="talon-event-bus")
        logger.info("Event bus started")

    async def stop(self) -> None:
        """Stop the worker, then deliver whatever is still queued."""
        worker, self._worker = self._worker, None
        if worker is not None:
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass
        while not self._queue.empty():
            await self._deliver(self._queue.get_nowait())
        logger.info("Event bus stopped")

    async def _deliver_forever(self) -> None:
        while True:
            event = await self._queue.get()
            await self._deliver(event)

    async def _deliver(self, event: Event) -> None:
        subscribers = [*self._subscribers.get(event.type, ()), *self._subscribers.get(ALL_EVENTS, ())]
        if subscribers:
            await asyncio.gather(*(self._notify(s, event) for s in subscribers))

    async def _notify(self, subscriber: Subscriber, event: Event) -> None:
        try:
            await subscriber(event)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Subscriber %s failed on %s", _name(subscriber), event.type)


def _name(subscriber: Subscriber) -> str:
    return getattr(subscriber, "__qualname__", None) or repr(subscriber)
