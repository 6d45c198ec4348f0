"""Event hub: explicit message channel between the engine and its observers.

The scheduler, executor and fork manager receive an EventHub at construction
and publish EngineEvents into it. Consumers (loggers, UIs, a server transport)
hold their own bounded queue, so a slow consumer never blocks the engine.
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncGenerator, Callable

from taskengine.models.events import EngineEvent

logger = logging.getLogger(__name__)

EventListener = Callable[[EngineEvent], None]


class EventHub:
    """Fan-out of engine events to queue subscribers and listeners.

    Usage:
        hub = EventHub()
        queue = hub.subscribe_session(session_id)

        hub.emit("step:completed", session_id=session_id, payload={...})

        event = await queue.get()   # None signals disconnect
    """

    MAX_SUBSCRIBERS = 50
    QUEUE_SIZE = 100
    SESSION_QUEUE_SIZE = 200

    def __init__(self) -> None:
        self._subscribers: list[asyncio.Queue[EngineEvent | None]] = []
        # session_id -> subscriber queues
        self._session_queues: dict[str, list[asyncio.Queue[EngineEvent | None]]] = {}
        self._listeners: list[EventListener] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> asyncio.Queue[EngineEvent | None]:
        """Create a subscriber queue receiving every event.

        At capacity the oldest subscriber is evicted (sent None) first.
        """
        if len(self._subscribers) >= self.MAX_SUBSCRIBERS:
            logger.warning(
                "Event hub at capacity (%d/%d), evicting oldest subscriber",
                len(self._subscribers), self.MAX_SUBSCRIBERS,
            )
            oldest = self._subscribers.pop(0)
            _close(oldest)

        queue: asyncio.Queue[EngineEvent | None] = asyncio.Queue(maxsize=self.QUEUE_SIZE)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[EngineEvent | None]) -> None:
        """Drop a queue, whether it came from subscribe or subscribe_session."""
        if queue in self._subscribers:
            self._subscribers.remove(queue)
            return
        for session_id, queues in list(self._session_queues.items()):
            if queue in queues:
                self.unsubscribe_session(session_id, queue)
                return

    def subscribe_session(self, session_id: str) -> asyncio.Queue[EngineEvent | None]:
        """Create a queue that only receives events for ``session_id``."""
        queue: asyncio.Queue[EngineEvent | None] = asyncio.Queue(maxsize=self.SESSION_QUEUE_SIZE)
        self._session_queues.setdefault(session_id, []).append(queue)
        return queue

    def unsubscribe_session(self, session_id: str, queue: asyncio.Queue[EngineEvent | None]) -> None:
        queues = self._session_queues.get(session_id, [])
        if queue in queues:
            queues.remove(queue)
        if not queues:
            self._session_queues.pop(session_id, None)

    def add_listener(self, listener: EventListener) -> None:
        """Register a synchronous callback invoked for every event."""
        self._listeners.append(listener)

    def remove_listener(self, listener: EventListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def publish(self, event: EngineEvent) -> int:
        """Deliver an event without blocking.

        Full queues are dropped. A listener that raises is logged and skipped.

        Returns:
            Number of queues and listeners that received the event.
        """
        sent = 0
        dead = []
        for queue in self._subscribers:
            try:
                queue.put_nowait(event)
                sent += 1
            except asyncio.QueueFull:
                dead.append(queue)
        for q in dead:
            logger.warning("Dropping subscriber with full queue (event %s)", event.event_type)
            self._subscribers.remove(q)

        if event.session_id and event.session_id in self._session_queues:
            dead_session = []
            for q in self._session_queues[event.session_id]:
                try:
                    q.put_nowait(event)
                    sent += 1
                except asyncio.QueueFull:
                    dead_session.append(q)
            for q in dead_session:
                logger.warning("Dropping session subscriber with full queue (session %s)", event.session_id)
                self.unsubscribe_session(event.session_id, q)

        for listener in list(self._listeners):
            try:
                listener(event)
                sent += 1
            except Exception as e:
                logger.warning("Event listener %r failed on %s: %s", listener, event.event_type, e)

        return sent

    def emit(
        self,
        event_type: str,
        session_id: str | None = None,
        step_id: int | None = None,
        task_id: str | None = None,
        payload: dict | None = None,
    ) -> int:
        """Convenience wrapper building the EngineEvent from keyword values."""
        event = EngineEvent(
            event_type=event_type,  # type: ignore[arg-type]
            session_id=session_id,
            step_id=step_id,
            task_id=task_id,
            payload=payload or {},
        )
        return self.publish(event)

    async def stream(
        self,
        queue: asyncio.Queue[EngineEvent | None],
    ) -> AsyncGenerator[EngineEvent, None]:
        """Yield events from a subscriber queue until disconnected."""
        try:
            while True:
                event = await queue.get()
                if event is None:
                    break
                yield event
        finally:
            self.unsubscribe(queue)

    def disconnect_all(self) -> None:
        """Send None to every queue and drop all subscribers (shutdown)."""
        for queue in self._subscribers:
            _close(queue)
        self._subscribers.clear()
        for queues in self._session_queues.values():
            for q in queues:
                _close(q)
        self._session_queues.clear()


def _close(queue: asyncio.Queue[EngineEvent | None]) -> None:
    try:
        queue.put_nowait(None)
    except asyncio.QueueFull:
        logger.debug("Queue full while closing subscriber")
