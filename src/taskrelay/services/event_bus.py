from __future__ import annotations

import asyncio
import logging
from collections import defaultdict, deque
from datetime import datetime
from typing import Any, Awaitable, Callable, Coroutine

logger = logging.getLogger(__name__)

Listener = Callable[[dict[str, Any]], Coroutine[Any, Any, None]]
Sink = Callable[[dict[str, Any]], Awaitable[None]]

# Lifecycle events published by the orchestrator components.
LIFECYCLE_EVENTS = (
    "request_received",
    "request_approved",
    "request_rejected",
    "task_assigned",
    "task_progress",
    "task_in_review",
    "task_done",
    "task_rejected",
    "task_blocked",
    "blocker_escalated",
    "blocker_cleared",
    "status_report",
    "store_inconsistency",
)


class EventBus:
    """Async pub/sub bus for lifecycle notifications.

    Listeners subscribe to one event type (or "*" for all events) and receive
    a dict with ``type``, ``timestamp`` and the event data. Every event is
    kept in a bounded history and, when a ``sink`` is given, recorded there
    before listeners run. A failing listener or sink is logged and never
    affects the others or the publisher.
    """

    def __init__(self, history_size: int = 100, sink: Sink | None = None) -> None:
        self._listeners: defaultdict[str, list[Listener]] = defaultdict(list)
        self._history: deque[dict[str, Any]] = deque(maxlen=history_size)
        self._sink = sink

    def subscribe(self, event_type: str, listener: Listener) -> None:
        self._listeners[event_type].append(listener)

    def unsubscribe(self, event_type: str, listener: Listener) -> None:
        listeners = self._listeners.get(event_type)
        if listeners and listener in listeners:
            listeners.remove(listener)

    async def publish(self, event_type: str, data: dict[str, Any]) -> None:
        if event_type not in LIFECYCLE_EVENTS:
            logger.debug("Publishing unregistered event type %s", event_type)
        event = {"type": event_type, "timestamp": datetime.now().isoformat(), **data}
        self._history.append(event)

        if self._sink is not None:
            try:
                await self._sink(event)
            except Exception as exc:
                logger.error("Recording %s event failed: %s", event_type, exc)

        listeners = [*self._listeners.get(event_type, ()), *self._listeners.get("*", ())]
        if not listeners:
            return
        outcomes = await asyncio.gather(
            *(listener(event) for listener in listeners), return_exceptions=True
        )
        for listener, outcome in zip(listeners, outcomes):
            if isinstance(outcome, Exception):
                logger.error(
                    "Listener %s failed on %s: %s",
                    getattr(listener, "__qualname__", repr(listener)),
                    event_type,
                    outcome,
                )

    def recent(self, limit: int = 20, event_type: str | None = None) -> list[dict[str, Any]]:
        """Most recent events, newest last. ``limit=0`` returns the whole history."""
        events = [e for e in self._history if event_type is None or e["type"] == event_type]
        return events[-limit:] if limit else events
