from __future__ import annotations

import logging
from typing import Any

from taskrelay.services.event_bus import EventBus

logger = logging.getLogger(__name__)

_TEMPLATES = {
    "request_received": "New request {item_id}: {title}",
    "request_approved": "Request {item_id} approved by {approver}",
    "request_rejected": "Request {item_id} rejected by {reviewer}: {feedback}",
    "task_assigned": "{item_id} ({title}) assigned to {worker_id}",
    "task_progress": "{item_id}: {note}",
    "task_in_review": "{item_id} ready for review (by {worker_id})",
    "task_done": "{item_id} done",
    "task_rejected": "{item_id} sent back for rework by {reviewer}: {feedback}",
    "blocker_escalated": (
        "ESCALATED blocker on {item_id} [{severity}] ({worker_id}): {error} - needs attention"
    ),
    "blocker_cleared": "Blocker on {item_id} cleared; back in backlog",
    "store_inconsistency": "STORE INCONSISTENCY on {item_id}: {reason}",
}


def format_event(event: dict[str, Any]) -> str:
    """Render a lifecycle event as one human-readable message."""
    kind = event.get("type", "")
    if kind == "task_blocked":
        text = (
            f"{event.get('item_id')} BLOCKED [{event.get('severity')}] "
            f"on {event.get('worker_id')}: {event.get('error')}"
        )
        if event.get("details"):
            text += f"\n{event['details']}"
        return text
    if kind == "status_report":
        return event.get("text", "")
    template = _TEMPLATES.get(kind)
    if template is None:
        return f"{kind}: {event.get('item_id', '')}".rstrip(": ")
    return template.format_map(_Defaulting(event))


class _Defaulting(dict):
    def __missing__(self, key: str) -> str:
        return "?"


class LogMessagingGateway:
    """Posts lifecycle notifications to the operator log channel."""

    def __init__(self, event_bus: EventBus, channel: str = "taskrelay.messages"):
        self.event_bus = event_bus
        self._log = logging.getLogger(channel)
        self.delivered = 0

    def attach(self) -> None:
        self.event_bus.subscribe("*", self.deliver)

    def detach(self) -> None:
        self.event_bus.unsubscribe("*", self.deliver)

    async def deliver(self, event: dict[str, Any]) -> None:
        level = logging.INFO
        if event.get("type") == "task_blocked":
            level = logging.WARNING
        elif event.get("type") in ("blocker_escalated", "store_inconsistency"):
            level = logging.ERROR
        self._log.log(level, "%s", format_event(event))
        self.delivered += 1
