"""Hooks for the natural-language side of intake.

Request analysis and task generation are performed by external
collaborators; the orchestrator only needs these two narrow interfaces.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Iterable, Protocol

from taskrelay.models.work_item import ItemKind, Priority, WorkItem

logger = logging.getLogger(__name__)


class RequestAnalyzer(Protocol):
    async def analyze(self, request: WorkItem) -> str | None:
        """Return a note to append to the request, or None."""


class TaskGenerator(Protocol):
    async def generate(self, request: WorkItem) -> list[WorkItem]:
        """Return the tasks an approved request should spawn."""


class ManualIntake:
    """Default hooks: requests wait for an operator and spawn no tasks."""

    async def analyze(self, request: WorkItem) -> str | None:
        return "Awaiting operator review"

    async def generate(self, request: WorkItem) -> list[WorkItem]:
        logger.info("No task generator configured; add tasks for %s manually", request.id)
        return []


def new_item_id(prefix: str) -> str:
    return f"{prefix}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}"


def new_task(
    title: str,
    capability: str,
    *,
    body: str = "",
    priority: Priority | str = Priority.MEDIUM,
    dependencies: Iterable[str] = (),
    requires_review: bool = True,
    item_id: str | None = None,
) -> WorkItem:
    return WorkItem(
        id=item_id or new_item_id("TASK"),
        kind=ItemKind.TASK,
        title=title,
        capability=capability,
        priority=Priority(priority),
        dependencies=set(dependencies),
        requires_review=requires_review,
        content=body,
    )


def new_request(title: str, *, body: str = "", item_id: str | None = None) -> WorkItem:
    return WorkItem(
        id=item_id or new_item_id("REQ"),
        kind=ItemKind.REQUEST,
        title=title,
        content=body,
    )
