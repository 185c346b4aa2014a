from __future__ import annotations

import logging
from typing import Callable

from taskrelay.db.base import (
    ItemExistsError,
    MoveResult,
    StateStore,
    StoreInconsistencyError,
)
from taskrelay.models.work_item import Bucket, ItemKind, WorkItem
from taskrelay.services.event_bus import EventBus
from taskrelay.services.intake import ManualIntake, TaskGenerator
from taskrelay.services.lock_manager import ItemLockManager

logger = logging.getLogger(__name__)


class InvalidTransitionError(Exception):
    """The item is not in a bucket the requested transition starts from."""

    def __init__(self, item_id: str, expected: list[Bucket], actual: Bucket | None):
        where = actual.value if actual else "no bucket"
        wanted = " or ".join(b.value for b in expected)
        super().__init__(f"{item_id} must be in {wanted} but is in {where}")
        self.item_id = item_id
        self.expected = expected
        self.actual = actual


class ApprovalGate:
    """Human decisions on reviewed tasks and analysed requests.

    Approving a request generates its tasks straight away and asks the
    orchestrator for an evaluation through ``on_change``.
    """

    def __init__(
        self,
        store: StateStore,
        locks: ItemLockManager,
        event_bus: EventBus,
        task_generator: TaskGenerator | None = None,
        on_change: Callable[[str], object] | None = None,
    ):
        self.store = store
        self.locks = locks
        self.event_bus = event_bus
        self.task_generator = task_generator or ManualIntake()
        self.on_change = on_change

    async def approve(self, item_id: str, approver: str = "operator") -> dict:
        """Approve a task in review or a request in analysis."""
        async with self.locks.hold(item_id):
            bucket = await self._expect(item_id, [Bucket.REVIEW, Bucket.IN_ANALYSIS])
            item = await self.store.read(bucket, item_id)
            item.append_entry(approver, "Approved")
            await self.store.write(bucket, item_id, item)
            target = Bucket.DONE if bucket is Bucket.REVIEW else Bucket.APPROVED
            await self._transition(item_id, bucket, target)

        result: dict = {"item_id": item_id, "state": target.value}
        if item.kind is ItemKind.TASK:
            logger.info("Task %s approved by %s", item_id, approver)
            await self.event_bus.publish(
                "task_done", {"item_id": item_id, "title": item.title, "approver": approver}
            )
        else:
            created = await self._generate(item)
            result["generated"] = created
            logger.info(
                "Request %s approved by %s; %d task(s) generated", item_id, approver, len(created)
            )
            await self.event_bus.publish(
                "request_approved",
                {"item_id": item_id, "title": item.title, "approver": approver, "generated": created},
            )

        self._notify(f"approved:{item_id}")
        return result

    async def reject(self, item_id: str, feedback: str, reviewer: str = "operator") -> dict:
        """Send a reviewed task back for rework, or reject a request.

        ``feedback`` is appended to the item verbatim.
        """
        async with self.locks.hold(item_id):
            bucket = await self._expect(item_id, [Bucket.REVIEW, Bucket.IN_ANALYSIS])
            item = await self.store.read(bucket, item_id)
            item.append_entry(reviewer, f"Rejected:\n{feedback}")
            item.assigned_worker = None
            await self.store.write(bucket, item_id, item)
            target = Bucket.ACTIVE if bucket is Bucket.REVIEW else Bucket.REJECTED
            await self._transition(item_id, bucket, target)

        event = "task_rejected" if item.kind is ItemKind.TASK else "request_rejected"
        logger.info("%s %s rejected by %s", item.kind.value.capitalize(), item_id, reviewer)
        await self.event_bus.publish(
            event,
            {"item_id": item_id, "title": item.title, "reviewer": reviewer, "feedback": feedback},
        )

        self._notify(f"rejected:{item_id}")
        return {"item_id": item_id, "state": target.value}

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _expect(self, item_id: str, expected: list[Bucket]) -> Bucket:
        actual = await self.store.locate(item_id)
        if actual not in expected:
            raise InvalidTransitionError(item_id, expected, actual)
        return actual

    async def _transition(self, item_id: str, source: Bucket, target: Bucket) -> None:
        try:
            result = await self.store.move_atomic(source, target, item_id)
        except StoreInconsistencyError as exc:
            await self.locks.quarantine(item_id, str(exc))
            raise
        if result is MoveResult.NOT_FOUND:
            raise InvalidTransitionError(item_id, [source], await self.store.locate(item_id))

    async def _generate(self, request: WorkItem) -> list[str]:
        """Write the tasks generated for an approved request into backlog."""
        tasks = await self.task_generator.generate(request)
        created: list[str] = []
        for task in tasks:
            if not task.dependencies:
                task.dependencies = set(request.dependencies)
            task.append_entry("taskrelay", f"Generated from request {request.id}")
            try:
                await self.store.write(Bucket.BACKLOG, task.id, task)
            except ItemExistsError as exc:
                logger.warning("Skipping generated task: %s", exc)
                continue
            created.append(task.id)
        return created

    def _notify(self, reason: str) -> None:
        if self.on_change is not None:
            self.on_change(reason)
