from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

from pydantic import ValidationError

from taskrelay.db.base import (
    ItemNotFoundError,
    MoveResult,
    StateStore,
    StoreError,
    StoreInconsistencyError,
)
from taskrelay.models.work_item import Bucket, WorkItem
from taskrelay.models.worker import Worker
from taskrelay.services.event_bus import EventBus
from taskrelay.services.lock_manager import ItemLockManager, ItemQuarantinedError
from taskrelay.services.worker_pool import WorkerPool
from taskrelay.services.worker_runtime import WorkerRuntime

logger = logging.getLogger(__name__)


class AssignResult(str, Enum):
    ASSIGNED = "assigned"
    NOT_AVAILABLE = "not_available"  # no longer in the expected bucket, or already running
    WAITING_ON_DEPENDENCIES = "waiting_on_dependencies"
    WAITING_ON_CAPACITY = "waiting_on_capacity"


@dataclass
class ScanSummary:
    assigned: list[str] = field(default_factory=list)
    waiting_on_dependencies: list[str] = field(default_factory=list)
    waiting_on_capacity: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def note(self, item_id: str, result: AssignResult) -> None:
        if result is AssignResult.ASSIGNED:
            self.assigned.append(item_id)
        elif result is AssignResult.WAITING_ON_DEPENDENCIES:
            self.waiting_on_dependencies.append(item_id)
        elif result is AssignResult.WAITING_ON_CAPACITY:
            self.waiting_on_capacity.append(item_id)
        else:
            self.skipped.append(item_id)


class AssignmentPolicy:
    """Matches backlog tasks to capable workers with spare capacity.

    At-most-once assignment: a task only becomes active through a ``MOVED``
    result from ``move_atomic``. Any other result (another trigger got there
    first) releases the reservation and the task is skipped silently.
    Finding no eligible worker is a steady state, not an error.
    """

    def __init__(
        self,
        store: StateStore,
        pool: WorkerPool,
        locks: ItemLockManager,
        runtime: WorkerRuntime,
        event_bus: EventBus,
    ):
        self.store = store
        self.pool = pool
        self.locks = locks
        self.runtime = runtime
        self.event_bus = event_bus
        self._last_waiting: frozenset[str] = frozenset()

    # ------------------------------------------------------------------
    # Scans
    # ------------------------------------------------------------------

    async def scan_backlog(self, summary: ScanSummary | None = None) -> ScanSummary:
        """Assign every eligible backlog task, highest priority and oldest first."""
        summary = summary or ScanSummary()
        for item in await self._load(Bucket.BACKLOG, summary):
            await self._attempt(item.id, self.try_assign, summary)
        self._log_waiting(summary)
        return summary

    async def scan_rework(self, summary: ScanSummary | None = None) -> ScanSummary:
        """Give unassigned active tasks (returned by rejection) a worker."""
        summary = summary or ScanSummary()
        for item in await self._load(Bucket.ACTIVE, summary):
            if item.assigned_worker or self.runtime.is_running(item.id):
                continue
            await self._attempt(item.id, self.try_rework, summary)
        return summary

    # ------------------------------------------------------------------
    # Single-item operations
    # ------------------------------------------------------------------

    async def try_assign(self, item_id: str) -> AssignResult:
        async with self.locks.hold(item_id):
            try:
                item = await self.store.read(Bucket.BACKLOG, item_id)
            except ItemNotFoundError:
                return AssignResult.NOT_AVAILABLE
            if not await self.dependencies_satisfied(item):
                return AssignResult.WAITING_ON_DEPENDENCIES

            worker = await self.pool.reserve(item.capability)
            if worker is None:
                return AssignResult.WAITING_ON_CAPACITY

            try:
                result = await self.store.move_atomic(Bucket.BACKLOG, Bucket.ACTIVE, item_id)
            except StoreInconsistencyError as exc:
                await self.pool.cancel_reservation(worker.id)
                await self.locks.quarantine(item_id, str(exc))
                raise
            except BaseException:
                await self.pool.cancel_reservation(worker.id)
                raise
            if result is not MoveResult.MOVED:
                await self.pool.cancel_reservation(worker.id)
                logger.debug("%s already left backlog (%s); skipping", item_id, result.value)
                return AssignResult.NOT_AVAILABLE

            await self._start(item_id, worker, f"Assigned to {worker.id}")
            return AssignResult.ASSIGNED

    async def try_rework(self, item_id: str) -> AssignResult:
        async with self.locks.hold(item_id):
            try:
                item = await self.store.read(Bucket.ACTIVE, item_id)
            except ItemNotFoundError:
                return AssignResult.NOT_AVAILABLE
            if item.assigned_worker or self.runtime.is_running(item_id):
                return AssignResult.NOT_AVAILABLE

            worker = await self.pool.reserve(item.capability)
            if worker is None:
                return AssignResult.WAITING_ON_CAPACITY
            await self._start(item_id, worker, f"Rework assigned to {worker.id}")
            return AssignResult.ASSIGNED

    async def dependencies_satisfied(self, item: WorkItem) -> bool:
        for dependency in item.dependencies:
            if not await self.store.contains(Bucket.DONE, dependency):
                return False
        return True

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _start(self, item_id: str, worker: Worker, note: str) -> None:
        """Record the assignment on an active task and hand it to the runtime.

        Caller holds the item lock and a reservation on ``worker``.
        """
        try:
            item = await self.store.read(Bucket.ACTIVE, item_id)
            item.assigned_worker = worker.id
            item.append_entry("taskrelay", note)
            await self.store.write(Bucket.ACTIVE, item_id, item)
        except BaseException:
            await self.pool.cancel_reservation(worker.id)
            raise

        self.runtime.execute(item, worker)
        logger.info("Assigned %s (%s) to %s", item_id, item.capability, worker.id)
        await self.event_bus.publish(
            "task_assigned",
            {
                "item_id": item_id,
                "title": item.title,
                "worker_id": worker.id,
                "capability": item.capability,
                "priority": item.priority.value,
            },
        )

    async def _load(self, bucket: Bucket, summary: ScanSummary) -> list[WorkItem]:
        items: list[WorkItem] = []
        for item_id in await self.store.list(bucket):
            try:
                items.append(await self.store.read(bucket, item_id))
            except ItemNotFoundError:
                continue
            except (StoreError, ValidationError) as exc:
                logger.warning("Skipping unreadable %s item %s: %s", bucket.value, item_id, exc)
                summary.errors.append(item_id)
        return sorted(items, key=lambda i: i.sort_key)

    async def _attempt(self, item_id: str, operation, summary: ScanSummary) -> None:
        try:
            summary.note(item_id, await operation(item_id))
        except ItemQuarantinedError:
            summary.skipped.append(item_id)
        except (StoreError, ValidationError) as exc:
            logger.error("Assignment of %s failed: %s", item_id, exc)
            summary.errors.append(item_id)

    def _log_waiting(self, summary: ScanSummary) -> None:
        """One line per scan; INFO only when the waiting set changes."""
        waiting = frozenset(summary.waiting_on_capacity)
        if waiting:
            level = logging.INFO if waiting != self._last_waiting else logging.DEBUG
            logger.log(
                level,
                "No eligible worker for %d task(s): %s",
                len(waiting),
                ", ".join(sorted(waiting)),
            )
        elif self._last_waiting:
            logger.info("All capacity-waiting tasks have been assigned")
        self._last_waiting = waiting
