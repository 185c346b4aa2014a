from __future__ import annotations

import asyncio
import logging
import traceback
from typing import Any, Callable, Coroutine

from taskrelay.db.base import ItemNotFoundError, StateStore, StoreInconsistencyError
from taskrelay.models.blocker import BlockerRecord, Severity
from taskrelay.models.outcome import WorkOutcome
from taskrelay.models.work_item import Bucket, WorkItem
from taskrelay.models.worker import Worker
from taskrelay.services.blocker_registry import BlockerRegistry
from taskrelay.services.completion import CompletionService
from taskrelay.services.event_bus import EventBus
from taskrelay.services.lock_manager import ItemLockManager
from taskrelay.services.worker_pool import WorkerPool

logger = logging.getLogger(__name__)


class WorkerRuntime:
    """Runs delegated work for active tasks and drives them to their next state.

    ``execute`` starts the delegated call as a background task and returns at
    once, so the event loop keeps scheduling while work is outstanding. Each
    call is bounded by ``timeout``; a timeout is an ordinary failure.
    Cancelled calls (shutdown) make no state change: the task stays active.
    """

    def __init__(
        self,
        store: StateStore,
        pool: WorkerPool,
        locks: ItemLockManager,
        registry: BlockerRegistry,
        event_bus: EventBus,
        completion: CompletionService,
        timeout: float = 900.0,
        on_settled: Callable[[str], object] | None = None,
    ):
        self.store = store
        self.pool = pool
        self.locks = locks
        self.registry = registry
        self.event_bus = event_bus
        self.completion = completion
        self.timeout = timeout
        self.on_settled = on_settled
        self._inflight: dict[str, asyncio.Task[None]] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def execute(self, item: WorkItem, worker: Worker) -> asyncio.Task[None]:
        if item.id in self._inflight:
            raise RuntimeError(f"{item.id} is already executing")
        task = asyncio.create_task(self._run(item, worker), name=f"work:{item.id}")
        self._inflight[item.id] = task
        task.add_done_callback(lambda _t, item_id=item.id: self._inflight.pop(item_id, None))
        logger.info("Started %s on %s", item.id, worker.id)
        return task

    def is_running(self, item_id: str) -> bool:
        return item_id in self._inflight

    def running(self) -> list[str]:
        return sorted(self._inflight)

    async def drain(self) -> None:
        """Wait until no delegated call is in flight."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight.values()), return_exceptions=True)

    async def shutdown(self, cancel: bool = True) -> None:
        if not self._inflight:
            return
        if cancel:
            logger.info("Abandoning %d in-flight call(s); their tasks stay active", len(self._inflight))
            for task in self._inflight.values():
                task.cancel()
        await asyncio.gather(*list(self._inflight.values()), return_exceptions=True)

    async def settle(
        self, item_id: str, worker_id: str, outcome: WorkOutcome, *, reserved: bool = True
    ) -> None:
        """Apply an outcome to an active task and free the worker's capacity.

        With ``reserved=False`` (staleness checks) the outcome only applies
        while the task is still assigned to ``worker_id``; otherwise nothing
        changes and no capacity is released. If the item cannot be locked or
        read, the task keeps its assignment and the capacity stays held until
        a later staleness check settles it.
        """
        blocked_item = None if outcome.success else item_id
        release = False
        try:
            async with self.locks.hold(item_id):
                try:
                    item = await self.store.read(Bucket.ACTIVE, item_id)
                except ItemNotFoundError:
                    logger.warning(
                        "%s left active before %s reported; outcome discarded", item_id, worker_id
                    )
                    blocked_item = None
                    release = reserved
                    return
                if not reserved and item.assigned_worker != worker_id:
                    logger.debug("%s no longer assigned to %s; outcome discarded", item_id, worker_id)
                    return
                release = True
                if outcome.success:
                    await self._finish(self._complete(item, worker_id, outcome))
                else:
                    await self._finish(self._block(item, worker_id, outcome))
        except StoreInconsistencyError as exc:
            await self.locks.quarantine(item_id, str(exc))
            raise
        finally:
            if release:
                await self.pool.release(worker_id, blocked_item=blocked_item)

        if self.on_settled is not None:
            self.on_settled(item_id)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _run(self, item: WorkItem, worker: Worker) -> None:
        outcome = await self._delegate(item, worker)
        try:
            await self.settle(item.id, worker.id, outcome)
        except Exception:
            logger.exception("Failed to settle %s for %s", item.id, worker.id)

    async def _delegate(self, item: WorkItem, worker: Worker) -> WorkOutcome:
        try:
            result = await asyncio.wait_for(
                self.completion.complete(item, worker), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            return WorkOutcome.failure(
                "timeout",
                details=f"No result from the completion service within {self.timeout:g}s",
                severity=Severity.MEDIUM,
            )
        except Exception as exc:
            logger.error("Delegated work for %s raised: %s", item.id, exc)
            return WorkOutcome.failure(
                f"{type(exc).__name__}: {exc}", details=traceback.format_exc()
            )

        if not isinstance(result, WorkOutcome):
            return WorkOutcome.failure(
                "ambiguous outcome",
                details=f"Completion service returned {result!r} instead of a structured outcome",
            )
        return result

    async def _complete(self, item: WorkItem, worker_id: str, outcome: WorkOutcome) -> None:
        note = outcome.summary or "Task completed"
        if outcome.artifact_url:
            note += f" - artifact: {outcome.artifact_url}"
        item.append_entry(worker_id, note)
        if outcome.details:
            item.append_entry(worker_id, f"Details:\n{outcome.details}")
        item.assigned_worker = None
        await self.store.write(Bucket.ACTIVE, item.id, item)

        target = Bucket.REVIEW if item.requires_review else Bucket.DONE
        await self._move(item.id, target)
        logger.info("%s completed by %s, moved to %s", item.id, worker_id, target.value)
        await self.event_bus.publish(
            "task_in_review" if target is Bucket.REVIEW else "task_done",
            {
                "item_id": item.id,
                "title": item.title,
                "worker_id": worker_id,
                "summary": outcome.summary,
                "artifact_url": outcome.artifact_url,
            },
        )

    async def _block(self, item: WorkItem, worker_id: str, outcome: WorkOutcome) -> None:
        error = outcome.error or "Execution failed"
        item.append_entry(worker_id, f"BLOCKED: {error}")
        if outcome.details:
            item.append_entry(worker_id, f"Error details:\n{outcome.details}")
        item.assigned_worker = None
        await self.store.write(Bucket.ACTIVE, item.id, item)

        await self.registry.record(
            BlockerRecord(
                item_id=item.id,
                worker_id=worker_id,
                severity=outcome.severity,
                error=error,
                details=outcome.details,
            )
        )
        await self._move(item.id, Bucket.BLOCKED)
        await self.event_bus.publish(
            "task_blocked",
            {
                "item_id": item.id,
                "title": item.title,
                "worker_id": worker_id,
                "severity": outcome.severity.value,
                "error": error,
                "details": outcome.details,
            },
        )

    async def _move(self, item_id: str, target: Bucket) -> None:
        result = await self.store.move_atomic(Bucket.ACTIVE, target, item_id)
        if not result.succeeded:
            # Written a moment ago under the item lock, so it must still exist.
            raise StoreInconsistencyError(item_id, [])

    @staticmethod
    async def _finish(transition: Coroutine[Any, Any, None]) -> None:
        """Run a state transition to completion even if the caller is cancelled.

        The transition writes the item's log entry and then moves it; stopping
        in between would leave a finished entry on an unassigned active task.
        """
        task = asyncio.ensure_future(transition)
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            await task
            raise
