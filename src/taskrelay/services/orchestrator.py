from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from pydantic import ValidationError

from taskrelay.db import create_store
from taskrelay.db.base import (
    ItemNotFoundError,
    MoveResult,
    StateStore,
    StoreError,
    StoreInconsistencyError,
)
from taskrelay.models.blocker import Severity
from taskrelay.models.outcome import WorkOutcome
from taskrelay.models.report import StatusReport
from taskrelay.models.work_item import Bucket, ItemKind, WorkItem
from taskrelay.services.approval_gate import ApprovalGate
from taskrelay.services.assignment import AssignmentPolicy, ScanSummary
from taskrelay.services.blocker_registry import BlockerNotFoundError, BlockerRegistry
from taskrelay.services.change_notifier import ChangeEvent, ChangeNotifier
from taskrelay.services.completion import CompletionService, build_completion_service
from taskrelay.services.event_bus import EventBus
from taskrelay.services.intake import ManualIntake, RequestAnalyzer, TaskGenerator
from taskrelay.services.lock_manager import ItemLockManager, ItemQuarantinedError
from taskrelay.services.messaging import LogMessagingGateway
from taskrelay.services.reporting import build_status_report
from taskrelay.services.scheduler import FixedTimeTrigger, Scheduler
from taskrelay.services.worker_pool import WorkerPool
from taskrelay.services.worker_runtime import WorkerRuntime
from taskrelay.utils.config import Config, load_workers

logger = logging.getLogger(__name__)

# Per-item failures that must not abort a scan.
_ITEM_ERRORS = (StoreError, ValidationError, ItemQuarantinedError)


@dataclass(frozen=True)
class Trigger:
    """One unit of work for the dispatcher."""

    reason: str
    item_id: str | None = None
    created_at: datetime = field(default_factory=datetime.now)

    @property
    def is_report(self) -> bool:
        return self.reason.startswith("report:")


class Orchestrator:
    """Single control loop tying the lifecycle components together.

    Every trigger (change event, interval tick, fixed-time report,
    completion, operator action) goes onto one bounded queue and is handled
    by one dispatcher task. Delegated work runs as separate asyncio tasks,
    so the dispatcher keeps scheduling while work is outstanding.
    """

    def __init__(
        self,
        store: StateStore,
        pool: WorkerPool,
        completion: CompletionService,
        *,
        event_bus: EventBus | None = None,
        analyzer: RequestAnalyzer | None = None,
        task_generator: TaskGenerator | None = None,
        completion_timeout: float = 900.0,
        stale_after: float | None = None,
        queue_size: int = 256,
        notifier: ChangeNotifier | None = None,
        scheduler: Scheduler | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.pool = pool
        self.event_bus = event_bus or EventBus(sink=store.record_event)
        self.locks = ItemLockManager(self.event_bus)
        self.registry = BlockerRegistry(store)
        self.runtime = WorkerRuntime(
            store,
            pool,
            self.locks,
            self.registry,
            self.event_bus,
            completion,
            timeout=completion_timeout,
            on_settled=lambda item_id: self.submit("completion", item_id),
        )
        self.assignment = AssignmentPolicy(store, pool, self.locks, self.runtime, self.event_bus)
        self.gate = ApprovalGate(
            store,
            self.locks,
            self.event_bus,
            task_generator=task_generator,
            on_change=self.submit,
        )
        self.analyzer = analyzer or ManualIntake()
        self.gateway = LogMessagingGateway(self.event_bus)
        self.stale_after = stale_after if stale_after is not None else completion_timeout * 3
        self.notifier = notifier
        self.scheduler = scheduler
        self._clock = clock

        self._queue: asyncio.Queue[Trigger] = asyncio.Queue(maxsize=queue_size)
        self._outstanding = 0
        self._dispatcher: asyncio.Task[None] | None = None
        self._prepared = False

        if self.notifier is not None:
            self.notifier.subscribe(self._on_change)

    @classmethod
    def from_config(
        cls,
        config: Config,
        store: StateStore | None = None,
        completion: CompletionService | None = None,
        **kwargs: Any,
    ) -> "Orchestrator":
        """Build a fully wired orchestrator from configuration."""
        store = store or create_store(config)
        pool = WorkerPool(load_workers(config))
        notifier = ChangeNotifier(
            store,
            buckets=(Bucket.PENDING, Bucket.BACKLOG, Bucket.ACTIVE),
            settle_seconds=config.settle_seconds,
            poll_interval=config.poll_interval,
        )
        orchestrator = cls(
            store,
            pool,
            completion or build_completion_service(config),
            completion_timeout=config.completion_timeout,
            stale_after=config.stale_after_seconds,
            queue_size=config.queue_size,
            notifier=notifier,
            **kwargs,
        )
        fixed = [
            FixedTimeTrigger.parse(name, schedule)
            for name, schedule in (
                ("report:daily", config.daily_report),
                ("report:weekly", config.weekly_report),
            )
            if schedule
        ]
        orchestrator.scheduler = Scheduler(
            orchestrator.submit, tick_interval=config.tick_interval, fixed=fixed
        )
        return orchestrator

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def prepare(self) -> None:
        """Initialize the store, load blockers and rebuild worker workloads."""
        if self._prepared:
            return
        await self.store.initialize()
        await self.registry.load()
        await self.recover()
        self._prepared = True

    async def start(self, with_notifier: bool = True, with_scheduler: bool = True) -> None:
        await self.prepare()
        self.gateway.attach()
        if self._dispatcher is None:
            self._dispatcher = asyncio.create_task(self._dispatch_loop(), name="dispatcher")
        if with_notifier and self.notifier is not None:
            await self.notifier.start()
        if with_scheduler and self.scheduler is not None:
            await self.scheduler.start()
        self.submit("startup")
        logger.info("Orchestrator started with %d worker(s)", len(self.pool.snapshot()))

    async def stop(self, cancel_inflight: bool = True) -> None:
        if self.scheduler is not None:
            await self.scheduler.stop()
        if self.notifier is not None:
            await self.notifier.stop()
        if self._dispatcher is not None:
            self._dispatcher.cancel()
            try:
                await self._dispatcher
            except asyncio.CancelledError:
                pass
            self._dispatcher = None
        await self.runtime.shutdown(cancel=cancel_inflight)
        self.gateway.detach()
        logger.info("Orchestrator stopped")

    async def recover(self) -> dict[str, int]:
        """Rebuild workloads from active tasks after a restart.

        Active tasks assigned to a worker that is no longer configured are
        unassigned so the rework scan can pick them up.
        """
        counts: dict[str, int] = {}
        for item_id in await self.store.list(Bucket.ACTIVE):
            try:
                item = await self.store.read(Bucket.ACTIVE, item_id)
            except _ITEM_ERRORS as exc:
                logger.error("Recovery could not read %s: %s", item_id, exc)
                continue
            worker_id = item.assigned_worker
            if worker_id is None:
                continue
            if worker_id in self.pool:
                counts[worker_id] = counts.get(worker_id, 0) + 1
                continue
            logger.warning("%s was assigned to unknown worker %s; unassigning", item_id, worker_id)
            item.assigned_worker = None
            item.append_entry("taskrelay", f"Worker {worker_id} is not configured; returned for rework")
            await self.store.write(Bucket.ACTIVE, item_id, item)
        await self.pool.restore(counts)
        return counts

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def submit(self, reason: str, item_id: str | None = None) -> bool:
        """Queue a trigger; returns False if the queue is full."""
        try:
            self._queue.put_nowait(Trigger(reason, item_id))
        except asyncio.QueueFull:
            logger.debug("Trigger queue full; dropping %s (an evaluation is already pending)", reason)
            return False
        self._outstanding += 1
        return True

    async def wait_idle(self) -> None:
        """Wait until the queue is empty and no delegated work is running.

        Requires a started dispatcher.
        """
        while self._outstanding or self.runtime.running():
            await self._queue.join()
            await self.runtime.drain()

    async def handle(self, trigger: Trigger) -> None:
        if trigger.is_report:
            await self.publish_report(trigger.reason.split(":", 1)[1])
            return
        if trigger.reason == f"modified:{Bucket.ACTIVE.value}" and trigger.item_id:
            await self._report_progress(trigger.item_id)
        await self.evaluate(trigger.reason)

    async def evaluate(self, reason: str = "manual") -> ScanSummary:
        """Re-examine the store and advance everything that can move."""
        summary = ScanSummary()
        await self.registry.refresh()
        await self._intake_requests()
        await self._requeue_cleared()
        await self._block_stale()
        await self.assignment.scan_rework(summary)
        await self.assignment.scan_backlog(summary)
        logger.debug(
            "Evaluation (%s): %d assigned, %d waiting on dependencies, %d waiting on capacity",
            reason,
            len(summary.assigned),
            len(summary.waiting_on_dependencies),
            len(summary.waiting_on_capacity),
        )
        return summary

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    async def add_item(self, item: WorkItem) -> Bucket:
        """Place a new task in backlog or a new request in pending."""
        bucket = Bucket.PENDING if item.kind is ItemKind.REQUEST else Bucket.BACKLOG
        existing = await self.store.locate(item.id)
        if existing is not None:
            raise ValueError(f"{item.id} already exists in {existing.value}")
        await self.store.write(bucket, item.id, item)
        logger.info("Added %s %s to %s", item.kind.value, item.id, bucket.value)
        self.submit("created", item.id)
        return bucket

    async def approve(self, item_id: str, approver: str = "operator") -> dict:
        return await self.gate.approve(item_id, approver)

    async def reject(self, item_id: str, feedback: str, reviewer: str = "operator") -> dict:
        return await self.gate.reject(item_id, feedback, reviewer)

    async def clear_blocker(
        self, item_id: str, operator: str = "operator", resolution: str | None = None
    ) -> dict:
        """Clear an item's blockers and return it to backlog if it is blocked."""
        async with self.locks.hold(item_id):
            bucket = await self.store.locate(item_id)
            await self.registry.refresh()
            if self.registry.has_open(item_id):
                cleared = await self.registry.clear(item_id, resolution)
            elif bucket is Bucket.BLOCKED and not self.registry.has_any(item_id):
                cleared = []
            else:
                raise BlockerNotFoundError(item_id, "no open blocker")
            requeued = False
            if bucket is Bucket.BLOCKED:
                note = f"Blocker cleared by {operator}"
                if resolution:
                    note += f" ({resolution})"
                await self._requeue(item_id, f"{note}; returned to backlog")
                requeued = True

        await self.event_bus.publish(
            "blocker_cleared",
            {
                "item_id": item_id,
                "operator": operator,
                "resolution": resolution,
                "requeued": requeued,
            },
        )
        self.submit("blocker_cleared", item_id)
        return {"item_id": item_id, "cleared": len(cleared), "requeued": requeued}

    async def escalate_blocker(self, item_id: str, operator: str = "operator") -> dict:
        """Flag an item's open blockers as urgent and notify the operator channel.

        Escalating twice publishes nothing the second time.
        """
        escalated = await self.registry.escalate(item_id)
        if escalated:
            latest = escalated[-1]
            await self.event_bus.publish(
                "blocker_escalated",
                {
                    "item_id": item_id,
                    "operator": operator,
                    "worker_id": latest.worker_id,
                    "severity": latest.severity.value,
                    "error": latest.error,
                },
            )
        return {"item_id": item_id, "escalated": len(escalated)}

    def release_quarantine(self, item_id: str) -> bool:
        released = self.locks.release_quarantine(item_id)
        if released:
            self.submit("quarantine_released", item_id)
        return released

    async def get_item(self, item_id: str) -> tuple[Bucket, WorkItem]:
        bucket = await self.store.locate(item_id)
        if bucket is None:
            raise ItemNotFoundError(Bucket.BACKLOG, item_id)
        return bucket, await self.store.read(bucket, item_id)

    async def stale_items(self) -> list[str]:
        """Active items untouched longer than the staleness threshold."""
        now = self._clock()
        return sorted(
            item_id
            for item_id, stamp in (await self.store.snapshot(Bucket.ACTIVE)).items()
            if now - stamp > self.stale_after and not self.runtime.is_running(item_id)
        )

    async def status_report(self) -> StatusReport:
        await self.registry.refresh()
        return await build_status_report(
            self.store,
            self.registry,
            self.pool,
            stale_items=await self.stale_items(),
            now=self._clock(),
        )

    async def publish_report(self, kind: str = "manual") -> StatusReport:
        report = await self.status_report()
        await self.event_bus.publish(
            "status_report",
            {"kind": kind, "text": report.render(), "report": report.model_dump(mode="json")},
        )
        return report

    def worker_statuses(self) -> list[dict]:
        return self.pool.statuses(self.registry.has_open)

    # ------------------------------------------------------------------
    # Evaluation steps
    # ------------------------------------------------------------------

    async def _intake_requests(self) -> None:
        for item_id in await self.store.list(Bucket.PENDING):
            try:
                await self._intake(item_id)
            except _ITEM_ERRORS as exc:
                logger.error("Intake of %s failed: %s", item_id, exc)

    async def _intake(self, item_id: str) -> None:
        async with self.locks.hold(item_id):
            result = await self._move(item_id, Bucket.PENDING, Bucket.IN_ANALYSIS)
            if result is not MoveResult.MOVED:
                return
            item = await self.store.read(Bucket.IN_ANALYSIS, item_id)
            try:
                note = await self.analyzer.analyze(item)
            except Exception as exc:
                logger.error("Request analyzer failed on %s: %s", item_id, exc)
                note = f"Analysis failed: {exc}"
            if note:
                item.append_entry("taskrelay", note)
                await self.store.write(Bucket.IN_ANALYSIS, item_id, item)
        logger.info("Request %s taken into analysis", item_id)
        await self.event_bus.publish("request_received", {"item_id": item_id, "title": item.title})

    async def _requeue_cleared(self) -> None:
        for item_id in await self.store.list(Bucket.BLOCKED):
            if not self.registry.has_any(item_id) or self.registry.has_open(item_id):
                continue
            try:
                async with self.locks.hold(item_id):
                    await self._requeue(item_id, "All blockers cleared; returned to backlog")
            except _ITEM_ERRORS as exc:
                logger.error("Requeue of %s failed: %s", item_id, exc)

    async def _block_stale(self) -> None:
        for item_id in await self.stale_items():
            try:
                item = await self.store.read(Bucket.ACTIVE, item_id)
            except _ITEM_ERRORS as exc:
                logger.debug("Stale check skipped %s: %s", item_id, exc)
                continue
            if item.assigned_worker is None:
                continue
            logger.warning("%s untouched for over %gs; treating as blocked", item_id, self.stale_after)
            outcome = WorkOutcome.failure(
                "stale",
                details=(
                    f"No progress from {item.assigned_worker} for more than "
                    f"{self.stale_after:g}s (last update {item.updated_at.isoformat()})"
                ),
                severity=Severity.MEDIUM,
            )
            try:
                await self.runtime.settle(item_id, item.assigned_worker, outcome, reserved=False)
            except _ITEM_ERRORS as exc:
                logger.error("Could not block stale %s: %s", item_id, exc)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _report_progress(self, item_id: str) -> None:
        """Publish the latest externally written entry of an active task."""
        try:
            item = await self.store.read(Bucket.ACTIVE, item_id)
        except _ITEM_ERRORS as exc:
            logger.debug("No progress for %s: %s", item_id, exc)
            return
        entries = item.log_entries()
        if not entries or entries[-1].author == "taskrelay":
            return
        await self.event_bus.publish(
            "task_progress",
            {
                "item_id": item_id,
                "title": item.title,
                "worker_id": item.assigned_worker,
                "author": entries[-1].author,
                "note": entries[-1].text,
            },
        )

    async def _requeue(self, item_id: str, note: str) -> None:
        """Move a blocked item back to backlog. Caller holds the item lock."""
        item = await self.store.read(Bucket.BLOCKED, item_id)
        item.append_entry("taskrelay", note)
        await self.store.write(Bucket.BLOCKED, item_id, item)
        await self._move(item_id, Bucket.BLOCKED, Bucket.BACKLOG)
        logger.info("%s returned to backlog", item_id)

    async def _move(self, item_id: str, source: Bucket, target: Bucket) -> MoveResult:
        try:
            return await self.store.move_atomic(source, target, item_id)
        except StoreInconsistencyError as exc:
            await self.locks.quarantine(item_id, str(exc))
            raise

    def _on_change(self, event: ChangeEvent) -> None:
        self.submit(f"{event.kind}:{event.bucket.value}", event.item_id)

    async def _dispatch_loop(self) -> None:
        while True:
            trigger = await self._queue.get()
            try:
                await self.handle(trigger)
            except Exception:
                logger.exception("Handling trigger %s failed", trigger.reason)
            finally:
                self._outstanding -= 1
                self._queue.task_done()
