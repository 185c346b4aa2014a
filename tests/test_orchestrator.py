from __future__ import annotations

import asyncio
import random
import time
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable

import pytest

from taskrelay.db.base import ItemNotFoundError
from taskrelay.db.database import SqliteStore
from taskrelay.db.memory import MemoryStore
from taskrelay.models.blocker import Severity
from taskrelay.models.outcome import WorkOutcome
from taskrelay.models.work_item import Bucket, WorkItem
from taskrelay.models.worker import Worker
from taskrelay.services.blocker_registry import BlockerNotFoundError
from taskrelay.services.event_bus import EventBus
from taskrelay.services.intake import new_task
from taskrelay.services.orchestrator import Orchestrator, Trigger
from taskrelay.services.worker_pool import WorkerPool
from taskrelay.utils.config import Config

from conftest import ScriptedCompletion


class SplitGenerator:
    """Turns every approved request into an API task and a schema task."""

    async def generate(self, request: WorkItem) -> list[WorkItem]:
        return [
            new_task(f"{request.title}: API", "backend", item_id=f"{request.id}-API"),
            new_task(f"{request.title}: schema", "backend", item_id=f"{request.id}-SCHEMA"),
        ]


def single_worker_pool(capacity: int = 2) -> WorkerPool:
    return WorkerPool([Worker(id="backend-agent", capabilities={"backend"}, max_capacity=capacity)])


async def wait_settled(orch: Orchestrator, item_id: str) -> None:
    while orch.runtime.is_running(item_id):
        await asyncio.sleep(0.01)


@pytest.fixture
async def single_worker(
    memory_store: MemoryStore, completion: ScriptedCompletion, event_bus: EventBus
) -> Orchestrator:
    orch = Orchestrator(
        memory_store,
        single_worker_pool(),
        completion,
        event_bus=event_bus,
        task_generator=SplitGenerator(),
        completion_timeout=5.0,
    )
    await orch.prepare()
    yield orch  # type: ignore[misc]
    completion.release_all()
    await orch.stop()


async def seed_backlog(
    store: MemoryStore, make_task: Callable[..., WorkItem], item_ids: list[str]
) -> None:
    base = datetime(2024, 1, 1)
    for n, item_id in enumerate(item_ids):
        task = make_task(item_id)
        task.created_at = base + timedelta(minutes=n)
        await store.write(Bucket.BACKLOG, item_id, task)


@pytest.mark.asyncio
class TestEvaluation:
    async def test_capacity_bound_and_refill(
        self,
        memory_store: MemoryStore,
        single_worker: Orchestrator,
        completion: ScriptedCompletion,
        make_task: Callable[..., WorkItem],
    ) -> None:
        for item_id in ("TASK-1", "TASK-2", "TASK-3"):
            completion.gate(item_id)
        await seed_backlog(memory_store, make_task, ["TASK-1", "TASK-2", "TASK-3"])

        summary = await single_worker.evaluate()

        assert summary.assigned == ["TASK-1", "TASK-2"]
        assert summary.waiting_on_capacity == ["TASK-3"]
        assert await memory_store.list(Bucket.ACTIVE) == ["TASK-1", "TASK-2"]
        assert single_worker.pool.get("backend-agent").workload == 2

        completion.gate("TASK-1").set()
        await wait_settled(single_worker, "TASK-1")
        assert await memory_store.locate("TASK-1") is Bucket.REVIEW
        assert single_worker.pool.get("backend-agent").workload == 1

        summary = await single_worker.evaluate()
        assert summary.assigned == ["TASK-3"]
        assert single_worker.pool.get("backend-agent").workload == 2

    @pytest.mark.parametrize("seed", [1, 7, 42, 1234])
    async def test_concurrent_evaluations_respect_capacity(
        self,
        seed: int,
        memory_store: MemoryStore,
        single_worker: Orchestrator,
        completion: ScriptedCompletion,
        make_task: Callable[..., WorkItem],
    ) -> None:
        completion.hold_all = True
        item_ids = [f"TASK-{n}" for n in range(8)]
        random.Random(seed).shuffle(item_ids)
        await seed_backlog(memory_store, make_task, item_ids)

        calls = [single_worker.evaluate for _ in range(4)]
        calls += [
            lambda item_id=item_id: single_worker.assignment.try_assign(item_id)
            for item_id in item_ids[:3]
        ]
        random.Random(seed).shuffle(calls)
        await asyncio.gather(*(call() for call in calls))

        active = await memory_store.list(Bucket.ACTIVE)
        assert len(active) == 2
        assert single_worker.pool.get("backend-agent").workload == 2
        assert sorted(single_worker.runtime.running()) == sorted(active)
        assert len(await memory_store.list(Bucket.BACKLOG)) == 6

    async def test_failure_blocks_and_frees_capacity(
        self,
        memory_store: MemoryStore,
        single_worker: Orchestrator,
        completion: ScriptedCompletion,
        event_bus: EventBus,
        make_task: Callable[..., WorkItem],
    ) -> None:
        details = "src/api.py:12: error: missing return\n" * 20
        completion.outcomes["TASK-1"] = WorkOutcome.failure("compile failed", details=details)
        await memory_store.write(Bucket.BACKLOG, "TASK-1", make_task("TASK-1"))

        await single_worker.evaluate()
        await single_worker.runtime.drain()

        assert await memory_store.locate("TASK-1") is Bucket.BLOCKED
        assert single_worker.pool.get("backend-agent").workload == 0
        (status,) = single_worker.worker_statuses()
        assert status["status"] == "blocked"
        (blocked_event,) = event_bus.recent(event_type="task_blocked")
        assert blocked_event["error"] == "compile failed"
        assert blocked_event["details"] == details

        # An open blocker keeps the item out of the backlog.
        await single_worker.evaluate()
        assert await memory_store.locate("TASK-1") is Bucket.BLOCKED

        result = await single_worker.clear_blocker("TASK-1", operator="lead")
        assert result == {"item_id": "TASK-1", "cleared": 1, "requeued": True}
        assert await memory_store.locate("TASK-1") is Bucket.BACKLOG
        assert single_worker.worker_statuses()[0]["status"] == "idle"
        item = await memory_store.read(Bucket.BACKLOG, "TASK-1")
        assert "Blocker cleared by lead" in item.log_entries()[-1].text

    async def test_exception_and_ambiguous_results_block(
        self,
        memory_store: MemoryStore,
        single_worker: Orchestrator,
        completion: ScriptedCompletion,
        make_task: Callable[..., WorkItem],
    ) -> None:
        completion.outcomes["TASK-1"] = RuntimeError("worker crashed")
        completion.outcomes["TASK-2"] = "looks done to me"
        await seed_backlog(memory_store, make_task, ["TASK-1", "TASK-2"])

        await single_worker.evaluate()
        await single_worker.runtime.drain()

        errors = {r.item_id: r.error for r in single_worker.registry.list()}
        assert errors == {"TASK-1": "RuntimeError: worker crashed", "TASK-2": "ambiguous outcome"}
        assert single_worker.pool.get("backend-agent").workload == 0

    async def test_request_intake(
        self,
        memory_store: MemoryStore,
        single_worker: Orchestrator,
        event_bus: EventBus,
        make_request: Callable[..., WorkItem],
    ) -> None:
        assert await single_worker.add_item(make_request("REQ-1")) is Bucket.PENDING

        await single_worker.evaluate()

        request = await memory_store.read(Bucket.IN_ANALYSIS, "REQ-1")
        assert request.log_entries()[-1].text == "Awaiting operator review"
        assert event_bus.recent(event_type="request_received")[0]["item_id"] == "REQ-1"

    async def test_rework_after_rejection(
        self,
        memory_store: MemoryStore,
        single_worker: Orchestrator,
        completion: ScriptedCompletion,
        make_task: Callable[..., WorkItem],
    ) -> None:
        await memory_store.write(Bucket.BACKLOG, "TASK-1", make_task("TASK-1"))
        await single_worker.evaluate()
        await single_worker.runtime.drain()
        assert await memory_store.locate("TASK-1") is Bucket.REVIEW

        await single_worker.reject("TASK-1", "Handle empty input", reviewer="lead")
        summary = await single_worker.evaluate()
        assert summary.assigned == ["TASK-1"]
        await single_worker.runtime.drain()

        assert await memory_store.locate("TASK-1") is Bucket.REVIEW
        assert [c[0] for c in completion.calls] == ["TASK-1", "TASK-1"]
        texts = [e.text for e in (await memory_store.read(Bucket.REVIEW, "TASK-1")).log_entries()]
        assert "Rejected:\nHandle empty input" in texts
        assert "Rework assigned to backend-agent" in texts


@pytest.mark.asyncio
class TestRecoveryAndStaleness:
    async def test_recover_restores_workloads(
        self, memory_store: MemoryStore, completion: ScriptedCompletion, make_task: Callable[..., WorkItem]
    ) -> None:
        completion.hold_all = True
        for item_id, worker_id in (("TASK-1", "backend-agent"), ("TASK-2", "ghost-agent")):
            task = make_task(item_id)
            task.assigned_worker = worker_id
            await memory_store.write(Bucket.ACTIVE, item_id, task)

        orch = Orchestrator(memory_store, single_worker_pool(), completion, completion_timeout=5.0)
        try:
            await orch.prepare()
            assert orch.pool.get("backend-agent").workload == 1

            orphan = await memory_store.read(Bucket.ACTIVE, "TASK-2")
            assert orphan.assigned_worker is None
            assert "ghost-agent is not configured" in orphan.log_entries()[-1].text

            summary = await orch.evaluate()
            assert summary.assigned == ["TASK-2"]
            assert orch.pool.get("backend-agent").workload == 2
        finally:
            completion.release_all()
            await orch.stop()

    async def test_stale_active_task_is_blocked(
        self, memory_store: MemoryStore, completion: ScriptedCompletion, make_task: Callable[..., WorkItem]
    ) -> None:
        task = make_task("TASK-1")
        task.assigned_worker = "backend-agent"
        await memory_store.write(Bucket.ACTIVE, "TASK-1", task)

        orch = Orchestrator(
            memory_store,
            single_worker_pool(),
            completion,
            completion_timeout=5.0,
            stale_after=60.0,
            clock=lambda: time.time() + 3600,
        )
        try:
            await orch.prepare()
            assert await orch.stale_items() == ["TASK-1"]

            await orch.evaluate()

            assert await memory_store.locate("TASK-1") is Bucket.BLOCKED
            (record,) = orch.registry.list()
            assert record.error == "stale"
            assert record.severity is Severity.MEDIUM
            assert orch.pool.get("backend-agent").workload == 0
        finally:
            await orch.stop()

    async def test_unassigned_stale_task_is_left_for_rework(
        self, memory_store: MemoryStore, completion: ScriptedCompletion, make_task: Callable[..., WorkItem]
    ) -> None:
        completion.hold_all = True
        await memory_store.write(Bucket.ACTIVE, "TASK-1", make_task("TASK-1"))
        orch = Orchestrator(
            memory_store,
            single_worker_pool(),
            completion,
            stale_after=60.0,
            clock=lambda: time.time() + 3600,
        )
        try:
            await orch.prepare()
            summary = await orch.evaluate()
            assert summary.assigned == ["TASK-1"]
            assert orch.registry.list() == []
        finally:
            completion.release_all()
            await orch.stop()


@pytest.mark.asyncio
class TestOperatorActions:
    async def test_add_item_rejects_duplicates(
        self, orchestrator: Orchestrator, make_task: Callable[..., WorkItem]
    ) -> None:
        assert await orchestrator.add_item(make_task("TASK-1")) is Bucket.BACKLOG
        with pytest.raises(ValueError, match="already exists"):
            await orchestrator.add_item(make_task("TASK-1"))

    async def test_get_item(self, orchestrator: Orchestrator, make_task: Callable[..., WorkItem]) -> None:
        await orchestrator.add_item(make_task("TASK-1"))
        bucket, item = await orchestrator.get_item("TASK-1")
        assert bucket is Bucket.BACKLOG
        assert item.title == "Task TASK-1"
        with pytest.raises(ItemNotFoundError):
            await orchestrator.get_item("TASK-404")

    async def test_clear_blocker_edge_cases(
        self,
        memory_store: MemoryStore,
        orchestrator: Orchestrator,
        make_task: Callable[..., WorkItem],
    ) -> None:
        await memory_store.write(Bucket.BACKLOG, "TASK-1", make_task("TASK-1"))
        with pytest.raises(BlockerNotFoundError):
            await orchestrator.clear_blocker("TASK-1")

        # Blocked by hand, with no recorded failure.
        await memory_store.write(Bucket.BLOCKED, "TASK-2", make_task("TASK-2"))
        result = await orchestrator.clear_blocker("TASK-2")
        assert result == {"item_id": "TASK-2", "cleared": 0, "requeued": True}
        assert await memory_store.locate("TASK-2") is Bucket.BACKLOG

    async def test_queue_overflow_drops_trigger(
        self, memory_store: MemoryStore, pool: WorkerPool, completion: ScriptedCompletion
    ) -> None:
        orch = Orchestrator(memory_store, pool, completion, queue_size=1)
        assert orch.submit("tick") is True
        assert orch.submit("tick") is False

    async def test_release_quarantine_unknown(self, orchestrator: Orchestrator) -> None:
        assert orchestrator.release_quarantine("TASK-1") is False


@pytest.mark.asyncio
class TestDispatcher:
    async def test_approval_flows_through_to_review(
        self,
        memory_store: MemoryStore,
        single_worker: Orchestrator,
        event_bus: EventBus,
        make_request: Callable[..., WorkItem],
    ) -> None:
        await single_worker.start(with_notifier=False, with_scheduler=False)
        await single_worker.add_item(make_request("REQ-1", title="Signup"))
        await single_worker.wait_idle()
        assert await memory_store.locate("REQ-1") is Bucket.IN_ANALYSIS

        result = await single_worker.approve("REQ-1", approver="lead")
        assert result["generated"] == ["REQ-1-API", "REQ-1-SCHEMA"]
        await single_worker.wait_idle()

        assert await memory_store.list(Bucket.REVIEW) == ["REQ-1-API", "REQ-1-SCHEMA"]
        assert await memory_store.locate("REQ-1") is Bucket.APPROVED
        assert single_worker.pool.get("backend-agent").workload == 0
        kinds = [e["type"] for e in event_bus.recent(limit=0)]
        assert kinds.index("request_approved") < kinds.index("task_assigned")

    async def test_report_trigger_publishes(
        self, orchestrator: Orchestrator, event_bus: EventBus, make_task: Callable[..., WorkItem]
    ) -> None:
        await orchestrator.add_item(make_task("TASK-1", capability="frontend"))
        await orchestrator.start(with_notifier=False, with_scheduler=False)

        orchestrator.submit("report:daily")
        await orchestrator.wait_idle()

        (event,) = event_bus.recent(event_type="status_report")
        assert event["kind"] == "daily"
        assert "backlog 1" in event["text"]
        assert event["report"]["total_tasks"] == 1

    async def test_external_edit_publishes_progress(
        self,
        memory_store: MemoryStore,
        orchestrator: Orchestrator,
        event_bus: EventBus,
        make_task: Callable[..., WorkItem],
    ) -> None:
        task = make_task("TASK-1")
        task.assigned_worker = "backend-agent"
        task.append_entry("backend-agent", "Schema migrated, wiring handlers")
        await memory_store.write(Bucket.ACTIVE, "TASK-1", task)

        await orchestrator.handle(Trigger("modified:active", "TASK-1"))
        await orchestrator.handle(Trigger("modified:active", "GHOST"))

        (event,) = event_bus.recent(event_type="task_progress")
        assert event["note"] == "Schema migrated, wiring handlers"
        assert event["worker_id"] == "backend-agent"

    async def test_from_config_wiring(self, config: Config, completion: ScriptedCompletion) -> None:
        orch = Orchestrator.from_config(config, completion=completion)

        assert Bucket.BACKLOG in orch.notifier.buckets
        assert [t.name for t in orch.scheduler.fixed] == ["report:daily", "report:weekly"]
        assert orch.scheduler.tick_interval == config.tick_interval
        assert orch.stale_after == config.stale_after_seconds
        assert "backend-agent" in orch.pool


@pytest.mark.asyncio
class TestSharedStore:
    async def test_blocker_cleared_by_another_process(
        self, tmp_path: Path, completion: ScriptedCompletion, make_task: Callable[..., WorkItem]
    ) -> None:
        path = tmp_path / "shared.db"
        daemon = Orchestrator(
            SqliteStore(path), single_worker_pool(), completion, completion_timeout=5.0
        )
        operator = Orchestrator(
            SqliteStore(path), single_worker_pool(), ScriptedCompletion(), completion_timeout=5.0
        )
        completion.outcomes["TASK-1"] = WorkOutcome.failure("compile failed")
        try:
            await daemon.prepare()
            await daemon.add_item(make_task("TASK-1"))
            await daemon.evaluate()
            await wait_settled(daemon, "TASK-1")
            assert daemon.registry.has_open("TASK-1")
            assert daemon.worker_statuses()[0]["status"] == "blocked"

            await operator.prepare()
            result = await operator.clear_blocker("TASK-1", resolution="pinned the compiler")
            assert result == {"item_id": "TASK-1", "cleared": 1, "requeued": True}

            report = await daemon.status_report()
            assert report.blockers == []
            assert not daemon.registry.has_open("TASK-1")
            assert daemon.worker_statuses()[0]["status"] == "idle"

            info = await daemon.registry.describe("TASK-1")
            assert info["open"] is False
            assert info["bucket"] == "backlog"
            assert info["blocker"]["resolution"] == "pinned the compiler"
            with pytest.raises(BlockerNotFoundError):
                await daemon.clear_blocker("TASK-1")
        finally:
            await operator.stop()
            await operator.store.close()
            await daemon.stop()
            await daemon.store.close()

    async def test_evaluation_sees_records_written_elsewhere(
        self, tmp_path: Path, completion: ScriptedCompletion, make_task: Callable[..., WorkItem]
    ) -> None:
        path = tmp_path / "shared.db"
        daemon = Orchestrator(SqliteStore(path), single_worker_pool(), completion)
        operator = Orchestrator(SqliteStore(path), single_worker_pool(), ScriptedCompletion())
        completion.outcomes["TASK-1"] = WorkOutcome.failure("compile failed")
        try:
            await daemon.prepare()
            await operator.prepare()
            await operator.add_item(make_task("TASK-1"))
            await daemon.evaluate()
            await wait_settled(daemon, "TASK-1")

            await operator.evaluate()
            assert operator.registry.has_open("TASK-1")
            (summary,) = (await operator.status_report()).blockers
            assert summary["error"] == "compile failed"
        finally:
            await operator.stop()
            await operator.store.close()
            await daemon.stop()
            await daemon.store.close()


@pytest.mark.asyncio
class TestEscalation:
    async def test_escalate_publishes_once(
        self,
        single_worker: Orchestrator,
        completion: ScriptedCompletion,
        event_bus: EventBus,
        make_task: Callable[..., WorkItem],
    ) -> None:
        completion.outcomes["TASK-1"] = WorkOutcome.failure("db down", severity=Severity.HIGH)
        await single_worker.add_item(make_task("TASK-1"))
        await single_worker.evaluate()
        await wait_settled(single_worker, "TASK-1")

        first = await single_worker.escalate_blocker("TASK-1", operator="lead")
        second = await single_worker.escalate_blocker("TASK-1", operator="lead")

        assert first == {"item_id": "TASK-1", "escalated": 1}
        assert second == {"item_id": "TASK-1", "escalated": 0}
        (event,) = event_bus.recent(event_type="blocker_escalated")
        assert event["item_id"] == "TASK-1"
        assert event["severity"] == "high"
        assert event["error"] == "db down"
        assert event["operator"] == "lead"

    async def test_escalate_without_open_blocker(self, single_worker: Orchestrator) -> None:
        with pytest.raises(BlockerNotFoundError):
            await single_worker.escalate_blocker("TASK-404")
