from __future__ import annotations

from typing import Callable

import pytest

from taskrelay.db.memory import MemoryStore
from taskrelay.models.work_item import Bucket, WorkItem
from taskrelay.services.approval_gate import ApprovalGate, InvalidTransitionError
from taskrelay.services.event_bus import EventBus
from taskrelay.services.intake import new_task
from taskrelay.services.lock_manager import ItemLockManager


class FixedGenerator:
    def __init__(self, titles: list[str]):
        self.titles = titles
        self.seen: list[str] = []

    async def generate(self, request: WorkItem) -> list[WorkItem]:
        self.seen.append(request.id)
        return [
            new_task(title, "backend", item_id=f"{request.id}-T{n}")
            for n, title in enumerate(self.titles, start=1)
        ]


@pytest.fixture
def changes() -> list[str]:
    return []


@pytest.fixture
def gate(memory_store: MemoryStore, event_bus: EventBus, changes: list[str]) -> ApprovalGate:
    return ApprovalGate(
        memory_store,
        ItemLockManager(event_bus),
        event_bus,
        task_generator=FixedGenerator(["API", "Schema"]),
        on_change=changes.append,
    )


@pytest.mark.asyncio
class TestApprovalGate:
    async def test_approve_task(
        self,
        memory_store: MemoryStore,
        gate: ApprovalGate,
        make_task: Callable[..., WorkItem],
    ) -> None:
        await memory_store.write(Bucket.REVIEW, "TASK-1", make_task("TASK-1"))

        result = await gate.approve("TASK-1", approver="lead")

        assert result == {"item_id": "TASK-1", "state": "done"}
        item = await memory_store.read(Bucket.DONE, "TASK-1")
        assert item.log_entries()[-1].author == "lead"

    async def test_reject_preserves_content_and_returns_to_active(
        self,
        memory_store: MemoryStore,
        gate: ApprovalGate,
        changes: list[str],
        make_task: Callable[..., WorkItem],
    ) -> None:
        task = make_task("TASK-1")
        task.append_entry("backend-agent", "Implemented")
        task.assigned_worker = "backend-agent"
        await memory_store.write(Bucket.REVIEW, "TASK-1", task)
        before = (await memory_store.read(Bucket.REVIEW, "TASK-1")).content
        feedback = "Missing validation on `email`.\n\n* add tests\n* handle empty input"

        result = await gate.reject("TASK-1", feedback)

        assert result["state"] == "active"
        item = await memory_store.read(Bucket.ACTIVE, "TASK-1")
        assert item.content.startswith(before)
        assert item.log_entries()[-1].text == f"Rejected:\n{feedback}"
        assert item.assigned_worker is None
        assert changes == ["rejected:TASK-1"]

        # Approval is only possible once the task is back in review.
        with pytest.raises(InvalidTransitionError):
            await gate.approve("TASK-1")
        await memory_store.move_atomic(Bucket.ACTIVE, Bucket.REVIEW, "TASK-1")
        assert (await gate.approve("TASK-1"))["state"] == "done"

    async def test_wrong_bucket_is_a_named_failure(
        self,
        memory_store: MemoryStore,
        gate: ApprovalGate,
        make_task: Callable[..., WorkItem],
    ) -> None:
        await memory_store.write(Bucket.BACKLOG, "TASK-1", make_task("TASK-1"))

        with pytest.raises(InvalidTransitionError) as exc_info:
            await gate.approve("TASK-1")
        assert exc_info.value.actual is Bucket.BACKLOG
        assert "review" in str(exc_info.value)
        assert "backlog" in str(exc_info.value)

        with pytest.raises(InvalidTransitionError) as exc_info:
            await gate.reject("GHOST", "nope")
        assert exc_info.value.actual is None

    async def test_approve_request_generates_tasks_immediately(
        self,
        memory_store: MemoryStore,
        gate: ApprovalGate,
        changes: list[str],
        event_bus: EventBus,
        make_request: Callable[..., WorkItem],
    ) -> None:
        await memory_store.write(Bucket.IN_ANALYSIS, "REQ-1", make_request("REQ-1"))

        result = await gate.approve("REQ-1")

        assert result["state"] == "approved"
        assert result["generated"] == ["REQ-1-T1", "REQ-1-T2"]
        assert await memory_store.list(Bucket.BACKLOG) == ["REQ-1-T1", "REQ-1-T2"]
        generated = await memory_store.read(Bucket.BACKLOG, "REQ-1-T1")
        assert generated.log_entries()[-1].text == "Generated from request REQ-1"
        assert changes == ["approved:REQ-1"]
        assert event_bus.recent(event_type="request_approved")[0]["generated"] == result["generated"]

    async def test_reject_request(
        self,
        memory_store: MemoryStore,
        gate: ApprovalGate,
        make_request: Callable[..., WorkItem],
    ) -> None:
        await memory_store.write(Bucket.IN_ANALYSIS, "REQ-1", make_request("REQ-1"))
        result = await gate.reject("REQ-1", "Out of scope")
        assert result["state"] == "rejected"
        assert await memory_store.list(Bucket.BACKLOG) == []
