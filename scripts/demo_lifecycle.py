#!/usr/bin/env python3
"""Demo: one request flowing through taskrelay with simulated workers.

Runs the orchestrator against an in-memory store. The completion service is
simulated: the first attempt at the API task fails, the operator clears the
blocker, and the retry goes through review.
"""

import asyncio
import sys
from pathlib import Path

# Add src to path so we can import without installing
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from taskrelay.db.memory import MemoryStore
from taskrelay.models.outcome import WorkOutcome
from taskrelay.models.work_item import Bucket
from taskrelay.models.worker import Worker
from taskrelay.services.event_bus import EventBus
from taskrelay.services.intake import new_request, new_task
from taskrelay.services.messaging import format_event
from taskrelay.services.orchestrator import Orchestrator
from taskrelay.services.worker_pool import WorkerPool


class SimulatedWorkers:
    """Completes every task after a short delay; the API task fails once."""

    def __init__(self):
        self.attempts: dict[str, int] = {}

    async def complete(self, item, worker):
        await asyncio.sleep(0.2)
        self.attempts[item.id] = self.attempts.get(item.id, 0) + 1
        if item.id.endswith("-API") and self.attempts[item.id] == 1:
            return WorkOutcome.failure(
                "tests failed",
                details="test_signup.py::test_duplicate_email FAILED\nassert 500 == 409",
            )
        return WorkOutcome.ok(f"{worker.id} finished {item.title}")


class SplitIntoTasks:
    async def generate(self, request):
        design = new_task(f"Design {request.title}", "design", item_id=f"{request.id}-DESIGN")
        api = new_task(
            f"Build {request.title} API",
            "backend",
            item_id=f"{request.id}-API",
            dependencies=[design.id],
            requires_review=False,
        )
        return [design, api]


async def main():
    bus = EventBus()

    async def show(event):
        print(f"  📣 {format_event(event)}")

    bus.subscribe("*", show)

    store = MemoryStore()
    pool = WorkerPool(
        [
            Worker(id="architect-agent", capabilities={"design"}, max_capacity=1),
            Worker(id="backend-agent", capabilities={"backend"}, max_capacity=2),
        ]
    )
    orch = Orchestrator(
        store,
        pool,
        SimulatedWorkers(),
        event_bus=bus,
        task_generator=SplitIntoTasks(),
        completion_timeout=10,
    )
    await orch.start(with_notifier=False, with_scheduler=False)

    print("=" * 60)
    print("taskrelay lifecycle demo")
    print("=" * 60)

    print("\n[operator] New request: Signup")
    await orch.add_item(new_request("Signup", item_id="REQ-1", body="Email + password signup"))
    await orch.wait_idle()

    print("\n[operator] Approving REQ-1")
    await orch.approve("REQ-1", approver="lead")
    await orch.wait_idle()

    print("\n[operator] Approving the design")
    await orch.approve("REQ-1-DESIGN", approver="lead")
    await orch.wait_idle()

    for summary in orch.registry.summaries():
        print(f"\n[operator] ❌ {summary['item_id']} blocked: {summary['error']}")
        print(f"           {summary['details']}")
        await orch.clear_blocker(summary["item_id"], operator="lead")
    await orch.wait_idle()

    print()
    print((await orch.status_report()).render())
    print("Done:", ", ".join(await store.list(Bucket.DONE)))

    await orch.stop()


if __name__ == "__main__":
    asyncio.run(main())
