from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Callable

import pytest

from taskrelay.db.database import SqliteStore
from taskrelay.db.files import FileStore
from taskrelay.db.memory import MemoryStore
from taskrelay.models.outcome import WorkOutcome
from taskrelay.models.work_item import WorkItem
from taskrelay.models.worker import Worker
from taskrelay.services.event_bus import EventBus
from taskrelay.services.intake import new_request, new_task
from taskrelay.services.orchestrator import Orchestrator
from taskrelay.services.worker_pool import WorkerPool
from taskrelay.utils.config import Config


class ScriptedCompletion:
    """Completion service fake with per-item outcomes and optional gates.

    A gated item's call waits until its event is set, which keeps the task
    in flight for as long as a test needs.
    """

    def __init__(self, default: object | None = None):
        self.default = default if default is not None else WorkOutcome.ok("Implemented")
        self.outcomes: dict[str, object] = {}
        self.gates: dict[str, asyncio.Event] = {}
        self.hold_all = False
        self._held = asyncio.Event()
        self.calls: list[tuple[str, str]] = []

    def gate(self, item_id: str) -> asyncio.Event:
        return self.gates.setdefault(item_id, asyncio.Event())

    def release_all(self) -> None:
        self.hold_all = False
        self._held.set()
        for event in self.gates.values():
            event.set()

    async def complete(self, item: WorkItem, worker: Worker) -> object:
        self.calls.append((item.id, worker.id))
        gate = self.gates.get(item.id)
        if gate is not None:
            await gate.wait()
        if self.hold_all:
            await self._held.wait()
        result = self.outcomes.get(item.id, self.default)
        if isinstance(result, BaseException):
            raise result
        return result


@pytest.fixture
def memory_store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
async def sqlite_store(tmp_path: Path) -> SqliteStore:
    store = SqliteStore(tmp_path / "test.db")
    await store.initialize()
    yield store  # type: ignore[misc]
    await store.close()


@pytest.fixture
async def file_store(tmp_path: Path) -> FileStore:
    store = FileStore(tmp_path / "items")
    await store.initialize()
    return store


@pytest.fixture(params=["memory", "sqlite", "files"])
async def store(request: pytest.FixtureRequest, tmp_path: Path):
    if request.param == "memory":
        adapter = MemoryStore()
    elif request.param == "sqlite":
        adapter = SqliteStore(tmp_path / "param.db")
    else:
        adapter = FileStore(tmp_path / "param-items")
    await adapter.initialize()
    yield adapter
    await adapter.close()


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def config(tmp_path: Path) -> Config:
    return Config(
        store="memory",
        db_path=tmp_path / "taskrelay.db",
        data_dir=tmp_path / "items",
        workers_file=None,
        anthropic_api_key=None,
    )


@pytest.fixture
def workers() -> list[Worker]:
    return [
        Worker(id="backend-agent", capabilities={"backend", "api"}, max_capacity=2),
        Worker(id="architect-agent", capabilities={"architecture", "design"}, max_capacity=1),
    ]


@pytest.fixture
def pool(workers: list[Worker]) -> WorkerPool:
    return WorkerPool(workers)


@pytest.fixture
def completion() -> ScriptedCompletion:
    return ScriptedCompletion()


@pytest.fixture
def make_task() -> Callable[..., WorkItem]:
    def _make(item_id: str, capability: str = "backend", **kwargs) -> WorkItem:
        kwargs.setdefault("body", f"Implement {item_id}.")
        return new_task(kwargs.pop("title", f"Task {item_id}"), capability, item_id=item_id, **kwargs)

    return _make


@pytest.fixture
def make_request() -> Callable[..., WorkItem]:
    def _make(item_id: str, **kwargs) -> WorkItem:
        kwargs.setdefault("body", "Please build this.")
        return new_request(kwargs.pop("title", f"Request {item_id}"), item_id=item_id, **kwargs)

    return _make


@pytest.fixture
async def orchestrator(
    memory_store: MemoryStore,
    pool: WorkerPool,
    completion: ScriptedCompletion,
    event_bus: EventBus,
) -> Orchestrator:
    orch = Orchestrator(
        memory_store,
        pool,
        completion,
        event_bus=event_bus,
        completion_timeout=5.0,
    )
    await orch.prepare()
    yield orch  # type: ignore[misc]
    completion.release_all()
    await orch.stop()
