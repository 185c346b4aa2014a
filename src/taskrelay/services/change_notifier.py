from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterable

from taskrelay.db.base import StateStore
from taskrelay.models.work_item import Bucket

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChangeEvent:
    kind: str  # "created" or "modified"
    bucket: Bucket
    item_id: str


@dataclass
class _Pending:
    kind: str
    bucket: Bucket
    last_seen: float


class ChangeNotifier:
    """Turns store modifications into debounced change events.

    Each poll compares ``snapshot()`` of the watched buckets with the last
    one. Changes to an item are held until the item has been quiet for
    ``settle_seconds``; a burst of writes yields a single event. The first
    poll only records a baseline.
    """

    def __init__(
        self,
        store: StateStore,
        buckets: Iterable[Bucket] = (Bucket.PENDING, Bucket.ACTIVE),
        settle_seconds: float = 1.5,
        poll_interval: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.buckets = tuple(buckets)
        self.settle_seconds = settle_seconds
        self.poll_interval = poll_interval
        self._clock = clock
        self._subscribers: list[Callable[[ChangeEvent], object]] = []
        self._seen: dict[Bucket, dict[str, float]] | None = None
        self._pending: dict[tuple[Bucket, str], _Pending] = {}
        self._task: asyncio.Task[None] | None = None

    def subscribe(self, callback: Callable[[ChangeEvent], object]) -> None:
        self._subscribers.append(callback)

    async def poll_once(self, now: float | None = None) -> list[ChangeEvent]:
        """Take one snapshot and emit every change that has settled."""
        now = self._clock() if now is None else now
        current = {bucket: await self.store.snapshot(bucket) for bucket in self.buckets}

        if self._seen is None:
            self._seen = current
            logger.debug(
                "Change notifier baseline: %s",
                {b.value: len(ids) for b, ids in current.items()},
            )
            return []

        for bucket, stamps in current.items():
            previous = self._seen.get(bucket, {})
            for item_id, stamp in stamps.items():
                if item_id not in previous:
                    kind = "created"
                elif stamp != previous[item_id]:
                    kind = "modified"
                else:
                    continue
                key = (bucket, item_id)
                pending = self._pending.get(key)
                if pending is None:
                    self._pending[key] = _Pending(kind, bucket, now)
                else:
                    # A created item modified during its burst stays "created".
                    pending.last_seen = now
        self._seen = current

        ready: list[ChangeEvent] = []
        for key, pending in list(self._pending.items()):
            if now - pending.last_seen >= self.settle_seconds:
                del self._pending[key]
                ready.append(ChangeEvent(pending.kind, pending.bucket, key[1]))

        for event in ready:
            self._emit(event)
        return ready

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._loop(), name="change-notifier")
            logger.info(
                "Watching %s (settle %.1fs)",
                ", ".join(b.value for b in self.buckets),
                self.settle_seconds,
            )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _loop(self) -> None:
        while True:
            try:
                await self.poll_once()
            except Exception as exc:
                logger.error("Change notifier poll failed: %s", exc)
            await asyncio.sleep(self.poll_interval)

    def _emit(self, event: ChangeEvent) -> None:
        logger.debug("%s %s in %s", event.kind, event.item_id, event.bucket.value)
        for callback in self._subscribers:
            try:
                callback(event)
            except Exception:
                logger.exception("Change subscriber failed for %s", event.item_id)
