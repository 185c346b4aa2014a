from __future__ import annotations

import asyncio
import logging
from typing import Callable, Iterable

from taskrelay.models.worker import Worker

logger = logging.getLogger(__name__)


class WorkerPool:
    """Worker roster with workload counters.

    Every workload change happens inside ``_mu``; choosing a worker and
    incrementing its workload is a single critical section, so concurrent
    assignments cannot push a worker past ``max_capacity``.
    """

    def __init__(self, workers: Iterable[Worker]):
        self._workers: dict[str, Worker] = {}
        for worker in workers:
            if worker.id in self._workers:
                raise ValueError(f"duplicate worker id {worker.id!r}")
            self._workers[worker.id] = worker.model_copy(deep=True)
        self._mu = asyncio.Lock()

    def __contains__(self, worker_id: object) -> bool:
        return worker_id in self._workers

    def get(self, worker_id: str) -> Worker | None:
        worker = self._workers.get(worker_id)
        return worker.model_copy(deep=True) if worker else None

    def snapshot(self) -> list[Worker]:
        return [w.model_copy(deep=True) for w in sorted(self._workers.values(), key=lambda w: w.id)]

    def serves(self, capability: str | None) -> bool:
        """True if any configured worker has the capability, regardless of load."""
        return any(w.can_serve(capability) for w in self._workers.values())

    async def reserve(self, capability: str | None) -> Worker | None:
        """Pick an eligible worker and take one unit of its capacity.

        Tie-break: lowest workload, then worker id.
        """
        async with self._mu:
            eligible = [
                w
                for w in self._workers.values()
                if w.can_serve(capability) and w.has_capacity()
            ]
            if not eligible:
                return None
            chosen = min(eligible, key=lambda w: (w.workload, w.id))
            chosen.workload += 1
            logger.debug(
                "Reserved %s for %s (%d/%d)",
                chosen.id,
                capability,
                chosen.workload,
                chosen.max_capacity,
            )
            return chosen.model_copy(deep=True)

    async def cancel_reservation(self, worker_id: str) -> None:
        """Return a reservation that never turned into an assignment."""
        async with self._mu:
            self._decrement(worker_id)

    async def release(self, worker_id: str, blocked_item: str | None = None) -> None:
        """Finish an attempt: free capacity and remember whether it blocked."""
        async with self._mu:
            worker = self._decrement(worker_id)
            if worker is not None:
                worker.last_blocked_item = blocked_item

    async def restore(self, counts: dict[str, int]) -> None:
        """Reset workloads from the items found active at startup."""
        async with self._mu:
            for worker in self._workers.values():
                worker.workload = counts.get(worker.id, 0)
                if worker.workload > worker.max_capacity:
                    logger.warning(
                        "%s restored with %d active items, above its capacity of %d",
                        worker.id,
                        worker.workload,
                        worker.max_capacity,
                    )
        logger.info("Restored workloads: %s", dict(counts) or "none active")

    def statuses(self, has_open_blocker: Callable[[str], bool]) -> list[dict]:
        return [
            {
                "id": w.id,
                "capabilities": sorted(w.capabilities),
                "workload": w.workload,
                "max_capacity": w.max_capacity,
                "status": w.status(has_open_blocker).value,
            }
            for w in self.snapshot()
        ]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _decrement(self, worker_id: str) -> Worker | None:
        """Caller must hold _mu."""
        worker = self._workers.get(worker_id)
        if worker is None:
            logger.warning("Release for unknown worker %s ignored", worker_id)
            return None
        if worker.workload == 0:
            logger.warning("Release for %s with no workload", worker_id)
        worker.workload = max(0, worker.workload - 1)
        return worker
