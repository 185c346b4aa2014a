from __future__ import annotations

import time
from datetime import datetime
from typing import Iterable

from taskrelay.db.base import StateStore
from taskrelay.models.report import StatusReport
from taskrelay.models.work_item import Bucket, TASK_BUCKETS
from taskrelay.services.blocker_registry import BlockerRegistry
from taskrelay.services.worker_pool import WorkerPool

VELOCITY_WINDOW_DAYS = 7


def health_label(completion: int, blocked: int, in_flight: int, total: int) -> str:
    if total and completion == 100:
        return "complete"
    if blocked > 0:
        return "blocked"
    if total and in_flight == 0:
        return "stalled"
    if total and completion < 30:
        return "at-risk"
    return "on-track"


async def build_status_report(
    store: StateStore,
    registry: BlockerRegistry,
    pool: WorkerPool,
    stale_items: Iterable[str] = (),
    now: float | None = None,
) -> StatusReport:
    """Aggregate the current state of every bucket into a StatusReport."""
    now = time.time() if now is None else now
    counts = {bucket.value: len(await store.list(bucket)) for bucket in Bucket}

    total = sum(counts[b.value] for b in TASK_BUCKETS)
    done = counts[Bucket.DONE.value]
    completion = round(done * 100 / total) if total else 0
    in_flight = counts[Bucket.ACTIVE.value] + counts[Bucket.REVIEW.value]

    # Tasks that reached done within the window, per day.
    cutoff = now - VELOCITY_WINDOW_DAYS * 86400
    recent_done = sum(1 for stamp in (await store.snapshot(Bucket.DONE)).values() if stamp > cutoff)

    return StatusReport(
        generated_at=datetime.fromtimestamp(now),
        counts=counts,
        total_tasks=total,
        completion_percentage=completion,
        health=health_label(completion, counts[Bucket.BLOCKED.value], in_flight, total),
        velocity=round(recent_done / VELOCITY_WINDOW_DAYS, 1),
        blockers=registry.summaries(),
        stale_items=sorted(stale_items),
        workers=pool.statuses(registry.has_open),
    )
