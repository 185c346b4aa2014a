from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, time as dtime, timedelta
from typing import Callable

logger = logging.getLogger(__name__)

_WEEKDAYS = {
    "mon": 0,
    "tue": 1,
    "wed": 2,
    "thu": 3,
    "fri": 4,
    "sat": 5,
    "sun": 6,
}


@dataclass(frozen=True)
class FixedTimeTrigger:
    """A wall-clock trigger: daily ``"HH:MM"`` or weekly ``"fri HH:MM"``."""

    name: str
    at: dtime
    weekday: int | None = None

    @classmethod
    def parse(cls, name: str, schedule: str) -> "FixedTimeTrigger":
        parts = schedule.strip().lower().split()
        if len(parts) not in (1, 2):
            raise ValueError(f"invalid schedule {schedule!r}")
        weekday = None
        if len(parts) == 2:
            day = parts[0][:3]
            if day not in _WEEKDAYS:
                raise ValueError(f"invalid weekday in schedule {schedule!r}")
            weekday = _WEEKDAYS[day]
        try:
            hour, minute = (int(p) for p in parts[-1].split(":"))
            at = dtime(hour, minute)
        except ValueError as exc:
            raise ValueError(f"invalid time in schedule {schedule!r}") from exc
        return cls(name=name, at=at, weekday=weekday)

    def next_fire(self, after: datetime) -> datetime:
        """First matching time strictly after ``after``."""
        candidate = datetime.combine(after.date(), self.at)
        if self.weekday is not None:
            candidate += timedelta(days=(self.weekday - candidate.weekday()) % 7)
        step = timedelta(days=7 if self.weekday is not None else 1)
        while candidate <= after:
            candidate += step
        return candidate


class Scheduler:
    """Feeds periodic and wall-clock triggers into the orchestrator queue."""

    def __init__(
        self,
        submit: Callable[[str], object],
        tick_interval: float = 3600.0,
        fixed: list[FixedTimeTrigger] | None = None,
        now: Callable[[], datetime] = datetime.now,
    ):
        self.submit = submit
        self.tick_interval = tick_interval
        self.fixed = list(fixed or [])
        self._now = now
        self._tasks: list[asyncio.Task[None]] = []

    async def start(self) -> None:
        if self._tasks:
            return
        if self.tick_interval > 0:
            self._tasks.append(asyncio.create_task(self._tick_loop(), name="scheduler:tick"))
        for trigger in self.fixed:
            self._tasks.append(
                asyncio.create_task(self._fixed_loop(trigger), name=f"scheduler:{trigger.name}")
            )
        logger.info(
            "Scheduler started: tick every %gs, fixed %s",
            self.tick_interval,
            ", ".join(t.name for t in self.fixed) or "none",
        )

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

    async def _tick_loop(self) -> None:
        while True:
            await asyncio.sleep(self.tick_interval)
            self.submit("tick")

    async def _fixed_loop(self, trigger: FixedTimeTrigger) -> None:
        target = trigger.next_fire(self._now())
        while True:
            delay = (target - self._now()).total_seconds()
            if delay > 0:
                await asyncio.sleep(delay)
                continue
            logger.debug("Fixed trigger %s due at %s", trigger.name, target.isoformat())
            self.submit(trigger.name)
            # Next fire is computed from the target, so a late wakeup never skips one.
            target = trigger.next_fire(target)
