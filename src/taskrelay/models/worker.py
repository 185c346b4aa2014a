from __future__ import annotations

from enum import Enum
from typing import Callable, Optional

from pydantic import BaseModel, Field


class WorkerStatus(str, Enum):
    IDLE = "idle"
    WORKING = "working"
    BLOCKED = "blocked"


class Worker(BaseModel):
    """An execution unit (human or automated) with bounded capacity."""

    id: str
    capabilities: set[str] = Field(default_factory=set)
    max_capacity: int = Field(default=2, ge=1)
    workload: int = Field(default=0, ge=0)
    last_blocked_item: Optional[str] = None

    def can_serve(self, capability: str | None) -> bool:
        return capability is not None and capability in self.capabilities

    def has_capacity(self) -> bool:
        return self.workload < self.max_capacity

    def status(self, has_open_blocker: Callable[[str], bool]) -> WorkerStatus:
        if self.last_blocked_item and has_open_blocker(self.last_blocked_item):
            return WorkerStatus.BLOCKED
        if self.has_capacity():
            return WorkerStatus.IDLE
        return WorkerStatus.WORKING
