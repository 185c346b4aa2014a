from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

ITEM_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
PROGRESS_LOG_HEADING = "## Progress Log"
_ENTRY_HEADING = re.compile(r"^### \[(?P<timestamp>[^\]]+)\] (?P<author>.+)$")


class ItemKind(str, Enum):
    REQUEST = "request"
    TASK = "task"


class Bucket(str, Enum):
    """Lifecycle stage; each bucket is a named holding area in the store."""

    # Requests
    PENDING = "pending"
    IN_ANALYSIS = "in-analysis"
    APPROVED = "approved"
    REJECTED = "rejected"
    # Tasks
    BACKLOG = "backlog"
    ACTIVE = "active"
    REVIEW = "review"
    DONE = "done"
    BLOCKED = "blocked"

    @property
    def kind(self) -> ItemKind:
        return ItemKind.REQUEST if self in REQUEST_BUCKETS else ItemKind.TASK

    @property
    def terminal(self) -> bool:
        return self in (Bucket.APPROVED, Bucket.REJECTED, Bucket.DONE)


REQUEST_BUCKETS = (Bucket.PENDING, Bucket.IN_ANALYSIS, Bucket.APPROVED, Bucket.REJECTED)
TASK_BUCKETS = (Bucket.BACKLOG, Bucket.ACTIVE, Bucket.REVIEW, Bucket.DONE, Bucket.BLOCKED)


class Priority(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    Priority.CRITICAL: 0,
    Priority.HIGH: 1,
    Priority.MEDIUM: 2,
    Priority.LOW: 3,
}


class LogEntry(BaseModel):
    """One timestamped entry from an item's progress log."""

    timestamp: str
    author: str
    text: str


class WorkItem(BaseModel):
    """A Request or a Task flowing through the lifecycle.

    ``state`` is never persisted: stores fill it in from the bucket the item
    was read from. ``content`` only grows through :meth:`append_entry`.
    """

    id: str
    kind: ItemKind = ItemKind.TASK
    title: str = ""
    state: Optional[Bucket] = None
    capability: Optional[str] = None
    priority: Priority = Priority.MEDIUM
    dependencies: set[str] = Field(default_factory=set)
    assigned_worker: Optional[str] = None
    requires_review: bool = True
    content: str = ""
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)

    @field_validator("id")
    @classmethod
    def _check_id(cls, value: str) -> str:
        if not ITEM_ID_PATTERN.match(value):
            raise ValueError(f"invalid item id {value!r}")
        return value

    @model_validator(mode="after")
    def _check_capability(self) -> "WorkItem":
        if self.kind is ItemKind.TASK and not self.capability:
            raise ValueError("tasks require a capability tag")
        if self.kind is ItemKind.REQUEST and self.capability:
            raise ValueError("requests do not carry a capability tag")
        return self

    @property
    def sort_key(self) -> tuple[int, datetime, str]:
        """Scan order: priority first, then FIFO by creation time."""
        return (self.priority.rank, self.created_at, self.id)

    def has_progress_log(self) -> bool:
        return PROGRESS_LOG_HEADING in self.content.split("\n")

    def append_entry(self, author: str, text: str, at: datetime | None = None) -> None:
        """Append a timestamped entry; existing content is left untouched."""
        stamp = (at or datetime.now()).replace(microsecond=0)
        if self.content and not self.content.endswith("\n"):
            self.content += "\n"
        if not self.has_progress_log():
            self.content += ("\n" if self.content else "") + PROGRESS_LOG_HEADING + "\n"
        self.content += f"\n### [{stamp.isoformat()}] {author}\n{text}\n"
        self.updated_at = stamp

    def log_entries(self) -> list[LogEntry]:
        lines = self.content.split("\n")
        try:
            start = lines.index(PROGRESS_LOG_HEADING) + 1
        except ValueError:
            return []

        entries: list[LogEntry] = []
        current: dict[str, str] | None = None
        body: list[str] = []

        def _flush() -> None:
            if current is None:
                return
            if body and body[-1] == "":
                body.pop()
            entries.append(LogEntry(text="\n".join(body), **current))

        for line in lines[start:]:
            match = _ENTRY_HEADING.match(line)
            if match:
                _flush()
                current = match.groupdict()
                body = []
            elif current is not None:
                body.append(line)
        _flush()
        return entries
