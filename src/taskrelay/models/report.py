from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class StatusReport(BaseModel):
    """Read-only aggregate of bucket counts, blockers and worker load."""

    generated_at: datetime = Field(default_factory=datetime.now)
    counts: dict[str, int] = Field(default_factory=dict)
    total_tasks: int = 0
    completion_percentage: int = 0
    health: str = "on-track"  # complete, blocked, stalled, at-risk, on-track
    velocity: float = 0.0
    blockers: list[dict[str, Any]] = Field(default_factory=list)
    stale_items: list[str] = Field(default_factory=list)
    workers: list[dict[str, Any]] = Field(default_factory=list)

    def render(self) -> str:
        lines = [
            "taskrelay status:",
            f"- Completion: {self.completion_percentage}% ({self.health})",
            f"- Velocity: {self.velocity:.1f} tasks/day",
            "- Requests: "
            + ", ".join(
                f"{name} {self.counts.get(name, 0)}"
                for name in ("pending", "in-analysis", "approved", "rejected")
            ),
            "- Tasks: "
            + ", ".join(
                f"{name} {self.counts.get(name, 0)}"
                for name in ("backlog", "active", "review", "done", "blocked")
            ),
        ]
        if self.workers:
            lines.append("- Workers:")
            for worker in self.workers:
                lines.append(
                    f"  - {worker['id']}: {worker['status']} "
                    f"({worker['workload']}/{worker['max_capacity']})"
                )
        if self.blockers:
            lines.append("- Blockers:")
            for blocker in self.blockers:
                lines.append(f"  - {blocker['item_id']} [{blocker['severity']}]: {blocker['error']}")
        if self.stale_items:
            lines.append("- Stale: " + ", ".join(self.stale_items))
        return "\n".join(lines) + "\n"
