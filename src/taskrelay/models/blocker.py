from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class BlockerRecord(BaseModel):
    """Structured failure record created when delegated work fails."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    item_id: str
    worker_id: Optional[str] = None
    severity: Severity = Severity.HIGH
    error: str
    details: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.now)
    cleared_at: Optional[datetime] = None
    escalated: bool = False
    resolution: Optional[str] = None

    @property
    def description(self) -> str:
        return self.error

    @property
    def cleared(self) -> bool:
        return self.cleared_at is not None
