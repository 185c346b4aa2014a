from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, model_validator

from taskrelay.models.blocker import Severity


class WorkOutcome(BaseModel):
    """Tagged result of a delegated call. Failures always carry an error."""

    success: bool
    error: Optional[str] = None
    details: Optional[str] = None
    summary: Optional[str] = None
    artifact_url: Optional[str] = None
    severity: Severity = Severity.HIGH

    @model_validator(mode="after")
    def _failure_needs_error(self) -> "WorkOutcome":
        if not self.success and not self.error:
            raise ValueError("a failed outcome must carry an error")
        return self

    @classmethod
    def ok(
        cls,
        summary: str | None = None,
        *,
        details: str | None = None,
        artifact_url: str | None = None,
    ) -> "WorkOutcome":
        return cls(success=True, summary=summary, details=details, artifact_url=artifact_url)

    @classmethod
    def failure(
        cls,
        error: str,
        *,
        details: str | None = None,
        severity: Severity = Severity.HIGH,
    ) -> "WorkOutcome":
        return cls(success=False, error=error, details=details, severity=severity)
