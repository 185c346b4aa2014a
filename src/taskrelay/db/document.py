"""Text document codec for stored work items.

A document is a YAML header between ``---`` fences followed by the free-text
body (which carries the progress log)::

    ---
    id: TASK-1
    kind: task
    capability: backend
    ...
    ---

    Body text.

The bucket is never written into the header; it is supplied on parse.
"""

from __future__ import annotations

from typing import Any

import yaml
from pydantic import ValidationError

from taskrelay.db.base import DocumentError
from taskrelay.models.work_item import Bucket, WorkItem

_FENCE = "---\n"


def render_document(item: WorkItem) -> str:
    header: dict[str, Any] = {
        "id": item.id,
        "kind": item.kind.value,
        "title": item.title,
    }
    if item.capability:
        header["capability"] = item.capability
    header["priority"] = item.priority.value
    header["dependencies"] = sorted(item.dependencies)
    if item.assigned_worker:
        header["assigned_worker"] = item.assigned_worker
    header["requires_review"] = item.requires_review
    header["created_at"] = item.created_at.isoformat()
    header["updated_at"] = item.updated_at.isoformat()

    text = yaml.safe_dump(header, sort_keys=False, allow_unicode=True, default_flow_style=False)
    return f"{_FENCE}{text}{_FENCE}\n{item.content}"


def parse_document(text: str, bucket: Bucket | None = None) -> WorkItem:
    if not text.startswith(_FENCE):
        raise DocumentError("document has no header")
    end = text.find("\n" + _FENCE, len(_FENCE) - 1)
    if end == -1:
        raise DocumentError("document header is not terminated")

    header_text = text[len(_FENCE) : end + 1]
    body = text[end + 1 + len(_FENCE) :]
    if body.startswith("\n"):
        body = body[1:]

    try:
        header = yaml.safe_load(header_text)
    except yaml.YAMLError as exc:
        raise DocumentError(f"invalid document header: {exc}") from exc
    if not isinstance(header, dict):
        raise DocumentError("document header must be a mapping")

    header.pop("state", None)
    try:
        return WorkItem.model_validate({**header, "content": body, "state": bucket})
    except ValidationError as exc:
        raise DocumentError(f"invalid document fields: {exc}") from exc
