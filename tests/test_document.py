from __future__ import annotations

import pytest

from taskrelay.db.base import DocumentError
from taskrelay.db.document import parse_document, render_document
from taskrelay.models.work_item import Bucket, ItemKind, Priority, WorkItem


class TestDocumentCodec:
    def test_header_and_body(self) -> None:
        item = WorkItem(
            id="TASK-7",
            title="Add login: with colon",
            capability="backend",
            priority=Priority.HIGH,
            dependencies={"TASK-2", "TASK-1"},
            assigned_worker="backend-agent",
            content="Body line\n\n---\nnot a fence at the top",
        )
        text = render_document(item)

        assert text.startswith("---\nid: TASK-7\n")
        assert "dependencies:\n- TASK-1\n- TASK-2\n" in text
        assert "state" not in text.split("---\n")[1]

        parsed = parse_document(text, Bucket.ACTIVE)
        assert parsed.state is Bucket.ACTIVE
        assert parsed.title == "Add login: with colon"
        assert parsed.dependencies == {"TASK-1", "TASK-2"}
        assert parsed.assigned_worker == "backend-agent"
        assert parsed.content == item.content

    def test_request_without_capability(self) -> None:
        item = WorkItem(id="REQ-1", kind=ItemKind.REQUEST, title="New feature")
        parsed = parse_document(render_document(item))
        assert parsed.kind is ItemKind.REQUEST
        assert parsed.capability is None
        assert parsed.state is None

    def test_state_in_header_is_ignored(self) -> None:
        text = "---\nid: TASK-1\ncapability: backend\nstate: done\n---\n\nbody"
        assert parse_document(text, Bucket.BACKLOG).state is Bucket.BACKLOG

    @pytest.mark.parametrize(
        "text",
        [
            "no header at all",
            "---\nid: TASK-1\ncapability: backend\n",
            "---\n- just\n- a list\n---\n",
            "---\nid: [unclosed\n---\n",
            "---\nid: TASK-1\n---\n",  # task without capability
        ],
    )
    def test_malformed_documents(self, text: str) -> None:
        with pytest.raises(DocumentError):
            parse_document(text)
