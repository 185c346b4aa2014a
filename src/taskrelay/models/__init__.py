from taskrelay.models.blocker import BlockerRecord, Severity
from taskrelay.models.outcome import WorkOutcome
from taskrelay.models.report import StatusReport
from taskrelay.models.work_item import Bucket, ItemKind, LogEntry, Priority, WorkItem
from taskrelay.models.worker import Worker, WorkerStatus

__all__ = [
    "BlockerRecord",
    "Bucket",
    "ItemKind",
    "LogEntry",
    "Priority",
    "Severity",
    "StatusReport",
    "WorkItem",
    "WorkOutcome",
    "Worker",
    "WorkerStatus",
]
