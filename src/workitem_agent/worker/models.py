"""Domain models for workitem processing."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class WorkItemState(str, Enum):
    """Workitem states reported back to the queue service."""

    PENDING = "pending"
    SUCCESSFUL = "successful"
    RETRY = "retry"
    FATAL = "fatal"


@dataclass(frozen=True, slots=True)
class WorkItem:
    """One unit of queued work as handed out by pop.

    Instances are immutable: the reconciler derives the reported copy via
    ``apply_outcome`` instead of patching fields in place.
    """

    id: str
    wiq: str = ""
    name: str = ""
    retries: int = 0
    state: WorkItemState = WorkItemState.PENDING
    payload: dict[str, Any] = field(default_factory=dict)
    errortype: str | None = None
    errormessage: str | None = None
    errorsource: str | None = None


@dataclass(slots=True)
class ArtifactDescriptor:
    """File discovered in the working directory after an item ran."""

    filename: str
    remote_id: str | None = None
    compressed: bool = False


@dataclass(frozen=True, slots=True)
class Success:
    """Item processed, report it as successful."""


@dataclass(frozen=True, slots=True)
class Retry:
    """Item failed but may be delivered again."""

    errortype: str
    message: str
    source: str


@dataclass(frozen=True, slots=True)
class Fatal:
    """Item failed permanently."""

    errortype: str
    message: str
    source: str


ExecutionOutcome = Success | Retry | Fatal


@dataclass(slots=True)
class ReconcileResult:
    """What happened when one item was reported back."""

    item: WorkItem
    attachments: list[ArtifactDescriptor]
    failed_attachments: list[str] = field(default_factory=list)
    updated: bool = False
    error: str | None = None


@dataclass(slots=True)
class DrainSummary:
    """Aggregate counters for one or more drain cycles."""

    popped: int = 0
    succeeded: int = 0
    retried: int = 0
    failed: int = 0
    update_failures: int = 0
    deleted_files: int = 0
    cycles: int = 0

    def record(self, result: ReconcileResult) -> None:
        if not result.updated:
            self.update_failures += 1
        if result.item.state == WorkItemState.SUCCESSFUL:
            self.succeeded += 1
        elif result.item.state == WorkItemState.RETRY:
            self.retried += 1
        elif result.item.state == WorkItemState.FATAL:
            self.failed += 1

    def merge(self, other: DrainSummary) -> None:
        self.popped += other.popped
        self.succeeded += other.succeeded
        self.retried += other.retried
        self.failed += other.failed
        self.update_failures += other.update_failures
        self.deleted_files += other.deleted_files
        self.cycles += other.cycles
