"""Shared test fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from workitem_agent.client.memory import InMemoryQueueClient
from workitem_agent.worker.models import ExecutionOutcome, Success, WorkItem


class FileWritingExecutor:
    """Writes ``<item id>.out`` per item and returns a fixed outcome."""

    def __init__(self, workdir: Path, outcome: ExecutionOutcome | None = None) -> None:
        self.workdir = workdir
        self.outcome = outcome or Success()
        self.seen: list[WorkItem] = []

    def execute(self, item: WorkItem) -> ExecutionOutcome:
        self.seen.append(item)
        (self.workdir / f"{item.id}.out").write_text(f"result for {item.id}", "utf-8")
        return self.outcome


@pytest.fixture()
def workdir(tmp_path: Path) -> Path:
    path = tmp_path / "work"
    path.mkdir()
    return path


@pytest.fixture()
def memory_client() -> InMemoryQueueClient:
    return InMemoryQueueClient()


@pytest.fixture()
def file_executor(workdir: Path) -> FileWritingExecutor:
    return FileWritingExecutor(workdir)


@pytest.fixture()
def make_executor(workdir: Path):
    """Factory for file-writing executors with a chosen outcome."""

    def _make(outcome: ExecutionOutcome | None = None) -> FileWritingExecutor:
        return FileWritingExecutor(workdir, outcome)

    return _make
