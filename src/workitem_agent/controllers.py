"""CLI controller for worker and local queue commands."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from workitem_agent.client.local import LocalQueueClient
from workitem_agent.config import Settings
from workitem_agent.worker.controller import LifecycleController
from workitem_agent.worker.executor import CommandExecutor, PlaceholderExecutor, WorkitemExecutor

logger = logging.getLogger(__name__)


class PayloadError(ValueError):
    """The --payload value is not a JSON object."""


@dataclass(slots=True)
class WorkerRunCommand:
    """CLI input for the long-running worker."""

    db_path: Path | None
    workdir: Path | None


@dataclass(slots=True)
class PushWorkitemCommand:
    """CLI input for enqueueing one workitem."""

    db_path: Path | None
    wiq: str | None
    name: str
    payload: str
    max_retries: int | None


@dataclass(slots=True)
class ListWorkitemsCommand:
    """CLI input for listing workitems."""

    db_path: Path | None
    wiq: str | None
    state: str | None
    limit: int


@dataclass(slots=True)
class WorkerRunResult:
    """Exit code plus summary lines for the worker command."""

    exit_code: int
    lines: list[str]


class AgentCliController:
    """Maps CLI commands onto the worker and the local queue service."""

    def run_worker(self, command: WorkerRunCommand) -> WorkerRunResult:
        settings = Settings.from_env(db_path=command.db_path, workdir=command.workdir)
        settings.validate()
        client = _local_client(settings)
        controller = LifecycleController(
            client=client,
            executor=build_executor(settings),
            workdir=settings.workdir,
            wiq=settings.queue.wiq,
            queue_name=settings.queue.queue,
            idle_wait_seconds=settings.idle_wait_seconds,
            event_channel_size=settings.event_channel_size,
            ignored_paths=client.store_paths(),
        )
        logger.info("Press Ctrl+C to exit")
        try:
            exit_code = controller.run()
        finally:
            client.close()

        summary = controller.summary
        return WorkerRunResult(
            exit_code=exit_code,
            lines=[
                "Worker summary: "
                f"cycles={summary.cycles} popped={summary.popped} "
                f"succeeded={summary.succeeded} retried={summary.retried} "
                f"failed={summary.failed} update_failures={summary.update_failures} "
                f"deleted_files={summary.deleted_files}",
            ],
        )

    def push(self, command: PushWorkitemCommand) -> list[str]:
        try:
            payload = json.loads(command.payload)
        except json.JSONDecodeError as error:
            raise PayloadError(f"Payload is not valid JSON: {error}") from error
        if not isinstance(payload, dict):
            raise PayloadError("Payload must be a JSON object.")

        settings = Settings.from_env(db_path=command.db_path)
        wiq = command.wiq or settings.queue.wiq
        with _local_store(settings) as client:
            item = client.push_workitem(
                wiq,
                name=command.name,
                payload=payload,
                max_retries=command.max_retries,
            )
        return [f"Pushed workitem {item.id} to {wiq}"]

    def list_workitems(self, command: ListWorkitemsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        wiq = command.wiq or settings.queue.wiq
        with _local_store(settings) as client:
            items = client.list_workitems(wiq, state=command.state, limit=command.limit)

        if not items:
            return [f"No workitems in {wiq}"]
        lines: list[str] = []
        for item in items:
            line = (
                f"{item.id} state={item.state} retries={item.retries}/{item.max_retries} "
                f"name={item.name or '-'} files={len(item.files)}"
            )
            if item.errormessage:
                line += f" error={item.errortype}:{item.errormessage}"
            lines.append(line)
            lines.extend(
                f"  file {stored.id} {stored.filename} {stored.size_bytes}B"
                + (" compressed" if stored.compressed else "")
                for stored in item.files
            )
        return lines


def build_executor(settings: Settings) -> WorkitemExecutor:
    """Pick the command executor when configured, the placeholder otherwise."""

    if settings.executor.command:
        return CommandExecutor(
            settings.workdir,
            settings.executor.command,
            transient_exit_codes=settings.executor.transient_exit_codes,
        )
    return PlaceholderExecutor(settings.workdir)


def _local_client(settings: Settings) -> LocalQueueClient:
    return LocalQueueClient(
        settings.local.db_path,
        notify_interval_seconds=settings.local.notify_interval_seconds,
        stale_after_seconds=settings.local.stale_after_seconds,
        default_max_retries=settings.local.default_max_retries,
    )


@contextmanager
def _local_store(settings: Settings) -> Iterator[LocalQueueClient]:
    client = _local_client(settings)
    client.init_schema()
    try:
        yield client
    finally:
        client.close()
