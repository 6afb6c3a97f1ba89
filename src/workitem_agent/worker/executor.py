"""Per-item business logic run by the worker."""

from __future__ import annotations

import json
import logging
import os
import shlex
import subprocess
from pathlib import Path
from typing import Protocol

from workitem_agent.worker.models import ExecutionOutcome, Fatal, Retry, Success, WorkItem

logger = logging.getLogger(__name__)

APPLICATION_ERROR = "application"
DEFAULT_TRANSIENT_EXIT_CODES = (137, 143)


class WorkitemExecutor(Protocol):
    """Protocol implemented by per-item processors.

    Implementations run with the working directory as their scratch space;
    any regular file they leave there is attached to the item.
    """

    def execute(self, item: WorkItem) -> ExecutionOutcome:
        """Process one item and report how it went."""


class PlaceholderExecutor:
    """Writes a greeting file for every item and always succeeds."""

    def __init__(self, workdir: Path, *, filename: str = "hello.txt") -> None:
        self.workdir = workdir
        self.filename = filename

    def execute(self, item: WorkItem) -> ExecutionOutcome:
        logger.info("Processing workitem id %s, retry #%d", item.id, item.retries)
        (self.workdir / self.filename).write_text("Hello kitty", "utf-8")
        logger.info("Created %s file", self.filename)
        return Success()


class CommandExecutor:
    """Run a shell command template per item inside the working directory.

    Supported placeholders: ``{workitem_id}``, ``{workitem_name}``, ``{wiq}``.
    The item payload is passed as JSON in ``WORKITEM_PAYLOAD``.
    """

    def __init__(
        self,
        workdir: Path,
        command_template: str,
        *,
        transient_exit_codes: tuple[int, ...] = DEFAULT_TRANSIENT_EXIT_CODES,
    ) -> None:
        self.workdir = workdir
        self.command_template = command_template
        self.transient_exit_codes = transient_exit_codes

    def execute(self, item: WorkItem) -> ExecutionOutcome:
        logger.info("Processing workitem id %s, retry #%d", item.id, item.retries)
        try:
            argv = _build_argv(self.command_template, item)
        except ValueError as error:
            return Fatal(APPLICATION_ERROR, str(error), "command_template")

        env = os.environ.copy()
        env["WORKITEM_ID"] = item.id
        env["WORKITEM_NAME"] = item.name
        env["WORKITEM_WIQ"] = item.wiq
        env["WORKITEM_RETRIES"] = str(item.retries)
        env["WORKITEM_PAYLOAD"] = json.dumps(item.payload, ensure_ascii=False)

        try:
            completed = subprocess.run(  # noqa: S603
                argv,
                cwd=self.workdir,
                env=env,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError:
            return Fatal(APPLICATION_ERROR, f"Command not found: {argv[0]}", argv[0])
        except OSError as error:
            return Retry(APPLICATION_ERROR, f"Command failed to start: {error}", argv[0])

        if completed.returncode == 0:
            return Success()

        message = _failure_message(completed.returncode, completed.stderr)
        if completed.returncode in self.transient_exit_codes:
            return Retry(APPLICATION_ERROR, message, argv[0])
        return Fatal(APPLICATION_ERROR, message, argv[0])


def _build_argv(command_template: str, item: WorkItem) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise ValueError("Command template is empty.")
    try:
        rendered = stripped.format(
            workitem_id=shlex.quote(item.id),
            workitem_name=shlex.quote(item.name),
            wiq=shlex.quote(item.wiq),
        )
    except (KeyError, IndexError) as error:
        raise ValueError(f"Unsupported command template placeholder: {error}") from error
    argv = shlex.split(rendered)
    if not argv:
        raise ValueError("Command template rendered empty command.")
    return argv


def _failure_message(exit_code: int, stderr: str, *, limit: int = 500) -> str:
    tail = stderr.strip()
    if len(tail) > limit:
        tail = tail[-limit:]
    if not tail:
        return f"Command exited with code {exit_code}."
    return f"Command exited with code {exit_code}: {tail}"
