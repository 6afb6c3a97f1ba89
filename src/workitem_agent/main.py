"""CLI entrypoint for workitem-agent."""

import logging
import os
from pathlib import Path

import rich_click as click

from workitem_agent import __version__
from workitem_agent.controllers import (
    AgentCliController,
    ListWorkitemsCommand,
    PayloadError,
    PushWorkitemCommand,
    WorkerRunCommand,
)

click.rich_click.USE_MARKDOWN = True
AGENT_CONTROLLER = AgentCliController()


@click.group()
@click.version_option(version=__version__, prog_name="workitem-agent")
def workitem_agent() -> None:
    """Workitem queue worker CLI."""


@workitem_agent.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="Queue DB path.")
@click.option(
    "--workdir",
    type=click.Path(path_type=Path, file_okay=False, exists=True),
    default=None,
    help="Working directory snapshotted around each workitem.",
)
def run_worker(db_path: Path | None, workdir: Path | None) -> None:
    """Drain the configured queue until interrupted."""

    _configure_logging()
    try:
        result = AGENT_CONTROLLER.run_worker(WorkerRunCommand(db_path=db_path, workdir=workdir))
    except ValueError as error:
        raise click.UsageError(str(error)) from error
    _emit_lines(result.lines)
    if result.exit_code != 0:
        raise SystemExit(result.exit_code)


@workitem_agent.command("push")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="Queue DB path.")
@click.option("--wiq", default=None, help="Workitem queue, defaults to $wiq or cqueue.")
@click.option("--name", default="", help="Workitem name.")
@click.option("--payload", default="{}", show_default=True, help="JSON object payload.")
@click.option(
    "--max-retries",
    type=click.IntRange(min=1),
    default=None,
    help="Deliveries allowed before a retrying workitem becomes fatal.",
)
def push_workitem(  # noqa: PLR0913
    db_path: Path | None,
    wiq: str | None,
    name: str,
    payload: str,
    max_retries: int | None,
) -> None:
    """Enqueue a workitem in the local queue service."""

    try:
        lines = AGENT_CONTROLLER.push(
            PushWorkitemCommand(
                db_path=db_path,
                wiq=wiq,
                name=name,
                payload=payload,
                max_retries=max_retries,
            ),
        )
    except PayloadError as error:
        raise click.BadParameter(str(error), param_hint="--payload") from error
    except ValueError as error:
        raise click.UsageError(str(error)) from error
    _emit_lines(lines)


@workitem_agent.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="Queue DB path.")
@click.option("--wiq", default=None, help="Workitem queue, defaults to $wiq or cqueue.")
@click.option(
    "--state",
    type=click.Choice(
        ["pending", "processing", "successful", "retry", "fatal"],
        case_sensitive=False,
    ),
    default=None,
    help="Optional state filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max workitems to print.",
)
def list_workitems(db_path: Path | None, wiq: str | None, state: str | None, limit: int) -> None:
    """Show workitems with state and stored attachments."""

    try:
        lines = AGENT_CONTROLLER.list_workitems(
            ListWorkitemsCommand(
                db_path=db_path,
                wiq=wiq,
                state=state.lower() if state is not None else None,
                limit=limit,
            ),
        )
    except ValueError as error:
        raise click.UsageError(str(error)) from error
    _emit_lines(lines)


def _configure_logging() -> None:
    level = os.getenv("WORKITEM_AGENT_LOG_LEVEL", "INFO").strip().upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    workitem_agent()
