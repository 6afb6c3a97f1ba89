"""Runtime configuration for the workitem agent."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from workitem_agent.worker.controller import DEFAULT_WIQ
from workitem_agent.worker.executor import DEFAULT_TRANSIENT_EXIT_CODES

_LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")


@dataclass(slots=True)
class QueueSettings:
    """Which queue to pop from and which name to register."""

    wiq: str = DEFAULT_WIQ
    queue: str = DEFAULT_WIQ


@dataclass(slots=True)
class LocalServiceSettings:
    """Local SQLite queue service settings."""

    db_path: Path = Path(".workitem_agent.db")
    notify_interval_seconds: float = 2.0
    stale_after_seconds: int = 1_800
    default_max_retries: int = 3


@dataclass(slots=True)
class ExecutorSettings:
    """Per-item command settings; no command means the placeholder executor."""

    command: str | None = None
    transient_exit_codes: tuple[int, ...] = DEFAULT_TRANSIENT_EXIT_CODES


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    workdir: Path = Path(".")
    idle_wait_seconds: float = 1.0
    event_channel_size: int = 64
    log_level: str = "INFO"
    queue: QueueSettings = field(default_factory=QueueSettings)
    local: LocalServiceSettings = field(default_factory=LocalServiceSettings)
    executor: ExecutorSettings = field(default_factory=ExecutorSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None, workdir: Path | None = None) -> Settings:
        """Load settings from environment with defaults for local runs."""

        wiq = os.getenv("wiq") or DEFAULT_WIQ
        command = os.getenv("WORKITEM_AGENT_COMMAND", "").strip()
        return cls(
            workdir=workdir or Path(os.getenv("WORKITEM_AGENT_WORKDIR", ".")),
            idle_wait_seconds=_env_float("WORKITEM_AGENT_IDLE_WAIT_SECONDS", 1.0),
            event_channel_size=_env_int("WORKITEM_AGENT_EVENT_CHANNEL_SIZE", 64),
            log_level=os.getenv("WORKITEM_AGENT_LOG_LEVEL", "INFO").strip().upper(),
            queue=QueueSettings(
                wiq=wiq,
                queue=os.getenv("queue") or wiq,
            ),
            local=LocalServiceSettings(
                db_path=db_path or Path(os.getenv("WORKITEM_AGENT_DB_PATH", ".workitem_agent.db")),
                notify_interval_seconds=_env_float("WORKITEM_AGENT_NOTIFY_INTERVAL_SECONDS", 2.0),
                stale_after_seconds=_env_int("WORKITEM_AGENT_STALE_AFTER_SECONDS", 1800),
                default_max_retries=_env_int("WORKITEM_AGENT_MAX_RETRIES", 3),
            ),
            executor=ExecutorSettings(
                command=command or None,
                transient_exit_codes=_parse_exit_codes(
                    os.getenv("WORKITEM_AGENT_TRANSIENT_EXIT_CODES", "137,143"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the worker cannot run with."""

        if not self.queue.wiq.strip():
            raise ValueError("wiq must not be empty.")
        if not self.queue.queue.strip():
            raise ValueError("queue must not be empty.")
        if self.idle_wait_seconds <= 0:
            raise ValueError("WORKITEM_AGENT_IDLE_WAIT_SECONDS must be > 0.")
        if self.event_channel_size <= 0:
            raise ValueError("WORKITEM_AGENT_EVENT_CHANNEL_SIZE must be > 0.")
        if self.local.notify_interval_seconds <= 0:
            raise ValueError("WORKITEM_AGENT_NOTIFY_INTERVAL_SECONDS must be > 0.")
        if self.local.stale_after_seconds < 0:
            raise ValueError("WORKITEM_AGENT_STALE_AFTER_SECONDS must be >= 0.")
        if self.local.default_max_retries <= 0:
            raise ValueError("WORKITEM_AGENT_MAX_RETRIES must be > 0.")
        if self.log_level not in _LOG_LEVELS:
            raise ValueError(
                f"Invalid WORKITEM_AGENT_LOG_LEVEL: {self.log_level!r}. "
                f"Expected one of {', '.join(_LOG_LEVELS)}.",
            )
        if not self.workdir.is_dir():
            raise ValueError(f"WORKITEM_AGENT_WORKDIR is not a directory: {self.workdir}")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid number value for {name}: {value!r}") from error


def _parse_exit_codes(raw: str) -> tuple[int, ...]:
    codes: list[int] = []
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        try:
            codes.append(int(token))
        except ValueError as error:
            raise ValueError(
                f"Invalid WORKITEM_AGENT_TRANSIENT_EXIT_CODES entry: {token!r}",
            ) from error
    return tuple(codes)
