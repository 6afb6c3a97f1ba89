from __future__ import annotations

from pathlib import Path

import allure
import pytest

from workitem_agent.config import QueueSettings, Settings
from workitem_agent.controllers import build_executor
from workitem_agent.worker.executor import CommandExecutor, PlaceholderExecutor

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Environment Settings"),
]


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch) -> None:
    for name in (
        "wiq",
        "queue",
        "WORKITEM_AGENT_WORKDIR",
        "WORKITEM_AGENT_COMMAND",
        "WORKITEM_AGENT_TRANSIENT_EXIT_CODES",
        "WORKITEM_AGENT_LOG_LEVEL",
        "WORKITEM_AGENT_IDLE_WAIT_SECONDS",
    ):
        monkeypatch.delenv(name, raising=False)


def test_defaults_use_cqueue_for_both_names() -> None:
    settings = Settings.from_env()

    assert settings.queue.wiq == "cqueue"
    assert settings.queue.queue == "cqueue"
    assert settings.executor.command is None
    assert settings.executor.transient_exit_codes == (137, 143)


def test_queue_defaults_to_wiq_when_unset(monkeypatch) -> None:
    monkeypatch.setenv("wiq", "invoices")

    settings = Settings.from_env()

    assert settings.queue == QueueSettings(wiq="invoices", queue="invoices")


def test_queue_can_differ_from_wiq(monkeypatch) -> None:
    monkeypatch.setenv("wiq", "invoices")
    monkeypatch.setenv("queue", "invoices-events")

    settings = Settings.from_env()

    assert settings.queue == QueueSettings(wiq="invoices", queue="invoices-events")


def test_transient_exit_codes_are_parsed(monkeypatch) -> None:
    monkeypatch.setenv("WORKITEM_AGENT_TRANSIENT_EXIT_CODES", "75, 137,")

    assert Settings.from_env().executor.transient_exit_codes == (75, 137)


def test_invalid_transient_exit_code_is_rejected(monkeypatch) -> None:
    monkeypatch.setenv("WORKITEM_AGENT_TRANSIENT_EXIT_CODES", "75,oops")

    with pytest.raises(ValueError, match="TRANSIENT_EXIT_CODES"):
        Settings.from_env()


def test_validate_rejects_non_positive_idle_wait(tmp_path: Path) -> None:
    settings = Settings(workdir=tmp_path, idle_wait_seconds=0)

    with pytest.raises(ValueError, match="IDLE_WAIT_SECONDS"):
        settings.validate()


def test_validate_rejects_unknown_log_level(tmp_path: Path) -> None:
    settings = Settings(workdir=tmp_path, log_level="CHATTY")

    with pytest.raises(ValueError, match="WORKITEM_AGENT_LOG_LEVEL"):
        settings.validate()


def test_validate_rejects_missing_workdir(tmp_path: Path) -> None:
    settings = Settings(workdir=tmp_path / "missing")

    with pytest.raises(ValueError, match="not a directory"):
        settings.validate()


def test_build_executor_prefers_configured_command(monkeypatch, tmp_path: Path) -> None:
    assert isinstance(build_executor(Settings(workdir=tmp_path)), PlaceholderExecutor)

    monkeypatch.setenv("WORKITEM_AGENT_COMMAND", "process-item {workitem_id}")
    executor = build_executor(Settings.from_env(workdir=tmp_path))

    assert isinstance(executor, CommandExecutor)
    assert executor.command_template == "process-item {workitem_id}"


@pytest.mark.parametrize(
    "name",
    ["WORKITEM_AGENT_MAX_RETRIES", "WORKITEM_AGENT_NOTIFY_INTERVAL_SECONDS"],
)
def test_malformed_numeric_variable_is_named_in_error(monkeypatch, name: str) -> None:
    monkeypatch.setenv(name, "lots")

    with pytest.raises(ValueError, match=f"for {name}: 'lots'"):
        Settings.from_env()
