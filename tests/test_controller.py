from __future__ import annotations

import shutil
import threading
import time
from pathlib import Path

import allure
import pytest

from workitem_agent.client.base import DISCONNECTED, SIGNED_IN
from workitem_agent.client.memory import InMemoryQueueClient
from workitem_agent.worker.controller import ControllerState, LifecycleController
from workitem_agent.worker.models import Fatal, Success, WorkItem, WorkItemState
from workitem_agent.worker.snapshot import take_snapshot

pytestmark = [
    allure.epic("Workitem Lifecycle"),
    allure.feature("Lifecycle Controller"),
]


def _controller(
    client: InMemoryQueueClient,
    executor,
    workdir: Path,
    **kwargs: object,
) -> LifecycleController:
    return LifecycleController(
        client=client,
        executor=executor,
        workdir=workdir,
        idle_wait_seconds=0.05,
        install_signal_handlers=False,
        **kwargs,  # type: ignore[arg-type]
    )


def _wait_for(predicate, *, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(0.01)
    raise AssertionError("condition not met before timeout")


def test_three_items_drained_updated_and_cleaned_up(
    workdir: Path,
    memory_client: InMemoryQueueClient,
    file_executor,
) -> None:
    (workdir / "preexisting.cfg").write_text("keep me", "utf-8")
    items = [memory_client.push("cqueue", name=f"item-{index}") for index in range(3)]
    before = set(take_snapshot(workdir))
    controller = _controller(memory_client, file_executor, workdir)

    controller.start()
    controller.pump()

    assert memory_client.update_calls == 3
    assert [call.item.state for call in memory_client.updates] == [WorkItemState.SUCCESSFUL] * 3
    assert set(take_snapshot(workdir)) == before
    for item in items:
        assert not (workdir / f"{item.id}.out").exists()
    assert controller.state == ControllerState.QUEUE_REGISTERED
    assert controller.summary.popped == 3
    assert controller.summary.succeeded == 3
    assert controller.summary.deleted_files == 3


def test_single_created_file_is_attached_by_name(
    workdir: Path,
    memory_client: InMemoryQueueClient,
    file_executor,
) -> None:
    item = memory_client.push("cqueue")
    controller = _controller(memory_client, file_executor, workdir)

    controller.start()
    controller.pump()

    assert len(memory_client.updates) == 1
    attachments = memory_client.updates[0].attachments
    assert [(a.filename, a.compressed) for a in attachments] == [(f"{item.id}.out", False)]
    assert attachments[0].remote_id is not None
    assert memory_client.updates[0].contents[f"{item.id}.out"] == f"result for {item.id}".encode()


def test_fatal_outcome_reported_verbatim(
    workdir: Path,
    memory_client: InMemoryQueueClient,
    make_executor,
) -> None:
    memory_client.push("cqueue")
    controller = _controller(
        memory_client,
        make_executor(Fatal("application", "boom", "test")),
        workdir,
    )

    controller.start()
    controller.pump()

    reported = memory_client.updates[0].item
    assert reported.state == WorkItemState.FATAL
    assert (reported.errortype, reported.errormessage, reported.errorsource) == (
        "application",
        "boom",
        "test",
    )
    assert controller.summary.failed == 1


def test_empty_queue_is_a_noop_cycle(
    workdir: Path,
    memory_client: InMemoryQueueClient,
    file_executor,
    caplog: pytest.LogCaptureFixture,
) -> None:
    controller = _controller(memory_client, file_executor, workdir)

    with caplog.at_level("INFO"):
        controller.start()
        controller.pump()

    assert memory_client.pop_calls == 1
    assert memory_client.update_calls == 0
    assert "Drain cycle for cqueue found no workitems" in caplog.text
    assert "No more workitems in cqueue workitem queue" not in caplog.text
    assert controller.summary.cycles == 1


def test_executor_exception_becomes_retry_and_is_reported_once(
    workdir: Path,
    memory_client: InMemoryQueueClient,
) -> None:
    class _Exploding:
        def execute(self, item: WorkItem):
            (workdir / "partial.txt").write_text("half", "utf-8")
            raise RuntimeError("disk on fire")

    memory_client.push("cqueue")
    controller = _controller(memory_client, _Exploding(), workdir)

    controller.start()
    controller.pump()

    assert memory_client.update_calls == 1
    reported = memory_client.updates[0].item
    assert reported.state == WorkItemState.RETRY
    assert (reported.errortype, reported.errormessage, reported.errorsource) == (
        "application",
        "disk on fire",
        "RuntimeError",
    )
    assert [a.filename for a in memory_client.updates[0].attachments] == ["partial.txt"]
    assert not (workdir / "partial.txt").exists()


def test_update_failure_is_not_retried_and_files_are_still_removed(
    workdir: Path,
    memory_client: InMemoryQueueClient,
    file_executor,
) -> None:
    item = memory_client.push("cqueue")
    memory_client.fail_update = True
    controller = _controller(memory_client, file_executor, workdir)

    controller.start()
    controller.pump()

    assert memory_client.update_calls == 1
    assert controller.summary.update_failures == 1
    assert not (workdir / f"{item.id}.out").exists()


def test_pop_error_ends_cycle_without_updates(
    workdir: Path,
    memory_client: InMemoryQueueClient,
    file_executor,
) -> None:
    memory_client.push("cqueue")
    memory_client.fail_pop = True
    controller = _controller(memory_client, file_executor, workdir)

    controller.start()
    controller.pump()

    assert memory_client.pop_calls == 1
    assert memory_client.update_calls == 0
    assert controller.state == ControllerState.QUEUE_REGISTERED


def test_snapshot_failure_aborts_cycle_before_pop(
    tmp_path: Path,
    memory_client: InMemoryQueueClient,
    file_executor,
) -> None:
    missing = tmp_path / "gone"
    missing.mkdir()
    memory_client.push("cqueue")
    controller = _controller(memory_client, file_executor, missing)
    shutil.rmtree(missing)

    controller.start()
    controller.pump()

    assert memory_client.pop_calls == 0
    assert memory_client.update_calls == 0
    assert memory_client.pending("cqueue") == 1


def test_register_failure_is_logged_and_worker_keeps_running(
    workdir: Path,
    memory_client: InMemoryQueueClient,
    file_executor,
    caplog: pytest.LogCaptureFixture,
) -> None:
    memory_client.fail_register = True
    controller = _controller(memory_client, file_executor, workdir)

    with caplog.at_level("ERROR"):
        controller.start()
        controller.pump()

    assert "Failed to register queue: queue cqueue not allowed" in caplog.text
    assert controller.state == ControllerState.SIGNED_IN
    assert memory_client.pop_calls == 0

    memory_client.fail_register = False
    memory_client.emit_session_event(SIGNED_IN)
    controller.pump()
    assert controller.state == ControllerState.QUEUE_REGISTERED


def test_queue_notifications_are_coalesced_into_one_drain(
    workdir: Path,
    memory_client: InMemoryQueueClient,
    file_executor,
) -> None:
    controller = _controller(memory_client, file_executor, workdir)
    controller.start()
    controller.pump()

    for _ in range(3):
        memory_client.push("cqueue")
    handled = controller.pump()

    assert handled == 1
    assert memory_client.update_calls == 3
    assert controller.summary.cycles == 2


def test_disconnect_then_sign_in_registers_again(
    workdir: Path,
    memory_client: InMemoryQueueClient,
    file_executor,
) -> None:
    controller = _controller(memory_client, file_executor, workdir)
    controller.start()
    controller.pump()

    memory_client.emit_session_event(DISCONNECTED)
    memory_client.push("cqueue")
    controller.pump()

    assert controller.state == ControllerState.DISCONNECTED
    assert controller.session is not None
    assert controller.session.queue_name is None
    assert memory_client.update_calls == 0

    memory_client.emit_session_event(SIGNED_IN)
    controller.pump()

    assert controller.state == ControllerState.QUEUE_REGISTERED
    assert controller.session.queue_name == "cqueue"
    assert memory_client.update_calls == 1


def test_queue_and_wiq_names_are_independent(
    workdir: Path,
    memory_client: InMemoryQueueClient,
    file_executor,
) -> None:
    memory_client.push("jobs")
    controller = _controller(
        memory_client,
        file_executor,
        workdir,
        wiq="jobs",
        queue_name="jobs-events",
    )

    controller.start()
    controller.pump()

    assert controller.session is not None
    assert controller.session.queue_name == "jobs-events"
    assert memory_client.update_calls == 1


def test_stop_finishes_current_item_and_pops_no_more(
    workdir: Path,
    memory_client: InMemoryQueueClient,
) -> None:
    controller: LifecycleController | None = None

    class _StopAfterFirst:
        def execute(self, item: WorkItem):
            assert controller is not None
            (workdir / "out.txt").write_text("done", "utf-8")
            controller.stop()
            return Success()

    for _ in range(3):
        memory_client.push("cqueue")
    controller = _controller(memory_client, _StopAfterFirst(), workdir)

    controller.start()
    controller.pump()

    assert memory_client.update_calls == 1
    assert memory_client.pending("cqueue") == 2
    assert not (workdir / "out.txt").exists()


def test_run_returns_one_when_connect_fails(
    workdir: Path,
    memory_client: InMemoryQueueClient,
    file_executor,
) -> None:
    memory_client.fail_connect = True
    controller = _controller(memory_client, file_executor, workdir)

    assert controller.run() == 1
    assert controller.state == ControllerState.DISCONNECTED


def test_run_returns_one_when_event_subscription_fails(
    workdir: Path,
    memory_client: InMemoryQueueClient,
    file_executor,
) -> None:
    memory_client.fail_subscribe = True
    controller = _controller(memory_client, file_executor, workdir)

    assert controller.run() == 1
    assert controller.state == ControllerState.DISCONNECTED


def test_run_serves_notifications_from_other_threads_until_stopped(
    workdir: Path,
    memory_client: InMemoryQueueClient,
    file_executor,
) -> None:
    controller = _controller(memory_client, file_executor, workdir)
    exit_codes: list[int] = []
    runner = threading.Thread(target=lambda: exit_codes.append(controller.run()))
    runner.start()
    try:
        _wait_for(lambda: controller.state == ControllerState.QUEUE_REGISTERED)
        pusher = threading.Thread(
            target=lambda: [memory_client.push("cqueue") for _ in range(2)],
        )
        pusher.start()
        pusher.join()
        _wait_for(lambda: memory_client.update_calls == 2)
    finally:
        controller.stop()
        runner.join(timeout=5)

    assert exit_codes == [0]
    assert controller.state == ControllerState.DISCONNECTED
    assert list(workdir.iterdir()) == []


def test_executor_returning_non_outcome_is_reported_as_fatal(
    workdir: Path,
    memory_client: InMemoryQueueClient,
) -> None:
    class _ForgetsToReturn:
        def execute(self, item: WorkItem):
            (workdir / f"{item.id}.txt").write_text("written", "utf-8")

    for _ in range(2):
        memory_client.push("cqueue")
    controller = _controller(memory_client, _ForgetsToReturn(), workdir)

    controller.start()
    controller.pump()

    assert memory_client.update_calls == 2
    assert memory_client.pending("cqueue") == 0
    for call in memory_client.updates:
        assert call.item.state == WorkItemState.FATAL
        assert call.item.errortype == "application"
        assert call.item.errormessage == "Executor returned unsupported outcome: None"
        assert call.item.errorsource == "_ForgetsToReturn"
        assert len(call.attachments) == 1
    assert controller.summary.failed == 2
    assert list(workdir.iterdir()) == []


def test_ignored_paths_are_neither_attached_nor_deleted(
    workdir: Path,
    memory_client: InMemoryQueueClient,
) -> None:
    class _TouchesStore:
        def execute(self, item: WorkItem):
            (workdir / "queue.db-wal").write_bytes(b"journal")
            (workdir / "result.txt").write_text("result", "utf-8")
            return Success()

    memory_client.push("cqueue")
    controller = _controller(
        memory_client,
        _TouchesStore(),
        workdir,
        ignored_paths=[workdir / "queue.db", workdir / "queue.db-wal", Path("/elsewhere/x")],
    )

    controller.start()
    controller.pump()

    assert controller.ignored_names == frozenset({"queue.db", "queue.db-wal"})
    assert [a.filename for a in memory_client.updates[0].attachments] == ["result.txt"]
    assert (workdir / "queue.db-wal").read_bytes() == b"journal"
    assert not (workdir / "result.txt").exists()
