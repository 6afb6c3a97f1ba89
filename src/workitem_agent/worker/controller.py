"""Lifecycle controller: connect, register, drain, clean up, repeat."""

from __future__ import annotations

import logging
import queue
import signal
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from workitem_agent.client.base import (
    DISCONNECTED,
    SIGNED_IN,
    SIGNED_OUT,
    ConnectError,
    PopError,
    QueueEvent,
    QueueServiceClient,
    QueueServiceError,
    RegisterError,
    Session,
)
from workitem_agent.worker.differ import new_since
from workitem_agent.worker.executor import APPLICATION_ERROR, WorkitemExecutor
from workitem_agent.worker.models import (
    DrainSummary,
    ExecutionOutcome,
    Fatal,
    Retry,
    Success,
    WorkItem,
)
from workitem_agent.worker.reconciler import ResultReconciler
from workitem_agent.worker.snapshot import DirectorySnapshot, take_snapshot

logger = logging.getLogger(__name__)

DEFAULT_WIQ = "cqueue"

_SESSION_EVENT = "session_event"
_QUEUE_AVAILABLE = "queue_available"
_STOP = "stop"


class ControllerState(str, Enum):
    """Where the controller is in its connect/drain cycle."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    SIGNED_IN = "signed_in"
    QUEUE_REGISTERED = "queue_registered"
    POLLING = "polling"
    DRAINING = "draining"


@dataclass(frozen=True, slots=True)
class _Message:
    kind: str
    value: str = ""


class LifecycleController:
    """Single-threaded workitem loop fed by collaborator callbacks.

    Collaborator threads only call ``handle_session_event``,
    ``handle_queue_event`` and ``stop``; those post to a bounded channel that
    the controller's own thread consumes. Items are processed one at a time.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        client: QueueServiceClient,
        executor: WorkitemExecutor,
        workdir: Path,
        wiq: str = DEFAULT_WIQ,
        queue_name: str | None = None,
        idle_wait_seconds: float = 1.0,
        event_channel_size: int = 64,
        compress: bool = False,
        install_signal_handlers: bool = True,
        ignored_paths: Iterable[Path] = (),
    ) -> None:
        self.client = client
        self.executor = executor
        self.workdir = workdir
        self.wiq = wiq
        self.queue_name = queue_name or wiq
        self.idle_wait_seconds = idle_wait_seconds
        self.install_signal_handlers = install_signal_handlers
        self.ignored_names = _names_inside(workdir, ignored_paths)
        self.reconciler = ResultReconciler(client=client, workdir=workdir, compress=compress)
        self.session: Session | None = None
        self.summary = DrainSummary()
        self._state = ControllerState.DISCONNECTED
        self._channel: queue.Queue[_Message] = queue.Queue(maxsize=event_channel_size)
        self._drain_pending = threading.Event()
        self._stop_requested = threading.Event()
        self._subscription_id: str | None = None

    @property
    def state(self) -> ControllerState:
        return self._state

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested.is_set()

    # -- collaborator-thread entry points ------------------------------------

    def handle_session_event(self, event_name: str) -> None:
        self._post(_Message(_SESSION_EVENT, event_name))

    def handle_queue_event(self, event: QueueEvent) -> None:
        logger.debug("Queue event received for %s", event.queuename)
        if self._drain_pending.is_set():
            return
        self._drain_pending.set()
        if not self._post(_Message(_QUEUE_AVAILABLE, event.queuename)):
            self._drain_pending.clear()

    def stop(self) -> None:
        """Finish the in-flight item, then leave the loop."""

        self._stop_requested.set()
        self._post(_Message(_STOP))

    # -- lifecycle -----------------------------------------------------------

    def run(self) -> int:
        """Connect and serve until stopped; return the process exit code."""

        try:
            self.start()
        except QueueServiceError:
            return 1
        try:
            with self._signal_handlers():
                self.serve()
        finally:
            self.shutdown()
        return 0

    def start(self) -> None:
        """Open the session and subscribe to its events.

        Raises ``ConnectError`` or ``EventSubscriptionError``.
        """

        self._transition(ControllerState.CONNECTING)
        logger.info("Connecting to queue service...")
        try:
            self.session = self.client.connect()
        except ConnectError as error:
            logger.error("Failed to connect: %s", error)
            self._transition(ControllerState.DISCONNECTED)
            raise
        logger.info("Connected successfully")

        try:
            self._subscription_id = self.client.on_session_event(self.handle_session_event)
        except QueueServiceError as error:
            logger.error("Failed to register client event callback: %s", error)
            self.shutdown()
            raise
        logger.info("Client event callback registered: %s", self._subscription_id)

    def serve(self) -> None:
        """Consume channel messages until a stop is requested."""

        while not self._stop_requested.is_set():
            try:
                message = self._channel.get(timeout=self.idle_wait_seconds)
            except queue.Empty:
                continue
            self._dispatch(message)

    def pump(self) -> int:
        """Handle every message already queued without waiting for more."""

        handled = 0
        while not self._stop_requested.is_set():
            try:
                message = self._channel.get_nowait()
            except queue.Empty:
                break
            self._dispatch(message)
            handled += 1
        return handled

    def shutdown(self) -> None:
        if self.session is not None:
            self.session.connected = False
            self.session.signed_in = False
            self.session.queue_name = None
        try:
            self.client.disconnect()
        except QueueServiceError as error:
            logger.warning("Disconnect failed: %s", error)
        self._transition(ControllerState.DISCONNECTED)

    # -- message handling ----------------------------------------------------

    def _dispatch(self, message: _Message) -> None:
        if message.kind == _SESSION_EVENT:
            self._on_session_event(message.value)
        elif message.kind == _QUEUE_AVAILABLE:
            self._drain_pending.clear()
            self._on_queue_available(message.value)

    def _on_session_event(self, event_name: str) -> None:
        if event_name == SIGNED_IN:
            logger.info("Signed in successfully, connecting to queue")
            if self.session is not None:
                self.session.connected = True
                self.session.signed_in = True
            self._transition(ControllerState.SIGNED_IN)
            self._register_queue()
            return
        if event_name in {SIGNED_OUT, DISCONNECTED}:
            logger.warning("Session event %s, waiting for next sign-in", event_name)
            if self.session is not None:
                self.session.signed_in = False
                self.session.queue_name = None
                if event_name == DISCONNECTED:
                    self.session.connected = False
            self._transition(ControllerState.DISCONNECTED)
            return
        logger.debug("Ignoring session event %s", event_name)

    def _register_queue(self) -> None:
        logger.info("Registering queue: %s", self.queue_name)
        try:
            registered = self.client.register_queue(self.queue_name, self.handle_queue_event)
        except RegisterError as error:
            logger.error("Failed to register queue: %s", error)
            return
        if self.session is not None:
            self.session.queue_name = registered.queuename
        self._transition(ControllerState.QUEUE_REGISTERED)
        logger.info("Consuming queue: %s", registered.queuename)
        self.drain()

    def _on_queue_available(self, queuename: str) -> None:
        if self._state != ControllerState.QUEUE_REGISTERED:
            logger.debug("Queue event for %s ignored in state %s", queuename, self._state.value)
            return
        self.drain()

    # -- drain cycle ---------------------------------------------------------

    def drain(self) -> DrainSummary:
        """Pop and process items until the queue reports empty."""

        cycle = DrainSummary(cycles=1)
        self._transition(ControllerState.POLLING)
        try:
            while not self._stop_requested.is_set():
                try:
                    before = take_snapshot(self.workdir)
                except OSError as error:
                    logger.error("Failed to list files in %s: %s", self.workdir, error)
                    break

                logger.info("Popping workitem from queue")
                try:
                    item = self.client.pop_workitem(self.wiq)
                except PopError as error:
                    logger.warning("Pop failed, ending drain cycle: %s", error)
                    break
                if item is None:
                    logger.info("No more workitems in queue")
                    break

                cycle.popped += 1
                self._transition(ControllerState.DRAINING)
                try:
                    self._process(item, before, cycle)
                finally:
                    self._cleanup(before, cycle)
                    self._transition(ControllerState.POLLING)
        finally:
            if cycle.popped > 0:
                logger.info("No more workitems in %s workitem queue", self.wiq)
            else:
                logger.info("Drain cycle for %s found no workitems", self.wiq)
            self.summary.merge(cycle)
            self._transition(ControllerState.QUEUE_REGISTERED)
        return cycle

    def _process(self, item: WorkItem, before: DirectorySnapshot, cycle: DrainSummary) -> None:
        logger.info("Starting processing of workitem %s", item.id)
        outcome = self._execute(item)
        try:
            new_files = self._new_files(before)
        except OSError as error:
            logger.error("Failed to list new files for workitem %s: %s", item.id, error)
            new_files = []
        result = self.reconciler.reconcile(item, outcome, new_files)
        cycle.record(result)

    def _execute(self, item: WorkItem) -> ExecutionOutcome:
        try:
            outcome = self.executor.execute(item)
        except Exception as error:  # noqa: BLE001
            logger.exception("Executor raised while processing workitem %s", item.id)
            return Retry(
                APPLICATION_ERROR,
                str(error) or "Processing failed",
                error.__class__.__name__,
            )
        if not isinstance(outcome, Success | Retry | Fatal):
            logger.error(
                "Executor returned unsupported outcome %r for workitem %s",
                outcome,
                item.id,
            )
            return Fatal(
                APPLICATION_ERROR,
                f"Executor returned unsupported outcome: {outcome!r}",
                type(self.executor).__name__,
            )
        return outcome

    def _new_files(self, before: DirectorySnapshot) -> list[str]:
        return [name for name in new_since(before, self.workdir) if name not in self.ignored_names]

    def _cleanup(self, before: DirectorySnapshot, cycle: DrainSummary) -> None:
        try:
            leftovers = self._new_files(before)
        except OSError as error:
            logger.error("Cleanup scan of %s failed: %s", self.workdir, error)
            return
        for name in leftovers:
            logger.info("Deleting file: %s", name)
            try:
                (self.workdir / name).unlink()
            except FileNotFoundError:
                continue
            except OSError as error:
                logger.error("Failed to delete %s: %s", name, error)
                continue
            cycle.deleted_files += 1

    # -- plumbing ------------------------------------------------------------

    def _post(self, message: _Message) -> bool:
        try:
            self._channel.put_nowait(message)
        except queue.Full:
            logger.warning("Event channel full, dropping %s message", message.kind)
            return False
        return True

    def _transition(self, state: ControllerState) -> None:
        if state != self._state:
            logger.debug("Controller state %s -> %s", self._state.value, state.value)
        self._state = state

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not self.install_signal_handlers or not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.info("Received %s, stopping after current workitem", name)
            # The idle wait polls this flag; posting here could deadlock on the channel lock.
            self._stop_requested.set()

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


def _names_inside(workdir: Path, paths: Iterable[Path]) -> frozenset[str]:
    """Names of ``paths`` that live directly in ``workdir``."""

    root = workdir.resolve()
    return frozenset(path.name for path in paths if path.resolve().parent == root)
