"""In-process queue service used by tests and dry runs."""

from __future__ import annotations

import threading
from collections import deque
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any
from uuid import uuid4

from workitem_agent.client.base import (
    CONNECTED,
    DISCONNECTED,
    SIGNED_IN,
    ConnectError,
    EventSubscriptionError,
    PopError,
    QueueEvent,
    QueueEventCallback,
    RegisteredQueue,
    RegisterError,
    Session,
    SessionEventCallback,
    UpdateError,
)
from workitem_agent.worker.models import ArtifactDescriptor, WorkItem


@dataclass(slots=True)
class UpdateCall:
    """One recorded ``update_workitem`` call."""

    item: WorkItem
    attachments: list[ArtifactDescriptor]
    contents: dict[str, bytes] = field(default_factory=dict)


class InMemoryQueueClient:
    """Thread-safe queue service kept entirely in memory.

    Failure flags (``fail_connect``, ``fail_subscribe``, ``fail_register``,
    ``fail_pop``, ``fail_update``) make the matching call raise. Callbacks
    run synchronously on the calling thread.
    """

    def __init__(self) -> None:
        self.fail_connect = False
        self.fail_subscribe = False
        self.fail_register = False
        self.fail_pop = False
        self.fail_update = False
        self.updates: list[UpdateCall] = []
        self.pop_calls = 0
        self.update_calls = 0
        self._queues: dict[str, deque[WorkItem]] = {}
        self._session_callbacks: dict[str, SessionEventCallback] = {}
        self._queue_callbacks: dict[str, list[QueueEventCallback]] = {}
        self._session: Session | None = None
        self._lock = threading.RLock()

    def push(
        self,
        wiq: str,
        *,
        name: str = "",
        payload: dict[str, Any] | None = None,
    ) -> WorkItem:
        item = WorkItem(
            id=uuid4().hex,
            wiq=wiq,
            name=name,
            payload=dict(payload or {}),
        )
        with self._lock:
            self._queues.setdefault(wiq, deque()).append(item)
            callbacks = list(self._queue_callbacks.get(wiq, ()))
        for callback in callbacks:
            callback(QueueEvent(queuename=wiq))
        return item

    def pending(self, wiq: str) -> int:
        with self._lock:
            return len(self._queues.get(wiq, ()))

    def connect(self) -> Session:
        if self.fail_connect:
            raise ConnectError("connection refused")
        with self._lock:
            self._session = Session(client_id=uuid4().hex, connected=True, signed_in=True)
            session = self._session
        self._emit(CONNECTED)
        self._emit(SIGNED_IN)
        return session

    def disconnect(self) -> None:
        with self._lock:
            if self._session is None:
                return
            self._session = None
            self._queue_callbacks.clear()
        self._emit(DISCONNECTED)
        with self._lock:
            self._session_callbacks.clear()

    def emit_session_event(self, event_name: str) -> None:
        self._emit(event_name)

    def on_session_event(self, callback: SessionEventCallback) -> str:
        if self.fail_subscribe:
            raise EventSubscriptionError("event stream unavailable")
        subscription_id = uuid4().hex
        with self._lock:
            self._session_callbacks[subscription_id] = callback
            signed_in = self._session is not None and self._session.signed_in
        if signed_in:
            callback(SIGNED_IN)
        return subscription_id

    def register_queue(self, name: str, callback: QueueEventCallback) -> RegisteredQueue:
        if self.fail_register:
            raise RegisterError(f"queue {name} not allowed")
        with self._lock:
            if self._session is None:
                raise RegisterError("not connected")
            self._queue_callbacks.setdefault(name, []).append(callback)
        return RegisteredQueue(queuename=name)

    def pop_workitem(self, wiq: str, wiqid: str | None = None) -> WorkItem | None:
        with self._lock:
            self.pop_calls += 1
            if self.fail_pop:
                raise PopError("pop failed")
            pending = self._queues.get(wiqid or wiq)
            if not pending:
                return None
            return pending.popleft()

    def update_workitem(
        self,
        item: WorkItem,
        attachments: Sequence[ArtifactDescriptor],
        *,
        base_dir: Path,
    ) -> list[str]:
        with self._lock:
            self.update_calls += 1
        if self.fail_update:
            raise UpdateError("update rejected")
        contents: dict[str, bytes] = {}
        unreadable: list[str] = []
        for descriptor in attachments:
            try:
                contents[descriptor.filename] = (base_dir / descriptor.filename).read_bytes()
            except OSError:
                unreadable.append(descriptor.filename)
                continue
            descriptor.remote_id = uuid4().hex
        with self._lock:
            self.updates.append(
                UpdateCall(
                    item=item,
                    attachments=[
                        replace(descriptor)
                        for descriptor in attachments
                        if descriptor.remote_id is not None
                    ],
                    contents=contents,
                ),
            )
        return unreadable

    def _emit(self, event_name: str) -> None:
        with self._lock:
            callbacks = list(self._session_callbacks.values())
        for callback in callbacks:
            callback(event_name)
