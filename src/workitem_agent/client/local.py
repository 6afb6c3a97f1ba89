"""SQLite-backed queue service for running the worker standalone."""

from __future__ import annotations

import json
import logging
import threading
import zlib
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session as DbSession
from sqlmodel import SQLModel, col, select

from workitem_agent.client.base import (
    CONNECTED,
    DISCONNECTED,
    SIGNED_IN,
    ConnectError,
    PopError,
    QueueEvent,
    QueueEventCallback,
    RegisteredQueue,
    RegisterError,
    Session,
    SessionEventCallback,
    UpdateError,
)
from workitem_agent.storage.common import build_sqlite_engine, to_db_datetime, utc_now
from workitem_agent.storage.models import PENDING, PROCESSING, QueuedWorkItem, WorkItemFile
from workitem_agent.worker.models import ArtifactDescriptor, WorkItem, WorkItemState

logger = logging.getLogger(__name__)

_SQLITE_SIDECARS = ("-wal", "-shm", "-journal")


@dataclass(slots=True)
class StoredWorkItem:
    """Readable workitem view including server-side bookkeeping."""

    id: str
    wiq: str
    name: str
    state: str
    retries: int
    max_retries: int
    payload: dict[str, Any]
    errortype: str | None
    errormessage: str | None
    errorsource: str | None
    created_at: datetime
    files: list[StoredFile] = field(default_factory=list)


@dataclass(slots=True)
class StoredFile:
    """Attachment stored for a workitem."""

    id: str
    filename: str
    compressed: bool
    size_bytes: int


class LocalQueueClient:
    """Queue service facade backed by SQLModel + SQLite.

    Popped items stay in ``processing`` until updated; items never updated
    are handed out again after ``stale_after_seconds``. A ``retry`` update
    puts the item back to ``pending`` until ``max_retries`` is reached, then
    it becomes ``fatal``.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        notify_interval_seconds: float = 2.0,
        stale_after_seconds: int = 1800,
        default_max_retries: int = 3,
    ) -> None:
        self.db_path = db_path
        self.notify_interval_seconds = notify_interval_seconds
        self.stale_after_seconds = stale_after_seconds
        self.default_max_retries = default_max_retries
        self.engine = build_sqlite_engine(db_path=db_path)
        self._session: Session | None = None
        self._session_callbacks: dict[str, SessionEventCallback] = {}
        self._queue_callbacks: dict[str, list[QueueEventCallback]] = {}
        self._notifiers: dict[str, threading.Thread] = {}
        self._notifier_stop = threading.Event()
        self._lock = threading.RLock()

    def init_schema(self) -> None:
        """Create tables when missing."""

        SQLModel.metadata.create_all(self.engine)

    def close(self) -> None:
        self.disconnect()
        self.engine.dispose()

    def store_paths(self) -> list[Path]:
        """The database file plus the journal files SQLite keeps beside it."""

        return [
            self.db_path,
            *(self.db_path.with_name(self.db_path.name + suffix) for suffix in _SQLITE_SIDECARS),
        ]

    # -- session -------------------------------------------------------------

    def connect(self) -> Session:
        try:
            self.init_schema()
        except SQLAlchemyError as error:
            raise ConnectError(f"cannot open queue store {self.db_path}: {error}") from error
        with self._lock:
            self._notifier_stop.clear()
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
            self._notifier_stop.set()
            notifiers = list(self._notifiers.values())
            self._notifiers.clear()
            self._queue_callbacks.clear()
        for thread in notifiers:
            if thread is not threading.current_thread():
                thread.join(timeout=max(1.0, self.notify_interval_seconds * 2))
        self._emit(DISCONNECTED)
        with self._lock:
            self._session_callbacks.clear()

    def on_session_event(self, callback: SessionEventCallback) -> str:
        subscription_id = uuid4().hex
        with self._lock:
            self._session_callbacks[subscription_id] = callback
            signed_in = self._session is not None and self._session.signed_in
        if signed_in:
            callback(SIGNED_IN)
        return subscription_id

    def register_queue(self, name: str, callback: QueueEventCallback) -> RegisteredQueue:
        if not name.strip():
            raise RegisterError("queue name is empty")
        with self._lock:
            if self._session is None:
                raise RegisterError("not connected")
            self._queue_callbacks.setdefault(name, []).append(callback)
            if name not in self._notifiers:
                thread = threading.Thread(
                    target=self._notify_loop,
                    args=(name,),
                    daemon=True,
                    name=f"queue-notifier-{name}",
                )
                self._notifiers[name] = thread
                thread.start()
        return RegisteredQueue(queuename=name)

    # -- queue operations ----------------------------------------------------

    def push_workitem(
        self,
        wiq: str,
        *,
        name: str = "",
        payload: dict[str, Any] | None = None,
        max_retries: int | None = None,
    ) -> WorkItem:
        """Enqueue a new pending workitem."""

        now = utc_now()
        row = QueuedWorkItem(
            id=uuid4().hex,
            wiq=wiq,
            name=name,
            state=PENDING,
            retries=0,
            max_retries=max_retries if max_retries is not None else self.default_max_retries,
            payload_json=json.dumps(payload or {}, ensure_ascii=False),
            created_at=now,
            updated_at=now,
        )
        with DbSession(self.engine) as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            item = _to_workitem(row)
        self._notify(wiq)
        return item

    def pop_workitem(self, wiq: str, wiqid: str | None = None) -> WorkItem | None:
        try:
            self._recover_stale()
            return self._claim(wiqid or wiq)
        except SQLAlchemyError as error:
            raise PopError(f"pop from {wiq} failed: {error}") from error

    def update_workitem(
        self,
        item: WorkItem,
        attachments: Sequence[ArtifactDescriptor],
        *,
        base_dir: Path,
    ) -> list[str]:
        if item.state == WorkItemState.PENDING:
            raise UpdateError(f"workitem {item.id} has no outcome to report")
        blobs: list[tuple[ArtifactDescriptor, bytes, int]] = []
        unreadable: list[str] = []
        for descriptor in attachments:
            try:
                raw = (base_dir / descriptor.filename).read_bytes()
            except OSError as error:
                logger.warning("Dropping attachment %s: %s", descriptor.filename, error)
                unreadable.append(descriptor.filename)
                continue
            content = zlib.compress(raw) if descriptor.compressed else raw
            blobs.append((descriptor, content, len(raw)))

        now = utc_now()
        file_ids: list[str] = []
        try:
            with DbSession(self.engine) as session:
                row = session.get(QueuedWorkItem, item.id)
                if row is None:
                    raise UpdateError(f"workitem {item.id} not found")
                if row.state != PROCESSING:
                    raise UpdateError(f"workitem {item.id} is not being processed ({row.state})")
                for descriptor, content, size_bytes in blobs:
                    file_id = uuid4().hex
                    session.add(
                        WorkItemFile(
                            id=file_id,
                            workitem_id=row.id,
                            filename=descriptor.filename,
                            compressed=descriptor.compressed,
                            size_bytes=size_bytes,
                            content=content,
                            created_at=now,
                        ),
                    )
                    file_ids.append(file_id)
                _apply_reported_state(row, item)
                row.popped_at = None
                row.updated_at = now
                session.add(row)
                session.commit()
        except SQLAlchemyError as error:
            raise UpdateError(f"update of {item.id} failed: {error}") from error

        for (descriptor, _, _), file_id in zip(blobs, file_ids, strict=True):
            descriptor.remote_id = file_id
        return unreadable

    # -- inspection ----------------------------------------------------------

    def list_workitems(
        self,
        wiq: str,
        *,
        state: str | None = None,
        limit: int = 50,
    ) -> list[StoredWorkItem]:
        with DbSession(self.engine) as session:
            query = select(QueuedWorkItem).where(QueuedWorkItem.wiq == wiq)
            if state is not None:
                query = query.where(QueuedWorkItem.state == state)
            rows = session.exec(
                query.order_by(col(QueuedWorkItem.created_at).asc()).limit(limit),
            ).all()
            views = [_to_stored_view(row) for row in rows]
            if not views:
                return views
            files = session.exec(
                select(WorkItemFile)
                .where(col(WorkItemFile.workitem_id).in_([view.id for view in views]))
                .order_by(col(WorkItemFile.created_at).asc()),
            ).all()
        by_id = {view.id: view for view in views}
        for file_row in files:
            by_id[file_row.workitem_id].files.append(
                StoredFile(
                    id=file_row.id,
                    filename=file_row.filename,
                    compressed=file_row.compressed,
                    size_bytes=file_row.size_bytes,
                ),
            )
        return views

    def read_file(self, file_id: str) -> bytes:
        """Return the original bytes of a stored attachment."""

        with DbSession(self.engine) as session:
            row = session.get(WorkItemFile, file_id)
            if row is None:
                raise KeyError(file_id)
            return zlib.decompress(row.content) if row.compressed else row.content

    def count_pending(self, wiq: str) -> int:
        with DbSession(self.engine) as session:
            return session.exec(
                select(func.count())
                .select_from(QueuedWorkItem)
                .where(QueuedWorkItem.wiq == wiq, QueuedWorkItem.state == PENDING),
            ).one()

    # -- internals -----------------------------------------------------------

    def _claim(self, wiq: str) -> WorkItem | None:
        while True:
            now = utc_now()
            with DbSession(self.engine) as session:
                query = select(QueuedWorkItem).where(
                    QueuedWorkItem.wiq == wiq,
                    QueuedWorkItem.state == PENDING,
                )
                candidate = session.exec(
                    query.order_by(col(QueuedWorkItem.created_at).asc()).limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                result = session.exec(
                    sa_update(QueuedWorkItem)
                    .where(
                        col(QueuedWorkItem.id) == candidate.id,
                        col(QueuedWorkItem.state) == PENDING,
                    )
                    .values(
                        state=PROCESSING,
                        popped_at=to_db_datetime(now),
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()
                claimed = session.get(QueuedWorkItem, candidate.id, populate_existing=True)
                if claimed is None:
                    return None
                return _to_workitem(claimed)

    def _recover_stale(self) -> None:
        if self.stale_after_seconds <= 0:
            return
        cutoff = utc_now() - timedelta(seconds=self.stale_after_seconds)
        with DbSession(self.engine) as session:
            result = session.exec(
                sa_update(QueuedWorkItem)
                .where(
                    col(QueuedWorkItem.state) == PROCESSING,
                    col(QueuedWorkItem.popped_at) < to_db_datetime(cutoff),
                )
                .values(state=PENDING, popped_at=None),
            )
            session.commit()
            if result.rowcount:
                logger.warning("Redelivering %d unacknowledged workitems", result.rowcount)

    def _notify_loop(self, name: str) -> None:
        while not self._notifier_stop.wait(self.notify_interval_seconds):
            try:
                pending = self.count_pending(name)
            except SQLAlchemyError as error:
                logger.warning("Pending check for %s failed: %s", name, error)
                continue
            if pending > 0:
                self._notify(name)

    def _notify(self, name: str) -> None:
        with self._lock:
            callbacks = list(self._queue_callbacks.get(name, ()))
        for callback in callbacks:
            callback(QueueEvent(queuename=name))

    def _emit(self, event_name: str) -> None:
        with self._lock:
            callbacks = list(self._session_callbacks.values())
        for callback in callbacks:
            callback(event_name)


def _apply_reported_state(row: QueuedWorkItem, item: WorkItem) -> None:
    row.errortype = item.errortype
    row.errormessage = item.errormessage
    row.errorsource = item.errorsource
    if item.state != WorkItemState.RETRY:
        row.state = item.state.value
        return
    row.retries += 1
    if row.retries >= row.max_retries:
        row.state = WorkItemState.FATAL.value
    else:
        row.state = PENDING


def _to_workitem(row: QueuedWorkItem) -> WorkItem:
    return WorkItem(
        id=row.id,
        wiq=row.wiq,
        name=row.name,
        retries=row.retries,
        state=WorkItemState.PENDING,
        payload=json.loads(row.payload_json or "{}"),
    )


def _to_stored_view(row: QueuedWorkItem) -> StoredWorkItem:
    return StoredWorkItem(
        id=row.id,
        wiq=row.wiq,
        name=row.name,
        state=row.state,
        retries=row.retries,
        max_retries=row.max_retries,
        payload=json.loads(row.payload_json or "{}"),
        errortype=row.errortype,
        errormessage=row.errormessage,
        errorsource=row.errorsource,
        created_at=row.created_at,
    )
