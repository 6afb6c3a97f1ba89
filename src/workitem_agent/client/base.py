"""Queue service client interface consumed by the worker."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from workitem_agent.worker.models import ArtifactDescriptor, WorkItem

SIGNED_IN = "SignedIn"
SIGNED_OUT = "SignedOut"
CONNECTED = "Connected"
DISCONNECTED = "Disconnected"


class QueueServiceError(RuntimeError):
    """Base class for failures reported by the queue service."""


class ConnectError(QueueServiceError):
    """Session could not be established."""


class EventSubscriptionError(QueueServiceError):
    """Session event callback could not be registered."""


class RegisterError(QueueServiceError):
    """Queue registration was refused."""


class PopError(QueueServiceError):
    """Pop call failed."""


class UpdateError(QueueServiceError):
    """Update call failed."""


@dataclass(slots=True)
class Session:
    """Connection state shared between the controller and its callbacks."""

    client_id: str
    connected: bool = True
    signed_in: bool = False
    queue_name: str | None = None


@dataclass(frozen=True, slots=True)
class RegisteredQueue:
    """Result of a successful queue registration."""

    queuename: str


@dataclass(frozen=True, slots=True)
class QueueEvent:
    """Notification that a registered queue may have work."""

    queuename: str


SessionEventCallback = Callable[[str], None]
QueueEventCallback = Callable[[QueueEvent], None]


class QueueServiceClient(Protocol):
    """Protocol implemented by queue service transports.

    Callbacks may be invoked on threads owned by the client.
    """

    def connect(self) -> Session:
        """Open a session or raise ``ConnectError``."""

    def disconnect(self) -> None:
        """Close the session and stop delivering callbacks."""

    def on_session_event(self, callback: SessionEventCallback) -> str:
        """Subscribe to session events, return the subscription id."""

    def register_queue(self, name: str, callback: QueueEventCallback) -> RegisteredQueue:
        """Register interest in ``name`` or raise ``RegisterError``."""

    def pop_workitem(self, wiq: str, wiqid: str | None = None) -> WorkItem | None:
        """Pop one item, ``None`` when the queue is empty.

        ``wiqid`` identifies the queue by id and wins over ``wiq``.
        """

    def update_workitem(
        self,
        item: WorkItem,
        attachments: Sequence[ArtifactDescriptor],
        *,
        base_dir: Path,
    ) -> list[str]:
        """Report ``item`` and upload ``attachments`` read from ``base_dir``.

        Sets ``remote_id`` on each uploaded descriptor. Attachments that cannot
        be read are dropped; their names are returned and the state is still
        reported.
        """
