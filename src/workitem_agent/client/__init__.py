"""Queue service client implementations."""

from workitem_agent.client.base import (
    ConnectError,
    EventSubscriptionError,
    PopError,
    QueueEvent,
    QueueServiceClient,
    QueueServiceError,
    RegisteredQueue,
    RegisterError,
    Session,
    UpdateError,
)
from workitem_agent.client.local import LocalQueueClient
from workitem_agent.client.memory import InMemoryQueueClient

__all__ = [
    "ConnectError",
    "EventSubscriptionError",
    "InMemoryQueueClient",
    "LocalQueueClient",
    "PopError",
    "QueueEvent",
    "QueueServiceClient",
    "QueueServiceError",
    "RegisterError",
    "RegisteredQueue",
    "Session",
    "UpdateError",
]
