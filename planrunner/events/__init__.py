"""Lifecycle events and their fan-out to subscribers."""

from .bus import EventBus
from .schemas import EventData, EventType, LifecycleEvent
from .subscribers import EventLog, LoggingSubscriber, WebhookSubscriber

__all__ = [
    "EventBus",
    "EventData",
    "EventLog",
    "EventType",
    "LifecycleEvent",
    "LoggingSubscriber",
    "WebhookSubscriber",
]
