"""Lifecycle events emitted by tournaments and tickets."""

from torneo.events.bus import (
    EventMetrics,
    LifecycleEventBus,
    RecordingPublisher,
    Subscription,
)
from torneo.events.models import (
    EventPublisher,
    LifecycleEvent,
    LifecycleEventType,
    ReferenceType,
)

__all__ = [
    "EventMetrics",
    "EventPublisher",
    "LifecycleEvent",
    "LifecycleEventBus",
    "LifecycleEventType",
    "RecordingPublisher",
    "ReferenceType",
    "Subscription",
]
