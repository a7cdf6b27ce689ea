"""
Lifecycle Event Bus.

In-process fan-out of lifecycle events to subscribed handlers, with an
optional Redis Stream mirror for out-of-process notifiers.

    [Service] -> publish() -> [local handlers]
                           +-> [Redis Stream XADD] -> external notifier

Handler failures are logged and counted; they never reach the publisher,
because the transition that produced the event is already committed.
"""

import asyncio
import logging
import time
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Set
from uuid import uuid4

import redis.asyncio as redis

from torneo.events.models import LifecycleEvent, LifecycleEventType
from torneo.utils.json_utils import json_dumps

logger = logging.getLogger(__name__)

EventHandler = Callable[[LifecycleEvent], Awaitable[None]]


@dataclass
class Subscription:
    """Event subscription metadata."""

    subscription_id: str
    event_types: Set[LifecycleEventType]
    handler: EventHandler
    reference_id: Optional[str] = None  # None = every reference
    is_active: bool = True


@dataclass
class EventMetrics:
    """Event processing metrics."""

    events_published: int = 0
    events_processed: int = 0
    events_failed: int = 0
    stream_failures: int = 0
    avg_processing_time_ms: float = 0.0
    last_event_time: Optional[datetime] = None


class LifecycleEventBus:
    """Publish lifecycle events to local subscribers and, optionally, a stream."""

    STREAM_KEY = "torneo:lifecycle-events"

    def __init__(
        self,
        redis_client: Optional[redis.Redis] = None,
        stream_max_len: int = 10000,
    ):
        self.redis = redis_client
        self.stream_max_len = stream_max_len

        self._subscriptions: Dict[str, Subscription] = {}
        self._handlers_by_type: Dict[LifecycleEventType, List[Subscription]] = (
            defaultdict(list)
        )
        self._metrics = EventMetrics()

    def subscribe(
        self,
        event_types: Set[LifecycleEventType],
        handler: EventHandler,
        reference_id: Optional[str] = None,
    ) -> str:
        """
        Subscribe to lifecycle events.

        Args:
            event_types: Set of event types to listen for
            handler: Async function to call on event
            reference_id: Only deliver events about this tournament/ticket

        Returns:
            Subscription ID for unsubscribe
        """
        subscription_id = str(uuid4())
        subscription = Subscription(
            subscription_id=subscription_id,
            event_types=set(event_types),
            handler=handler,
            reference_id=reference_id,
        )

        self._subscriptions[subscription_id] = subscription
        for event_type in subscription.event_types:
            self._handlers_by_type[event_type].append(subscription)

        return subscription_id

    def unsubscribe(self, subscription_id: str) -> bool:
        """Remove subscription."""
        subscription = self._subscriptions.pop(subscription_id, None)
        if not subscription:
            return False

        subscription.is_active = False
        for event_type in subscription.event_types:
            self._handlers_by_type[event_type] = [
                s
                for s in self._handlers_by_type[event_type]
                if s.subscription_id != subscription_id
            ]
        return True

    async def publish(self, event: LifecycleEvent) -> None:
        """Dispatch to local handlers and mirror to the stream if configured."""
        self._metrics.events_published += 1
        self._metrics.last_event_time = datetime.now(timezone.utc)

        if self.redis is not None:
            await self._publish_to_stream(event)

        await self._dispatch_local(event)

    async def publish_batch(self, events: List[LifecycleEvent]) -> None:
        """Publish events in order."""
        for event in events:
            await self.publish(event)

    async def _publish_to_stream(self, event: LifecycleEvent) -> Optional[str]:
        """Append the event to the Redis Stream. Returns the entry ID."""
        data = {
            "event_id": event.event_id,
            "event_type": event.event_type.value,
            "reference_type": event.reference_type.value,
            "reference_id": event.reference_id,
            "occurred_at": event.occurred_at.isoformat(),
            "data": json_dumps(event.data),
        }
        try:
            return await self.redis.xadd(
                self.STREAM_KEY,
                data,
                maxlen=self.stream_max_len,
                approximate=True,
            )
        except redis.RedisError:
            self._metrics.stream_failures += 1
            logger.exception(
                "Failed to mirror event %s (%s) to stream",
                event.event_id,
                event.event_type.value,
            )
            return None

    async def _dispatch_local(self, event: LifecycleEvent) -> None:
        """Run every matching handler concurrently; one failure does not affect others."""
        tasks = []
        for subscription in self._handlers_by_type.get(event.event_type, []):
            if not subscription.is_active:
                continue
            if (
                subscription.reference_id
                and subscription.reference_id != event.reference_id
            ):
                continue
            tasks.append(
                asyncio.create_task(
                    self._safe_handler_call(subscription.handler, event)
                )
            )

        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _safe_handler_call(
        self,
        handler: EventHandler,
        event: LifecycleEvent,
    ) -> None:
        """Call handler, recording timing and failures."""
        try:
            start_time = time.perf_counter()
            await handler(event)
            elapsed_ms = (time.perf_counter() - start_time) * 1000

            total = self._metrics.events_processed
            avg = self._metrics.avg_processing_time_ms
            self._metrics.avg_processing_time_ms = (avg * total + elapsed_ms) / (
                total + 1
            )
            self._metrics.events_processed += 1
        except Exception:
            self._metrics.events_failed += 1
            logger.exception(
                "Event handler failed for %s (%s)",
                event.event_type.value,
                event.reference_id,
            )

    def get_metrics(self) -> EventMetrics:
        """Get event processing metrics."""
        return self._metrics


class RecordingPublisher:
    """EventPublisher that keeps every event in memory."""

    def __init__(self) -> None:
        self.events: List[LifecycleEvent] = []

    async def publish(self, event: LifecycleEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: LifecycleEventType) -> List[LifecycleEvent]:
        return [e for e in self.events if e.event_type == event_type]
