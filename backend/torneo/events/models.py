"""
Lifecycle event models.

Aggregates record these facts as they transition; the application
services hand them to an EventPublisher once the change is persisted.
Delivery, retries and channel selection belong to the notifier.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Protocol
from uuid import uuid4

from torneo.utils.json_utils import json_dumps


class LifecycleEventType(Enum):
    """Outbound lifecycle facts."""

    # Tournament
    TOURNAMENT_CREATED = "tournament.created"
    TOURNAMENT_PUBLISHED = "tournament.published"
    TOURNAMENT_STARTED = "tournament.started"
    TOURNAMENT_FINISHED = "tournament.finished"
    TOURNAMENT_CANCELLED = "tournament.cancelled"
    TOURNAMENT_DELETED = "tournament.deleted"
    PARTICIPANT_REGISTERED = "tournament.participant_registered"

    # Ticket
    TICKET_CONFIRMED = "ticket.confirmed"
    TICKET_PAID = "ticket.paid"
    TICKET_USED = "ticket.used"
    TICKET_CANCELLED = "ticket.cancelled"
    TICKET_EXPIRED = "ticket.expired"


class ReferenceType(str, Enum):
    TOURNAMENT = "TOURNAMENT"
    TICKET = "TICKET"


@dataclass(frozen=True)
class LifecycleEvent:
    """A single lifecycle fact with the reference it concerns."""

    event_type: LifecycleEventType
    reference_type: ReferenceType
    reference_id: str
    occurred_at: datetime
    data: Dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: str(uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "reference_type": self.reference_type.value,
            "reference_id": self.reference_id,
            "occurred_at": self.occurred_at.isoformat(),
            "data": self.data,
        }

    def to_json(self) -> str:
        return json_dumps(self.to_dict())


class EventPublisher(Protocol):
    """Anything that accepts lifecycle events for delivery."""

    async def publish(self, event: LifecycleEvent) -> None: ...
