"""
Ticket aggregate.

A ticket snapshots price, commission rate and expiry from its tournament at
issuance and is independent of the tournament afterwards.

    RESERVED -> PAID -> USED
    RESERVED/PAID -> CANCELLED
    RESERVED/PAID -> EXPIRED
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from torneo import money
from torneo.events.models import LifecycleEvent, LifecycleEventType, ReferenceType
from torneo.lifecycle import TransitionTable
from torneo.tournament.models import Tournament, TournamentFormat
from torneo.utils.clock import ensure_utc
from torneo.utils.errors import (
    InvalidArgumentError,
    InvalidStateTransitionError,
    IssuanceFailure,
    TicketExpiredError,
    TicketNotIssuableError,
)

DEFAULT_EXPIRY_LEAD = timedelta(hours=1)
PAYMENT_REFERENCE_MAX_LENGTH = 100


class TicketStatus(str, Enum):
    RESERVED = "RESERVED"
    PAID = "PAID"
    USED = "USED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


TICKET_TRANSITIONS: TransitionTable[TicketStatus] = TransitionTable(
    "Ticket",
    {
        TicketStatus.RESERVED: {
            TicketStatus.PAID,
            TicketStatus.EXPIRED,
            TicketStatus.CANCELLED,
        },
        TicketStatus.PAID: {
            TicketStatus.USED,
            TicketStatus.EXPIRED,
            TicketStatus.CANCELLED,
        },
        TicketStatus.USED: set(),
        TicketStatus.EXPIRED: set(),
        TicketStatus.CANCELLED: set(),
    },
)


@dataclass(frozen=True)
class TicketMetrics:
    """Point-in-time financial and validity summary of one ticket."""

    price: Decimal
    commission: Decimal
    net_amount: Decimal
    status: TicketStatus
    expired: bool
    valid_for_use: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "price": str(self.price),
            "commission": str(self.commission),
            "net_amount": str(self.net_amount),
            "status": self.status.value,
            "expired": self.expired,
            "valid_for_use": self.valid_for_use,
        }


@dataclass
class Ticket:
    """Ticket aggregate root."""

    ticket_id: str
    code: str
    tournament_id: str
    holder_id: str
    price: Decimal
    commission_rate: Decimal
    commission: Decimal
    expiration_date: datetime
    issued_at: datetime
    status: TicketStatus = TicketStatus.RESERVED
    purchase_date: Optional[datetime] = None
    usage_date: Optional[datetime] = None
    payment_reference: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None
    version: int = 0

    _pending_events: List[LifecycleEvent] = field(
        default_factory=list, repr=False, compare=False
    )

    # =========================================================================
    # Issuance
    # =========================================================================

    @staticmethod
    def check_issuable(
        tournament: Tournament,
        now: datetime,
        expiry_lead: timedelta = DEFAULT_EXPIRY_LEAD,
    ) -> datetime:
        """Check issuance preconditions in order and return the expiry to use.

        Raises:
            TicketNotIssuableError: with the first failing reason
        """
        now = ensure_utc(now)
        tid = tournament.tournament_id
        if tournament.is_deleted:
            raise TicketNotIssuableError(tid, IssuanceFailure.TOURNAMENT_DELETED)
        if tournament.format is not TournamentFormat.PAID:
            raise TicketNotIssuableError(tid, IssuanceFailure.NOT_PAID_FORMAT)
        if tournament.entry_fee <= 0:
            raise TicketNotIssuableError(tid, IssuanceFailure.NO_ENTRY_FEE)
        if not tournament.status.allows_registration or not tournament.is_registration_open(now):
            raise TicketNotIssuableError(tid, IssuanceFailure.REGISTRATION_CLOSED)
        if not tournament.has_available_slots():
            raise TicketNotIssuableError(tid, IssuanceFailure.NO_CAPACITY)

        expiration_date = tournament.start_date - expiry_lead
        if expiration_date <= now:
            raise TicketNotIssuableError(
                tid,
                IssuanceFailure.EXPIRY_IN_PAST,
                message=(
                    f"Ticket for {tid} would expire at "
                    f"{expiration_date.isoformat()}, which is not in the future"
                ),
            )
        return expiration_date

    @classmethod
    def issue(
        cls,
        tournament: Tournament,
        holder_id: str,
        code: str,
        now: datetime,
        expiry_lead: timedelta = DEFAULT_EXPIRY_LEAD,
        ticket_id: Optional[str] = None,
    ) -> "Ticket":
        """Issue a RESERVED ticket, snapshotting price, rate and expiry."""
        if not holder_id:
            raise InvalidArgumentError("holder_id", "must not be empty")
        if not code:
            raise InvalidArgumentError("code", "must not be empty")

        expiration_date = cls.check_issuable(tournament, now, expiry_lead)
        now = ensure_utc(now)
        price = money.quantize_money(tournament.entry_fee)
        rate = tournament.commission_rate

        ticket = cls(
            ticket_id=ticket_id or str(uuid4()),
            code=code,
            tournament_id=tournament.tournament_id,
            holder_id=holder_id,
            price=price,
            commission_rate=rate,
            commission=money.calculate_commission(price, rate),
            expiration_date=expiration_date,
            issued_at=now,
        )
        ticket._record(
            LifecycleEventType.TICKET_CONFIRMED,
            now,
            code=code,
            price=str(ticket.price),
            expiration_date=expiration_date.isoformat(),
        )
        return ticket

    # =========================================================================
    # Queries
    # =========================================================================

    @property
    def net_amount(self) -> Decimal:
        return money.net_amount(self.price, self.commission)

    @property
    def is_terminal(self) -> bool:
        return TICKET_TRANSITIONS.is_terminal(self.status)

    def is_expired(self, now: datetime) -> bool:
        """True once now has reached the expiration date."""
        return ensure_utc(now) >= self.expiration_date

    def is_valid_for_use(self, now: datetime) -> bool:
        return self.status is TicketStatus.PAID and not self.is_expired(now)

    def can_be_refunded(self) -> bool:
        return self.status is TicketStatus.PAID and self.usage_date is None

    def metrics(self, now: datetime) -> TicketMetrics:
        return TicketMetrics(
            price=self.price,
            commission=self.commission,
            net_amount=self.net_amount,
            status=self.status,
            expired=self.is_expired(now),
            valid_for_use=self.is_valid_for_use(now),
        )

    # =========================================================================
    # State transitions
    # =========================================================================

    def mark_as_paid(self, payment_reference: str, now: datetime) -> None:
        """RESERVED -> PAID.

        Raises:
            InvalidStateTransitionError: not RESERVED
            TicketExpiredError: now has reached the expiration date
            InvalidArgumentError: blank or oversized payment reference
        """
        TICKET_TRANSITIONS.require(self.status, TicketStatus.PAID, self.ticket_id)
        if self.is_expired(now):
            raise TicketExpiredError(self.ticket_id, self.expiration_date)
        reference = (payment_reference or "").strip()
        if not reference:
            raise InvalidArgumentError("payment_reference", "must not be blank")
        if len(reference) > PAYMENT_REFERENCE_MAX_LENGTH:
            raise InvalidArgumentError(
                "payment_reference",
                f"must be at most {PAYMENT_REFERENCE_MAX_LENGTH} characters",
            )

        now = ensure_utc(now)
        self.status = TicketStatus.PAID
        self.payment_reference = reference
        self.purchase_date = now
        self._record(
            LifecycleEventType.TICKET_PAID,
            now,
            payment_reference=reference,
            price=str(self.price),
        )

    def mark_as_used(self, now: datetime) -> None:
        """PAID -> USED, only before expiry."""
        TICKET_TRANSITIONS.require(self.status, TicketStatus.USED, self.ticket_id)
        if self.is_expired(now):
            raise TicketExpiredError(self.ticket_id, self.expiration_date)
        now = ensure_utc(now)
        self.status = TicketStatus.USED
        self.usage_date = now
        self._record(LifecycleEventType.TICKET_USED, now)

    def cancel(self, now: datetime) -> bool:
        """RESERVED/PAID -> CANCELLED. Returns whether the holder is owed a refund."""
        TICKET_TRANSITIONS.require(self.status, TicketStatus.CANCELLED, self.ticket_id)
        refundable = self.can_be_refunded()
        now = ensure_utc(now)
        self.status = TicketStatus.CANCELLED
        self.cancelled_at = now
        self._record(LifecycleEventType.TICKET_CANCELLED, now, refundable=refundable)
        return refundable

    def mark_as_expired(self, now: datetime) -> bool:
        """Expire a RESERVED or PAID ticket whose expiration date has passed.

        Returns True if the ticket transitioned, False if it was already
        terminal.

        Raises:
            InvalidStateTransitionError: the expiration date has not been reached
        """
        if self.is_terminal:
            return False
        if not self.is_expired(now):
            raise InvalidStateTransitionError(
                entity=TICKET_TRANSITIONS.entity,
                entity_id=self.ticket_id,
                current=self.status.value,
                target=TicketStatus.EXPIRED.value,
                message=(
                    f"Ticket {self.ticket_id} does not expire until "
                    f"{self.expiration_date.isoformat()}"
                ),
            )
        TICKET_TRANSITIONS.require(self.status, TicketStatus.EXPIRED, self.ticket_id)
        previous = self.status
        now = ensure_utc(now)
        self.status = TicketStatus.EXPIRED
        self.expired_at = now
        self._record(
            LifecycleEventType.TICKET_EXPIRED, now, previous_status=previous.value
        )
        return True

    # =========================================================================
    # Events
    # =========================================================================

    def collect_pending_events(self) -> List[LifecycleEvent]:
        events, self._pending_events = self._pending_events, []
        return events

    def _record(self, event_type: LifecycleEventType, now: datetime, **data: Any) -> None:
        data.setdefault("status", self.status.value)
        data.setdefault("tournament_id", self.tournament_id)
        data.setdefault("holder_id", self.holder_id)
        self._pending_events.append(
            LifecycleEvent(
                event_type=event_type,
                reference_type=ReferenceType.TICKET,
                reference_id=self.ticket_id,
                occurred_at=now,
                data=data,
            )
        )

    def to_dict(self) -> Dict[str, Any]:
        def _iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            "ticket_id": self.ticket_id,
            "code": self.code,
            "tournament_id": self.tournament_id,
            "holder_id": self.holder_id,
            "status": self.status.value,
            "price": str(self.price),
            "commission_rate": str(self.commission_rate),
            "commission": str(self.commission),
            "net_amount": str(self.net_amount),
            "issued_at": self.issued_at.isoformat(),
            "expiration_date": self.expiration_date.isoformat(),
            "purchase_date": _iso(self.purchase_date),
            "usage_date": _iso(self.usage_date),
            "payment_reference": self.payment_reference,
            "cancelled_at": _iso(self.cancelled_at),
            "expired_at": _iso(self.expired_at),
            "version": self.version,
        }
