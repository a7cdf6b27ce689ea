"""
Tournament aggregate.

A tournament is created as a DRAFT by an organizer, edited freely while it
is a draft, then moved through its lifecycle by the methods below. Every
method takes ``now`` from the caller; nothing here reads a clock.

Transitions record LifecycleEvents on the aggregate. The service collects
them with ``collect_pending_events()`` and publishes after a successful save.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from torneo import money
from torneo.events.models import LifecycleEvent, LifecycleEventType, ReferenceType
from torneo.lifecycle import TransitionTable
from torneo.utils.clock import ensure_utc
from torneo.utils.errors import (
    AlreadyRegisteredError,
    CapacityExceededError,
    InsufficientParticipantsError,
    InvalidArgumentError,
    InvalidStateTransitionError,
    RegistrationClosedError,
    TournamentNotEditableError,
)

NAME_MIN_LENGTH = 3
NAME_MAX_LENGTH = 100
DESCRIPTION_MAX_LENGTH = 2000
STREAM_URL_MAX_LENGTH = 255
STREAM_PLATFORM_MAX_LENGTH = 30
TEAM_NAME_MAX_LENGTH = 50
DEFAULT_MIN_PARTICIPANTS = 2


class TournamentStatus(str, Enum):
    """Tournament lifecycle states."""

    DRAFT = "DRAFT"
    PUBLISHED = "PUBLISHED"
    IN_PROGRESS = "IN_PROGRESS"
    FINISHED = "FINISHED"
    CANCELLED = "CANCELLED"

    @property
    def is_active(self) -> bool:
        return self not in (TournamentStatus.FINISHED, TournamentStatus.CANCELLED)

    @property
    def allows_registration(self) -> bool:
        return self is TournamentStatus.PUBLISHED


class TournamentFormat(str, Enum):
    FREE = "FREE"
    PAID = "PAID"


TOURNAMENT_TRANSITIONS: TransitionTable[TournamentStatus] = TransitionTable(
    "Tournament",
    {
        TournamentStatus.DRAFT: {
            TournamentStatus.PUBLISHED,
            TournamentStatus.CANCELLED,
        },
        TournamentStatus.PUBLISHED: {
            TournamentStatus.IN_PROGRESS,
            TournamentStatus.CANCELLED,
        },
        TournamentStatus.IN_PROGRESS: {
            TournamentStatus.FINISHED,
            TournamentStatus.CANCELLED,
        },
        TournamentStatus.FINISHED: set(),
        TournamentStatus.CANCELLED: set(),
    },
)


class ParticipantStatus(str, Enum):
    REGISTERED = "REGISTERED"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    DISQUALIFIED = "DISQUALIFIED"


PARTICIPANT_TRANSITIONS: TransitionTable[ParticipantStatus] = TransitionTable(
    "TournamentParticipant",
    {
        ParticipantStatus.REGISTERED: {
            ParticipantStatus.CONFIRMED,
            ParticipantStatus.CANCELLED,
            ParticipantStatus.DISQUALIFIED,
        },
        ParticipantStatus.CONFIRMED: {
            ParticipantStatus.CANCELLED,
            ParticipantStatus.DISQUALIFIED,
        },
        ParticipantStatus.CANCELLED: {ParticipantStatus.DISQUALIFIED},
        ParticipantStatus.DISQUALIFIED: set(),
    },
)


# =============================================================================
# Validation helpers
# =============================================================================


def _validate_name(name: str) -> str:
    name = (name or "").strip()
    if not NAME_MIN_LENGTH <= len(name) <= NAME_MAX_LENGTH:
        raise InvalidArgumentError(
            "name", f"must be {NAME_MIN_LENGTH}-{NAME_MAX_LENGTH} characters"
        )
    return name


def _validate_optional_text(
    value: Optional[str], field_name: str, max_length: int
) -> Optional[str]:
    if value is None:
        return None
    if len(value) > max_length:
        raise InvalidArgumentError(field_name, f"must be at most {max_length} characters")
    return value


def _validate_capacity(max_participants: int, current: int = 0) -> int:
    if isinstance(max_participants, bool) or not isinstance(max_participants, int):
        raise InvalidArgumentError("max_participants", "must be an integer")
    if max_participants < 1:
        raise InvalidArgumentError("max_participants", "must be at least 1")
    if max_participants < current:
        raise InvalidArgumentError(
            "max_participants",
            f"cannot be below current participants ({current})",
        )
    return max_participants


def _validate_pricing(fmt: TournamentFormat, entry_fee: Decimal) -> None:
    if fmt is TournamentFormat.FREE and entry_fee != 0:
        raise InvalidArgumentError("entry_fee", "free tournaments cannot charge an entry fee")
    if fmt is TournamentFormat.PAID and entry_fee <= 0:
        raise InvalidArgumentError("entry_fee", "paid tournaments need a positive entry fee")


def _validate_dates(
    start_date: datetime,
    end_date: datetime,
    registration_start: datetime,
    registration_end: datetime,
) -> tuple[datetime, datetime, datetime, datetime]:
    start_date = ensure_utc(start_date)
    end_date = ensure_utc(end_date)
    registration_start = ensure_utc(registration_start)
    registration_end = ensure_utc(registration_end)
    if end_date <= start_date:
        raise InvalidArgumentError("end_date", "must be after start_date")
    if registration_end <= registration_start:
        raise InvalidArgumentError("registration_end", "must be after registration_start")
    if registration_end > start_date:
        raise InvalidArgumentError("registration_end", "must not be after start_date")
    return start_date, end_date, registration_start, registration_end


# =============================================================================
# Participant
# =============================================================================


@dataclass
class TournamentParticipant:
    """One user's registration in a tournament."""

    user_id: str
    registered_at: datetime
    team_name: Optional[str] = None
    notes: Optional[str] = None
    status: ParticipantStatus = ParticipantStatus.REGISTERED

    def __post_init__(self) -> None:
        if not self.user_id:
            raise InvalidArgumentError("user_id", "must not be empty")
        self.team_name = _validate_optional_text(
            self.team_name, "team_name", TEAM_NAME_MAX_LENGTH
        )

    @property
    def is_active_participant(self) -> bool:
        return self.status in (ParticipantStatus.REGISTERED, ParticipantStatus.CONFIRMED)

    def confirm(self) -> None:
        PARTICIPANT_TRANSITIONS.require(self.status, ParticipantStatus.CONFIRMED, self.user_id)
        self.status = ParticipantStatus.CONFIRMED

    def cancel(self) -> None:
        PARTICIPANT_TRANSITIONS.require(self.status, ParticipantStatus.CANCELLED, self.user_id)
        self.status = ParticipantStatus.CANCELLED

    def disqualify(self, reason: str) -> None:
        PARTICIPANT_TRANSITIONS.require(
            self.status, ParticipantStatus.DISQUALIFIED, self.user_id
        )
        self.status = ParticipantStatus.DISQUALIFIED
        line = f"DISQUALIFIED: {reason}"
        self.notes = f"{self.notes}\n{line}" if self.notes else line

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "registered_at": self.registered_at.isoformat(),
            "team_name": self.team_name,
            "notes": self.notes,
            "status": self.status.value,
        }


# =============================================================================
# Tournament
# =============================================================================


@dataclass
class Tournament:
    """Tournament aggregate root."""

    tournament_id: str
    name: str
    format: TournamentFormat
    category_id: str
    game_id: str
    organizer_id: str
    max_participants: int
    entry_fee: Decimal
    prize_pool: Decimal
    commission_rate: Decimal
    start_date: datetime
    end_date: datetime
    registration_start: datetime
    registration_end: datetime
    description: Optional[str] = None
    stream_url: Optional[str] = None
    stream_platform: Optional[str] = None
    rules: Optional[str] = None
    banner_image_url: Optional[str] = None

    status: TournamentStatus = TournamentStatus.DRAFT
    current_participants: int = 0
    participants: List[TournamentParticipant] = field(default_factory=list)

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    version: int = 0

    _pending_events: List[LifecycleEvent] = field(
        default_factory=list, repr=False, compare=False
    )

    @classmethod
    def create(
        cls,
        *,
        name: str,
        format: TournamentFormat,
        category_id: str,
        game_id: str,
        organizer_id: str,
        max_participants: int,
        start_date: datetime,
        end_date: datetime,
        registration_start: datetime,
        registration_end: datetime,
        now: datetime,
        entry_fee: Decimal | int | str = Decimal("0"),
        prize_pool: Decimal | int | str = Decimal("0"),
        commission_rate: Decimal | int | str = Decimal("0.05"),
        description: Optional[str] = None,
        rules: Optional[str] = None,
        banner_image_url: Optional[str] = None,
        tournament_id: Optional[str] = None,
    ) -> "Tournament":
        """Validate the inputs and build a new DRAFT tournament.

        Raises:
            InvalidArgumentError: any field is malformed or inconsistent
        """
        try:
            fmt = TournamentFormat(format)
        except ValueError as exc:
            allowed = ", ".join(f.value for f in TournamentFormat)
            raise InvalidArgumentError(
                "format", f"unknown format {format!r}, expected one of {allowed}"
            ) from exc
        for ref_name, ref in (
            ("category_id", category_id),
            ("game_id", game_id),
            ("organizer_id", organizer_id),
        ):
            if not ref:
                raise InvalidArgumentError(ref_name, "must not be empty")

        fee = money.validate_amount(entry_fee, "entry_fee")
        _validate_pricing(fmt, fee)
        dates = _validate_dates(start_date, end_date, registration_start, registration_end)
        now = ensure_utc(now)

        tournament = cls(
            tournament_id=tournament_id or str(uuid4()),
            name=_validate_name(name),
            format=fmt,
            category_id=category_id,
            game_id=game_id,
            organizer_id=organizer_id,
            max_participants=_validate_capacity(max_participants),
            entry_fee=fee,
            prize_pool=money.validate_amount(
                prize_pool, "prize_pool", money.MAX_PRIZE_POOL
            ),
            commission_rate=money.validate_rate(commission_rate),
            start_date=dates[0],
            end_date=dates[1],
            registration_start=dates[2],
            registration_end=dates[3],
            description=_validate_optional_text(
                description, "description", DESCRIPTION_MAX_LENGTH
            ),
            rules=rules,
            banner_image_url=banner_image_url,
            created_at=now,
            updated_at=now,
        )
        tournament._record(
            LifecycleEventType.TOURNAMENT_CREATED,
            now,
            organizer_id=organizer_id,
            format=fmt.value,
        )
        return tournament

    # =========================================================================
    # Queries
    # =========================================================================

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def is_registration_open(self, now: datetime) -> bool:
        """True when now lies inside [registration_start, registration_end]."""
        now = ensure_utc(now)
        return self.registration_start <= now <= self.registration_end

    def has_available_slots(self) -> bool:
        return self.current_participants < self.max_participants

    def can_register_participants(self, now: datetime) -> bool:
        return (
            not self.is_deleted
            and self.status.allows_registration
            and self.is_registration_open(now)
            and self.has_available_slots()
        )

    def calculate_total_commission(self) -> Decimal:
        """Commission estimate over the current roster: participants x fee x rate."""
        if self.format is TournamentFormat.FREE:
            return money.ZERO
        return money.calculate_total_commission(
            self.entry_fee, self.current_participants, self.commission_rate
        )

    def get_participant(self, user_id: str) -> Optional[TournamentParticipant]:
        for participant in self.participants:
            if participant.user_id == user_id:
                return participant
        return None

    # =========================================================================
    # State transitions
    # =========================================================================

    def publish(self, now: datetime) -> None:
        self._transition(TournamentStatus.PUBLISHED, now)
        self._record(LifecycleEventType.TOURNAMENT_PUBLISHED, now)

    def start(self, now: datetime, min_participants: int = DEFAULT_MIN_PARTICIPANTS) -> None:
        """PUBLISHED -> IN_PROGRESS.

        Raises:
            InvalidStateTransitionError: not PUBLISHED, or deleted
            InsufficientParticipantsError: fewer than min_participants registered
        """
        self._require_transition(TournamentStatus.IN_PROGRESS)
        if self.current_participants < min_participants:
            raise InsufficientParticipantsError(
                self.tournament_id, self.current_participants, min_participants
            )
        self._transition(TournamentStatus.IN_PROGRESS, now)
        self._record(
            LifecycleEventType.TOURNAMENT_STARTED,
            now,
            participants=self.current_participants,
        )

    def finish(self, now: datetime) -> None:
        self._transition(TournamentStatus.FINISHED, now)
        self._record(LifecycleEventType.TOURNAMENT_FINISHED, now)

    def cancel(self, now: datetime, reason: Optional[str] = None) -> None:
        previous = self.status
        self._transition(TournamentStatus.CANCELLED, now)
        self._record(
            LifecycleEventType.TOURNAMENT_CANCELLED,
            now,
            previous_status=previous.value,
            reason=reason,
        )

    def delete(self, now: datetime) -> bool:
        """Soft delete. Returns False when already deleted.

        Raises:
            InvalidStateTransitionError: the tournament is running
        """
        if self.is_deleted:
            return False
        if self.status is TournamentStatus.IN_PROGRESS:
            raise InvalidStateTransitionError(
                entity=TOURNAMENT_TRANSITIONS.entity,
                entity_id=self.tournament_id,
                current=self.status.value,
                target="DELETED",
                message="A running tournament cannot be deleted",
            )
        now = ensure_utc(now)
        self.deleted_at = now
        self.updated_at = now
        self._record(LifecycleEventType.TOURNAMENT_DELETED, now)
        return True

    # =========================================================================
    # Registration
    # =========================================================================

    def add_participant(
        self,
        user_id: str,
        now: datetime,
        team_name: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> TournamentParticipant:
        """Register a user, checking and consuming a slot in one step.

        Callers must serialize this per tournament (lock or compare-and-set).

        Raises:
            RegistrationClosedError: deleted, not PUBLISHED, or outside the window
            CapacityExceededError: no free slot
            AlreadyRegisteredError: the user already holds a registration
        """
        now = ensure_utc(now)
        if self.is_deleted:
            raise RegistrationClosedError(self.tournament_id, "tournament deleted")
        if not self.status.allows_registration:
            raise RegistrationClosedError(
                self.tournament_id, f"status is {self.status.value}"
            )
        if not self.is_registration_open(now):
            raise RegistrationClosedError(
                self.tournament_id, "outside registration window"
            )
        if not self.has_available_slots():
            raise CapacityExceededError(
                self.tournament_id, self.current_participants, self.max_participants
            )
        if self.get_participant(user_id) is not None:
            raise AlreadyRegisteredError(self.tournament_id, user_id)

        participant = TournamentParticipant(
            user_id=user_id,
            registered_at=now,
            team_name=team_name,
            notes=notes,
        )
        self.participants.append(participant)
        self.current_participants += 1
        self.updated_at = now
        self._record(
            LifecycleEventType.PARTICIPANT_REGISTERED,
            now,
            user_id=user_id,
            team_name=team_name,
            current_participants=self.current_participants,
        )
        return participant

    def confirm_participant(self, user_id: str, now: datetime) -> TournamentParticipant:
        participant = self._participant_or_raise(user_id)
        participant.confirm()
        self.updated_at = ensure_utc(now)
        return participant

    def cancel_participant(self, user_id: str, now: datetime) -> TournamentParticipant:
        """Cancel a registration. The slot stays consumed."""
        participant = self._participant_or_raise(user_id)
        participant.cancel()
        self.updated_at = ensure_utc(now)
        return participant

    def disqualify_participant(
        self, user_id: str, reason: str, now: datetime
    ) -> TournamentParticipant:
        participant = self._participant_or_raise(user_id)
        participant.disqualify(reason)
        self.updated_at = ensure_utc(now)
        return participant

    # =========================================================================
    # Editing
    # =========================================================================

    def update_basic_info(
        self,
        *,
        name: str,
        description: Optional[str],
        max_participants: int,
        entry_fee: Decimal | int | str,
        prize_pool: Decimal | int | str,
        now: datetime,
    ) -> None:
        """Replace name, description, capacity and pricing. DRAFT only."""
        self._require_editable()
        new_name = _validate_name(name)
        new_description = _validate_optional_text(
            description, "description", DESCRIPTION_MAX_LENGTH
        )
        capacity = _validate_capacity(max_participants, self.current_participants)
        fee = money.validate_amount(entry_fee, "entry_fee")
        _validate_pricing(self.format, fee)
        pool = money.validate_amount(prize_pool, "prize_pool", money.MAX_PRIZE_POOL)

        self.name = new_name
        self.description = new_description
        self.max_participants = capacity
        self.entry_fee = fee
        self.prize_pool = pool
        self.updated_at = ensure_utc(now)

    def update_dates(
        self,
        *,
        start_date: datetime,
        end_date: datetime,
        registration_start: datetime,
        registration_end: datetime,
        now: datetime,
    ) -> None:
        """Replace the schedule. DRAFT only."""
        self._require_editable()
        (
            self.start_date,
            self.end_date,
            self.registration_start,
            self.registration_end,
        ) = _validate_dates(start_date, end_date, registration_start, registration_end)
        self.updated_at = ensure_utc(now)

    def configure_streaming(
        self,
        stream_url: Optional[str],
        stream_platform: Optional[str],
        now: datetime,
    ) -> None:
        self._require_editable()
        url = _validate_optional_text(stream_url, "stream_url", STREAM_URL_MAX_LENGTH)
        platform = _validate_optional_text(
            stream_platform, "stream_platform", STREAM_PLATFORM_MAX_LENGTH
        )
        self.stream_url = url
        self.stream_platform = platform
        self.updated_at = ensure_utc(now)

    def update_commission_rate(self, rate: Decimal | int | str, now: datetime) -> None:
        """Change the platform commission rate.

        Allowed in any non-terminal status. Tickets already issued keep the
        rate they were issued with.
        """
        if self.is_deleted or not self.status.is_active:
            raise TournamentNotEditableError(self.tournament_id, self.status.value)
        self.commission_rate = money.validate_rate(rate)
        self.updated_at = ensure_utc(now)

    # =========================================================================
    # Events
    # =========================================================================

    def collect_pending_events(self) -> List[LifecycleEvent]:
        """Return and clear the events recorded since the last collection."""
        events, self._pending_events = self._pending_events, []
        return events

    def _record(self, event_type: LifecycleEventType, now: datetime, **data: Any) -> None:
        data.setdefault("status", self.status.value)
        self._pending_events.append(
            LifecycleEvent(
                event_type=event_type,
                reference_type=ReferenceType.TOURNAMENT,
                reference_id=self.tournament_id,
                occurred_at=ensure_utc(now),
                data=data,
            )
        )

    # =========================================================================
    # Internals
    # =========================================================================

    def _require_transition(self, target: TournamentStatus) -> None:
        if self.is_deleted:
            raise InvalidStateTransitionError(
                entity=TOURNAMENT_TRANSITIONS.entity,
                entity_id=self.tournament_id,
                current=self.status.value,
                target=target.value,
                message=f"Tournament {self.tournament_id} is deleted",
            )
        TOURNAMENT_TRANSITIONS.require(self.status, target, self.tournament_id)

    def _transition(self, target: TournamentStatus, now: datetime) -> None:
        self._require_transition(target)
        self.status = target
        self.updated_at = ensure_utc(now)

    def _require_editable(self) -> None:
        if self.is_deleted or self.status is not TournamentStatus.DRAFT:
            raise TournamentNotEditableError(self.tournament_id, self.status.value)

    def _participant_or_raise(self, user_id: str) -> TournamentParticipant:
        participant = self.get_participant(user_id)
        if participant is None:
            raise InvalidArgumentError("user_id", f"{user_id} is not registered")
        return participant

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tournament_id": self.tournament_id,
            "name": self.name,
            "description": self.description,
            "format": self.format.value,
            "status": self.status.value,
            "category_id": self.category_id,
            "game_id": self.game_id,
            "organizer_id": self.organizer_id,
            "max_participants": self.max_participants,
            "current_participants": self.current_participants,
            "entry_fee": str(self.entry_fee),
            "prize_pool": str(self.prize_pool),
            "commission_rate": str(self.commission_rate),
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "registration_start": self.registration_start.isoformat(),
            "registration_end": self.registration_end.isoformat(),
            "stream_url": self.stream_url,
            "stream_platform": self.stream_platform,
            "rules": self.rules,
            "banner_image_url": self.banner_image_url,
            "participants": [p.to_dict() for p in self.participants],
            "deleted": self.is_deleted,
            "version": self.version,
        }
