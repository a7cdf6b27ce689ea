"""SQLAlchemy records for tournaments, participants and tickets.

Money columns are NUMERIC; rates keep four decimal places. Tickets reference
tournaments by id only and carry their own price/commission snapshot.
"""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from torneo.persistence.base import Base, TimestampMixin, UUIDMixin, VersionMixin
from torneo.ticket.models import TicketStatus
from torneo.tournament.models import ParticipantStatus, TournamentFormat, TournamentStatus


class TournamentRecord(Base, UUIDMixin, TimestampMixin, VersionMixin):
    __tablename__ = "tournaments"

    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    format: Mapped[TournamentFormat] = mapped_column(
        SQLEnum(TournamentFormat), nullable=False
    )
    status: Mapped[TournamentStatus] = mapped_column(
        SQLEnum(TournamentStatus),
        default=TournamentStatus.DRAFT,
        nullable=False,
        index=True,
    )

    # Identity references (owned by external services)
    category_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    game_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    organizer_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    # Capacity
    max_participants: Mapped[int] = mapped_column(Integer, nullable=False)
    current_participants: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Pricing
    entry_fee: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    prize_pool: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    commission_rate: Mapped[Decimal] = mapped_column(Numeric(5, 4), nullable=False)

    # Schedule
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    registration_start: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    registration_end: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )

    # Presentation
    stream_url: Mapped[str | None] = mapped_column(String(255), nullable=True)
    stream_platform: Mapped[str | None] = mapped_column(String(30), nullable=True)
    rules: Mapped[str | None] = mapped_column(Text, nullable=True)
    banner_image_url: Mapped[str | None] = mapped_column(String(500), nullable=True)

    deleted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    participants: Mapped[list["TournamentParticipantRecord"]] = relationship(
        back_populates="tournament",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="TournamentParticipantRecord.registered_at",
    )


class TournamentParticipantRecord(Base, UUIDMixin):
    __tablename__ = "tournament_participants"
    __table_args__ = (
        UniqueConstraint("tournament_id", "user_id", name="uq_participant_user"),
    )

    tournament_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("tournaments.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    team_name: Mapped[str | None] = mapped_column(String(50), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[ParticipantStatus] = mapped_column(
        SQLEnum(ParticipantStatus),
        default=ParticipantStatus.REGISTERED,
        nullable=False,
    )
    registered_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )

    tournament: Mapped[TournamentRecord] = relationship(back_populates="participants")


class TicketRecord(Base, UUIDMixin, VersionMixin):
    __tablename__ = "tickets"

    code: Mapped[str] = mapped_column(String(32), nullable=False, unique=True, index=True)
    tournament_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("tournaments.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    holder_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    status: Mapped[TicketStatus] = mapped_column(
        SQLEnum(TicketStatus),
        default=TicketStatus.RESERVED,
        nullable=False,
        index=True,
    )

    # Snapshot taken at issuance
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    commission_rate: Mapped[Decimal] = mapped_column(Numeric(5, 4), nullable=False)
    commission: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)

    issued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expiration_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )
    purchase_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    usage_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    payment_reference: Mapped[str | None] = mapped_column(String(100), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    expired_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
