"""SQLAlchemy async repositories.

Each call runs in its own short transaction, so no row lock outlives a
method call. Atomicity of read-modify-write comes from ``save``, which issues
``UPDATE ... WHERE id = :id AND version = :version`` and treats zero affected
rows as a lost race. The unique index on ticket codes turns a duplicate code
into DuplicateTicketCodeError.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import exists, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from torneo.persistence.db import get_db_session
from torneo.persistence.records import (
    TicketRecord,
    TournamentParticipantRecord,
    TournamentRecord,
)
from torneo.ticket.models import Ticket, TicketStatus
from torneo.tournament.models import Tournament, TournamentParticipant
from torneo.utils.clock import ensure_utc
from torneo.utils.errors import ConcurrentModificationError, DuplicateTicketCodeError

logger = logging.getLogger(__name__)

OPEN_TICKET_STATUSES = (TicketStatus.RESERVED, TicketStatus.PAID)


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes
    return ensure_utc(value) if value is not None else None


# =============================================================================
# Mapping
# =============================================================================


def _tournament_columns(tournament: Tournament) -> Dict[str, Any]:
    columns = {
        "name": tournament.name,
        "description": tournament.description,
        "format": tournament.format,
        "status": tournament.status,
        "category_id": tournament.category_id,
        "game_id": tournament.game_id,
        "organizer_id": tournament.organizer_id,
        "max_participants": tournament.max_participants,
        "current_participants": tournament.current_participants,
        "entry_fee": tournament.entry_fee,
        "prize_pool": tournament.prize_pool,
        "commission_rate": tournament.commission_rate,
        "start_date": tournament.start_date,
        "end_date": tournament.end_date,
        "registration_start": tournament.registration_start,
        "registration_end": tournament.registration_end,
        "stream_url": tournament.stream_url,
        "stream_platform": tournament.stream_platform,
        "rules": tournament.rules,
        "banner_image_url": tournament.banner_image_url,
        "deleted_at": tournament.deleted_at,
    }
    if tournament.updated_at is not None:
        columns["updated_at"] = tournament.updated_at
    return columns


def _participant_record(
    tournament_id: str, participant: TournamentParticipant
) -> TournamentParticipantRecord:
    return TournamentParticipantRecord(
        tournament_id=tournament_id,
        user_id=participant.user_id,
        team_name=participant.team_name,
        notes=participant.notes,
        status=participant.status,
        registered_at=participant.registered_at,
    )


def _to_tournament(record: TournamentRecord) -> Tournament:
    return Tournament(
        tournament_id=record.id,
        name=record.name,
        format=record.format,
        category_id=record.category_id,
        game_id=record.game_id,
        organizer_id=record.organizer_id,
        max_participants=record.max_participants,
        entry_fee=record.entry_fee,
        prize_pool=record.prize_pool,
        commission_rate=record.commission_rate,
        start_date=_utc(record.start_date),
        end_date=_utc(record.end_date),
        registration_start=_utc(record.registration_start),
        registration_end=_utc(record.registration_end),
        description=record.description,
        stream_url=record.stream_url,
        stream_platform=record.stream_platform,
        rules=record.rules,
        banner_image_url=record.banner_image_url,
        status=record.status,
        current_participants=record.current_participants,
        participants=[
            TournamentParticipant(
                user_id=p.user_id,
                registered_at=_utc(p.registered_at),
                team_name=p.team_name,
                notes=p.notes,
                status=p.status,
            )
            for p in record.participants
        ],
        created_at=_utc(record.created_at),
        updated_at=_utc(record.updated_at),
        deleted_at=_utc(record.deleted_at),
        version=record.version,
    )


def _ticket_columns(ticket: Ticket) -> Dict[str, Any]:
    return {
        "status": ticket.status,
        "purchase_date": ticket.purchase_date,
        "usage_date": ticket.usage_date,
        "payment_reference": ticket.payment_reference,
        "cancelled_at": ticket.cancelled_at,
        "expired_at": ticket.expired_at,
    }


def _to_ticket(record: TicketRecord) -> Ticket:
    return Ticket(
        ticket_id=record.id,
        code=record.code,
        tournament_id=record.tournament_id,
        holder_id=record.holder_id,
        price=record.price,
        commission_rate=record.commission_rate,
        commission=record.commission,
        expiration_date=_utc(record.expiration_date),
        issued_at=_utc(record.issued_at),
        status=record.status,
        purchase_date=_utc(record.purchase_date),
        usage_date=_utc(record.usage_date),
        payment_reference=record.payment_reference,
        cancelled_at=_utc(record.cancelled_at),
        expired_at=_utc(record.expired_at),
        version=record.version,
    )


# =============================================================================
# Repositories
# =============================================================================


class SqlTournamentRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get(self, tournament_id: str) -> Optional[Tournament]:
        async with get_db_session(self._session_factory) as session:
            record = await session.get(TournamentRecord, tournament_id)
            return _to_tournament(record) if record is not None else None

    async def get_for_update(self, tournament_id: str) -> Optional[Tournament]:
        # the versioned UPDATE in save() detects any write made since this read
        return await self.get(tournament_id)

    async def add(self, tournament: Tournament) -> None:
        record = TournamentRecord(
            id=tournament.tournament_id,
            version=tournament.version,
            participants=[
                _participant_record(tournament.tournament_id, p)
                for p in tournament.participants
            ],
            **_tournament_columns(tournament),
        )
        if tournament.created_at is not None:
            record.created_at = tournament.created_at
        try:
            async with get_db_session(self._session_factory) as session:
                session.add(record)
        except IntegrityError as exc:
            raise ConcurrentModificationError(
                "Tournament",
                tournament.tournament_id,
                message=f"Tournament {tournament.tournament_id} already exists",
            ) from exc

    async def save(self, tournament: Tournament) -> None:
        tid = tournament.tournament_id
        try:
            async with get_db_session(self._session_factory) as session:
                result = await session.execute(
                    update(TournamentRecord)
                    .where(
                        TournamentRecord.id == tid,
                        TournamentRecord.version == tournament.version,
                    )
                    .values(version=tournament.version + 1, **_tournament_columns(tournament))
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise ConcurrentModificationError("Tournament", tid, tournament.version)

                rows = await session.execute(
                    select(TournamentParticipantRecord).where(
                        TournamentParticipantRecord.tournament_id == tid
                    )
                )
                existing = {row.user_id: row for row in rows.scalars()}
                for participant in tournament.participants:
                    row = existing.get(participant.user_id)
                    if row is None:
                        session.add(_participant_record(tid, participant))
                    else:
                        row.status = participant.status
                        row.team_name = participant.team_name
                        row.notes = participant.notes
        except IntegrityError as exc:
            raise ConcurrentModificationError(
                "Tournament", tid, tournament.version
            ) from exc
        tournament.version += 1


class SqlTicketRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get(self, ticket_id: str) -> Optional[Ticket]:
        async with get_db_session(self._session_factory) as session:
            record = await session.get(TicketRecord, ticket_id)
            return _to_ticket(record) if record is not None else None

    async def get_for_update(self, ticket_id: str) -> Optional[Ticket]:
        return await self.get(ticket_id)

    async def get_by_code(self, code: str) -> Optional[Ticket]:
        async with get_db_session(self._session_factory) as session:
            result = await session.execute(
                select(TicketRecord).where(TicketRecord.code == code)
            )
            record = result.scalar_one_or_none()
            return _to_ticket(record) if record is not None else None

    async def code_exists(self, code: str) -> bool:
        async with get_db_session(self._session_factory) as session:
            result = await session.execute(
                select(exists().where(TicketRecord.code == code))
            )
            return bool(result.scalar())

    async def add(self, ticket: Ticket) -> None:
        record = TicketRecord(
            id=ticket.ticket_id,
            code=ticket.code,
            tournament_id=ticket.tournament_id,
            holder_id=ticket.holder_id,
            price=ticket.price,
            commission_rate=ticket.commission_rate,
            commission=ticket.commission,
            issued_at=ticket.issued_at,
            expiration_date=ticket.expiration_date,
            version=ticket.version,
            **_ticket_columns(ticket),
        )
        try:
            async with get_db_session(self._session_factory) as session:
                session.add(record)
        except IntegrityError as exc:
            if await self._code_taken_by_other(ticket):
                logger.warning("Duplicate ticket code on insert: %s", ticket.code)
                raise DuplicateTicketCodeError(ticket.ticket_id, ticket.code) from exc
            raise ConcurrentModificationError(
                "Ticket",
                ticket.ticket_id,
                message=f"Ticket {ticket.ticket_id} already exists",
            ) from exc

    async def _code_taken_by_other(self, ticket: Ticket) -> bool:
        async with get_db_session(self._session_factory) as session:
            result = await session.execute(
                select(TicketRecord.id).where(TicketRecord.code == ticket.code)
            )
            owner = result.scalar_one_or_none()
        return owner is not None and owner != ticket.ticket_id

    async def save(self, ticket: Ticket) -> None:
        async with get_db_session(self._session_factory) as session:
            result = await session.execute(
                update(TicketRecord)
                .where(
                    TicketRecord.id == ticket.ticket_id,
                    TicketRecord.version == ticket.version,
                )
                .values(version=ticket.version + 1, **_ticket_columns(ticket))
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ConcurrentModificationError("Ticket", ticket.ticket_id, ticket.version)
        ticket.version += 1

    async def find_due_for_expiry(self, now: datetime, limit: int) -> List[Ticket]:
        async with get_db_session(self._session_factory) as session:
            result = await session.execute(
                select(TicketRecord)
                .where(
                    TicketRecord.status.in_(OPEN_TICKET_STATUSES),
                    TicketRecord.expiration_date <= now,
                )
                .order_by(TicketRecord.expiration_date, TicketRecord.id)
                .limit(limit)
            )
            return [_to_ticket(r) for r in result.scalars()]

    async def list_by_tournament(
        self,
        tournament_id: str,
        status: Optional[TicketStatus] = None,
    ) -> List[Ticket]:
        query = select(TicketRecord).where(TicketRecord.tournament_id == tournament_id)
        if status is not None:
            query = query.where(TicketRecord.status == status)
        async with get_db_session(self._session_factory) as session:
            result = await session.execute(query.order_by(TicketRecord.issued_at))
            return [_to_ticket(r) for r in result.scalars()]

    async def list_by_holder(self, holder_id: str) -> List[Ticket]:
        async with get_db_session(self._session_factory) as session:
            result = await session.execute(
                select(TicketRecord)
                .where(TicketRecord.holder_id == holder_id)
                .order_by(TicketRecord.issued_at.desc())
            )
            return [_to_ticket(r) for r in result.scalars()]

    async def list_all(self) -> List[Ticket]:
        async with get_db_session(self._session_factory) as session:
            result = await session.execute(select(TicketRecord).order_by(TicketRecord.issued_at))
            return [_to_ticket(r) for r in result.scalars()]
