"""SQLAlchemy repository tests on in-memory SQLite (aiosqlite)."""

from datetime import timedelta
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.pool import StaticPool

from factories import BASE_TIME, ManualClock, build_tournament, make_tournament_kwargs
from torneo.events.bus import RecordingPublisher
from torneo.persistence.db import close_db, create_engine, create_session_factory, init_db
from torneo.persistence.sql_repository import SqlTicketRepository, SqlTournamentRepository
from torneo.ticket.codes import TicketCodeGenerator
from torneo.ticket.models import Ticket, TicketStatus
from torneo.ticket.service import TicketService
from torneo.tournament.models import ParticipantStatus, TournamentStatus
from torneo.tournament.service import TournamentService
from torneo.utils.errors import (
    CodeGenerationExhaustedError,
    ConcurrentModificationError,
    DuplicateTicketCodeError,
    InvalidArgumentError,
)

NOW = BASE_TIME


@pytest_asyncio.fixture
async def session_factory(settings):
    engine = create_engine(
        settings,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await init_db(engine)
    yield create_session_factory(engine)
    await close_db(engine)


@pytest.fixture
def sql_tournaments(session_factory):
    return SqlTournamentRepository(session_factory)


@pytest.fixture
def sql_tickets(session_factory):
    return SqlTicketRepository(session_factory)


@pytest_asyncio.fixture
async def stored_tournament(sql_tournaments):
    tournament = build_tournament(NOW, max_participants=10)
    tournament.publish(NOW)
    await sql_tournaments.add(tournament)
    return tournament


class TestSqlTournamentRepository:
    @pytest.mark.asyncio
    async def test_round_trip_preserves_values(self, sql_tournaments, stored_tournament):
        loaded = await sql_tournaments.get(stored_tournament.tournament_id)

        assert loaded.status is TournamentStatus.PUBLISHED
        assert loaded.entry_fee == Decimal("50.00")
        assert loaded.commission_rate == Decimal("0.05")
        assert loaded.start_date == stored_tournament.start_date
        assert loaded.start_date.tzinfo is not None
        assert loaded.version == 0

    @pytest.mark.asyncio
    async def test_four_place_rate_round_trips(self, sql_tournaments):
        tournament = build_tournament(NOW, commission_rate=Decimal("0.1234"))
        await sql_tournaments.add(tournament)

        loaded = await sql_tournaments.get(tournament.tournament_id)
        assert loaded.commission_rate == tournament.commission_rate

        loaded.update_commission_rate("0.0725", NOW)
        await sql_tournaments.save(loaded)
        again = await sql_tournaments.get(tournament.tournament_id)
        assert again.commission_rate == Decimal("0.0725")

    def test_rate_finer_than_storage_is_rejected(self):
        with pytest.raises(InvalidArgumentError) as exc_info:
            build_tournament(NOW, commission_rate=Decimal("0.12344"))
        assert exc_info.value.field == "commission_rate"

    @pytest.mark.asyncio
    async def test_save_participants_and_version(self, sql_tournaments, stored_tournament):
        tid = stored_tournament.tournament_id
        loaded = await sql_tournaments.get_for_update(tid)
        loaded.add_participant("u1", NOW, team_name="Red")
        loaded.add_participant("u2", NOW)
        await sql_tournaments.save(loaded)
        assert loaded.version == 1

        loaded.confirm_participant("u1", NOW)
        await sql_tournaments.save(loaded)

        again = await sql_tournaments.get(tid)
        assert again.version == 2
        assert again.current_participants == 2
        assert again.get_participant("u1").status is ParticipantStatus.CONFIRMED
        assert again.get_participant("u1").team_name == "Red"

    @pytest.mark.asyncio
    async def test_stale_save_rejected(self, sql_tournaments, stored_tournament):
        tid = stored_tournament.tournament_id
        a = await sql_tournaments.get_for_update(tid)
        b = await sql_tournaments.get_for_update(tid)
        a.add_participant("u1", NOW)
        b.add_participant("u2", NOW)

        await sql_tournaments.save(a)
        with pytest.raises(ConcurrentModificationError):
            await sql_tournaments.save(b)

        stored = await sql_tournaments.get(tid)
        assert [p.user_id for p in stored.participants] == ["u1"]

    @pytest.mark.asyncio
    async def test_duplicate_insert(self, sql_tournaments, stored_tournament):
        with pytest.raises(ConcurrentModificationError):
            await sql_tournaments.add(stored_tournament)

    @pytest.mark.asyncio
    async def test_missing(self, sql_tournaments):
        assert await sql_tournaments.get("missing") is None
        assert await sql_tournaments.get_for_update("missing") is None


class TestSqlTicketRepository:
    @pytest.mark.asyncio
    async def test_add_and_lookup(self, sql_tickets, stored_tournament):
        ticket = Ticket.issue(stored_tournament, "h1", "TKT-AAAAAAAA", NOW)
        await sql_tickets.add(ticket)

        assert await sql_tickets.code_exists("TKT-AAAAAAAA")
        assert not await sql_tickets.code_exists("TKT-BBBBBBBB")
        loaded = await sql_tickets.get_by_code("TKT-AAAAAAAA")
        assert loaded.ticket_id == ticket.ticket_id
        assert loaded.price == Decimal("50.00")
        assert loaded.commission == Decimal("2.50")
        assert loaded.expiration_date == ticket.expiration_date

    @pytest.mark.asyncio
    async def test_unique_code(self, sql_tickets, stored_tournament):
        await sql_tickets.add(Ticket.issue(stored_tournament, "h1", "TKT-AAAAAAAA", NOW))
        with pytest.raises(DuplicateTicketCodeError) as exc_info:
            await sql_tickets.add(Ticket.issue(stored_tournament, "h2", "TKT-AAAAAAAA", NOW))
        assert exc_info.value.ticket_code == "TKT-AAAAAAAA"

    @pytest.mark.asyncio
    async def test_duplicate_id_is_not_a_code_clash(self, sql_tickets, stored_tournament):
        ticket = Ticket.issue(stored_tournament, "h1", "TKT-AAAAAAAA", NOW)
        await sql_tickets.add(ticket)
        with pytest.raises(ConcurrentModificationError) as exc_info:
            await sql_tickets.add(ticket)
        assert not isinstance(exc_info.value, DuplicateTicketCodeError)

    @pytest.mark.asyncio
    async def test_list_by_holder(self, sql_tickets, stored_tournament):
        first = Ticket.issue(stored_tournament, "h1", "TKT-AAAAAAAA", NOW)
        second = Ticket.issue(
            stored_tournament, "h1", "TKT-BBBBBBBB", NOW + timedelta(minutes=5)
        )
        other = Ticket.issue(stored_tournament, "h2", "TKT-CCCCCCCC", NOW)
        for ticket in (first, second, other):
            await sql_tickets.add(ticket)

        owned = await sql_tickets.list_by_holder("h1")
        assert [t.code for t in owned] == ["TKT-BBBBBBBB", "TKT-AAAAAAAA"]
        assert await sql_tickets.list_by_holder("nobody") == []

    @pytest.mark.asyncio
    async def test_compare_and_set(self, sql_tickets, stored_tournament):
        ticket = Ticket.issue(stored_tournament, "h1", "TKT-AAAAAAAA", NOW)
        await sql_tickets.add(ticket)

        a = await sql_tickets.get_for_update(ticket.ticket_id)
        b = await sql_tickets.get_for_update(ticket.ticket_id)
        a.mark_as_paid("pay-a", NOW)
        b.cancel(NOW)
        await sql_tickets.save(a)
        with pytest.raises(ConcurrentModificationError):
            await sql_tickets.save(b)

        stored = await sql_tickets.get(ticket.ticket_id)
        assert stored.status is TicketStatus.PAID
        assert stored.payment_reference == "pay-a"
        assert stored.purchase_date == NOW

    @pytest.mark.asyncio
    async def test_find_due_and_list(self, sql_tickets, stored_tournament):
        open_ticket = Ticket.issue(stored_tournament, "h1", "TKT-AAAAAAAA", NOW)
        closed = Ticket.issue(stored_tournament, "h2", "TKT-BBBBBBBB", NOW)
        closed.cancel(NOW)
        await sql_tickets.add(open_ticket)
        await sql_tickets.add(closed)

        assert await sql_tickets.find_due_for_expiry(NOW, 10) == []
        due = await sql_tickets.find_due_for_expiry(open_ticket.expiration_date, 10)
        assert [t.code for t in due] == ["TKT-AAAAAAAA"]

        tid = stored_tournament.tournament_id
        assert len(await sql_tickets.list_by_tournament(tid)) == 2
        cancelled = await sql_tickets.list_by_tournament(tid, TicketStatus.CANCELLED)
        assert [t.code for t in cancelled] == ["TKT-BBBBBBBB"]
        assert len(await sql_tickets.list_all()) == 2


class TestServicesOnSql:
    @pytest.mark.asyncio
    async def test_registration_and_ticket_flow(
        self, sql_tournaments, sql_tickets, lock_manager, settings
    ):
        clock = ManualClock()
        publisher = RecordingPublisher()
        tournaments = TournamentService(sql_tournaments, lock_manager, publisher, clock, settings)
        tickets = TicketService(
            sql_tickets, sql_tournaments, lock_manager, publisher, clock, settings
        )

        tournament = await tournaments.create_tournament(**make_tournament_kwargs(clock.now()))
        tid = tournament.tournament_id
        await tournaments.publish(tid)
        await tournaments.add_participant(tid, "u1")
        ticket = await tickets.issue_ticket(tid, "u1")
        await tickets.pay_ticket(ticket.ticket_id, "pay-1")

        clock.advance(days=7)
        sweep = await tickets.expire_due_tickets()
        assert sweep.expired == 1
        assert (await tickets.get_ticket(ticket.ticket_id)).status is TicketStatus.EXPIRED
        assert (await tournaments.get_tournament(tid)).current_participants == 1

    @pytest.mark.asyncio
    async def test_issuance_redraws_code_taken_after_uniqueness_check(
        self, sql_tournaments, sql_tickets, lock_manager, settings
    ):
        clock = ManualClock()
        publisher = RecordingPublisher()
        tournaments = TournamentService(sql_tournaments, lock_manager, publisher, clock, settings)

        async def stale_oracle(code):
            return False

        def worker(suffixes):
            generator = TicketCodeGenerator(
                stale_oracle, max_attempts=3, suffix_factory=iter(suffixes).__next__
            )
            return TicketService(
                sql_tickets, sql_tournaments, lock_manager, publisher, clock, settings,
                code_generator=generator,
            )

        tids = []
        for _ in range(2):
            tournament = await tournaments.create_tournament(
                **make_tournament_kwargs(clock.now())
            )
            await tournaments.publish(tournament.tournament_id)
            tids.append(tournament.tournament_id)

        first = await worker(["AAAAAAAA"]).issue_ticket(tids[0], "h1")
        second = await worker(["AAAAAAAA", "CCCCCCCC"]).issue_ticket(tids[1], "h2")

        assert first.code == "TKT-AAAAAAAA"
        assert second.code == "TKT-CCCCCCCC"
        assert (await sql_tickets.get_by_code("TKT-CCCCCCCC")).holder_id == "h2"

        with pytest.raises(CodeGenerationExhaustedError) as exc_info:
            await worker(["AAAAAAAA", "CCCCCCCC", "AAAAAAAA"]).issue_ticket(tids[1], "h3")
        assert exc_info.value.attempts == 3
        assert len(await sql_tickets.list_all()) == 2
