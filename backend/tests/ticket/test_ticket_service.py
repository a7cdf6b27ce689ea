"""TicketService tests: issuance, transitions, sweep, validation and QR."""

import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from factories import make_tournament_kwargs
from torneo.events.models import LifecycleEventType
from torneo.ticket.codes import TicketCodeGenerator
from torneo.ticket.models import TicketStatus
from torneo.ticket.service import TicketService
from torneo.utils.errors import (
    CodeGenerationExhaustedError,
    ConcurrentModificationError,
    InvalidStateTransitionError,
    IssuanceFailure,
    TicketExpiredError,
    TicketNotFoundError,
    TicketNotIssuableError,
    TournamentNotFoundError,
)


class TestIssuance:
    @pytest.mark.asyncio
    async def test_issue_ticket(self, ticket_service, published_tournament, ticket_repo, publisher):
        ticket = await ticket_service.issue_ticket(published_tournament.tournament_id, "h1")

        assert ticket.status is TicketStatus.RESERVED
        assert ticket.price == Decimal("50.00")
        assert ticket.commission == Decimal("2.50")
        assert ticket.expiration_date == published_tournament.start_date - timedelta(hours=1)
        assert ticket_service.code_generator.is_valid_code(ticket.code)
        assert await ticket_repo.get_by_code(ticket.code) is not None
        assert ticket_service.code_generator.claimed == frozenset()
        assert publisher.of_type(LifecycleEventType.TICKET_CONFIRMED)[0].reference_id == (
            ticket.ticket_id
        )

    @pytest.mark.asyncio
    async def test_issue_for_unknown_tournament(self, ticket_service):
        with pytest.raises(TournamentNotFoundError):
            await ticket_service.issue_ticket("missing", "h1")

    @pytest.mark.asyncio
    async def test_issue_after_registration_closes(
        self, ticket_service, published_tournament, clock
    ):
        clock.advance(days=6)
        with pytest.raises(TicketNotIssuableError) as exc_info:
            await ticket_service.issue_ticket(published_tournament.tournament_id, "h1")
        assert exc_info.value.reason is IssuanceFailure.REGISTRATION_CLOSED

    @pytest.mark.asyncio
    async def test_issue_against_full_tournament(
        self, ticket_service, tournament_service, published_tournament
    ):
        tid = published_tournament.tournament_id
        await tournament_service.add_participant(tid, "u1")
        await tournament_service.add_participant(tid, "u2")
        with pytest.raises(TicketNotIssuableError) as exc_info:
            await ticket_service.issue_ticket(tid, "h1")
        assert exc_info.value.reason is IssuanceFailure.NO_CAPACITY

    @pytest.mark.asyncio
    async def test_issuance_does_not_consume_capacity(
        self, ticket_service, tournament_service, published_tournament
    ):
        tid = published_tournament.tournament_id
        for holder in ("h1", "h2", "h3"):
            await ticket_service.issue_ticket(tid, holder)
        stored = await tournament_service.get_tournament(tid)
        assert stored.current_participants == 0

    @pytest.mark.asyncio
    async def test_code_exhaustion_leaves_no_ticket(
        self, ticket_repo, tournament_repo, lock_manager, publisher, clock, settings,
        ticket_service, published_tournament,
    ):
        first = await ticket_service.issue_ticket(published_tournament.tournament_id, "h1")
        suffix = first.code.split("-", 1)[1]
        service = TicketService(
            ticket_repo,
            tournament_repo,
            lock_manager,
            publisher,
            clock,
            settings,
            code_generator=TicketCodeGenerator(
                ticket_repo.code_exists, max_attempts=2, suffix_factory=lambda: suffix
            ),
        )
        with pytest.raises(CodeGenerationExhaustedError):
            await service.issue_ticket(published_tournament.tournament_id, "h2")
        assert len(await ticket_repo.list_all()) == 1


    @pytest.mark.asyncio
    async def test_concurrent_workers_racing_for_one_code(
        self, ticket_repo, tournament_repo, tournament_service, lock_manager, publisher,
        clock, settings,
    ):
        async def stale_oracle(code):
            return False

        def worker(suffixes):
            return TicketService(
                ticket_repo,
                tournament_repo,
                lock_manager,
                publisher,
                clock,
                settings,
                code_generator=TicketCodeGenerator(
                    stale_oracle, suffix_factory=iter(suffixes).__next__
                ),
            )

        tids = []
        for _ in range(2):
            created = await tournament_service.create_tournament(
                **make_tournament_kwargs(clock.now())
            )
            await tournament_service.publish(created.tournament_id)
            tids.append(created.tournament_id)

        results = await asyncio.gather(
            worker(["AAAAAAAA", "BBBBBBBB"]).issue_ticket(tids[0], "h1"),
            worker(["AAAAAAAA", "CCCCCCCC"]).issue_ticket(tids[1], "h2"),
            return_exceptions=True,
        )

        assert not [r for r in results if isinstance(r, Exception)]
        codes = {ticket.code for ticket in results}
        assert len(codes) == 2
        assert "TKT-AAAAAAAA" in codes
        assert len(await ticket_repo.list_all()) == 2

    @pytest.mark.asyncio
    async def test_list_holder_tickets(self, ticket_service, published_tournament, clock):
        tid = published_tournament.tournament_id
        first = await ticket_service.issue_ticket(tid, "h1")
        clock.advance(minutes=5)
        second = await ticket_service.issue_ticket(tid, "h1")
        await ticket_service.issue_ticket(tid, "h2")

        owned = await ticket_service.list_holder_tickets("h1")
        assert [t.ticket_id for t in owned] == [second.ticket_id, first.ticket_id]
        assert await ticket_service.list_holder_tickets("nobody") == []


class TestTransitions:
    @pytest.mark.asyncio
    async def test_pay_use_flow(self, ticket_service, published_tournament, publisher):
        ticket = await ticket_service.issue_ticket(published_tournament.tournament_id, "h1")
        paid = await ticket_service.pay_ticket(ticket.ticket_id, "pay-1")
        assert paid.status is TicketStatus.PAID
        assert paid.version == 1

        used = await ticket_service.use_ticket(ticket.code)
        assert used.status is TicketStatus.USED
        assert [e.event_type for e in publisher.events[-3:]] == [
            LifecycleEventType.TICKET_CONFIRMED,
            LifecycleEventType.TICKET_PAID,
            LifecycleEventType.TICKET_USED,
        ]

    @pytest.mark.asyncio
    async def test_pay_twice(self, ticket_service, published_tournament, ticket_repo):
        ticket = await ticket_service.issue_ticket(published_tournament.tournament_id, "h1")
        await ticket_service.pay_ticket(ticket.ticket_id, "pay-1")
        with pytest.raises(InvalidStateTransitionError):
            await ticket_service.pay_ticket(ticket.ticket_id, "pay-2")
        stored = await ticket_repo.get(ticket.ticket_id)
        assert stored.payment_reference == "pay-1"

    @pytest.mark.asyncio
    async def test_concurrent_double_pay_single_winner(
        self, ticket_service, published_tournament
    ):
        ticket = await ticket_service.issue_ticket(published_tournament.tournament_id, "h1")
        results = await asyncio.gather(
            ticket_service.pay_ticket(ticket.ticket_id, "pay-a"),
            ticket_service.pay_ticket(ticket.ticket_id, "pay-b"),
            return_exceptions=True,
        )
        wins = [r for r in results if not isinstance(r, Exception)]
        losses = [r for r in results if isinstance(r, Exception)]
        assert len(wins) == 1
        assert len(losses) == 1
        assert isinstance(losses[0], (InvalidStateTransitionError, ConcurrentModificationError))

    @pytest.mark.asyncio
    async def test_stale_write_rejected(self, ticket_service, published_tournament, ticket_repo):
        ticket = await ticket_service.issue_ticket(published_tournament.tournament_id, "h1")
        copy_a = await ticket_repo.get_for_update(ticket.ticket_id)
        copy_b = await ticket_repo.get_for_update(ticket.ticket_id)

        now = ticket.issued_at
        copy_a.mark_as_paid("pay-a", now)
        copy_b.mark_as_paid("pay-b", now)
        await ticket_repo.save(copy_a)
        with pytest.raises(ConcurrentModificationError):
            await ticket_repo.save(copy_b)
        assert (await ticket_repo.get(ticket.ticket_id)).payment_reference == "pay-a"

    @pytest.mark.asyncio
    async def test_pay_after_expiry(self, ticket_service, published_tournament, clock):
        ticket = await ticket_service.issue_ticket(published_tournament.tournament_id, "h1")
        clock.set(ticket.expiration_date)
        with pytest.raises(TicketExpiredError):
            await ticket_service.pay_ticket(ticket.ticket_id, "pay-1")

    @pytest.mark.asyncio
    async def test_cancel_reports_refund(self, ticket_service, published_tournament):
        tid = published_tournament.tournament_id
        reserved = await ticket_service.issue_ticket(tid, "h1")
        paid = await ticket_service.issue_ticket(tid, "h2")
        await ticket_service.pay_ticket(paid.ticket_id, "pay-1")

        assert (await ticket_service.cancel_ticket(reserved.ticket_id)).refundable is False
        result = await ticket_service.cancel_ticket(paid.ticket_id)
        assert result.refundable is True
        assert result.ticket.status is TicketStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_unknown_ticket(self, ticket_service):
        with pytest.raises(TicketNotFoundError):
            await ticket_service.pay_ticket("missing", "pay-1")
        with pytest.raises(TicketNotFoundError):
            await ticket_service.use_ticket("TKT-ZZZZZZZZ")

    @pytest.mark.asyncio
    async def test_expire_single_ticket(self, ticket_service, published_tournament, clock):
        ticket = await ticket_service.issue_ticket(published_tournament.tournament_id, "h1")
        with pytest.raises(InvalidStateTransitionError):
            await ticket_service.expire_ticket(ticket.ticket_id)

        clock.set(ticket.expiration_date)
        expired = await ticket_service.expire_ticket(ticket.ticket_id)
        assert expired.status is TicketStatus.EXPIRED
        again = await ticket_service.expire_ticket(ticket.ticket_id)
        assert again.version == expired.version


class TestExpirationSweep:
    @pytest.mark.asyncio
    async def test_sweep_is_idempotent(
        self, ticket_service, published_tournament, clock, publisher
    ):
        tid = published_tournament.tournament_id
        reserved = await ticket_service.issue_ticket(tid, "h1")
        paid = await ticket_service.issue_ticket(tid, "h2")
        used = await ticket_service.issue_ticket(tid, "h3")
        await ticket_service.pay_ticket(paid.ticket_id, "pay-2")
        await ticket_service.pay_ticket(used.ticket_id, "pay-3")
        await ticket_service.use_ticket(used.code)

        early = await ticket_service.expire_due_tickets()
        assert early.expired == 0

        clock.set(reserved.expiration_date + timedelta(minutes=1))
        first = await ticket_service.expire_due_tickets()
        second = await ticket_service.expire_due_tickets()

        assert (first.examined, first.expired) == (2, 2)
        assert (second.examined, second.expired) == (0, 0)
        assert (await ticket_service.get_ticket(reserved.ticket_id)).status is TicketStatus.EXPIRED
        assert (await ticket_service.get_ticket(paid.ticket_id)).status is TicketStatus.EXPIRED
        assert (await ticket_service.get_ticket(used.ticket_id)).status is TicketStatus.USED
        assert len(publisher.of_type(LifecycleEventType.TICKET_EXPIRED)) == 2

    @pytest.mark.asyncio
    async def test_sweep_drains_every_batch(
        self, ticket_repo, tournament_repo, lock_manager, publisher, clock, settings,
        published_tournament,
    ):
        service = TicketService(
            ticket_repo,
            tournament_repo,
            lock_manager,
            publisher,
            clock,
            settings.model_copy(update={"expiration_sweep_batch_size": 2}),
        )
        issued = [
            await service.issue_ticket(published_tournament.tournament_id, f"h{i}")
            for i in range(5)
        ]

        clock.set(issued[0].expiration_date)
        result = await service.expire_due_tickets()

        assert (result.examined, result.expired, result.skipped) == (5, 5, 0)
        statuses = {t.status for t in await ticket_repo.list_all()}
        assert statuses == {TicketStatus.EXPIRED}

    @pytest.mark.asyncio
    async def test_sweep_skips_ticket_changed_underneath(
        self, ticket_service, published_tournament, ticket_repo, clock, monkeypatch
    ):
        ticket = await ticket_service.issue_ticket(published_tournament.tournament_id, "h1")
        clock.set(ticket.expiration_date)

        real_find_due = ticket_repo.find_due_for_expiry

        async def find_then_cancel(now, limit):
            due = await real_find_due(now, limit)
            concurrent = await ticket_repo.get_for_update(ticket.ticket_id)
            concurrent.cancel(now)
            await ticket_repo.save(concurrent)
            return due

        monkeypatch.setattr(ticket_repo, "find_due_for_expiry", find_then_cancel)
        result = await ticket_service.expire_due_tickets()

        assert (result.examined, result.expired, result.skipped) == (1, 0, 1)
        stored = await ticket_repo.get(ticket.ticket_id)
        assert stored.status is TicketStatus.CANCELLED


class TestValidationAndStats:
    @pytest.mark.asyncio
    async def test_validate_ticket_messages(self, ticket_service, published_tournament, clock):
        tid = published_tournament.tournament_id
        assert (await ticket_service.validate_ticket("bogus")).message == (
            "Invalid ticket code format"
        )
        assert (await ticket_service.validate_ticket("TKT-ZZZZZZZZ")).message == (
            "Ticket not found"
        )

        ticket = await ticket_service.issue_ticket(tid, "h1")
        result = await ticket_service.validate_ticket(ticket.code)
        assert (result.valid, result.message) == (False, "Ticket has not been paid")

        await ticket_service.pay_ticket(ticket.ticket_id, "pay-1")
        result = await ticket_service.validate_ticket(ticket.code)
        assert (result.valid, result.message) == (True, "Ticket is valid")

        clock.set(ticket.expiration_date)
        result = await ticket_service.validate_ticket(ticket.code)
        assert (result.valid, result.message) == (False, "Ticket has expired")

    @pytest.mark.asyncio
    async def test_validate_used_and_cancelled(self, ticket_service, published_tournament):
        tid = published_tournament.tournament_id
        used = await ticket_service.issue_ticket(tid, "h1")
        await ticket_service.pay_ticket(used.ticket_id, "pay-1")
        await ticket_service.use_ticket(used.code)
        cancelled = await ticket_service.issue_ticket(tid, "h2")
        await ticket_service.cancel_ticket(cancelled.ticket_id)

        assert (await ticket_service.validate_ticket(used.code)).message == (
            "Ticket has already been used"
        )
        assert (await ticket_service.validate_ticket(cancelled.code)).message == (
            "Ticket was cancelled"
        )

    @pytest.mark.asyncio
    async def test_stats_use_ticket_snapshots(
        self, ticket_service, tournament_service, published_tournament
    ):
        tid = published_tournament.tournament_id
        t1 = await ticket_service.issue_ticket(tid, "h1")
        await ticket_service.pay_ticket(t1.ticket_id, "pay-1")

        await tournament_service.update_commission_rate(tid, "0.10")
        t2 = await ticket_service.issue_ticket(tid, "h2")
        await ticket_service.pay_ticket(t2.ticket_id, "pay-2")
        await ticket_service.use_ticket(t2.code)
        await ticket_service.issue_ticket(tid, "h3")

        stats = await ticket_service.ticket_stats(tid)
        assert stats.total == 3
        assert stats.by_status[TicketStatus.PAID] == 1
        assert stats.by_status[TicketStatus.USED] == 1
        assert stats.by_status[TicketStatus.RESERVED] == 1
        assert stats.revenue == Decimal("100.00")
        assert stats.commission == Decimal("7.50")
        assert stats.net == Decimal("92.50")
        assert stats.to_dict()["by_status"]["EXPIRED"] == 0

        assert (await ticket_service.ticket_stats()).total == 3
        assert (await ticket_service.ticket_stats("other")).total == 0


class TestQrBinding:
    @pytest.mark.asyncio
    async def test_verify_signed_qr(self, ticket_service, published_tournament):
        ticket = await ticket_service.issue_ticket(published_tournament.tournament_id, "h1")
        await ticket_service.pay_ticket(ticket.ticket_id, "pay-1")

        signed = await ticket_service.signed_qr_payload(ticket.ticket_id)
        result = await ticket_service.verify_qr(signed)
        assert result.valid
        assert result.ticket.ticket_id == ticket.ticket_id

    @pytest.mark.asyncio
    async def test_verify_rejects_tampering(self, ticket_service, published_tournament):
        ticket = await ticket_service.issue_ticket(published_tournament.tournament_id, "h1")
        signed = await ticket_service.signed_qr_payload(ticket.ticket_id)
        tampered = signed.replace('"holderId":"h1"', '"holderId":"h2"')
        result = await ticket_service.verify_qr(tampered)
        assert (result.valid, result.message) == (False, "QR signature is invalid")

    @pytest.mark.asyncio
    async def test_qr_image(self, ticket_service, published_tournament):
        ticket = await ticket_service.issue_ticket(published_tournament.tournament_id, "h1")
        image = await ticket_service.qr_image(ticket.ticket_id)
        assert image.startswith("iVBOR")
