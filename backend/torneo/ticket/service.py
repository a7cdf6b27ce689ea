"""Ticket application service.

Issuance runs under the parent tournament's distributed lock so the
registration and capacity checks see a stable tournament. Later ticket
transitions rely on the repository's versioned compare-and-set: of two
concurrent writers on one ticket exactly one wins, the other gets
ConcurrentModificationError.
"""

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, List, Optional, TypeVar

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from torneo import money
from torneo.config import Settings, get_settings
from torneo.events.models import EventPublisher, LifecycleEvent
from torneo.logging_config import bind_context, get_logger, unbind_context
from torneo.persistence.repository import TicketRepository, TournamentRepository
from torneo.ticket.codes import TicketCodeGenerator
from torneo.ticket.models import Ticket, TicketStatus
from torneo.ticket.qr import QrSigner, build_qr_payload, render_qr_png_base64
from torneo.tournament.distributed_lock import DistributedLockManager, LockType
from torneo.tournament.models import Tournament
from torneo.utils.clock import Clock, SystemClock
from torneo.utils.errors import (
    CodeGenerationExhaustedError,
    ConcurrentModificationError,
    DuplicateTicketCodeError,
    QrSignatureError,
    TicketNotFoundError,
    TorneoError,
    TournamentNotFoundError,
)
from torneo.utils.json_utils import json_loads

logger = get_logger(__name__)

T = TypeVar("T")

REVENUE_STATUSES = (TicketStatus.PAID, TicketStatus.USED)


@dataclass(frozen=True)
class CancellationResult:
    ticket: Ticket
    refundable: bool


@dataclass(frozen=True)
class ExpirationSweepResult:
    examined: int
    expired: int
    skipped: int


@dataclass(frozen=True)
class TicketValidation:
    valid: bool
    message: str
    ticket: Optional[Ticket] = None


@dataclass(frozen=True)
class TicketStats:
    """Realized figures from ticket snapshots."""

    total: int
    by_status: Dict[TicketStatus, int] = field(default_factory=dict)
    revenue: Decimal = money.ZERO
    commission: Decimal = money.ZERO
    net: Decimal = money.ZERO

    def to_dict(self) -> Dict[str, object]:
        return {
            "total": self.total,
            "by_status": {s.value: n for s, n in self.by_status.items()},
            "revenue": str(self.revenue),
            "commission": str(self.commission),
            "net": str(self.net),
        }


class TicketService:
    """Service for ticket issuance, transitions, expiry and QR binding."""

    def __init__(
        self,
        tickets: TicketRepository,
        tournaments: TournamentRepository,
        lock_manager: DistributedLockManager,
        publisher: EventPublisher,
        clock: Optional[Clock] = None,
        settings: Optional[Settings] = None,
        code_generator: Optional[TicketCodeGenerator] = None,
        qr_signer: Optional[QrSigner] = None,
    ):
        self.tickets = tickets
        self.tournaments = tournaments
        self.lock_manager = lock_manager
        self.publisher = publisher
        self.clock = clock or SystemClock()
        self.settings = settings or get_settings()
        self.code_generator = code_generator or TicketCodeGenerator(
            tickets.code_exists,
            prefix=self.settings.ticket_code_prefix,
            length=self.settings.ticket_code_length,
            max_attempts=self.settings.ticket_code_max_attempts,
        )
        self.qr_signer = qr_signer or QrSigner(self.settings.qr_signing_key)
        self.expiry_lead = timedelta(minutes=self.settings.ticket_expiry_lead_minutes)

    # =========================================================================
    # Internals
    # =========================================================================

    async def _publish(self, events: List[LifecycleEvent]) -> None:
        for event in events:
            await self.publisher.publish(event)

    async def _load(self, ticket_id: str) -> Ticket:
        ticket = await self.tickets.get_for_update(ticket_id)
        if ticket is None:
            raise TicketNotFoundError(ticket_id)
        return ticket

    async def _load_by_code(self, code: str) -> Ticket:
        ticket = await self.tickets.get_by_code(code)
        if ticket is None:
            raise TicketNotFoundError(code)
        return ticket

    async def _transition(
        self,
        ticket: Ticket,
        operation: str,
        apply: Callable[[Ticket, datetime], T],
    ) -> T:
        try:
            result = apply(ticket, self.clock.now())
        except TorneoError as exc:
            logger.info(
                "ticket_operation_rejected",
                operation=operation,
                ticket_id=ticket.ticket_id,
                status=ticket.status.value,
                error_code=exc.code,
            )
            raise

        events = ticket.collect_pending_events()
        if events:
            try:
                await self.tickets.save(ticket)
            except ConcurrentModificationError:
                logger.warning(
                    "ticket_concurrent_modification",
                    operation=operation,
                    ticket_id=ticket.ticket_id,
                )
                raise
            await self._publish(events)
            logger.info(
                f"ticket_{operation}",
                ticket_id=ticket.ticket_id,
                code=ticket.code,
                status=ticket.status.value,
            )
        return result

    async def _insert_with_fresh_code(
        self, tournament: Tournament, holder_id: str, now: datetime
    ) -> Ticket:
        """Persist a new ticket, drawing a new code when the insert loses the code race.

        Another process can pass the uniqueness check for the same candidate
        before either insert lands; the store's unique code constraint then
        rejects one of them and that one retries with a fresh code.
        """
        max_attempts = self.code_generator.max_attempts
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(max_attempts),
                retry=retry_if_exception_type(DuplicateTicketCodeError),
                reraise=True,
            ):
                with attempt:
                    code = await self.code_generator.generate()
                    try:
                        ticket = Ticket.issue(
                            tournament, holder_id, code, now, self.expiry_lead
                        )
                        await self.tickets.add(ticket)
                    except DuplicateTicketCodeError:
                        logger.info("ticket_code_collision_on_insert", code=code)
                        raise
                    finally:
                        self.code_generator.release(code)
        except DuplicateTicketCodeError as exc:
            logger.warning(
                "ticket_code_generation_exhausted",
                attempts=max_attempts,
                last_code=exc.ticket_code,
            )
            raise CodeGenerationExhaustedError(max_attempts) from exc
        return ticket

    # =========================================================================
    # Issuance and queries
    # =========================================================================

    async def issue_ticket(self, tournament_id: str, holder_id: str) -> Ticket:
        """Issue a RESERVED ticket against a PAID tournament.

        Raises:
            TournamentNotFoundError: unknown tournament
            TicketNotIssuableError: a precondition failed (see IssuanceFailure)
            CodeGenerationExhaustedError: no free code within the retry budget,
                counting inserts rejected for a duplicate code
        """
        async with self.lock_manager.lock(tournament_id, LockType.TOURNAMENT):
            tournament = await self.tournaments.get(tournament_id)
            if tournament is None:
                raise TournamentNotFoundError(tournament_id)

            now = self.clock.now()
            try:
                Ticket.check_issuable(tournament, now, self.expiry_lead)
            except TorneoError as exc:
                logger.info(
                    "ticket_issuance_rejected",
                    tournament_id=tournament_id,
                    holder_id=holder_id,
                    reason=exc.details.get("reason"),
                )
                raise

            ticket = await self._insert_with_fresh_code(tournament, holder_id, now)
            events = ticket.collect_pending_events()

        await self._publish(events)
        logger.info(
            "ticket_issued",
            ticket_id=ticket.ticket_id,
            code=ticket.code,
            tournament_id=tournament_id,
            holder_id=holder_id,
            price=str(ticket.price),
            commission=str(ticket.commission),
            expiration_date=ticket.expiration_date.isoformat(),
        )
        return ticket

    async def get_ticket(self, ticket_id: str) -> Ticket:
        ticket = await self.tickets.get(ticket_id)
        if ticket is None:
            raise TicketNotFoundError(ticket_id)
        return ticket

    async def get_ticket_by_code(self, code: str) -> Ticket:
        return await self._load_by_code(code)

    async def list_holder_tickets(self, holder_id: str) -> List[Ticket]:
        """All tickets held by one user, newest first."""
        return list(await self.tickets.list_by_holder(holder_id))

    # =========================================================================
    # Transitions
    # =========================================================================

    async def pay_ticket(self, ticket_id: str, payment_reference: str) -> Ticket:
        ticket = await self._load(ticket_id)
        await self._transition(
            ticket, "paid", lambda t, now: t.mark_as_paid(payment_reference, now)
        )
        return ticket

    async def use_ticket(self, code: str) -> Ticket:
        """Mark the ticket with this code as used at the venue."""
        ticket = await self._load_by_code(code)
        await self._transition(ticket, "used", lambda t, now: t.mark_as_used(now))
        return ticket

    async def cancel_ticket(self, ticket_id: str) -> CancellationResult:
        ticket = await self._load(ticket_id)
        refundable = await self._transition(
            ticket, "cancelled", lambda t, now: t.cancel(now)
        )
        return CancellationResult(ticket=ticket, refundable=refundable)

    async def expire_ticket(self, ticket_id: str) -> Ticket:
        """Expire one ticket. A ticket already in a terminal state is left as is."""
        ticket = await self._load(ticket_id)
        await self._transition(ticket, "expired", lambda t, now: t.mark_as_expired(now))
        return ticket

    async def expire_due_tickets(self) -> ExpirationSweepResult:
        """Expire every open ticket whose expiration date has passed.

        Tickets are fetched in batches of ``expiration_sweep_batch_size``;
        the sweep keeps fetching while a full batch still expires something.
        Safe to run repeatedly and alongside other ticket operations: when a
        ticket changes between our read and our write, the stale expiry is
        dropped and counted as skipped.
        """
        now = self.clock.now()
        batch_size = self.settings.expiration_sweep_batch_size
        bind_context(sweep_at=now.isoformat())
        try:
            examined = 0
            expired = 0
            skipped = 0
            while True:
                due = await self.tickets.find_due_for_expiry(now, batch_size)
                examined += len(due)
                batch_expired = 0
                for ticket in due:
                    if not ticket.mark_as_expired(now):
                        skipped += 1
                        continue
                    events = ticket.collect_pending_events()
                    try:
                        await self.tickets.save(ticket)
                    except ConcurrentModificationError:
                        skipped += 1
                        logger.info(
                            "expiration_dropped_stale",
                            ticket_id=ticket.ticket_id,
                            version=ticket.version,
                        )
                        continue
                    batch_expired += 1
                    await self._publish(events)
                expired += batch_expired
                # a short batch drained the backlog; an idle one would repeat
                if len(due) < batch_size or batch_expired == 0:
                    break

            result = ExpirationSweepResult(
                examined=examined, expired=expired, skipped=skipped
            )
            logger.info(
                "expiration_sweep_completed",
                examined=result.examined,
                expired=result.expired,
                skipped=result.skipped,
            )
            return result
        finally:
            unbind_context("sweep_at")

    # =========================================================================
    # Validation and statistics
    # =========================================================================

    async def validate_ticket(self, code: str) -> TicketValidation:
        """Check whether a ticket can be admitted right now. Never raises for bad codes."""
        if not self.code_generator.is_valid_code(code):
            return TicketValidation(False, "Invalid ticket code format")

        ticket = await self.tickets.get_by_code(code)
        if ticket is None:
            return TicketValidation(False, "Ticket not found")

        now = self.clock.now()
        if ticket.is_valid_for_use(now):
            return TicketValidation(True, "Ticket is valid", ticket)
        if ticket.status is TicketStatus.RESERVED:
            message = "Ticket has not been paid"
        elif ticket.status is TicketStatus.USED:
            message = "Ticket has already been used"
        elif ticket.status is TicketStatus.CANCELLED:
            message = "Ticket was cancelled"
        else:
            message = "Ticket has expired"
        return TicketValidation(False, message, ticket)

    async def ticket_stats(self, tournament_id: Optional[str] = None) -> TicketStats:
        if tournament_id is None:
            tickets = await self.tickets.list_all()
        else:
            tickets = await self.tickets.list_by_tournament(tournament_id)

        counts = Counter(t.status for t in tickets)
        sold = [t for t in tickets if t.status in REVENUE_STATUSES]
        revenue = money.quantize_money(sum((t.price for t in sold), money.ZERO))
        commission = money.quantize_money(sum((t.commission for t in sold), money.ZERO))
        return TicketStats(
            total=len(tickets),
            by_status={status: counts.get(status, 0) for status in TicketStatus},
            revenue=revenue,
            commission=commission,
            net=money.net_amount(revenue, commission),
        )

    # =========================================================================
    # QR binding
    # =========================================================================

    async def qr_payload(self, ticket_id: str) -> str:
        return build_qr_payload(await self.get_ticket(ticket_id))

    async def signed_qr_payload(self, ticket_id: str) -> str:
        return self.qr_signer.sign(await self.qr_payload(ticket_id))

    async def qr_image(self, ticket_id: str) -> str:
        """Base64 PNG of the signed payload."""
        return render_qr_png_base64(await self.signed_qr_payload(ticket_id))

    async def verify_qr(self, signed_payload: str) -> TicketValidation:
        """Verify a scanned QR and check that it still matches a usable ticket."""
        try:
            payload = self.qr_signer.verify(signed_payload)
        except QrSignatureError:
            logger.warning("qr_signature_rejected")
            return TicketValidation(False, "QR signature is invalid")

        code = json_loads(payload).get("code", "")
        validation = await self.validate_ticket(code)
        if validation.ticket is not None and build_qr_payload(validation.ticket) != payload:
            return TicketValidation(False, "QR payload does not match ticket", validation.ticket)
        return validation
