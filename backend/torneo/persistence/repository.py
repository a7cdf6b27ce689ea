"""Repository contracts for tournament and ticket aggregates.

``save`` is a compare-and-set on ``version``: it succeeds only if the stored
version still equals the aggregate's, then bumps the version on both sides.
A mismatch raises ConcurrentModificationError. ``get_for_update`` takes no
lock that outlives the call; the compare-and-set in ``save`` is what makes a
read-modify-write atomic.
"""

from datetime import datetime
from typing import Optional, Protocol, Sequence

from torneo.ticket.models import Ticket, TicketStatus
from torneo.tournament.models import Tournament


class TournamentRepository(Protocol):
    async def get(self, tournament_id: str) -> Optional[Tournament]: ...

    async def get_for_update(self, tournament_id: str) -> Optional[Tournament]:
        """Load a copy to mutate and hand back to ``save``."""
        ...

    async def add(self, tournament: Tournament) -> None: ...

    async def save(self, tournament: Tournament) -> None: ...


class TicketRepository(Protocol):
    async def get(self, ticket_id: str) -> Optional[Ticket]: ...

    async def get_for_update(self, ticket_id: str) -> Optional[Ticket]: ...

    async def get_by_code(self, code: str) -> Optional[Ticket]: ...

    async def code_exists(self, code: str) -> bool:
        """Uniqueness oracle for ticket code generation."""
        ...

    async def add(self, ticket: Ticket) -> None:
        """Insert a new ticket.

        Raises DuplicateTicketCodeError when another ticket already holds the
        code, ConcurrentModificationError when the id is taken.
        """
        ...

    async def save(self, ticket: Ticket) -> None: ...

    async def find_due_for_expiry(
        self, now: datetime, limit: int
    ) -> Sequence[Ticket]:
        """RESERVED or PAID tickets whose expiration date is <= now."""
        ...

    async def list_by_tournament(
        self,
        tournament_id: str,
        status: Optional[TicketStatus] = None,
    ) -> Sequence[Ticket]: ...

    async def list_by_holder(self, holder_id: str) -> Sequence[Ticket]:
        """Tickets held by one user, newest first."""
        ...

    async def list_all(self) -> Sequence[Ticket]: ...
