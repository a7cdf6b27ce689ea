"""In-process repositories.

Aggregates are stored as deep copies so callers never share state with the
store; ``save`` is a compare-and-set on ``version`` under an asyncio.Lock.
"""

import asyncio
import copy
from datetime import datetime
from typing import Dict, List, Optional

from torneo.ticket.models import TICKET_TRANSITIONS, Ticket, TicketStatus
from torneo.tournament.models import Tournament
from torneo.utils.clock import ensure_utc
from torneo.utils.errors import ConcurrentModificationError, DuplicateTicketCodeError


def _snapshot(aggregate):
    stored = copy.deepcopy(aggregate)
    stored._pending_events = []
    return stored


class InMemoryTournamentRepository:
    def __init__(self) -> None:
        self._items: Dict[str, Tournament] = {}
        self._lock = asyncio.Lock()

    async def get(self, tournament_id: str) -> Optional[Tournament]:
        stored = self._items.get(tournament_id)
        return copy.deepcopy(stored) if stored is not None else None

    async def get_for_update(self, tournament_id: str) -> Optional[Tournament]:
        return await self.get(tournament_id)

    async def add(self, tournament: Tournament) -> None:
        async with self._lock:
            if tournament.tournament_id in self._items:
                raise ConcurrentModificationError(
                    "Tournament",
                    tournament.tournament_id,
                    message=f"Tournament {tournament.tournament_id} already exists",
                )
            self._items[tournament.tournament_id] = _snapshot(tournament)

    async def save(self, tournament: Tournament) -> None:
        async with self._lock:
            stored = self._items.get(tournament.tournament_id)
            if stored is None or stored.version != tournament.version:
                raise ConcurrentModificationError(
                    "Tournament", tournament.tournament_id, tournament.version
                )
            tournament.version += 1
            self._items[tournament.tournament_id] = _snapshot(tournament)


class InMemoryTicketRepository:
    def __init__(self) -> None:
        self._items: Dict[str, Ticket] = {}
        self._by_code: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def get(self, ticket_id: str) -> Optional[Ticket]:
        stored = self._items.get(ticket_id)
        return copy.deepcopy(stored) if stored is not None else None

    async def get_for_update(self, ticket_id: str) -> Optional[Ticket]:
        return await self.get(ticket_id)

    async def get_by_code(self, code: str) -> Optional[Ticket]:
        ticket_id = self._by_code.get(code)
        return await self.get(ticket_id) if ticket_id else None

    async def code_exists(self, code: str) -> bool:
        return code in self._by_code

    async def add(self, ticket: Ticket) -> None:
        async with self._lock:
            if ticket.code in self._by_code:
                raise DuplicateTicketCodeError(ticket.ticket_id, ticket.code)
            if ticket.ticket_id in self._items:
                raise ConcurrentModificationError(
                    "Ticket",
                    ticket.ticket_id,
                    message=f"Ticket {ticket.ticket_id} already exists",
                )
            self._items[ticket.ticket_id] = _snapshot(ticket)
            self._by_code[ticket.code] = ticket.ticket_id

    async def save(self, ticket: Ticket) -> None:
        async with self._lock:
            stored = self._items.get(ticket.ticket_id)
            if stored is None or stored.version != ticket.version:
                raise ConcurrentModificationError(
                    "Ticket", ticket.ticket_id, ticket.version
                )
            ticket.version += 1
            self._items[ticket.ticket_id] = _snapshot(ticket)

    async def find_due_for_expiry(self, now: datetime, limit: int) -> List[Ticket]:
        now = ensure_utc(now)
        due = [
            t
            for t in self._items.values()
            if not TICKET_TRANSITIONS.is_terminal(t.status) and t.expiration_date <= now
        ]
        due.sort(key=lambda t: (t.expiration_date, t.ticket_id))
        return [copy.deepcopy(t) for t in due[:limit]]

    async def list_by_tournament(
        self,
        tournament_id: str,
        status: Optional[TicketStatus] = None,
    ) -> List[Ticket]:
        return [
            copy.deepcopy(t)
            for t in self._items.values()
            if t.tournament_id == tournament_id and (status is None or t.status is status)
        ]

    async def list_by_holder(self, holder_id: str) -> List[Ticket]:
        owned = [t for t in self._items.values() if t.holder_id == holder_id]
        owned.sort(key=lambda t: t.issued_at, reverse=True)
        return [copy.deepcopy(t) for t in owned]

    async def list_all(self) -> List[Ticket]:
        return [copy.deepcopy(t) for t in self._items.values()]
