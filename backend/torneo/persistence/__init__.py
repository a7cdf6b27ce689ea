"""Persistence for tournaments and tickets."""

from torneo.persistence.memory import InMemoryTicketRepository, InMemoryTournamentRepository
from torneo.persistence.repository import TicketRepository, TournamentRepository

__all__ = [
    "InMemoryTicketRepository",
    "InMemoryTournamentRepository",
    "TicketRepository",
    "TournamentRepository",
]
