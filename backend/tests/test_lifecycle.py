"""Transition table tests: every pair not listed is rejected."""

from enum import Enum
from itertools import product

import pytest

from torneo.lifecycle import TransitionTable
from torneo.ticket.models import TICKET_TRANSITIONS, TicketStatus
from torneo.tournament.models import TOURNAMENT_TRANSITIONS, TournamentStatus
from torneo.utils.errors import ErrorCode, InvalidStateTransitionError

EXPECTED_TOURNAMENT_EDGES = {
    (TournamentStatus.DRAFT, TournamentStatus.PUBLISHED),
    (TournamentStatus.DRAFT, TournamentStatus.CANCELLED),
    (TournamentStatus.PUBLISHED, TournamentStatus.IN_PROGRESS),
    (TournamentStatus.PUBLISHED, TournamentStatus.CANCELLED),
    (TournamentStatus.IN_PROGRESS, TournamentStatus.FINISHED),
    (TournamentStatus.IN_PROGRESS, TournamentStatus.CANCELLED),
}

EXPECTED_TICKET_EDGES = {
    (TicketStatus.RESERVED, TicketStatus.PAID),
    (TicketStatus.RESERVED, TicketStatus.EXPIRED),
    (TicketStatus.RESERVED, TicketStatus.CANCELLED),
    (TicketStatus.PAID, TicketStatus.USED),
    (TicketStatus.PAID, TicketStatus.EXPIRED),
    (TicketStatus.PAID, TicketStatus.CANCELLED),
}


class Light(Enum):
    RED = "RED"
    GREEN = "GREEN"


class TestTransitionTables:
    @pytest.mark.parametrize(
        "source,target", list(product(TournamentStatus, TournamentStatus))
    )
    def test_tournament_matrix(self, source, target):
        expected = (source, target) in EXPECTED_TOURNAMENT_EDGES
        assert TOURNAMENT_TRANSITIONS.can_transition(source, target) is expected
        if not expected:
            with pytest.raises(InvalidStateTransitionError) as exc_info:
                TOURNAMENT_TRANSITIONS.require(source, target, "t-1")
            assert exc_info.value.code == ErrorCode.INVALID_STATE_TRANSITION.value
            assert exc_info.value.details["from"] == source.value
            assert exc_info.value.details["to"] == target.value

    @pytest.mark.parametrize("source,target", list(product(TicketStatus, TicketStatus)))
    def test_ticket_matrix(self, source, target):
        expected = (source, target) in EXPECTED_TICKET_EDGES
        assert TICKET_TRANSITIONS.can_transition(source, target) is expected

    def test_terminal_states(self):
        assert {s for s in TournamentStatus if TOURNAMENT_TRANSITIONS.is_terminal(s)} == {
            TournamentStatus.FINISHED,
            TournamentStatus.CANCELLED,
        }
        assert {s for s in TicketStatus if TICKET_TRANSITIONS.is_terminal(s)} == {
            TicketStatus.USED,
            TicketStatus.EXPIRED,
            TicketStatus.CANCELLED,
        }

    def test_edges_listing_matches(self):
        assert set(TOURNAMENT_TRANSITIONS.edges()) == EXPECTED_TOURNAMENT_EDGES
        assert set(TICKET_TRANSITIONS.edges()) == EXPECTED_TICKET_EDGES

    def test_allowed_targets(self):
        assert TICKET_TRANSITIONS.allowed_targets(TicketStatus.USED) == frozenset()
        assert TOURNAMENT_TRANSITIONS.allowed_targets(TournamentStatus.DRAFT) == {
            TournamentStatus.PUBLISHED,
            TournamentStatus.CANCELLED,
        }

    def test_reflexive_edges_refused_at_definition(self):
        with pytest.raises(ValueError):
            TransitionTable("Light", {Light.RED: {Light.RED, Light.GREEN}})
