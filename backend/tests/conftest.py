"""Shared fixtures: in-memory Redis, a manual clock, repositories and services."""

import pytest
import pytest_asyncio

from factories import TEST_QR_KEY, ManualClock, MockRedis, make_tournament_kwargs
from torneo.config import Settings
from torneo.events.bus import RecordingPublisher
from torneo.persistence.memory import InMemoryTicketRepository, InMemoryTournamentRepository
from torneo.ticket.service import TicketService
from torneo.tournament.distributed_lock import DistributedLockManager
from torneo.tournament.service import TournamentService


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite:///:memory:",
        qr_signing_key=TEST_QR_KEY,
        lock_acquire_timeout_ms=1000,
        lock_retry_interval_ms=5,
    )


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def mock_redis():
    return MockRedis()


@pytest.fixture
def lock_manager(mock_redis):
    return DistributedLockManager(
        mock_redis,
        default_lock_timeout_ms=5000,
        default_acquire_timeout_ms=1000,
        retry_interval_ms=5,
    )


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def tournament_repo():
    return InMemoryTournamentRepository()


@pytest.fixture
def ticket_repo():
    return InMemoryTicketRepository()


@pytest.fixture
def tournament_service(tournament_repo, lock_manager, publisher, clock, settings):
    return TournamentService(tournament_repo, lock_manager, publisher, clock, settings)


@pytest.fixture
def ticket_service(ticket_repo, tournament_repo, lock_manager, publisher, clock, settings):
    return TicketService(
        ticket_repo, tournament_repo, lock_manager, publisher, clock, settings
    )


@pytest_asyncio.fixture
async def published_tournament(tournament_service, clock):
    """A PAID, published tournament with capacity 2 and open registration."""
    tournament = await tournament_service.create_tournament(
        **make_tournament_kwargs(clock.now())
    )
    return await tournament_service.publish(tournament.tournament_id)
