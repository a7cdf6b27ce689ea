"""Wiring of settings, logging, Redis, database and services.

    async with engine_context() as ctx:
        tournament = await ctx.tournaments.create_tournament(...)
        await ctx.tickets.expire_due_tickets()
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

import redis.asyncio as redis
from sqlalchemy.ext.asyncio import AsyncEngine

from torneo.config import Settings, get_settings
from torneo.events.bus import LifecycleEventBus
from torneo.logging_config import configure_logging, get_logger
from torneo.persistence.db import close_db, create_engine, create_session_factory, init_db
from torneo.persistence.sql_repository import SqlTicketRepository, SqlTournamentRepository
from torneo.ticket.service import TicketService
from torneo.tournament.distributed_lock import DistributedLockManager
from torneo.tournament.service import TournamentService
from torneo.utils.clock import Clock, SystemClock

logger = get_logger(__name__)


@dataclass
class EngineContext:
    settings: Settings
    redis: redis.Redis
    db_engine: AsyncEngine
    lock_manager: DistributedLockManager
    event_bus: LifecycleEventBus
    tournaments: TournamentService
    tickets: TicketService


@asynccontextmanager
async def engine_context(
    settings: Optional[Settings] = None,
    redis_client: Optional[redis.Redis] = None,
    clock: Optional[Clock] = None,
    create_schema: bool = True,
) -> AsyncGenerator[EngineContext, None]:
    """Build the services, yield them, and release locks and pools on exit."""
    settings = settings or get_settings()
    configure_logging(settings.log_level, settings.json_logs, settings.app_env)
    clock = clock or SystemClock()

    owns_redis = redis_client is None
    if redis_client is None:
        redis_client = redis.from_url(settings.redis_url, decode_responses=True)

    db_engine = create_engine(settings)
    if create_schema:
        await init_db(db_engine)
    session_factory = create_session_factory(db_engine)

    lock_manager = DistributedLockManager.from_settings(redis_client, settings)
    event_bus = LifecycleEventBus(
        redis_client if settings.event_stream_enabled else None,
        stream_max_len=settings.event_stream_max_len,
    )
    tournament_repo = SqlTournamentRepository(session_factory)
    ticket_repo = SqlTicketRepository(session_factory)

    ctx = EngineContext(
        settings=settings,
        redis=redis_client,
        db_engine=db_engine,
        lock_manager=lock_manager,
        event_bus=event_bus,
        tournaments=TournamentService(
            tournament_repo, lock_manager, event_bus, clock, settings
        ),
        tickets=TicketService(
            ticket_repo, tournament_repo, lock_manager, event_bus, clock, settings
        ),
    )
    logger.info(
        "engine_started",
        app_env=settings.app_env,
        event_stream=settings.event_stream_enabled,
    )
    try:
        yield ctx
    finally:
        released = await lock_manager.cleanup_all()
        await close_db(db_engine)
        if owns_redis:
            await redis_client.aclose()
        logger.info("engine_stopped", locks_released=released)
