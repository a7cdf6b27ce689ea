"""Tournament application service.

Every mutation follows the same cycle under the tournament's distributed
lock: load for update, apply the aggregate operation, compare-and-set save,
then publish the events the aggregate recorded.
"""

from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional, TypeVar

from torneo.config import Settings, get_settings
from torneo.events.models import EventPublisher, LifecycleEvent
from torneo.logging_config import get_logger
from torneo.persistence.repository import TournamentRepository
from torneo.tournament.distributed_lock import DistributedLockManager, LockType
from torneo.tournament.models import Tournament, TournamentFormat, TournamentParticipant
from torneo.utils.clock import Clock, SystemClock
from torneo.utils.errors import TorneoError, TournamentNotFoundError

logger = get_logger(__name__)

T = TypeVar("T")


class TournamentService:
    """Service for tournament lifecycle and registration."""

    def __init__(
        self,
        repository: TournamentRepository,
        lock_manager: DistributedLockManager,
        publisher: EventPublisher,
        clock: Optional[Clock] = None,
        settings: Optional[Settings] = None,
    ):
        self.repository = repository
        self.lock_manager = lock_manager
        self.publisher = publisher
        self.clock = clock or SystemClock()
        self.settings = settings or get_settings()

    # =========================================================================
    # Internals
    # =========================================================================

    async def _publish(self, events: list[LifecycleEvent]) -> None:
        for event in events:
            await self.publisher.publish(event)

    async def _load(self, tournament_id: str, for_update: bool = False) -> Tournament:
        if for_update:
            tournament = await self.repository.get_for_update(tournament_id)
        else:
            tournament = await self.repository.get(tournament_id)
        if tournament is None:
            raise TournamentNotFoundError(tournament_id)
        return tournament

    async def _mutate(
        self,
        tournament_id: str,
        operation: str,
        apply: Callable[[Tournament, datetime], T],
    ) -> tuple[Tournament, T]:
        async with self.lock_manager.lock(tournament_id, LockType.TOURNAMENT):
            tournament = await self._load(tournament_id, for_update=True)
            try:
                result = apply(tournament, self.clock.now())
            except TorneoError as exc:
                logger.info(
                    "tournament_operation_rejected",
                    operation=operation,
                    tournament_id=tournament_id,
                    error_code=exc.code,
                )
                raise
            events = tournament.collect_pending_events()
            await self.repository.save(tournament)

        await self._publish(events)
        logger.info(
            f"tournament_{operation}",
            tournament_id=tournament_id,
            status=tournament.status.value,
            version=tournament.version,
        )
        return tournament, result

    # =========================================================================
    # Creation and queries
    # =========================================================================

    async def create_tournament(
        self,
        *,
        name: str,
        format: TournamentFormat,
        category_id: str,
        game_id: str,
        organizer_id: str,
        max_participants: int,
        start_date: datetime,
        end_date: datetime,
        registration_start: datetime,
        registration_end: datetime,
        entry_fee: Decimal | int | str = Decimal("0"),
        prize_pool: Decimal | int | str = Decimal("0"),
        commission_rate: Decimal | int | str | None = None,
        description: Optional[str] = None,
        rules: Optional[str] = None,
        banner_image_url: Optional[str] = None,
    ) -> Tournament:
        """Create a DRAFT tournament.

        Uses the configured default commission rate when none is given.
        """
        tournament = Tournament.create(
            name=name,
            format=format,
            category_id=category_id,
            game_id=game_id,
            organizer_id=organizer_id,
            max_participants=max_participants,
            start_date=start_date,
            end_date=end_date,
            registration_start=registration_start,
            registration_end=registration_end,
            now=self.clock.now(),
            entry_fee=entry_fee,
            prize_pool=prize_pool,
            commission_rate=(
                self.settings.default_commission_rate
                if commission_rate is None
                else commission_rate
            ),
            description=description,
            rules=rules,
            banner_image_url=banner_image_url,
        )
        events = tournament.collect_pending_events()
        await self.repository.add(tournament)
        await self._publish(events)

        logger.info(
            "tournament_created",
            tournament_id=tournament.tournament_id,
            organizer_id=organizer_id,
            format=tournament.format.value,
        )
        return tournament

    async def get_tournament(self, tournament_id: str) -> Tournament:
        return await self._load(tournament_id)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def publish(self, tournament_id: str) -> Tournament:
        tournament, _ = await self._mutate(
            tournament_id, "published", lambda t, now: t.publish(now)
        )
        return tournament

    async def start(self, tournament_id: str) -> Tournament:
        minimum = self.settings.min_participants_to_start
        tournament, _ = await self._mutate(
            tournament_id, "started", lambda t, now: t.start(now, minimum)
        )
        return tournament

    async def finish(self, tournament_id: str) -> Tournament:
        tournament, _ = await self._mutate(
            tournament_id, "finished", lambda t, now: t.finish(now)
        )
        return tournament

    async def cancel(self, tournament_id: str, reason: Optional[str] = None) -> Tournament:
        tournament, _ = await self._mutate(
            tournament_id, "cancelled", lambda t, now: t.cancel(now, reason)
        )
        return tournament

    async def delete(self, tournament_id: str) -> Tournament:
        """Soft delete. Deleting twice is a no-op."""
        tournament, _ = await self._mutate(
            tournament_id, "deleted", lambda t, now: t.delete(now)
        )
        return tournament

    # =========================================================================
    # Registration
    # =========================================================================

    async def add_participant(
        self,
        tournament_id: str,
        user_id: str,
        team_name: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> TournamentParticipant:
        """Register a user. The capacity check and increment run under the lock."""
        _, participant = await self._mutate(
            tournament_id,
            "participant_registered",
            lambda t, now: t.add_participant(user_id, now, team_name, notes),
        )
        return participant

    async def confirm_participant(
        self, tournament_id: str, user_id: str
    ) -> TournamentParticipant:
        _, participant = await self._mutate(
            tournament_id,
            "participant_confirmed",
            lambda t, now: t.confirm_participant(user_id, now),
        )
        return participant

    async def cancel_participant(
        self, tournament_id: str, user_id: str
    ) -> TournamentParticipant:
        _, participant = await self._mutate(
            tournament_id,
            "participant_cancelled",
            lambda t, now: t.cancel_participant(user_id, now),
        )
        return participant

    async def disqualify_participant(
        self, tournament_id: str, user_id: str, reason: str
    ) -> TournamentParticipant:
        _, participant = await self._mutate(
            tournament_id,
            "participant_disqualified",
            lambda t, now: t.disqualify_participant(user_id, reason, now),
        )
        return participant

    # =========================================================================
    # Editing
    # =========================================================================

    async def update_basic_info(
        self,
        tournament_id: str,
        *,
        name: str,
        description: Optional[str],
        max_participants: int,
        entry_fee: Decimal | int | str,
        prize_pool: Decimal | int | str,
    ) -> Tournament:
        tournament, _ = await self._mutate(
            tournament_id,
            "basic_info_updated",
            lambda t, now: t.update_basic_info(
                name=name,
                description=description,
                max_participants=max_participants,
                entry_fee=entry_fee,
                prize_pool=prize_pool,
                now=now,
            ),
        )
        return tournament

    async def update_dates(
        self,
        tournament_id: str,
        *,
        start_date: datetime,
        end_date: datetime,
        registration_start: datetime,
        registration_end: datetime,
    ) -> Tournament:
        tournament, _ = await self._mutate(
            tournament_id,
            "dates_updated",
            lambda t, now: t.update_dates(
                start_date=start_date,
                end_date=end_date,
                registration_start=registration_start,
                registration_end=registration_end,
                now=now,
            ),
        )
        return tournament

    async def configure_streaming(
        self,
        tournament_id: str,
        stream_url: Optional[str],
        stream_platform: Optional[str],
    ) -> Tournament:
        tournament, _ = await self._mutate(
            tournament_id,
            "streaming_configured",
            lambda t, now: t.configure_streaming(stream_url, stream_platform, now),
        )
        return tournament

    async def update_commission_rate(
        self, tournament_id: str, rate: Decimal | int | str
    ) -> Tournament:
        tournament, _ = await self._mutate(
            tournament_id,
            "commission_rate_updated",
            lambda t, now: t.update_commission_rate(rate, now),
        )
        return tournament
