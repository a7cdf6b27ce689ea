"""Tournament aggregate, distributed locking and application service."""

from torneo.tournament.distributed_lock import (
    DistributedLockError,
    DistributedLockManager,
    LockAcquisitionError,
    LockInfo,
    LockType,
)
from torneo.tournament.models import (
    PARTICIPANT_TRANSITIONS,
    TOURNAMENT_TRANSITIONS,
    ParticipantStatus,
    Tournament,
    TournamentFormat,
    TournamentParticipant,
    TournamentStatus,
)

__all__ = [
    "DistributedLockError",
    "DistributedLockManager",
    "LockAcquisitionError",
    "LockInfo",
    "LockType",
    "PARTICIPANT_TRANSITIONS",
    "ParticipantStatus",
    "TOURNAMENT_TRANSITIONS",
    "Tournament",
    "TournamentFormat",
    "TournamentParticipant",
    "TournamentStatus",
]
