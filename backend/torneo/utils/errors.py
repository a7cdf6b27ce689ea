"""Custom exception classes for tournament and ticket lifecycle errors.

Every error carries a stable code so callers can tell exactly which
precondition failed without parsing messages.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Standard error codes for lifecycle errors."""

    # General errors
    INTERNAL_ERROR = "INTERNAL_ERROR"
    INVALID_ARGUMENT = "INVALID_ARGUMENT"
    CONCURRENT_MODIFICATION = "CONCURRENT_MODIFICATION"
    LOCK_UNAVAILABLE = "LOCK_UNAVAILABLE"

    # State machine errors
    INVALID_STATE_TRANSITION = "INVALID_STATE_TRANSITION"

    # Tournament errors
    TOURNAMENT_NOT_FOUND = "TOURNAMENT_NOT_FOUND"
    TOURNAMENT_NOT_EDITABLE = "TOURNAMENT_NOT_EDITABLE"
    INSUFFICIENT_PARTICIPANTS = "INSUFFICIENT_PARTICIPANTS"
    REGISTRATION_CLOSED = "REGISTRATION_CLOSED"
    CAPACITY_EXCEEDED = "CAPACITY_EXCEEDED"
    ALREADY_REGISTERED = "ALREADY_REGISTERED"

    # Ticket errors
    TICKET_NOT_FOUND = "TICKET_NOT_FOUND"
    TICKET_NOT_ISSUABLE = "TICKET_NOT_ISSUABLE"
    TICKET_EXPIRED = "TICKET_EXPIRED"
    CODE_GENERATION_EXHAUSTED = "CODE_GENERATION_EXHAUSTED"
    QR_SIGNATURE_INVALID = "QR_SIGNATURE_INVALID"


class IssuanceFailure(str, Enum):
    """Why a ticket could not be issued, in the order preconditions are checked."""

    TOURNAMENT_DELETED = "TOURNAMENT_DELETED"
    NOT_PAID_FORMAT = "NOT_PAID_FORMAT"
    NO_ENTRY_FEE = "NO_ENTRY_FEE"
    REGISTRATION_CLOSED = "REGISTRATION_CLOSED"
    NO_CAPACITY = "NO_CAPACITY"
    EXPIRY_IN_PAST = "EXPIRY_IN_PAST"


class TorneoError(Exception):
    """Base exception for lifecycle errors.

    Attributes:
        code: Error code for programmatic handling
        message: Human-readable error message
        details: Additional error details
        recoverable: Whether retrying later may succeed
    """

    def __init__(
        self,
        code: ErrorCode | str,
        message: str,
        details: dict[str, Any] | None = None,
        recoverable: bool = False,
    ):
        self.code = code.value if isinstance(code, ErrorCode) else code
        self.message = message
        self.details = details or {}
        self.recoverable = recoverable
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "errorCode": self.code,
            "errorMessage": self.message,
            "details": self.details,
            "recoverable": self.recoverable,
        }


class InvalidArgumentError(TorneoError):
    """Raised when a constructor or setter receives malformed input."""

    def __init__(self, field: str, message: str):
        super().__init__(
            code=ErrorCode.INVALID_ARGUMENT,
            message=f"{field}: {message}",
            details={"field": field},
        )
        self.field = field


class InvalidStateTransitionError(TorneoError):
    """Raised when a lifecycle method is called from a state that forbids it."""

    def __init__(
        self,
        entity: str,
        entity_id: str | None,
        current: str,
        target: str,
        message: str | None = None,
    ):
        super().__init__(
            code=ErrorCode.INVALID_STATE_TRANSITION,
            message=message or f"{entity} cannot go from {current} to {target}",
            details={
                "entity": entity,
                "entityId": entity_id,
                "from": current,
                "to": target,
            },
        )
        self.current = current
        self.target = target


class InsufficientParticipantsError(TorneoError):
    """Raised when start() is called below the participant threshold."""

    def __init__(self, tournament_id: str, current: int, required: int):
        super().__init__(
            code=ErrorCode.INSUFFICIENT_PARTICIPANTS,
            message=(
                f"Tournament {tournament_id} has {current} participants, "
                f"needs at least {required}"
            ),
            details={
                "tournamentId": tournament_id,
                "current": current,
                "required": required,
            },
        )


class RegistrationClosedError(TorneoError):
    """Raised when registering outside the registration window or state."""

    def __init__(self, tournament_id: str, reason: str):
        super().__init__(
            code=ErrorCode.REGISTRATION_CLOSED,
            message=f"Registration closed for tournament {tournament_id}: {reason}",
            details={"tournamentId": tournament_id, "reason": reason},
        )
        self.reason = reason


class CapacityExceededError(TorneoError):
    """Raised when a tournament has no free participant slot."""

    def __init__(self, tournament_id: str, current: int, maximum: int):
        super().__init__(
            code=ErrorCode.CAPACITY_EXCEEDED,
            message=f"Tournament {tournament_id} is full ({current}/{maximum})",
            details={
                "tournamentId": tournament_id,
                "current": current,
                "maximum": maximum,
            },
        )


class AlreadyRegisteredError(TorneoError):
    """Raised when a user is registered twice in the same tournament."""

    def __init__(self, tournament_id: str, user_id: str):
        super().__init__(
            code=ErrorCode.ALREADY_REGISTERED,
            message=f"User {user_id} already registered in tournament {tournament_id}",
            details={"tournamentId": tournament_id, "userId": user_id},
        )


class TournamentNotEditableError(TorneoError):
    """Raised when editing a tournament that is no longer a draft."""

    def __init__(self, tournament_id: str, status: str):
        super().__init__(
            code=ErrorCode.TOURNAMENT_NOT_EDITABLE,
            message=f"Tournament {tournament_id} is {status}; only drafts can be edited",
            details={"tournamentId": tournament_id, "status": status},
        )


class TournamentNotFoundError(TorneoError):
    """Raised when a tournament is not found."""

    def __init__(self, tournament_id: str):
        super().__init__(
            code=ErrorCode.TOURNAMENT_NOT_FOUND,
            message=f"Tournament not found: {tournament_id}",
            details={"tournamentId": tournament_id},
        )


class TicketNotFoundError(TorneoError):
    """Raised when a ticket is not found by id or code."""

    def __init__(self, ticket_ref: str):
        super().__init__(
            code=ErrorCode.TICKET_NOT_FOUND,
            message=f"Ticket not found: {ticket_ref}",
            details={"ticket": ticket_ref},
        )


class TicketNotIssuableError(TorneoError):
    """Raised when a ticket issuance precondition fails."""

    def __init__(
        self,
        tournament_id: str,
        reason: IssuanceFailure,
        message: str | None = None,
    ):
        super().__init__(
            code=ErrorCode.TICKET_NOT_ISSUABLE,
            message=message or f"Cannot issue ticket for {tournament_id}: {reason.value}",
            details={"tournamentId": tournament_id, "reason": reason.value},
        )
        self.reason = reason


class TicketExpiredError(TorneoError):
    """Raised when a time-sensitive transition is attempted past expiry."""

    def __init__(self, ticket_id: str, expiration_date: datetime):
        super().__init__(
            code=ErrorCode.TICKET_EXPIRED,
            message=f"Ticket {ticket_id} expired at {expiration_date.isoformat()}",
            details={
                "ticketId": ticket_id,
                "expirationDate": expiration_date.isoformat(),
            },
        )


class CodeGenerationExhaustedError(TorneoError):
    """Raised when no free ticket code was found within the retry budget."""

    def __init__(self, attempts: int):
        super().__init__(
            code=ErrorCode.CODE_GENERATION_EXHAUSTED,
            message=f"No unique ticket code after {attempts} attempts",
            details={"attempts": attempts},
            recoverable=True,
        )
        self.attempts = attempts


class ConcurrentModificationError(TorneoError):
    """Raised when an atomic read-modify-write loses against a concurrent write."""

    def __init__(
        self,
        entity: str,
        entity_id: str,
        expected_version: int | None = None,
        message: str | None = None,
    ):
        super().__init__(
            code=ErrorCode.CONCURRENT_MODIFICATION,
            message=message or f"{entity} {entity_id} was modified concurrently",
            details={
                "entity": entity,
                "entityId": entity_id,
                "expectedVersion": expected_version,
            },
            recoverable=True,
        )


class DuplicateTicketCodeError(ConcurrentModificationError):
    """Raised when a ticket insert loses the race for its code."""

    def __init__(self, ticket_id: str, ticket_code: str):
        super().__init__(
            "Ticket",
            ticket_id,
            message=f"Ticket code {ticket_code} is already taken",
        )
        self.details["ticketCode"] = ticket_code
        self.ticket_code = ticket_code


class QrSignatureError(TorneoError):
    """Raised when a signed QR payload fails verification."""

    def __init__(self, message: str = "QR payload signature is invalid"):
        super().__init__(
            code=ErrorCode.QR_SIGNATURE_INVALID,
            message=message,
        )
