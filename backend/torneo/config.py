"""Application configuration."""
import re
from decimal import Decimal, InvalidOperation
from functools import lru_cache

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings

DEV_QR_SIGNING_KEY = "torneo-development-qr-signing-key-000000"


class Settings(BaseSettings):
    """Application settings."""

    # App
    app_env: str = "development"
    app_debug: bool = False
    log_level: str = "INFO"
    json_logs: bool = False

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./torneo.db",
        description="SQLAlchemy async database URL",
    )
    db_pool_size: int = Field(
        default=10,
        description="DB connection pool size (ignored for SQLite)",
    )
    db_max_overflow: int = Field(
        default=20,
        description="Max overflow connections (ignored for SQLite)",
    )

    # Redis (distributed locks, event stream)
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL",
    )
    lock_timeout_ms: int = Field(
        default=10000,
        description="Lock auto-expire time in milliseconds",
    )
    lock_acquire_timeout_ms: int = Field(
        default=5000,
        description="Max time to wait for a lock in milliseconds",
    )
    lock_retry_interval_ms: int = Field(
        default=50,
        description="Lock acquisition retry interval in milliseconds",
    )

    # Tournament rules
    min_participants_to_start: int = Field(
        default=2,
        description="Participants required before a tournament can start",
    )
    default_commission_rate: Decimal = Field(
        default=Decimal("0.05"),
        description="Commission rate for tournaments created without one",
    )

    # Tickets
    ticket_code_prefix: str = "TKT"
    ticket_code_length: int = Field(default=8, ge=6, le=16)
    ticket_code_max_attempts: int = Field(
        default=5,
        ge=1,
        description="Uniqueness retries before code generation gives up",
    )
    ticket_expiry_lead_minutes: int = Field(
        default=60,
        ge=0,
        description="Tickets expire this many minutes before tournament start",
    )
    expiration_sweep_batch_size: int = Field(default=500, ge=1)
    qr_signing_key: str = Field(
        default=DEV_QR_SIGNING_KEY,
        description="HMAC key for QR payload signatures",
    )

    # Lifecycle event stream
    event_stream_enabled: bool = False
    event_stream_max_len: int = 10000

    @field_validator("default_commission_rate", mode="before")
    @classmethod
    def validate_commission_rate(cls, v):
        """Commission rates are exact decimals in [0, 1] with at most 4 places."""
        if isinstance(v, float):
            v = str(v)
        try:
            rate = Decimal(v)
        except (InvalidOperation, TypeError) as exc:
            raise ValueError(f"invalid commission rate: {v!r}") from exc
        if not rate.is_finite() or rate < 0 or rate > 1:
            raise ValueError("default_commission_rate must be within [0, 1]")
        if rate.quantize(Decimal("0.0001")) != rate:
            raise ValueError("default_commission_rate allows at most 4 decimal places")
        return rate

    @field_validator("ticket_code_prefix")
    @classmethod
    def validate_ticket_code_prefix(cls, v: str) -> str:
        if not re.fullmatch(r"[A-Z]{2,5}", v):
            raise ValueError(
                "ticket_code_prefix must be 2-5 upper-case letters"
            )
        return v

    @field_validator("qr_signing_key")
    @classmethod
    def validate_qr_signing_key(cls, v: str) -> str:
        if len(v) < 32:
            raise ValueError("qr_signing_key must be at least 32 characters long")
        return v

    @model_validator(mode="after")
    def validate_production_settings(self) -> "Settings":
        """Validate settings for production environment."""
        if self.app_env == "production":
            if self.app_debug:
                raise ValueError(
                    "app_debug must be False in production environment"
                )
            if self.qr_signing_key == DEV_QR_SIGNING_KEY:
                raise ValueError(
                    "qr_signing_key must be set explicitly in production"
                )
        return self

    model_config = {
        "env_file": ".env",
        "extra": "ignore",
    }


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
