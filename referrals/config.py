"""
Referral program settings.

Loaded from environment variables (and an optional .env file) with
pydantic-settings. Redemption limits accept the legacy variable names used by
older deployments.
"""

import math
from decimal import Decimal
from urllib.parse import quote

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_MIN_REDEEM_AMOUNT = 250
DEFAULT_REDEEM_COOLDOWN_SECONDS = 60


def _as_number(value) -> float | None:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Database
    database_url: str = "sqlite+aiosqlite:///./referrals.db"
    database_echo: bool = False

    # Redemption policy
    min_redeem_amount: int = Field(
        default=DEFAULT_MIN_REDEEM_AMOUNT,
        validation_alias=AliasChoices(
            "min_redeem_amount", "MIN_REDEEM_AMOUNT_INR", "MIN_REDEEM"
        ),
    )
    redeem_cooldown_seconds: int = Field(
        default=DEFAULT_REDEEM_COOLDOWN_SECONDS,
        validation_alias=AliasChoices(
            "redeem_cooldown_seconds", "REDEEM_COOLDOWN_SECONDS", "REFERRAL_REDEEM_COOLDOWN"
        ),
    )
    redeem_clamp_to_available: bool = Field(
        default=True,
        description="Clamp over-sized redemption requests instead of rejecting them",
    )
    default_commission_rate: Decimal = Field(default=Decimal("1"), gt=0, le=100)

    # Summary materializer
    summary_worker_enabled: bool = True
    summary_poll_interval_seconds: float = Field(default=0.2, gt=0)
    summary_recompute_timeout_seconds: float = Field(default=10.0, gt=0)
    summary_queue_maxsize: int = Field(default=10_000, ge=1)
    summary_max_age_seconds: int = Field(default=300, ge=0)

    # Application
    client_url: str = "http://localhost:5174"
    log_level: str = "INFO"
    log_json: bool = False

    @field_validator("min_redeem_amount", mode="before")
    @classmethod
    def _positive_min_redeem(cls, value):
        number = _as_number(value)
        if number is None or number <= 0:
            return DEFAULT_MIN_REDEEM_AMOUNT
        return math.floor(number)

    @field_validator("redeem_cooldown_seconds", mode="before")
    @classmethod
    def _non_negative_cooldown(cls, value):
        number = _as_number(value)
        if number is None or number < 0:
            return DEFAULT_REDEEM_COOLDOWN_SECONDS
        return math.floor(number)

    def referral_link(self, code: str) -> str:
        return f"{self.client_url.rstrip('/')}/signup?ref={quote(code)}"


_settings: Settings | None = None


def get_settings() -> Settings:
    """Return the process-wide settings, reading the environment once."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


__all__ = ["Settings", "get_settings"]
