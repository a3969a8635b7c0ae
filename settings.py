"""Application settings and configuration."""

from decimal import Decimal
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Service settings, read from REFERRALS_* env vars or .env."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="REFERRALS_",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url: str = Field(
        default="dbname=referrals user=referrals password=secret host=localhost port=5432",
        description="psycopg connection string",
    )

    # Signup bonus schedule (CGC token units)
    signup_bonus_amount: Decimal = Field(default=Decimal("200"))
    commission_level1: Decimal = Field(default=Decimal("20"))
    commission_level2: Decimal = Field(default=Decimal("10"))
    commission_level3: Decimal = Field(default=Decimal("5"))
    commission_mode: Literal["fixed", "rate"] = Field(
        default="fixed",
        description="fixed: levels are token amounts; rate: fractions of the signup bonus",
    )
    max_distribution_per_signup: Decimal = Field(default=Decimal("235"))
    signup_pool_limit: Optional[Decimal] = Field(
        default=None,
        description="Total tokens reserved for signup bonuses; None means only the wallet balance bounds it",
    )

    # Token transfer service
    transfer_service_url: str = Field(default="http://localhost:8600")
    transfer_service_token: Optional[str] = None
    transfer_timeout_seconds: float = Field(default=15.0, gt=0)
    pending_leg_ttl_seconds: int = Field(
        default=900,
        description="Age after which an unresolved pending leg may be released and retried",
    )

    # Click tracking
    ip_hash_salt: str = Field(default="change-me-in-production")
    referral_cookie_max_age: int = Field(default=30 * 24 * 60 * 60)
    cookie_secure: bool = False

    # Special invites
    special_invite_ttl_seconds: int = Field(
        default=30 * 24 * 60 * 60,
        description="Lifetime of a single-use invite; permanent invites never expire",
    )

    # HTTP
    allowed_origins: str = "*"

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_format: Literal["console", "json"] = "console"
    log_mask_wallets: bool = Field(default=True, description="Render wallet addresses as 0x1234...abcd")

    @property
    def origins(self) -> list[str]:
        return [o.strip() for o in self.allowed_origins.split(",") if o.strip()]


settings = Settings()
