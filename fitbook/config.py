from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


BASE_DIR = Path(__file__).resolve().parent.parent
DEFAULT_SQLITE_PATH = BASE_DIR / "fitbook.db"
DEFAULT_SQLITE_URL = f"sqlite:///{DEFAULT_SQLITE_PATH}"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=BASE_DIR / ".env", env_prefix="FITBOOK_", case_sensitive=False)

    api_token: str = Field(default="dev-token", description="Bearer token required for all API calls")
    database_url: str = Field(default=DEFAULT_SQLITE_URL, description="SQLAlchemy database URL")
    # Comma-separated values or '*' for all
    cors_origins: str = Field(default="*")
    environment: str = Field(default="development")
    log_level: str = Field(default="INFO")

    # Payments
    payments_provider: str = Field(default="fake", description="fake|stripe")
    stripe_secret_key: Optional[str] = Field(default=None)
    stripe_webhook_secret: Optional[str] = Field(default=None, description="Signatures are verified when set")
    stripe_ephemeral_key_version: str = Field(default="2024-06-20")
    webhook_tolerance_seconds: int = Field(default=300)
    currency: str = Field(default="eur")

    # Email
    email_provider: str = Field(default="fake", description="fake|http")
    email_api_url: Optional[str] = Field(default=None)
    email_api_key: Optional[str] = Field(default=None)
    email_from: str = Field(default="bookings@fitbook.local")

    # Hosted checkout redirects
    checkout_success_url: str = Field(default="http://localhost:3000/credits/success")
    checkout_cancel_url: str = Field(default="http://localhost:3000/credits/cancel")

    # Credits and pricing, all amounts in minor units
    cents_per_credit: int = Field(default=100)
    credit_unit_price_cents: int = Field(default=100, description="One-time purchase price per credit")
    subscription_credit_price_cents: int = Field(default=50, description="Monthly subscription base price per credit")
    default_class_price_cents: int = Field(default=1000)

    # Booking policy
    late_cancel_threshold_hours: int = Field(default=12)
    free_cancel_hours: int = Field(default=48)
    reservation_ttl_minutes: int = Field(default=10)
    max_active_bookings_per_user: int = Field(default=10)
    checkin_opens_minutes_before: int = Field(default=30)
    checkin_closes_hours_after: int = Field(default=3)

    @property
    def cors_origins_list(self) -> List[str]:
        s = (self.cors_origins or "").strip()
        if not s or s == "*":
            return ["*"]
        return [part.strip() for part in s.split(",") if part.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]
