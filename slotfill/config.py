"""
Type-safe configuration using Pydantic Settings
Validates environment variables and provides sensible defaults
"""

from datetime import timedelta
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Optional


class WaitlistConfig(BaseSettings):
    """
    Waitlist engine configuration with validation
    Automatically loads from environment variables and .env file
    """

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=False, extra="ignore"
    )

    # Telegram settings (bot surface is optional, the worker runs without it)
    telegram_bot_token: Optional[str] = Field(
        None, description="Telegram Bot API token from @BotFather"
    )
    admin_telegram_id: Optional[int] = Field(
        None, description="Admin user ID for slot-fill commands and health alerts"
    )

    # Database settings
    db_file: str = Field("waitlist.db", description="SQLite database file path")
    database_url: Optional[str] = Field(
        None, description="SQLAlchemy URL, overrides db_file (e.g. postgresql://...)"
    )

    # Matching
    max_date_skew_days: int = Field(
        3, ge=0, le=30, description="Max distance between requested date and slot date"
    )
    max_candidates: int = Field(
        10, ge=1, le=50, description="Max number of candidates per offer"
    )
    match_time_preference: bool = Field(
        False, description="Only match morning/afternoon entries to slots in that half-day"
    )

    # Offer bounds
    default_discount_percent: int = Field(10, ge=0, le=100)
    min_discount_percent: int = Field(0, ge=0, le=100)
    max_discount_percent: int = Field(100, ge=0, le=100)
    default_response_window_hours: int = Field(2, ge=1)
    min_response_window_minutes: int = Field(60, ge=1)
    max_response_window_hours: int = Field(168, ge=1)

    # Expiration sweep
    sweep_interval: int = Field(
        900,
        ge=5,
        le=3600,
        description="Interval in seconds between expiration sweeps (default: 900)",
    )
    max_consecutive_failures: int = Field(5, ge=1)

    # Booking service
    booking_api_url: str = Field(
        "http://localhost:8000/api", description="Base URL of the booking service"
    )
    booking_api_key: Optional[str] = Field(None, description="Bearer token for the booking service")
    booking_timeout_seconds: int = Field(10, ge=1, le=120)

    # Twilio SMS (enabled only when all three are set)
    twilio_account_sid: Optional[str] = None
    twilio_auth_token: Optional[str] = None
    twilio_from_phone: Optional[str] = None
    twilio_webhook_url: Optional[str] = Field(
        None, description="Public URL Twilio posts inbound SMS to, used to check signatures"
    )

    # Inbound SMS webhook server
    webhook_host: str = Field("0.0.0.0", description="Interface the webhook server binds")
    webhook_port: int = Field(8080, ge=1, le=65535)

    affirmative_replies: List[str] = Field(
        default_factory=lambda: [
            "yes",
            "y",
            "yeah",
            "yep",
            "ok",
            "okay",
            "accept",
            "claim",
            "book",
        ]
    )

    @field_validator("telegram_bot_token")
    @classmethod
    def validate_telegram_token(cls, v: Optional[str]) -> Optional[str]:
        """Validate Telegram bot token format"""
        if v is None:
            return v
        if not v or v == "your_bot_token_here":
            raise ValueError(
                "TELEGRAM_BOT_TOKEN must be set to a valid token from @BotFather"
            )
        if ":" not in v:
            raise ValueError(
                "TELEGRAM_BOT_TOKEN appears to be invalid (should contain ':')"
            )
        return v

    @field_validator("affirmative_replies")
    @classmethod
    def normalize_affirmative_replies(cls, v: List[str]) -> List[str]:
        return [reply.strip().lower() for reply in v if reply.strip()]

    @model_validator(mode="after")
    def validate_bounds(self) -> "WaitlistConfig":
        if self.min_discount_percent > self.max_discount_percent:
            raise ValueError("min_discount_percent cannot exceed max_discount_percent")
        if self.min_response_window > self.max_response_window:
            raise ValueError(
                "min_response_window_minutes cannot exceed max_response_window_hours"
            )
        if not (
            self.min_discount_percent
            <= self.default_discount_percent
            <= self.max_discount_percent
        ):
            raise ValueError("default_discount_percent is outside the allowed bounds")
        if not (
            self.min_response_window
            <= self.default_response_window
            <= self.max_response_window
        ):
            raise ValueError("default_response_window_hours is outside the allowed bounds")
        # A sweep must run at least four times within the shortest window
        if self.sweep_interval * 4 > self.min_response_window.total_seconds():
            raise ValueError(
                "sweep_interval must be at most a quarter of min_response_window_minutes"
            )
        return self

    @property
    def min_response_window(self) -> timedelta:
        return timedelta(minutes=self.min_response_window_minutes)

    @property
    def max_response_window(self) -> timedelta:
        return timedelta(hours=self.max_response_window_hours)

    @property
    def default_response_window(self) -> timedelta:
        return timedelta(hours=self.default_response_window_hours)

    @property
    def sms_enabled(self) -> bool:
        return bool(
            self.twilio_account_sid and self.twilio_auth_token and self.twilio_from_phone
        )

    def get_database_url(self) -> str:
        """Database URL, falling back to the SQLite file"""
        if self.database_url:
            return self.database_url
        return f"sqlite:///{self.db_file}"


# Singleton instance
_config: Optional[WaitlistConfig] = None


def get_config() -> WaitlistConfig:
    """
    Get or create the global configuration instance

    Returns:
        WaitlistConfig: Validated configuration

    Raises:
        ValidationError: If configuration is invalid
    """
    global _config
    if _config is None:
        _config = WaitlistConfig()
    return _config
