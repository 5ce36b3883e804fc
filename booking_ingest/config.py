from pydantic_settings import BaseSettings
from pydantic import Field, field_validator
from functools import lru_cache
from typing import Dict, List, Optional


class Settings(BaseSettings):
    # Environment
    environment: str = Field(default="development", alias="ENVIRONMENT")

    # Database - PostgreSQL for production, SQLite for development
    database_url: str = Field(
        default="sqlite:///./booking_ingest.db",
        alias="DATABASE_URL"
    )

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_json: bool = Field(default=False, alias="LOG_JSON")

    # ==============================================
    # Gmail mailbox (refresh-token flow)
    # ==============================================
    gmail_user: str = Field(default="me", alias="GMAIL_USER")
    gmail_client_id: str = Field(default="", alias="GMAIL_CLIENT_ID")
    gmail_client_secret: str = Field(default="", alias="GMAIL_CLIENT_SECRET")
    gmail_refresh_token: str = Field(default="", alias="GMAIL_REFRESH_TOKEN")
    gmail_num_retries: int = Field(default=3, alias="GMAIL_NUM_RETRIES")

    # ==============================================
    # Ingestion
    # ==============================================
    booking_email_query: str = Field(
        default="(subject:(booking OR reservation))",
        alias="BOOKING_EMAIL_QUERY"
    )
    booking_email_batch_size: int = Field(default=20, alias="BOOKING_EMAIL_BATCH_SIZE")
    booking_reprocess_limit: int = Field(default=10, alias="BOOKING_REPROCESS_LIMIT")
    booking_parser_timezone: str = Field(default="Europe/Warsaw", alias="BOOKING_PARSER_TIMEZONE")

    # Pending or processing rows untouched this long are picked up by the retry sweep
    booking_stuck_after_seconds: int = Field(default=900, alias="BOOKING_STUCK_AFTER_SECONDS")

    # Optional JSON file with config-driven parser definitions
    dynamic_parser_rules_path: Optional[str] = Field(default=None, alias="DYNAMIC_PARSER_RULES_PATH")

    # ==============================================
    # Reference resolution
    # ==============================================
    alias_cache_ttl_seconds: int = Field(default=60, alias="ALIAS_CACHE_TTL_SECONDS")

    # Extras keys priced per head (comma-separated)
    per_person_addon_keys: str = Field(default="cocktails", alias="PER_PERSON_ADDON_KEYS")

    # Format: platform:Channel Name pairs, comma-separated
    platform_channels: str = Field(
        default=(
            "fareharbor:Fareharbor,ecwid:Ecwid,viator:Viator,getyourguide:GetYourGuide,"
            "freetour:FreeTour,xperiencepoland:XperiencePoland,airbnb:Airbnb"
        ),
        alias="PLATFORM_CHANNELS"
    )

    # Cross-reference matching for messages without a booking id
    cross_reference_date_window_days: int = Field(default=1, alias="CROSS_REFERENCE_DATE_WINDOW_DAYS")
    cross_reference_time_window_minutes: int = Field(default=90, alias="CROSS_REFERENCE_TIME_WINDOW_MINUTES")
    cross_reference_min_score: int = Field(default=4, alias="CROSS_REFERENCE_MIN_SCORE")

    # ==============================================
    # Ecwid UTM sync (downstream)
    # ==============================================
    ecwid_api_base_url: str = Field(
        default="https://app.ecwid.com/api/v3",
        alias="ECWID_API_BASE_URL"
    )
    ecwid_store_id: str = Field(default="", alias="ECWID_STORE_ID")
    ecwid_api_token: str = Field(default="", alias="ECWID_API_TOKEN")
    ecwid_timeout_seconds: int = Field(default=20, alias="ECWID_TIMEOUT_SECONDS")

    # Worker settings (runs inside FastAPI process)
    worker_poll_interval: int = Field(default=300, alias="WORKER_POLL_INTERVAL")  # seconds
    ingest_worker_enabled: bool = Field(default=False, alias="INGEST_WORKER_ENABLED")

    @field_validator('booking_email_batch_size', 'booking_reprocess_limit')
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("batch sizes must be at least 1")
        return v

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def has_gmail_config(self) -> bool:
        """Check if all Gmail OAuth config is present"""
        return bool(
            self.gmail_client_id and
            self.gmail_client_secret and
            self.gmail_refresh_token
        )

    @property
    def has_ecwid_config(self) -> bool:
        return bool(self.ecwid_store_id and self.ecwid_api_token)

    @property
    def per_person_addon_key_list(self) -> List[str]:
        return [k.strip() for k in self.per_person_addon_keys.split(",") if k.strip()]

    @property
    def platform_channel_map(self) -> Dict[str, str]:
        """
        Parse platform -> channel name pairs.
        Entries without a colon are ignored.
        """
        mapping = {}
        for entry in self.platform_channels.split(","):
            if ":" not in entry:
                continue
            platform, channel = entry.split(":", 1)
            if platform.strip() and channel.strip():
                mapping[platform.strip().lower()] = channel.strip()
        return mapping

    class Config:
        env_file = ".env"
        extra = "ignore"
        populate_by_name = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


# Initialize settings on module load
settings = get_settings()
