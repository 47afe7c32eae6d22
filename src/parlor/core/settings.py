"""Application settings and configuration.

This module defines all configuration options for the Parlor chat relay.
Settings are loaded from environment variables with sensible defaults.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_FALLBACK_ICE_URLS = [
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
    "stun:stun2.l.google.com:19302",
    "stun:stun3.l.google.com:19302",
    "stun:stun4.l.google.com:19302",
]


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Settings can be overridden via environment variables or .env files.
    """

    # Application metadata
    app_name: str = Field(default="Parlor", alias="APP_NAME")
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")
    debug: bool = Field(default=False, alias="DEBUG")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Database configuration
    database_url: str = Field(default="sqlite:///./parlor.db", alias="DATABASE_URL")
    test_database_url: str | None = Field(default=None, alias="TEST_DATABASE_URL")
    use_testing_database: bool = Field(default=False, alias="USE_TEST_DATABASE")
    sql_debug: bool = Field(default=False, alias="SQL_DEBUG")

    # Messaging
    message_max_length: int = Field(default=4000, alias="MESSAGE_MAX_LENGTH")
    history_page_size: int = Field(default=50, alias="HISTORY_PAGE_SIZE")
    history_max_page_size: int = Field(default=200, alias="HISTORY_MAX_PAGE_SIZE")
    typing_debounce_seconds: float = Field(default=2.0, alias="TYPING_DEBOUNCE_SECONDS")

    # Call signaling
    call_ring_timeout_seconds: float = Field(default=45.0, alias="CALL_RING_TIMEOUT_SECONDS")
    call_sweep_interval_seconds: float = Field(
        default=5.0,
        alias="CALL_SWEEP_INTERVAL_SECONDS",
    )

    # Relay credential issuer consumed by call clients
    ice_credentials_url: str | None = Field(default=None, alias="ICE_CREDENTIALS_URL")
    ice_credentials_timeout_seconds: float = Field(
        default=3.0,
        alias="ICE_CREDENTIALS_TIMEOUT_SECONDS",
    )
    ice_credentials_format: str = Field(default="urls", alias="ICE_CREDENTIALS_FORMAT")
    ice_fallback_urls: list[str] = Field(
        default=DEFAULT_FALLBACK_ICE_URLS,
        alias="ICE_FALLBACK_URLS",
    )

    # CORS configuration for web frontend access
    cors_origins: list[str] = Field(
        default=["*"],
        alias="CORS_ORIGINS",
    )
    cors_allow_credentials: bool = Field(default=True, alias="CORS_ALLOW_CREDENTIALS")
    cors_allow_methods: list[str] = Field(
        default=["GET", "POST", "DELETE", "OPTIONS"],
        alias="CORS_ALLOW_METHODS",
    )
    cors_allow_headers: list[str] = Field(
        default=["*"],
        alias="CORS_ALLOW_HEADERS",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        extra="ignore",
    )

    @property
    def effective_database_url(self) -> str:
        """Return the database URL respecting testing overrides."""
        if self.use_testing_database and self.test_database_url:
            return self.test_database_url
        return self.database_url


settings = Settings()
