"""Application settings and configuration.

This module defines all configuration options for the pisogate core.
Settings are loaded from environment variables with sensible defaults.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Settings can be overridden via environment variables or .env files.
    Services take explicit constructor arguments as well, so tests can
    build them without touching the environment.
    """

    # Application metadata
    app_name: str = Field(default="pisogate", alias="APP_NAME")
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")
    debug: bool = Field(default=False, alias="DEBUG")

    # Database configuration
    database_url: str = Field(default="sqlite:///./pisogate.db", alias="DATABASE_URL")
    sql_debug: bool = Field(default=False, alias="SQL_DEBUG")

    # Admin authentication
    secret_key: str = Field(default="change-me", alias="SECRET_KEY")
    jwt_algorithm: str = Field(default="HS256", alias="JWT_ALGORITHM")
    access_token_expire_minutes: int = Field(default=60 * 24, alias="ACCESS_TOKEN_EXPIRE_MINUTES")
    admin_username: str = Field(default="admin", alias="ADMIN_USERNAME")
    admin_password: str = Field(default="admin", alias="ADMIN_PASSWORD")

    # Coin acceptor pulse handling
    pulse_debounce_ms: int = Field(default=25, alias="PULSE_DEBOUNCE_MS")
    pulse_settle_ms: int = Field(default=500, alias="PULSE_SETTLE_MS")
    pulse_denominations: dict[int, int] = Field(
        default={1: 1, 5: 5, 10: 10},
        alias="PULSE_DENOMINATIONS",
    )
    pulse_fallback_units_per_pulse: int = Field(
        default=1,
        alias="PULSE_FALLBACK_UNITS_PER_PULSE",
    )
    pulse_queue_size: int = Field(default=256, alias="PULSE_QUEUE_SIZE")
    pulse_serial_port: str | None = Field(default=None, alias="PULSE_SERIAL_PORT")
    coin_slot_claim_seconds: int = Field(default=60, alias="COIN_SLOT_CLAIM_SECONDS")
    credit_spool_path: str = Field(default="./data/credit-spool.jsonl", alias="CREDIT_SPOOL_PATH")
    coin_module_key: str | None = Field(default=None, alias="COIN_MODULE_KEY")

    # Session ledger
    sweep_interval_seconds: float = Field(default=1.0, alias="SWEEP_INTERVAL_SECONDS")
    sweep_batch_size: int = Field(default=500, alias="SWEEP_BATCH_SIZE")
    fallback_minutes_per_peso: int = Field(default=10, alias="FALLBACK_MINUTES_PER_PESO")
    ended_session_retention_seconds: int = Field(
        default=7 * 24 * 3600,
        alias="ENDED_SESSION_RETENTION_SECONDS",
    )

    # Packet-filter enforcement
    enforcement_backend: str = Field(default="iptables", alias="ENFORCEMENT_BACKEND")
    iptables_binary: str = Field(default="iptables", alias="IPTABLES_BINARY")
    enforcement_command_timeout_seconds: float = Field(
        default=5.0,
        alias="ENFORCEMENT_COMMAND_TIMEOUT_SECONDS",
    )
    enforcement_max_attempts: int = Field(default=5, alias="ENFORCEMENT_MAX_ATTEMPTS")
    enforcement_backoff_seconds: float = Field(default=0.5, alias="ENFORCEMENT_BACKOFF_SECONDS")

    # Device security guard
    rate_limit_max_requests: int = Field(default=30, alias="RATE_LIMIT_MAX_REQUESTS")
    rate_limit_window_seconds: float = Field(default=60.0, alias="RATE_LIMIT_WINDOW_SECONDS")
    rate_limit_block_seconds: float = Field(default=300.0, alias="RATE_LIMIT_BLOCK_SECONDS")
    ip_history_size: int = Field(default=8, alias="IP_HISTORY_SIZE")
    ip_window_seconds: float = Field(default=600.0, alias="IP_WINDOW_SECONDS")
    ip_diversity_threshold: int = Field(default=3, alias="IP_DIVERSITY_THRESHOLD")
    fingerprint_cache_size: int = Field(default=4096, alias="FINGERPRINT_CACHE_SIZE")

    # Upstream telemetry
    telemetry_enabled: bool = Field(default=False, alias="TELEMETRY_ENABLED")
    telemetry_base_url: str | None = Field(default=None, alias="TELEMETRY_BASE_URL")
    telemetry_api_key: str | None = Field(default=None, alias="TELEMETRY_API_KEY")
    machine_id: str = Field(default="pisogate-local", alias="MACHINE_ID")
    telemetry_http_timeout_seconds: float = Field(
        default=10.0,
        alias="TELEMETRY_HTTP_TIMEOUT_SECONDS",
    )
    telemetry_flush_interval_seconds: float = Field(
        default=30.0,
        alias="TELEMETRY_FLUSH_INTERVAL_SECONDS",
    )
    heartbeat_interval_seconds: float = Field(default=60.0, alias="HEARTBEAT_INTERVAL_SECONDS")
    telemetry_max_retries: int = Field(default=5, alias="TELEMETRY_MAX_RETRIES")
    telemetry_batch_size: int = Field(default=50, alias="TELEMETRY_BATCH_SIZE")

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def database_url_sync(self) -> str:
        """Return a sync-compatible database URL for tooling such as Alembic."""
        url = self.database_url
        if url.startswith("sqlite+aiosqlite"):
            return url.replace("sqlite+aiosqlite", "sqlite", 1)
        return url

    @property
    def telemetry_configured(self) -> bool:
        """Return True when upstream delivery can be attempted."""
        return bool(self.telemetry_enabled and self.telemetry_base_url)


settings = Settings()
