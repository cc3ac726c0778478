"""
Configuration Management

Centralized configuration using Pydantic Settings.
All settings loaded from environment variables with sensible defaults.
"""
import logging
from typing import Optional, List
from pydantic_settings import BaseSettings
from pydantic import Field, ConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Ignore extra environment variables that aren't defined in the model
    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # ============================================================
    # Database Configuration
    # ============================================================
    database_url: str = Field("", description="PostgreSQL connection URL")
    database_pool_size: int = Field(5, description="Database connection pool size")
    database_max_overflow: int = Field(10, description="Max overflow connections")

    # ============================================================
    # API Configuration
    # ============================================================
    api_key: Optional[str] = Field(None, description="API key for authentication")
    allowed_origins: str = Field(
        "http://localhost:3000,http://localhost:8000",
        description="Comma-separated CORS allowed origins"
    )
    api_port: int = Field(8000, description="API server port")
    api_base_url: str = Field(
        "http://localhost:8000",
        description="Public base URL used to build open-tracking pixel links"
    )

    # ============================================================
    # Google OAuth client (tokens themselves live encrypted in the database)
    # ============================================================
    google_client_id: Optional[str] = Field(None, description="OAuth client id for Gmail")
    google_client_secret: Optional[str] = Field(None, description="OAuth client secret for Gmail")
    google_token_uri: str = Field(
        "https://oauth2.googleapis.com/token",
        description="OAuth token endpoint used to refresh access tokens"
    )

    # ============================================================
    # Mailbox Sync Configuration
    # ============================================================
    sync_default_max_results: int = Field(50, description="Messages fetched by a full sync")
    sync_history_batch_size: int = Field(100, description="History entries fetched per incremental sync")
    sync_fetch_concurrency: int = Field(10, description="Parallel message fetches during incremental sync")
    sync_lease_seconds: int = Field(600, description="Lifetime of a per-account sync lease")

    # ============================================================
    # Delivery Configuration
    # ============================================================
    send_max_retries: int = Field(3, description="Automatic retries per outbound message")
    retry_batch_size: int = Field(50, description="Rows handled per retry / scheduled-send scan")
    retryable_statuses: str = Field(
        "failed,hard,soft,complaint",
        description="Comma-separated send statuses picked up by the retry scanner"
    )
    schedule_max_days: int = Field(30, description="Furthest a send can be scheduled ahead")

    # ============================================================
    # Background Jobs
    # ============================================================
    background_jobs_enabled: bool = Field(False, description="Run retry/scheduled/sync loops in the API process")
    retry_interval_seconds: int = Field(60, description="Seconds between retry scans")
    scheduled_interval_seconds: int = Field(30, description="Seconds between scheduled-send scans")
    sync_interval_seconds: int = Field(0, description="Seconds between sync ticks for all accounts (0 = off)")

    # ============================================================
    # Open Tracking
    # ============================================================
    geoip_enabled: bool = Field(True, description="Resolve coarse location for tracked opens")
    geoip_url: str = Field("https://ipapi.co/{ip}/json/", description="Geo-IP lookup URL template")
    geoip_timeout_seconds: float = Field(3.0, description="Geo-IP request timeout")

    # ============================================================
    # Logging Configuration
    # ============================================================
    log_level: str = Field("INFO", description="Logging level (DEBUG/INFO/WARNING/ERROR)")
    log_format: str = Field(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log format string"
    )

    @property
    def allowed_origins_list(self) -> List[str]:
        """Parse allowed origins into list."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def retryable_statuses_list(self) -> List[str]:
        """Parse retryable send statuses into list."""
        return [s.strip().lower() for s in self.retryable_statuses.split(",") if s.strip()]


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get application settings (singleton).

    Returns:
        Settings instance
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings():
    """Reload settings from environment (useful for testing)."""
    global _settings
    _settings = Settings()
    return _settings


def setup_logging(settings: Optional[Settings] = None):
    """Configure root logging from settings. Safe to call more than once."""
    settings = settings or get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format=settings.log_format)
    logging.getLogger().setLevel(level)
    # googleapiclient logs discovery cache warnings at INFO
    logging.getLogger("googleapiclient.discovery_cache").setLevel(logging.ERROR)
