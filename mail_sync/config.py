"""
Centralized configuration using Pydantic Settings.

All environment variables are loaded and validated here.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Application database (quotes, connections, conversations)
    database_host: str = "postgres"
    database_port: int = 5432
    database_name: str = "quotes"
    database_user: str = "quotes"
    database_password: str = ""

    # Google OAuth client
    google_client_id: str = ""
    google_client_secret: str = ""
    google_token_url: str = "https://oauth2.googleapis.com/token"

    # Gmail REST API
    gmail_api_url: str = "https://gmail.googleapis.com/gmail/v1/users/me"
    gmail_request_timeout: float = 30.0
    token_refresh_margin_minutes: int = 5

    # Sync behaviour
    sync_max_workers: int = 4
    sync_scan_unread: bool = False  # Also ingest unread inbox mail outside known threads
    sync_unread_query: str = "is:unread"
    sync_unread_max_results: int = 50

    # Extra noise filter entries on top of the built-in lists
    noise_extra_domains: list[str] = []
    noise_extra_keywords: list[str] = []

    # Scheduler
    scheduler_enabled: bool = False
    scheduler_interval_minutes: int = 15

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    @property
    def database_url(self) -> str:
        """PostgreSQL connection URL for the application database."""
        return (
            f"postgresql://{self.database_user}:{self.database_password}"
            f"@{self.database_host}:{self.database_port}/{self.database_name}"
        )


# Global settings instance
settings = Settings()
