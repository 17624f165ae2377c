"""
Core314 Automation Engine - Configuration
==========================================

All application settings loaded from environment variables.
Uses pydantic-settings for validation and type conversion.
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Application
    # ==========================================================================
    APP_NAME: str = "Core314 Automation Engine"
    APP_VERSION: str = "0.1.0"
    ENVIRONMENT: Literal["development", "staging", "production", "test"] = "development"
    DEBUG: bool = False

    # ==========================================================================
    # API
    # ==========================================================================
    API_V1_PREFIX: str = "/api/v1"
    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    # ==========================================================================
    # Database (supports SQLite and PostgreSQL)
    # ==========================================================================
    DATABASE_URL: str = "sqlite+aiosqlite:///./core314.db"
    DATABASE_POOL_SIZE: int = 5
    DATABASE_MAX_OVERFLOW: int = 10
    DATABASE_ECHO: bool = False

    @computed_field  # type: ignore[misc]
    @property
    def is_sqlite(self) -> bool:
        return "sqlite" in self.DATABASE_URL

    # ==========================================================================
    # Authentication
    # ==========================================================================
    SECRET_KEY: str = "CHANGE-ME-IN-PRODUCTION-USE-LONG-RANDOM-STRING"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30
    # Delegation tokens let backend services act for a single user
    DELEGATION_TOKEN_EXPIRE_MINUTES: int = 5

    # ==========================================================================
    # Delivery Channels
    # ==========================================================================
    SLACK_WEBHOOK_URL: Optional[str] = None
    SLACK_DEFAULT_CHANNEL: str = "#core314-alerts"
    TEAMS_WEBHOOK_URL: Optional[str] = None
    PAGERDUTY_WEBHOOK_URL: Optional[str] = None
    SENDGRID_API_KEY: Optional[str] = None
    SENDGRID_API_URL: str = "https://api.sendgrid.com/v3/mail/send"
    EMAIL_FROM: str = "notifications@core314.com"
    EMAIL_FROM_NAME: str = "Core314 Automation"
    ADMIN_EMAIL: Optional[str] = None
    HTTP_TIMEOUT_SECONDS: float = 10.0

    # ==========================================================================
    # Execution Queue
    # ==========================================================================
    DEFAULT_MAX_RETRY_ATTEMPTS: int = 3
    DEFAULT_RETRY_BACKOFF_SECONDS: int = 10
    DEFAULT_STEP_DURATION_MS: int = 1000
    EXECUTION_LEASE_SECONDS: int = 300
    EXECUTOR_CANDIDATE_SCAN_LIMIT: int = 50

    # ==========================================================================
    # Computed Properties
    # ==========================================================================
    @computed_field  # type: ignore[misc]
    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"

    @computed_field  # type: ignore[misc]
    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @computed_field  # type: ignore[misc]
    @property
    def is_test(self) -> bool:
        return self.ENVIRONMENT == "test"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience export
settings = get_settings()
