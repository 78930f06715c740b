"""
Configuration management for the GeoWork tracking engine
"""
from pydantic_settings import BaseSettings
from pydantic import Field, field_validator
from typing import Optional, List


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    DATABASE_URL: str = Field(
        default="sqlite:///./geowork.db",
        description="SQLAlchemy database URL (PostgreSQL in production)"
    )

    APP_ENV: str = Field(default="local", description="Application environment: local, staging, prod")
    LOG_LEVEL: str = Field(default="INFO", description="Logging level: DEBUG, INFO, WARNING, ERROR")

    # CORS settings
    ALLOWED_ORIGINS: str = Field(
        default="*",
        description="Comma-separated list of allowed CORS origins. Use '*' for local only."
    )

    # Version (can be git SHA or semver)
    VERSION: Optional[str] = Field(default=None, description="Application version (git SHA or semver)")

    # Tracking coordinator cadence
    LOCATION_SAMPLE_INTERVAL_SECONDS: int = Field(
        default=30,
        ge=1,
        description="Seconds between background location samples while a session is tracked"
    )
    SESSION_SYNC_INTERVAL_SECONDS: int = Field(
        default=60,
        ge=1,
        description="Seconds between reconciliation passes against the persisted session"
    )

    # Orchestrator (session creation + TimeTick delivery)
    ORCHESTRATOR_ENABLED: bool = Field(
        default=False,
        description="Run the orchestrator loop in a background thread on startup"
    )
    ORCHESTRATOR_INTERVAL_SECONDS: int = Field(
        default=60,
        ge=1,
        description="Seconds between orchestrator passes"
    )

    # Persistence
    SAVE_RETRY_LIMIT: int = Field(
        default=3,
        ge=0,
        description="Reload-and-retry attempts when a session save hits a concurrent write"
    )
    POLICY_CACHE_TTL_SECONDS: int = Field(
        default=300,
        ge=0,
        description="How long company policy settings are cached per company"
    )

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True

    @field_validator("APP_ENV")
    @classmethod
    def validate_app_env(cls, v: str) -> str:
        """Validate APP_ENV"""
        allowed = ["local", "staging", "prod"]
        if v not in allowed:
            raise ValueError(f"APP_ENV must be one of {allowed}")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate LOG_LEVEL"""
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in allowed:
            raise ValueError(f"LOG_LEVEL must be one of {allowed}")
        return v.upper()

    def validate_production(self) -> None:
        """
        Validate settings for production environment

        Raises:
            ValueError: If production settings are invalid
        """
        if self.APP_ENV == "prod":
            # SQLite has no row-level concurrency for multi-writer deployments
            if self.DATABASE_URL.startswith("sqlite"):
                raise ValueError(
                    "DATABASE_URL must point to a server database (not sqlite) in production environment"
                )

            # ALLOWED_ORIGINS must not be wildcard in production
            if self.ALLOWED_ORIGINS == "*" or not self.ALLOWED_ORIGINS:
                raise ValueError(
                    "ALLOWED_ORIGINS must be explicitly set (not '*') in production environment"
                )

    def get_allowed_origins_list(self) -> List[str]:
        """
        Get list of allowed CORS origins

        Returns:
            List of allowed origins (or ['*'] for local)
        """
        if self.ALLOWED_ORIGINS == "*":
            return ["*"]
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",") if origin.strip()]


# Create settings instance
settings = Settings()

# Validate production settings if in prod
if settings.APP_ENV == "prod":
    settings.validate_production()
