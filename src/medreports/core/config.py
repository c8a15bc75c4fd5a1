"""
Application configuration management using Pydantic Settings.

Loads configuration from environment variables and .env files.
"""

from functools import lru_cache
from typing import Any

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Application Settings
    # ==========================================================================
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Debug mode")
    log_level: str = Field(default="INFO", description="Logging level")

    app_name: str = Field(default="MedReports", description="Application name")
    app_version: str = Field(default="0.1.0", description="Application version")
    api_v1_prefix: str = Field(default="/api/v1", description="API v1 prefix")

    # CORS
    cors_origins: list[str] = Field(
        default=["http://localhost:3000", "http://localhost:8000"],
        description="Allowed CORS origins",
    )

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: Any) -> list[str]:
        """Parse CORS origins from comma-separated string."""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    # ==========================================================================
    # Database Configuration
    # ==========================================================================
    database_url: str = Field(
        default="sqlite+aiosqlite:///./medreports.db",
        description="Async SQLAlchemy connection string",
    )
    db_pool_size: int = Field(default=20, description="Database connection pool size")
    db_max_overflow: int = Field(default=10, description="Max overflow connections")
    db_pool_timeout: int = Field(default=30, description="Pool timeout in seconds")

    @field_validator("database_url", mode="before")
    @classmethod
    def validate_database_url(cls, v: str, info) -> str:
        """Ensure database URL uses an async driver and is not a local file in production."""
        if v.startswith("postgresql://"):
            v = v.replace("postgresql://", "postgresql+asyncpg://", 1)
        elif v.startswith("sqlite://"):
            v = v.replace("sqlite://", "sqlite+aiosqlite://", 1)

        environment = info.data.get("environment", "development")
        if environment == "production" and v.startswith("sqlite"):
            raise ValueError(
                "DATABASE_URL must point to a server database in production. "
                "Set DATABASE_URL environment variable."
            )
        return v

    @property
    def is_sqlite(self) -> bool:
        """Whether the configured database is SQLite."""
        return self.database_url.startswith("sqlite")

    # ==========================================================================
    # Report Generation
    # ==========================================================================
    report_output_dir: str = Field(
        default="./generated/reports", description="Directory for generated report files"
    )
    report_max_range_days: int = Field(
        default=365, ge=1, description="Maximum date span for ad-hoc report creation"
    )
    report_generation_timeout_seconds: float = Field(
        default=300.0, gt=0, description="Generation is marked FAILED after this long"
    )
    report_download_expiry_hours: int = Field(
        default=24, description="How long a generated report download link stays valid"
    )
    aggregation_chunk_size: int = Field(
        default=1000, ge=1, description="Rows read per query while aggregating"
    )

    # ==========================================================================
    # Export Configuration
    # ==========================================================================
    export_output_dir: str = Field(
        default="./generated/exports", description="Directory for export job files"
    )
    export_chunk_size: int = Field(
        default=1000, ge=1, description="Rows read and written per export batch"
    )
    export_max_records: int = Field(
        default=100_000, ge=1, description="Upper bound on rows in a single export"
    )
    report_export_dir: str = Field(
        default="./generated/report-exports",
        description="Directory for re-exported report files",
    )
    report_export_expiry_hours: int = Field(
        default=24, ge=1, description="How long a single report export stays downloadable"
    )
    bulk_report_export_expiry_hours: int = Field(
        default=48, ge=1, description="How long a bulk report export stays downloadable"
    )
    bulk_report_export_max_reports: int = Field(
        default=50, ge=1, description="Most reports a single bulk export may bundle"
    )

    # ==========================================================================
    # Email Configuration
    # ==========================================================================
    smtp_host: str | None = Field(default=None, description="SMTP server host")
    smtp_port: int = Field(default=587, description="SMTP server port")
    smtp_user: str | None = Field(default=None, description="SMTP username")
    smtp_password: str | None = Field(default=None, description="SMTP password")
    smtp_from_email: str = Field(
        default="reports@medreports.local", description="From email address"
    )
    smtp_from_name: str = Field(default="MedReports", description="From name")
    smtp_tls: bool = Field(default=True, description="Use TLS for SMTP")


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()


# Global settings instance
settings = get_settings()
