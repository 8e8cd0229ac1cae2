"""
Settings Module

This module manages all application configuration using Pydantic v2 Settings.
Includes configurations for:
- Application core settings
- Database connections and pool sizing
- Segment TTL sweeping
- History report storage
- Monitoring and logging
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, PostgresDsn, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppConfig(BaseSettings):
    """Application core configuration."""

    TITLE: str = "User Segments API"
    VERSION: str = "1.0.0"
    DESCRIPTION: str = "Dynamic user segmentation service"

    # Environment
    ENVIRONMENT: str = Field(
        default="development",
        pattern="^(development|staging|production|test)$"
    )
    DEBUG: bool = Field(default=False)

    # Server
    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=8000)

    # Deadline for a single API request, in seconds
    REQUEST_TIMEOUT: float = Field(default=30.0, gt=0)

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        env_file=".env",
        extra="ignore"
    )


class DatabaseConfig(BaseSettings):
    """Database connection configuration."""

    # PostgreSQL
    POSTGRES_HOST: str = Field(default="localhost")
    POSTGRES_PORT: int = Field(default=5432)
    POSTGRES_USER: str = Field(default="postgres")
    POSTGRES_PASSWORD: SecretStr = SecretStr("postgres")
    POSTGRES_DB: str = Field(default="usersegments")

    # Full SQLAlchemy URL, overrides the POSTGRES_* parts when set
    URL: Optional[str] = None

    # Connection Pool
    MAX_CONNECTIONS: int = Field(default=10, ge=1)
    CONN_TIMEOUT: int = Field(default=30, ge=1)  # seconds
    POOL_RECYCLE: int = Field(default=1800)  # 30 minutes

    @property
    def ASYNC_DATABASE_URL(self) -> str:
        """Construct the async SQLAlchemy connection URL."""
        if self.URL:
            return self.URL
        return str(PostgresDsn.build(
            scheme="postgresql+asyncpg",
            username=self.POSTGRES_USER,
            password=self.POSTGRES_PASSWORD.get_secret_value(),
            host=self.POSTGRES_HOST,
            port=self.POSTGRES_PORT,
            path=self.POSTGRES_DB
        ))

    @property
    def is_sqlite(self) -> bool:
        return self.ASYNC_DATABASE_URL.startswith("sqlite")

    model_config = SettingsConfigDict(
        env_prefix="DB_",
        env_file=".env",
        extra="ignore"
    )


class SegmentConfig(BaseSettings):
    """Segment assignment configuration."""

    TTL_CHECK_INTERVAL: float = Field(default=60.0, gt=0)  # seconds
    TTL_SWEEPER_ENABLED: bool = Field(default=True)

    model_config = SettingsConfigDict(
        env_prefix="SEGMENT_",
        env_file=".env",
        extra="ignore"
    )


class ReportConfig(BaseSettings):
    """History report configuration."""

    STORAGE_DIR: Path = Field(default=Path("reports"))
    FILE_PREFIX: str = Field(default="report_")
    FILE_EXT: str = Field(default=".csv")

    # Base URL clients use to download reports, e.g. http://localhost:8000
    PUBLIC_URL: Optional[str] = None

    model_config = SettingsConfigDict(
        env_prefix="REPORT_",
        env_file=".env",
        extra="ignore"
    )


class LoggingConfig(BaseSettings):
    """Logging configuration."""

    LEVEL: str = Field(default="INFO")
    JSON_LOGS: bool = Field(default=True)

    # Log file settings
    FILE_PATH: Optional[Path] = None
    FILE_MAX_BYTES: int = Field(default=10485760)  # 10MB
    FILE_BACKUP_COUNT: int = Field(default=5)

    # Sentry
    SENTRY_DSN: Optional[str] = None
    SENTRY_TRACES_SAMPLE_RATE: float = Field(default=1.0)

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        env_file=".env",
        extra="ignore"
    )


class MonitoringConfig(BaseSettings):
    """Monitoring and observability configuration."""

    ENABLE_METRICS: bool = Field(default=True)

    model_config = SettingsConfigDict(
        env_prefix="MONITORING_",
        env_file=".env",
        extra="ignore"
    )


class AppSettings(BaseSettings):
    """Main settings class combining all configuration sections."""

    app: AppConfig = Field(default_factory=AppConfig)
    db: DatabaseConfig = Field(default_factory=DatabaseConfig)
    segments: SegmentConfig = Field(default_factory=SegmentConfig)
    reports: ReportConfig = Field(default_factory=ReportConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    @property
    def report_base_url(self) -> str:
        """Public base URL for generated report links."""
        if self.reports.PUBLIC_URL:
            return self.reports.PUBLIC_URL.rstrip("/")
        return f"http://{self.app.HOST}:{self.app.PORT}"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=True,
        extra="ignore"
    )


@lru_cache()
def get_settings() -> AppSettings:
    """
    Create cached settings instance.

    Returns:
        Cached AppSettings instance
    """
    return AppSettings()
