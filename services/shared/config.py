"""Shared configuration management for the finalization service.

Based on Pydantic Settings v2 documentation:
https://docs.pydantic.dev/latest/concepts/pydantic_settings/
"""

from decimal import Decimal
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support.

    All settings can be overridden via environment variables with the prefix 'APP_'.
    Example: APP_LOG_LEVEL=debug
    """

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Deployment environment",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Service configuration
    service_name: str = Field(
        default="document-finalization-service",
        description="Service identifier for metrics and logs",
    )
    service_version: str = Field(
        default="0.1.0",
        description="Service version",
    )

    # Payment terms labels (override per deployment to localize)
    label_immediate: str = Field(
        default="Immediate",
        description="Label stored for immediate payment terms",
    )
    label_net30: str = Field(
        default="Net 30",
        description="Label stored for net-30 payment terms",
    )
    label_net60: str = Field(
        default="Net 60",
        description="Label stored for net-60 payment terms",
    )
    label_end_of_month: str = Field(
        default="End of Month",
        description="Label stored for end-of-month payment terms",
    )
    label_custom_fallback: str = Field(
        default="Custom date",
        description="Label stored for custom terms when no due date is known",
    )
    custom_date_format: str = Field(
        default="%b %d, %Y",
        description="strftime pattern used to render a custom due date into a label",
    )

    # Finalization rules
    price_tolerance: Decimal = Field(
        default=Decimal("0.01"),
        ge=0,
        description="Unit price differences above this value are reported as discrepancies",
    )
    filename_max_length: int = Field(
        default=100,
        gt=0,
        description="Maximum length of generated document file names",
    )

    # Collaborator lookups
    lookup_retry_attempts: int = Field(
        default=3,
        ge=1,
        description="Attempts for supplier/inventory lookups before giving up",
    )
    lookup_retry_initial_wait: float = Field(
        default=0.5,
        ge=0,
        description="Initial backoff (seconds) between lookup attempts",
    )
    lookup_retry_max_wait: float = Field(
        default=5.0,
        ge=0,
        description="Maximum backoff (seconds) between lookup attempts",
    )

    # External catalog synchronization
    sync_enabled: bool = Field(
        default=True,
        description="Synchronize committed line items with the external catalog",
    )

    # Staging storage configuration (S3-compatible object storage)
    storage_enabled: bool = Field(
        default=False,
        description="Keep staging drafts in S3-compatible storage (MinIO)",
    )
    storage_endpoint: str = Field(
        default="localhost:9000",
        description="S3-compatible storage endpoint (host:port)",
    )
    storage_access_key: str = Field(
        default="",
        description="Storage access key (use env var APP_STORAGE_ACCESS_KEY)",
    )
    storage_secret_key: str = Field(
        default="",
        description="Storage secret key (use env var APP_STORAGE_SECRET_KEY)",
    )
    storage_bucket: str = Field(
        default="staging-drafts",
        description="Bucket holding staging drafts",
    )
    storage_secure: bool = Field(
        default=False,
        description="Use HTTPS for storage connections",
    )

    # Background queue configuration (arq + Redis)
    queue_enabled: bool = Field(
        default=False,
        description="Run catalog synchronization through the background queue",
    )
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL for the background queue",
    )
    queue_max_jobs: int = Field(
        default=10,
        description="Maximum concurrent jobs per worker",
    )
    queue_job_timeout: int = Field(
        default=300,
        description="Job timeout in seconds",
    )


def get_settings() -> Settings:
    """Factory function to get settings instance.

    Returns:
        Configured Settings instance
    """
    return Settings()
