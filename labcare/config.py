"""Configuration management for LabCare."""

from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Encounter Repository (authoritative store)
    repository_base_url: str = Field(
        default="",
        description="Base URL of the encounter repository API; empty uses the in-memory store",
    )
    request_timeout: float = Field(
        default=10.0,
        description="Timeout in seconds for repository and gateway requests",
    )
    max_retries: int = Field(
        default=3,
        description="Max attempts for idempotent reads (commits are never retried)",
    )

    # Billing Gateway
    gateway_base_url: str = Field(
        default="",
        description="Base URL of the billing gateway API",
    )
    strict_payment_methods: bool = Field(
        default=False,
        description="Reject unknown payment-method tokens instead of mapping them to CASH",
    )
    iva_options: list[Decimal] = Field(
        default=[Decimal("0"), Decimal("10.5"), Decimal("21")],
        description="IVA percentages the collection desk may choose from",
    )

    # Extraction boxes
    branch_id: str = Field(default="1", description="Operating site identifier")
    extraction_box_count: int = Field(
        default=3,
        ge=1,
        description="Number of extraction boxes at this site",
    )
    queue_poll_interval_seconds: float = Field(
        default=30.0,
        description="Refresh period for the waiting and extraction lists",
    )

    # API Settings
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8080)
    api_key: str = Field(
        default="",
        description="API key for authenticating requests",
    )

    # Observability
    observability_enabled: bool = Field(
        default=True,
        description="Write workflow telemetry as JSON Lines",
    )
    observability_log_dir: Path = Field(
        default=Path("./data/logs"),
        description="Directory for workflow telemetry files",
    )

    # Debug
    debug_mode: bool = Field(
        default=False,
        description="Enable debug mode (exposes error details in responses)",
    )

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")

    @property
    def uses_remote_repository(self) -> bool:
        """Check if a remote encounter repository is configured."""
        return bool(self.repository_base_url)

    @property
    def has_gateway(self) -> bool:
        """Check if a billing gateway is configured."""
        return bool(self.gateway_base_url)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
