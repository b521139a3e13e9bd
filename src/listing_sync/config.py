"""Application configuration using pydantic-settings."""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="LISTING_SYNC_",
        extra="ignore",
    )

    # Database
    database_path: str = Field(default="data/listings.db")
    busy_timeout_ms: int = Field(
        default=5000,
        ge=0,
        description="How long a writer waits for the database lock before giving up",
    )

    # State reconciliation
    install_state_triggers: bool = Field(
        default=True,
        description=(
            "Install triggers that mirror direct writes to properties.active on startup; "
            "triggers already in the database are left in place when false"
        ),
    )
    reconcile_batch_size: int = Field(
        default=100,
        ge=1,
        description="Properties deactivated per transaction during snapshot reconciliation",
    )

    # Ingestion
    track_payload_changes: bool = Field(
        default=True,
        description="Record listing payload changes (title, prices, ...) in change_history",
    )

    # Logging
    log_json: bool = Field(default=False, description="Emit JSON logs instead of console output")

    @property
    def data_dir(self) -> str:
        """Return the directory containing the database."""
        return str(Path(self.database_path).parent)
