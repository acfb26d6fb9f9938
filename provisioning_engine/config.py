# provisioning_engine/config.py

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class PanelSettings(BaseSettings):
    """Control-plane settings from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Public base URL the daemons download cargo from
    app_url: str = "http://localhost:3000"
    # Shared secret for cargo download signatures
    app_key: str = ""

    daemon_timeout_seconds: float = Field(default=10.0, gt=0)

    cargo_link_ttl_seconds: int = Field(default=900, gt=0)
    cargo_storage_dir: str = "storage"
    cargo_remote_timeout_seconds: float = Field(default=10.0, gt=0)

    server_lock_timeout: float = Field(default=30.0, gt=0)
    placement_attempts: int = Field(default=3, ge=1)

    status_poll_interval: int = Field(default=30, gt=0)

    log_level: str = "INFO"


settings = PanelSettings()
