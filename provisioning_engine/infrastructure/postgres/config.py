#provisioning_engine/infrastructure/postgres/config.py

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """Panel database (regions, nodes, allocations, units, servers, cargo)."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    postgres_user: str = "panel"
    postgres_password: str = "panel"
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "panel"

    # Full URL wins over the postgres_* parts (e.g. sqlite for local runs)
    database_url_override: Optional[str] = None

    pool_size: int = 10
    max_overflow: int = 20
    pool_timeout: int = 30
    pool_recycle: int = 3600

    echo_sql: bool = False

    @property
    def database_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        return (
            f"postgresql+psycopg2://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )


settings = DatabaseSettings()
