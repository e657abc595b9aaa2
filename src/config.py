"""Application settings loaded from environment variables."""

import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _env_file() -> str | None:
    if os.getenv("PYTEST_CURRENT_TEST"):
        return None
    return ".env"


class Settings(BaseSettings):
    """Slack Connect configuration. All values come from environment variables."""

    # Slack OAuth app
    slack_client_id: str = Field(default="")
    slack_client_secret: str = Field(default="")
    slack_redirect_uri: str = Field(default="")

    # Frontend
    frontend_url: str = Field(default="http://localhost:3000")
    allowed_origins: str = Field(default="http://localhost:3000")

    # HTTP API
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=3001)
    environment: str = Field(default="development")

    # Database
    database_path: Path = Field(default=Path("data/slack_connect.db"))
    store_write_attempts: int = Field(default=3)

    # Scheduler
    scheduler_timezone: str = Field(default="UTC")
    message_max_length: int = Field(default=4000)

    # Logging
    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(env_file=_env_file(), env_file_encoding="utf-8")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        if os.getenv("PYTEST_CURRENT_TEST"):
            return (init_settings,)
        return (init_settings, env_settings, dotenv_settings, file_secret_settings)

    def get_allowed_origins(self) -> list[str]:
        """Parse ALLOWED_ORIGINS into a list of origins."""
        if not self.allowed_origins.strip():
            return []
        return [o.strip().rstrip("/") for o in self.allowed_origins.split(",") if o.strip()]

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"


settings = Settings()
