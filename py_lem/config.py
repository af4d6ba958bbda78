"""Configuration management."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings pulled from ``PY_LEM_*`` environment variables."""

    # Logging
    log_level: str = Field(default="INFO", description="Log level")
    log_format: str = Field(default="console", description="Log format (console or json)")

    # Execution
    workers: int = Field(default=1, ge=1, description="Worker threads for basin fan-out")

    model_config = SettingsConfigDict(
        env_prefix="PY_LEM_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


settings = Settings()
