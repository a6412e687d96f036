"""Process settings loaded from the environment.

Unlike the TOML file, which describes *what* to index, these settings control
how the process itself behaves (log level and format). They are read from
``REPOSERVER_*`` environment variables using pydantic-settings.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ReposerverSettings(BaseSettings):
    """Environment-driven process settings.

    Attributes:
        log_level: Logging level name.
        log_format: ``console`` for key/value lines, ``json`` for JSON lines.
    """

    model_config = SettingsConfigDict(
        env_prefix="REPOSERVER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    log_level: str = Field(default="INFO", description="Logging level")
    log_format: Literal["console", "json"] = Field(default="console", description="Log format")


@lru_cache
def get_settings() -> ReposerverSettings:
    """Get cached process settings.

    Returns:
        The process settings instance.
    """
    return ReposerverSettings()
