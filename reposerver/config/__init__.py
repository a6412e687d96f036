"""Configuration for the repository server.

Example:
    >>> from reposerver.config import load_config, validate_config
    >>> cfg = load_config(Path("reposerver.toml"))
    >>> validate_config(cfg)
    >>> print([repo.name for repo in cfg.repos])
"""

from .loader import ConfigError, load_config, parse_config, parse_duration, validate_config
from .models import (
    AppConfig,
    BranchPolicy,
    GlobalConfig,
    HookConfig,
    RepositoryConfig,
    SnapshotPolicy,
    is_glob_pattern,
)
from .settings import ReposerverSettings, get_settings

__all__ = [
    # Loading
    "load_config",
    "parse_config",
    "parse_duration",
    "validate_config",
    "ConfigError",
    # Models
    "AppConfig",
    "GlobalConfig",
    "RepositoryConfig",
    "BranchPolicy",
    "SnapshotPolicy",
    "HookConfig",
    "is_glob_pattern",
    # Settings
    "ReposerverSettings",
    "get_settings",
]
