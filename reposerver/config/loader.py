"""TOML configuration loading and validation.

The file is parsed with ``tomllib`` into permissive "raw" pydantic models that
mirror the file layout, then normalized into the typed models of
:mod:`reposerver.config.models` (durations parsed, defaults applied, branch
shorthands merged into policies). :func:`validate_config` performs the
cross-field checks that run before the scheduler starts.

Example:
    >>> cfg = load_config(Path("reposerver.toml"))
    >>> validate_config(cfg)
"""

import re
import tomllib
from datetime import timedelta
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .models import (
    AppConfig,
    BranchPolicy,
    GlobalConfig,
    HookConfig,
    RepositoryConfig,
    SnapshotPolicy,
)

DEFAULT_STATE_DIR = ".reposerver-state"
DEFAULT_INTERVAL = "5m"

_DURATION_UNITS: dict[str, float] = {
    "ms": 0.001,
    "msec": 0.001,
    "s": 1,
    "sec": 1,
    "secs": 1,
    "second": 1,
    "seconds": 1,
    "m": 60,
    "min": 60,
    "mins": 60,
    "minute": 60,
    "minutes": 60,
    "h": 3600,
    "hr": 3600,
    "hrs": 3600,
    "hour": 3600,
    "hours": 3600,
    "d": 86400,
    "day": 86400,
    "days": 86400,
    "w": 604800,
    "week": 604800,
    "weeks": 604800,
}

_DURATION_PART = re.compile(r"\s*(\d+(?:\.\d+)?)\s*([a-z]+)\s*")


class ConfigError(Exception):
    """Exception raised when the configuration cannot be loaded or is invalid.

    Attributes:
        message: Explanation of the error.
        path: Path to the configuration file, if applicable.
    """

    def __init__(self, message: str, path: str | None = None) -> None:
        """Initialize the ConfigError.

        Args:
            message: Explanation of the error.
            path: Path to the configuration file.
        """
        self.message = message
        self.path = path

        full_message = f"{message} (config={path})" if path else message
        super().__init__(full_message)


# ---------------------------------------------------------------------------
# Raw file layout
# ---------------------------------------------------------------------------


class RawHookConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    command: str
    timeout: str | None = None


class RawSnapshotConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    interval: str | int
    keep_count: int
    indexer_args: list[str] = Field(default_factory=list)


class RawPolicyConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    branch: str
    live: bool = True
    latest_keep_count: int = 1
    indexer_args: list[str] = Field(default_factory=list)
    snapshot: list[RawSnapshotConfig] = Field(default_factory=list)


class RawRepoConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    url: str
    interval: str | None = None
    branches: list[str] = Field(default_factory=list)
    indexer_args: list[str] = Field(default_factory=list)
    policy: list[RawPolicyConfig] = Field(default_factory=list)
    pre_index_hooks: list[RawHookConfig] = Field(default_factory=list)
    post_index_hooks: list[RawHookConfig] = Field(default_factory=list)


class RawGlobalConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    state_dir: str | None = None
    default_interval: str | None = None
    max_repo_concurrency: int | None = None
    max_concurrent_units: int | None = None
    git_bin: str | None = None
    indexer_bin: str | None = None
    indexer_args: list[str] = Field(default_factory=list)
    indexer_timeout: str | None = None
    shell: str | None = None
    reuse_worktrees: bool = True
    finish_hook: RawHookConfig | None = None
    prune_hook: RawHookConfig | None = None


class FileConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    global_: RawGlobalConfig = Field(default_factory=RawGlobalConfig, alias="global")
    repos: list[RawRepoConfig] = Field(default_factory=list, alias="repo")


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def parse_duration(value: str, field: str) -> timedelta:
    """Parse a human readable duration such as ``"5m"`` or ``"1h 30m"``.

    Args:
        value: Duration string made of ``<number><unit>`` parts.
        field: Name of the configuration field, used in error messages.

    Returns:
        The parsed duration.

    Raises:
        ConfigError: If the string is malformed or the duration is zero.
    """
    text = value.strip().lower()
    if not text:
        raise ConfigError(f"invalid duration for {field}: '{value}'")

    total = 0.0
    position = 0
    while position < len(text):
        match = _DURATION_PART.match(text, position)
        if match is None or match.end() == position:
            raise ConfigError(f"invalid duration for {field}: '{value}'")
        amount, unit = match.groups()
        if unit not in _DURATION_UNITS:
            raise ConfigError(f"invalid duration for {field}: unknown unit '{unit}' in '{value}'")
        total += float(amount) * _DURATION_UNITS[unit]
        position = match.end()

    if total <= 0:
        raise ConfigError(f"duration for {field} must be greater than zero")

    return timedelta(seconds=total)


def load_config(path: Path) -> AppConfig:
    """Read, parse and normalize a configuration file.

    Args:
        path: Path to the TOML configuration file.

    Returns:
        The normalized AppConfig.

    Raises:
        ConfigError: If the file cannot be read, parsed or normalized.
    """
    try:
        with path.open("rb") as handle:
            raw = tomllib.load(handle)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"failed to parse TOML: {e}", path=str(path)) from e
    except OSError as e:
        raise ConfigError(f"failed to read config: {e}", path=str(path)) from e

    return parse_config(raw, base_dir=path.resolve().parent, source=str(path))


def parse_config(
    raw: dict[str, Any],
    base_dir: Path | None = None,
    source: str | None = None,
) -> AppConfig:
    """Normalize an already-decoded configuration document.

    Args:
        raw: Decoded TOML document.
        base_dir: Directory relative ``state_dir`` values are resolved against.
            Defaults to the current working directory.
        source: Description of where the document came from, for errors.

    Returns:
        The normalized AppConfig.

    Raises:
        ConfigError: If the document does not match the expected layout.
    """
    try:
        parsed = FileConfig.model_validate(raw)
    except ValidationError as e:
        raise ConfigError(f"invalid configuration: {e}", path=source) from e

    try:
        return _from_raw(parsed, base_dir or Path.cwd())
    except ValidationError as e:
        raise ConfigError(f"invalid configuration: {e}", path=source) from e


def _from_raw(raw: FileConfig, base_dir: Path) -> AppConfig:
    if not raw.repos:
        raise ConfigError("config must include at least one [[repo]] entry")

    state_dir = Path(raw.global_.state_dir or DEFAULT_STATE_DIR).expanduser()
    if not state_dir.is_absolute():
        state_dir = base_dir / state_dir

    default_interval = parse_duration(
        raw.global_.default_interval or DEFAULT_INTERVAL, "global.default_interval"
    )

    git_bin = raw.global_.git_bin if raw.global_.git_bin is not None else "git"
    indexer_bin = (
        raw.global_.indexer_bin if raw.global_.indexer_bin is not None else "pointer-indexer"
    )
    shell = raw.global_.shell if raw.global_.shell is not None else "sh"

    if not git_bin.strip():
        raise ConfigError("global.git_bin must not be empty")
    if not indexer_bin.strip():
        raise ConfigError("global.indexer_bin must not be empty")
    if not shell.strip():
        raise ConfigError("global.shell must not be empty")

    max_repo_concurrency = _positive_int(
        raw.global_.max_repo_concurrency, 1, "global.max_repo_concurrency"
    )
    max_concurrent_units = _positive_int(
        raw.global_.max_concurrent_units, 4, "global.max_concurrent_units"
    )

    global_config = GlobalConfig(
        state_dir=state_dir.resolve(),
        default_interval=default_interval,
        max_repo_concurrency=max_repo_concurrency,
        max_concurrent_units=max_concurrent_units,
        git_bin=git_bin,
        indexer_bin=indexer_bin,
        indexer_args=raw.global_.indexer_args,
        indexer_timeout=(
            parse_duration(raw.global_.indexer_timeout, "global.indexer_timeout")
            if raw.global_.indexer_timeout is not None
            else None
        ),
        shell=shell,
        reuse_worktrees=raw.global_.reuse_worktrees,
        finish_hook=_build_hook(raw.global_.finish_hook, "global.finish_hook"),
        prune_hook=_build_hook(raw.global_.prune_hook, "global.prune_hook"),
    )

    repos = [_build_repo(repo, default_interval) for repo in raw.repos]

    return AppConfig(global_config=global_config, repos=repos)


def _positive_int(value: int | None, default: int, field: str) -> int:
    if value is None:
        return default
    if value < 1:
        raise ConfigError(f"{field} must be at least 1, got {value}")
    return value


def _build_repo(raw: RawRepoConfig, default_interval: timedelta) -> RepositoryConfig:
    interval = (
        parse_duration(raw.interval, f"repo '{raw.name}'.interval")
        if raw.interval is not None
        else default_interval
    )

    policies = [_build_policy(policy, raw.name) for policy in raw.policy]

    # Plain `branches` entries become live policies unless declared explicitly.
    declared = {policy.branch for policy in policies}
    for pattern in raw.branches:
        if pattern not in declared:
            policies.append(BranchPolicy(branch=pattern))
            declared.add(pattern)

    return RepositoryConfig(
        name=raw.name,
        url=raw.url,
        interval=interval,
        indexer_args=raw.indexer_args,
        policies=policies,
        pre_index_hooks=[
            _build_hook(hook, f"repo '{raw.name}'.pre_index_hooks") for hook in raw.pre_index_hooks
        ],
        post_index_hooks=[
            _build_hook(hook, f"repo '{raw.name}'.post_index_hooks")
            for hook in raw.post_index_hooks
        ],
    )


def _build_policy(raw: RawPolicyConfig, repo_name: str) -> BranchPolicy:
    context = f"repo '{repo_name}' policy '{raw.branch}'"
    snapshots = []
    for snapshot in raw.snapshot:
        if isinstance(snapshot.interval, int):
            if snapshot.interval <= 0:
                raise ConfigError(
                    f"duration for {context}.snapshot.interval must be greater than zero"
                )
            interval_seconds = snapshot.interval
        else:
            interval = parse_duration(snapshot.interval, f"{context}.snapshot.interval")
            interval_seconds = max(int(interval.total_seconds()), 1)
        snapshots.append(
            SnapshotPolicy(
                interval_seconds=interval_seconds,
                keep_count=snapshot.keep_count,
                indexer_args=snapshot.indexer_args,
            )
        )

    return BranchPolicy(
        branch=raw.branch,
        live=raw.live,
        latest_keep_count=raw.latest_keep_count,
        indexer_args=raw.indexer_args,
        snapshots=snapshots,
    )


def _build_hook(raw: RawHookConfig | None, context: str) -> HookConfig | None:
    if raw is None:
        return None
    timeout = parse_duration(raw.timeout, f"{context}.timeout") if raw.timeout else None
    return HookConfig(command=raw.command, timeout=timeout)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def validate_config(cfg: AppConfig) -> None:
    """Check cross-field constraints of a normalized configuration.

    Args:
        cfg: Normalized configuration.

    Raises:
        ConfigError: On the first violated constraint.
    """
    if not cfg.repos:
        raise ConfigError("config must include at least one [[repo]] entry")

    for name, hook in (
        ("global.finish_hook", cfg.global_config.finish_hook),
        ("global.prune_hook", cfg.global_config.prune_hook),
    ):
        if hook is not None and not hook.command.strip():
            raise ConfigError(f"{name}.command must not be empty")

    names: set[str] = set()
    for repo in cfg.repos:
        if not repo.name.strip():
            raise ConfigError("repo.name must not be empty")
        if repo.name in names:
            raise ConfigError(f"duplicate repo name '{repo.name}'")
        names.add(repo.name)
        if not repo.url.strip():
            raise ConfigError(f"repo.url must not be empty for repo '{repo.name}'")
        if not repo.policies:
            raise ConfigError(f"repo '{repo.name}' must define at least one branch pattern")

        for hook in [*repo.pre_index_hooks, *repo.post_index_hooks]:
            if not hook.command.strip():
                raise ConfigError(f"repo '{repo.name}' has a hook with empty command")

        _validate_policies(repo)


def _validate_policies(repo: RepositoryConfig) -> None:
    seen: set[str] = set()
    for policy in repo.policies:
        if not policy.branch.strip():
            raise ConfigError(f"repo '{repo.name}' contains an empty branch pattern")
        if policy.branch in seen:
            raise ConfigError(
                f"repo '{repo.name}' has duplicate policy for branch '{policy.branch}'"
            )
        seen.add(policy.branch)

        if not policy.live and not policy.snapshots:
            raise ConfigError(
                f"repo '{repo.name}' policy '{policy.branch}' is neither live nor has snapshots"
            )

        intervals: set[int] = set()
        for snapshot in policy.snapshots:
            if snapshot.interval_seconds in intervals:
                raise ConfigError(
                    f"repo '{repo.name}' policy '{policy.branch}' has duplicate snapshot "
                    f"interval {snapshot.interval_seconds}s"
                )
            intervals.add(snapshot.interval_seconds)
