"""Typed configuration models for the repository server.

These models are the normalized form of the TOML configuration file. They are
produced by :mod:`reposerver.config.loader` and consumed by the scheduler,
the git collaborator and the pipeline runners.
"""

from datetime import timedelta
from fnmatch import fnmatchcase
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

GLOB_CHARS = ("*", "?", "[")


def is_glob_pattern(value: str) -> bool:
    """Return True if a branch entry is a glob pattern rather than a name."""
    return any(char in value for char in GLOB_CHARS)


class HookConfig(BaseModel):
    """A shell command run around an indexing attempt.

    Attributes:
        command: Shell command string, executed through the configured shell.
        timeout: Optional upper bound on the command's run time.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    command: str = Field(..., description="Shell command to execute")
    timeout: timedelta | None = Field(None, description="Optional timeout")


class SnapshotPolicy(BaseModel):
    """Periodic, time-driven snapshot retention for a branch.

    Attributes:
        interval_seconds: Minimum time between two snapshots.
        keep_count: Number of snapshots retained.
        indexer_args: Extra indexer arguments for snapshot runs.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    interval_seconds: int = Field(..., gt=0, description="Snapshot interval in seconds")
    keep_count: int = Field(..., gt=0, description="Number of snapshots retained")
    indexer_args: list[str] = Field(default_factory=list, description="Snapshot indexer args")

    @property
    def policy_id(self) -> str:
        return f"snapshot:{self.interval_seconds}"


class BranchPolicy(BaseModel):
    """Indexing policy for a branch name or branch glob.

    A branch can be tracked live (every commit change is indexed), by one or
    more snapshot policies, or both. Each is evaluated independently against
    the same resolved commit.

    Attributes:
        branch: Exact branch name or glob pattern.
        live: Whether every new commit is indexed.
        latest_keep_count: Number of live runs retained.
        indexer_args: Branch-level indexer args, appended after repository args.
        snapshots: Snapshot policies for the branch.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    branch: str = Field(..., description="Branch name or glob pattern")
    live: bool = Field(True, description="Index on every commit change")
    latest_keep_count: int = Field(1, ge=1, description="Live runs retained")
    indexer_args: list[str] = Field(default_factory=list, description="Branch indexer args")
    snapshots: list[SnapshotPolicy] = Field(default_factory=list, description="Snapshot policies")

    @property
    def is_glob(self) -> bool:
        return is_glob_pattern(self.branch)

    def matches(self, branch: str) -> bool:
        """Check whether a remote branch name is governed by this policy.

        Args:
            branch: Remote branch name.

        Returns:
            True if the name matches exactly or through the glob.
        """
        if self.is_glob:
            return fnmatchcase(branch, self.branch)
        return branch == self.branch


class RepositoryConfig(BaseModel):
    """A tracked repository.

    Attributes:
        name: Unique repository name across the fleet.
        url: Remote URL fetched into the local mirror.
        interval: Poll interval for this repository.
        indexer_args: Repository-level indexer args.
        policies: Branch policies, in configuration order.
        pre_index_hooks: Hooks run before the indexer.
        post_index_hooks: Hooks run after a successful indexer run.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(..., description="Unique repository name")
    url: str = Field(..., description="Remote URL")
    interval: timedelta = Field(..., description="Poll interval")
    indexer_args: list[str] = Field(default_factory=list, description="Repository indexer args")
    policies: list[BranchPolicy] = Field(default_factory=list, description="Branch policies")
    pre_index_hooks: list[HookConfig] = Field(default_factory=list, description="Pre-index hooks")
    post_index_hooks: list[HookConfig] = Field(
        default_factory=list, description="Post-index hooks"
    )

    @property
    def branch_patterns(self) -> list[str]:
        """Branch names and globs to fetch, deduplicated in configuration order."""
        seen: list[str] = []
        for policy in self.policies:
            if policy.branch not in seen:
                seen.append(policy.branch)
        return seen

    def policy_for(self, branch: str) -> BranchPolicy | None:
        """Select the policy governing a remote branch.

        Exact-name policies win over glob policies; within each group the
        first policy in configuration order wins.

        Args:
            branch: Remote branch name.

        Returns:
            The governing BranchPolicy, or None if no policy matches.
        """
        for policy in self.policies:
            if not policy.is_glob and policy.branch == branch:
                return policy
        for policy in self.policies:
            if policy.is_glob and policy.matches(branch):
                return policy
        return None


class GlobalConfig(BaseModel):
    """Process-wide settings shared by all repositories.

    Attributes:
        state_dir: Absolute directory for mirrors, worktrees and state.
        default_interval: Poll interval for repositories without their own.
        max_repo_concurrency: Repositories polled in parallel.
        max_concurrent_units: Branch/policy units processed in parallel.
        git_bin: Git executable.
        indexer_bin: Indexer executable.
        indexer_args: Global indexer args, first in the argument list.
        indexer_timeout: Optional upper bound on an indexer run.
        shell: Shell used to run hook commands.
        reuse_worktrees: Keep worktrees between attempts instead of removing them.
        finish_hook: Hook run after every full sweep over all repositories.
        prune_hook: Hook run for each pruned run to delete its artifacts.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    state_dir: Path = Field(..., description="State directory")
    default_interval: timedelta = Field(timedelta(minutes=5), description="Default poll interval")
    max_repo_concurrency: int = Field(1, ge=1, description="Parallel repository cycles")
    max_concurrent_units: int = Field(4, ge=1, description="Parallel branch/policy units")
    git_bin: str = Field("git", description="Git executable")
    indexer_bin: str = Field("pointer-indexer", description="Indexer executable")
    indexer_args: list[str] = Field(default_factory=list, description="Global indexer args")
    indexer_timeout: timedelta | None = Field(None, description="Optional indexer timeout")
    shell: str = Field("sh", description="Shell for hook commands")
    reuse_worktrees: bool = Field(True, description="Keep worktrees between attempts")
    finish_hook: HookConfig | None = Field(None, description="Hook run after each sweep")
    prune_hook: HookConfig | None = Field(None, description="Hook deleting pruned runs")

    @property
    def state_file(self) -> Path:
        return self.state_dir / "state.json"


class AppConfig(BaseModel):
    """Complete, normalized application configuration."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    global_config: GlobalConfig
    repos: list[RepositoryConfig]

    def get_repo(self, name: str) -> RepositoryConfig | None:
        for repo in self.repos:
            if repo.name == name:
                return repo
        return None
