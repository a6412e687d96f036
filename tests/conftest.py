"""Pytest configuration and shared fixtures.

This module provides fixtures used across the test suite: a fake git
collaborator, a controllable clock, fake indexer scripts, configuration
builders and a real local git repository.
"""

import asyncio
import contextlib
import shutil
import stat
import subprocess
from collections import Counter
from collections.abc import AsyncIterator, Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from reposerver.config import AppConfig, RepositoryConfig, parse_config
from reposerver.vcs import GitCollaborator, GitError, worktree_dir_name

# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FakeGit(GitCollaborator):
    """In-memory git collaborator.

    ``heads`` maps repository name to ``{branch: commit}`` and can be changed
    between cycles to simulate pushes. Setting ``delay`` makes every mutating
    call take that long; ``peak_busy`` then records, per repository, the most
    mutating calls that were ever in flight at once.
    """

    def __init__(self, root: Path, heads: dict[str, dict[str, str]] | None = None) -> None:
        self.root = root
        self.heads: dict[str, dict[str, str]] = heads or {}
        self.fail_update: set[str] = set()
        self.fail_prepare: set[str] = set()
        self.updates: list[str] = []
        self.prepared: list[tuple[str, str, str, str]] = []
        self.released: list[Path] = []
        self.delay = 0.0
        self.busy: Counter[str] = Counter()
        self.peak_busy: Counter[str] = Counter()

    @contextlib.asynccontextmanager
    async def _mutating(self, repo_name: str) -> AsyncIterator[None]:
        self.busy[repo_name] += 1
        self.peak_busy[repo_name] = max(self.peak_busy[repo_name], self.busy[repo_name])
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            yield
        finally:
            self.busy[repo_name] -= 1

    async def validate_binary(self) -> str:
        return "git version 0.0.0-fake"

    async def ensure_mirror(self, repo: RepositoryConfig) -> Path:
        mirror = self.root / repo.name / "mirror.git"
        mirror.mkdir(parents=True, exist_ok=True)
        return mirror

    async def update(self, repo: RepositoryConfig) -> None:
        async with self._mutating(repo.name):
            self.updates.append(repo.name)
            if repo.name in self.fail_update:
                raise GitError("fetch failed: connection refused", repo.name)

    async def resolve_branches(self, repo: RepositoryConfig) -> dict[str, str]:
        heads = {
            branch: commit
            for branch, commit in self.heads.get(repo.name, {}).items()
            if repo.policy_for(branch) is not None
        }
        if not heads:
            raise GitError("branch patterns matched no remote branches", repo.name)
        return heads

    async def resolve_branch(self, repo: RepositoryConfig, branch: str) -> str:
        try:
            return self.heads[repo.name][branch]
        except KeyError:
            raise GitError("unknown branch", repo.name, branch) from None

    async def prepare_worktree(
        self,
        repo: RepositoryConfig,
        branch: str,
        slot: str,
        commit: str,
    ) -> Path:
        async with self._mutating(repo.name):
            if branch in self.fail_prepare:
                raise GitError("worktree add failed", repo.name, branch)
            path = self.root / repo.name / "worktrees" / worktree_dir_name(branch, slot)
            path.mkdir(parents=True, exist_ok=True)
            (path / "COMMIT").write_text(commit)
            self.prepared.append((repo.name, branch, slot, commit))
            return path

    async def release_worktree(self, repo: RepositoryConfig, path: Path) -> None:
        async with self._mutating(repo.name):
            self.released.append(path)
            shutil.rmtree(path, ignore_errors=True)


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeIndexer:
    """Executable indexer script that records its invocations.

    The script appends its arguments to ``calls_file`` and exits with status 3
    while ``fail_marker`` exists.
    """

    def __init__(self, root: Path) -> None:
        root.mkdir(parents=True, exist_ok=True)
        self.path = root / "fake-indexer"
        self.calls_file = root / "calls.log"
        self.fail_marker = root / "fail"
        self.path.write_text(
            "#!/bin/sh\n"
            'if [ "$1" = "--version" ]; then echo "fake-indexer 1.0"; exit 0; fi\n'
            f"printf '%s\\n' \"$*\" >> '{self.calls_file}'\n"
            f"if [ -f '{self.fail_marker}' ]; then echo 'index exploded' >&2; exit 3; fi\n"
            "echo indexed\n"
        )
        self.path.chmod(self.path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

    @property
    def calls(self) -> list[str]:
        if not self.calls_file.exists():
            return []
        return self.calls_file.read_text().splitlines()

    def fail(self, enabled: bool = True) -> None:
        if enabled:
            self.fail_marker.write_text("1")
        else:
            self.fail_marker.unlink(missing_ok=True)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def fake_indexer(tmp_path: Path) -> FakeIndexer:
    """Executable fake indexer."""
    return FakeIndexer(tmp_path / "indexer")


@pytest.fixture
def fake_clock() -> FakeClock:
    """Controllable clock starting at 2024-01-01T00:00:00Z."""
    return FakeClock()


@pytest.fixture
def fake_git_factory(tmp_path: Path) -> Callable[..., FakeGit]:
    """Factory for fake git collaborators rooted in the test directory."""

    def _factory(heads: dict[str, dict[str, str]] | None = None) -> FakeGit:
        return FakeGit(tmp_path / "git", heads)

    return _factory


@pytest.fixture
def make_config(tmp_path: Path, fake_indexer: FakeIndexer) -> Callable[..., AppConfig]:
    """Build an AppConfig from TOML-shaped dictionaries.

    The global section defaults to a state directory inside the test directory
    and the fake indexer.
    """

    def _make(repos: list[dict[str, Any]], **global_overrides: Any) -> AppConfig:
        global_section: dict[str, Any] = {
            "state_dir": str(tmp_path / "state"),
            "indexer_bin": str(fake_indexer.path),
        }
        global_section.update(global_overrides)
        return parse_config({"global": global_section, "repo": repos}, base_dir=tmp_path)

    return _make


@pytest.fixture
def temp_git_repo(tmp_path: Path) -> Path:
    """Create a local git repository with ``main`` and ``feature/login`` branches."""
    repo_path = tmp_path / "upstream"
    repo_path.mkdir()

    def git(*args: str) -> str:
        result = subprocess.run(
            ["git", *args],
            cwd=repo_path,
            capture_output=True,
            check=True,
            text=True,
        )
        return result.stdout.strip()

    git("init")
    git("config", "user.email", "test@example.com")
    git("config", "user.name", "Test User")
    git("checkout", "-b", "main")

    (repo_path / "README.md").write_text("# upstream\n")
    git("add", ".")
    git("commit", "-m", "Initial commit")

    git("checkout", "-b", "feature/login")
    (repo_path / "login.py").write_text("def login():\n    return True\n")
    git("add", ".")
    git("commit", "-m", "Add login")

    git("checkout", "main")
    return repo_path


def git_head(repo_path: Path, ref: str = "HEAD") -> str:
    """Resolve a ref in a local repository."""
    return subprocess.run(
        ["git", "rev-parse", ref],
        cwd=repo_path,
        capture_output=True,
        check=True,
        text=True,
    ).stdout.strip()


@pytest.fixture
def resolve_ref() -> Callable[[Path, str], str]:
    """Resolve refs in local repositories."""
    return git_head
