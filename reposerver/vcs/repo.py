"""GitPython-backed git collaborator.

Each repository gets a bare mirror and a worktree directory under the state
directory::

    <state_dir>/repos/<name>/mirror.git
    <state_dir>/repos/<name>/worktrees/<branch>--<slot>--<digest>

Only the configured branch patterns are fetched, shallowly, without tags. All
git commands run through ``git.Git.execute`` in the default thread pool so
the event loop never blocks.
"""

import asyncio
import hashlib
import shutil
import time
from fnmatch import fnmatchcase
from pathlib import Path

import structlog

from reposerver.config.models import RepositoryConfig, is_glob_pattern

from .base import GitCollaborator, GitError

logger = structlog.get_logger(__name__)


def sanitize_name(value: str) -> str:
    """Make a branch or slot name safe to use as a single path component."""
    return "".join(char if char.isalnum() or char in "_-." else "_" for char in value)


def worktree_dir_name(branch: str, slot: str) -> str:
    """Name of the worktree directory of a (branch, slot) pair.

    Sanitizing is lossy (``rel/1`` and ``rel_1`` both become ``rel_1``), so a
    digest of the raw pair keeps directories of distinct pairs apart.
    """
    digest = hashlib.sha1(f"{branch}\0{slot}".encode()).hexdigest()[:12]
    return f"{sanitize_name(branch)}--{sanitize_name(slot)}--{digest}"


class GitRepositoryManager(GitCollaborator):
    """Manages mirrors and worktrees with GitPython.

    Attributes:
        git_bin: Git executable.
        state_dir: Root directory for mirrors and worktrees.
        command_timeout: Seconds after which a git command is killed.
    """

    def __init__(
        self,
        git_bin: str = "git",
        state_dir: Path | str = ".reposerver-state",
        command_timeout: float | None = 600,
    ) -> None:
        """Initialize the GitRepositoryManager.

        Args:
            git_bin: Git executable.
            state_dir: Root directory for mirrors and worktrees.
            command_timeout: Seconds after which a git command is killed,
                None for no limit.
        """
        self.git_bin = git_bin
        self.state_dir = Path(state_dir)
        self.command_timeout = command_timeout
        logger.debug("GitRepositoryManager initialized", git_bin=git_bin)

    def repo_root(self, repo_name: str) -> Path:
        return self.state_dir / "repos" / repo_name

    def mirror_path(self, repo_name: str) -> Path:
        return self.repo_root(repo_name) / "mirror.git"

    def worktrees_root(self, repo_name: str) -> Path:
        return self.repo_root(repo_name) / "worktrees"

    def worktree_path(self, repo_name: str, branch: str, slot: str) -> Path:
        return self.worktrees_root(repo_name) / worktree_dir_name(branch, slot)

    async def _run(
        self,
        args: list[str],
        operation: str,
        cwd: Path | None = None,
        repo: str | None = None,
        branch: str | None = None,
    ) -> str:
        """Run a git command and return its stripped stdout.

        Args:
            args: Arguments after the git executable.
            operation: Operation label for logs.
            cwd: Working directory.
            repo: Repository name for logs and errors.
            branch: Branch name for logs and errors.

        Returns:
            Standard output of the command.

        Raises:
            GitError: If git cannot be executed or exits with a non-zero status.
        """
        from git import Git
        from git.exc import CommandError

        command = [self.git_bin, *args]
        log = logger.bind(stage="git", operation=operation, repo=repo, branch=branch)
        log.debug("git.cmd.begin", command=" ".join(command), cwd=str(cwd) if cwd else None)

        def _execute() -> tuple[int, str, str]:
            return Git(str(cwd) if cwd else None).execute(
                command,
                with_extended_output=True,
                kill_after_timeout=self.command_timeout,
            )

        start = time.perf_counter()
        try:
            _, stdout, stderr = await asyncio.get_running_loop().run_in_executor(None, _execute)
        except CommandError as e:
            stderr = str(getattr(e, "stderr", "") or "").strip()
            log.error(
                "git.cmd.end",
                result="fail",
                duration_ms=int((time.perf_counter() - start) * 1000),
                status_code=getattr(e, "status", None),
                stderr=stderr,
                command=" ".join(command),
            )
            raise GitError(f"git {operation} failed: {stderr or e}", repo, branch) from e
        except OSError as e:
            log.error("git.cmd.end", result="fail", error=str(e), command=" ".join(command))
            raise GitError(f"failed to execute git: {e}", repo, branch) from e

        log.debug(
            "git.cmd.end",
            result="ok",
            duration_ms=int((time.perf_counter() - start) * 1000),
            stdout_tail=stdout.splitlines()[-1].strip() if stdout.strip() else "",
        )
        return stdout.strip()

    async def validate_binary(self) -> str:
        logger.info("git.binary_check.begin", stage="git", git_bin=self.git_bin)
        try:
            version = await self._run(["--version"], "binary_check")
        except GitError:
            logger.error("git.binary_check.end", stage="git", result="fail", git_bin=self.git_bin)
            raise GitError(f"binary '{self.git_bin}' is not available") from None

        logger.info("git.binary_check.end", stage="git", result="ok", version=version)
        return version

    async def ensure_mirror(self, repo: RepositoryConfig) -> Path:
        mirror = self.mirror_path(repo.name)
        if (mirror / "HEAD").exists():
            return mirror

        logger.info("git.ensure_mirror", stage="git", repo=repo.name, mirror=str(mirror))
        try:
            mirror.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise GitError(f"failed to create {mirror.parent}: {e}", repo.name) from e

        await self._run(["init", "--bare", str(mirror)], "ensure_mirror.init_bare", repo=repo.name)
        await self._run(
            ["--git-dir", str(mirror), "remote", "add", "origin", repo.url],
            "ensure_mirror.remote_add",
            repo=repo.name,
        )
        return mirror

    async def update(self, repo: RepositoryConfig) -> None:
        mirror = await self.ensure_mirror(repo)
        refspecs = [
            f"+refs/heads/{pattern.strip()}:refs/remotes/origin/{pattern.strip()}"
            for pattern in repo.branch_patterns
        ]
        if not refspecs:
            return

        start = time.perf_counter()
        logger.info("git.fetch.begin", stage="fetch", repo=repo.name, patterns=repo.branch_patterns)
        await self._run(
            [
                "--git-dir",
                str(mirror),
                "fetch",
                "--prune",
                "--no-tags",
                "--depth=1",
                "origin",
                *refspecs,
            ],
            "fetch",
            repo=repo.name,
        )
        logger.info(
            "git.fetch.end",
            stage="fetch",
            repo=repo.name,
            result="ok",
            duration_ms=int((time.perf_counter() - start) * 1000),
        )

    async def list_remote_branches(self, repo: RepositoryConfig) -> list[str]:
        """List branches present in the mirror's remote-tracking refs."""
        output = await self._run(
            [
                "--git-dir",
                str(self.mirror_path(repo.name)),
                "for-each-ref",
                "--format=%(refname:lstrip=3)",
                "refs/remotes/origin",
            ],
            "list_remote_branches",
            repo=repo.name,
        )
        branches = {line.strip() for line in output.splitlines()}
        branches.discard("")
        branches.discard("HEAD")
        return sorted(branches)

    async def resolve_branches(self, repo: RepositoryConfig) -> dict[str, str]:
        branches = await self.list_remote_branches(repo)
        if not branches:
            raise GitError("no fetched remote branches", repo.name)

        wanted: set[str] = set()
        for pattern in repo.branch_patterns:
            if is_glob_pattern(pattern):
                wanted.update(branch for branch in branches if fnmatchcase(branch, pattern))
            elif pattern in branches:
                wanted.add(pattern)

        if not wanted:
            raise GitError(
                f"branch patterns {repo.branch_patterns} matched no remote branches", repo.name
            )

        heads: dict[str, str] = {}
        for branch in sorted(wanted):
            heads[branch] = await self.resolve_branch(repo, branch)
        return heads

    async def resolve_branch(self, repo: RepositoryConfig, branch: str) -> str:
        return await self._run(
            [
                "--git-dir",
                str(self.mirror_path(repo.name)),
                "rev-parse",
                f"refs/remotes/origin/{branch}^{{commit}}",
            ],
            "resolve_branch",
            repo=repo.name,
            branch=branch,
        )

    async def prepare_worktree(
        self,
        repo: RepositoryConfig,
        branch: str,
        slot: str,
        commit: str,
    ) -> Path:
        mirror = self.mirror_path(repo.name)
        worktree = self.worktree_path(repo.name, branch, slot)
        try:
            worktree.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise GitError(f"failed to create {worktree.parent}: {e}", repo.name, branch) from e

        # A directory without a .git link is a leftover from an interrupted run.
        if worktree.exists() and not (worktree / ".git").exists():
            shutil.rmtree(worktree, ignore_errors=True)

        if not worktree.exists():
            await self._run(
                ["--git-dir", str(mirror), "worktree", "prune"],
                "prepare_worktree.prune",
                repo=repo.name,
                branch=branch,
            )
            await self._run(
                ["--git-dir", str(mirror), "worktree", "add", "--detach", str(worktree), commit],
                "prepare_worktree.add",
                repo=repo.name,
                branch=branch,
            )

        await self._run(
            ["checkout", "--detach", commit],
            "prepare_worktree.checkout",
            cwd=worktree,
            repo=repo.name,
            branch=branch,
        )
        await self._run(
            ["reset", "--hard", commit],
            "prepare_worktree.reset_hard",
            cwd=worktree,
            repo=repo.name,
            branch=branch,
        )
        await self._run(
            ["clean", "-ffdx"],
            "prepare_worktree.clean",
            cwd=worktree,
            repo=repo.name,
            branch=branch,
        )
        return worktree

    async def release_worktree(self, repo: RepositoryConfig, path: Path) -> None:
        mirror = self.mirror_path(repo.name)
        if path.exists():
            try:
                await self._run(
                    ["--git-dir", str(mirror), "worktree", "remove", "--force", str(path)],
                    "release_worktree.remove",
                    repo=repo.name,
                )
            except GitError:
                logger.warning("git.worktree_remove_failed", repo=repo.name, path=str(path))
            if path.exists():
                shutil.rmtree(path, ignore_errors=True)

        await self._run(
            ["--git-dir", str(mirror), "worktree", "prune"],
            "release_worktree.prune",
            repo=repo.name,
        )
