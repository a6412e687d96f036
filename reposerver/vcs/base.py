"""Abstract git collaborator interface.

The scheduler only talks to git through this interface. It never holds locks
itself; callers serialize mutations of one repository's mirror and worktrees.
"""

from abc import ABC, abstractmethod
from pathlib import Path

from reposerver.config.models import RepositoryConfig


class GitError(Exception):
    """Exception raised for git operation errors.

    Attributes:
        message: Explanation of the error.
        repository: Repository name, if applicable.
        branch: Branch name, if applicable.
    """

    def __init__(
        self,
        message: str,
        repository: str | None = None,
        branch: str | None = None,
    ) -> None:
        """Initialize the GitError.

        Args:
            message: Explanation of the error.
            repository: Repository name.
            branch: Branch name.
        """
        self.message = message
        self.repository = repository
        self.branch = branch

        context = []
        if repository:
            context.append(f"repo={repository}")
        if branch:
            context.append(f"branch={branch}")
        full_message = f"{message} ({', '.join(context)})" if context else message
        super().__init__(full_message)


class GitCollaborator(ABC):
    """Operations the scheduler needs from git."""

    @abstractmethod
    async def validate_binary(self) -> str:
        """Check that the git executable is usable.

        Returns:
            The version string reported by git.

        Raises:
            GitError: If git cannot be executed.
        """
        ...

    @abstractmethod
    async def ensure_mirror(self, repo: RepositoryConfig) -> Path:
        """Create the local mirror of a repository if it does not exist.

        Args:
            repo: Repository configuration.

        Returns:
            Path to the mirror.

        Raises:
            GitError: If the mirror cannot be created.
        """
        ...

    @abstractmethod
    async def update(self, repo: RepositoryConfig) -> None:
        """Fetch the configured branch patterns from the remote.

        Args:
            repo: Repository configuration.

        Raises:
            GitError: If the fetch fails.
        """
        ...

    @abstractmethod
    async def resolve_branches(self, repo: RepositoryConfig) -> dict[str, str]:
        """Resolve every fetched branch matching a configured policy.

        Args:
            repo: Repository configuration.

        Returns:
            Mapping of branch name to head commit id.

        Raises:
            GitError: If branches cannot be listed or nothing matches.
        """
        ...

    @abstractmethod
    async def resolve_branch(self, repo: RepositoryConfig, branch: str) -> str:
        """Resolve a single fetched branch to its head commit id.

        Raises:
            GitError: If the branch is unknown.
        """
        ...

    @abstractmethod
    async def prepare_worktree(
        self,
        repo: RepositoryConfig,
        branch: str,
        slot: str,
        commit: str,
    ) -> Path:
        """Check out a commit into a clean, detached worktree.

        Args:
            repo: Repository configuration.
            branch: Branch the commit belongs to.
            slot: Discriminator so concurrent policies of one branch get
                separate worktrees.
            commit: Commit id to check out.

        Returns:
            Path to the worktree.

        Raises:
            GitError: If the worktree cannot be prepared.
        """
        ...

    @abstractmethod
    async def release_worktree(self, repo: RepositoryConfig, path: Path) -> None:
        """Remove a worktree created by :meth:`prepare_worktree`.

        Raises:
            GitError: If the worktree cannot be removed.
        """
        ...
