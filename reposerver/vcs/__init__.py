"""Git mirrors, branch resolution and worktrees.

Example:
    >>> from reposerver.vcs import GitRepositoryManager
    >>> git = GitRepositoryManager(git_bin="git", state_dir=Path("/var/lib/reposerver"))
    >>> await git.update(repo)
    >>> heads = await git.resolve_branches(repo)
"""

from .base import GitCollaborator, GitError
from .repo import GitRepositoryManager, sanitize_name, worktree_dir_name

__all__ = [
    "GitCollaborator",
    "GitError",
    "GitRepositoryManager",
    "sanitize_name",
    "worktree_dir_name",
]
