"""Tests for the vcs module.

These tests drive GitRepositoryManager against a real local repository over a
file:// URL.
"""

import subprocess
from datetime import timedelta

import pytest

from reposerver.config import BranchPolicy, RepositoryConfig
from reposerver.vcs import GitError, GitRepositoryManager, sanitize_name, worktree_dir_name


def _config(url, *patterns):
    return RepositoryConfig(
        name="upstream",
        url=url,
        interval=timedelta(minutes=5),
        policies=[BranchPolicy(branch=pattern) for pattern in patterns],
    )


def _commit(repo_path, filename, content, message):
    (repo_path / filename).write_text(content)
    for args in (["add", "."], ["commit", "-m", message]):
        subprocess.run(["git", *args], cwd=repo_path, capture_output=True, check=True)


@pytest.fixture
def manager(tmp_path):
    """Git manager rooted in a fresh state directory."""
    return GitRepositoryManager(state_dir=tmp_path / "state")


@pytest.fixture
def upstream(temp_git_repo):
    """Repository config pointing at the local upstream repository."""
    return _config(temp_git_repo.as_uri(), "main", "feature/*")


def test_sanitize_name():
    """Test path-unsafe characters are replaced."""
    assert sanitize_name("feature/login") == "feature_login"
    assert sanitize_name("snapshot:3600") == "snapshot_3600"
    assert sanitize_name("v1.2-rc_1") == "v1.2-rc_1"


def test_worktree_names_are_distinct():
    """Test branch and slot pairs that sanitize alike get separate directories."""
    assert worktree_dir_name("rel/1", "live") != worktree_dir_name("rel_1", "live")
    assert worktree_dir_name("a/b", "live") != worktree_dir_name("a_b", "live")
    assert worktree_dir_name("main", "live") != worktree_dir_name("main", "snapshot:3600")
    assert worktree_dir_name("rel/1", "live") == worktree_dir_name("rel/1", "live")
    assert worktree_dir_name("rel/1", "live").startswith("rel_1--live--")


def test_worktree_paths_are_distinct(tmp_path):
    """Test the manager never maps two branches to one worktree path."""
    manager = GitRepositoryManager(state_dir=tmp_path)
    assert manager.worktree_path("demo", "rel/1", "live") != manager.worktree_path(
        "demo", "rel_1", "live"
    )


# =============================================================================
# Mirror Tests
# =============================================================================


class TestMirror:
    """Tests for binary checks, mirrors and fetching."""

    @pytest.mark.asyncio
    async def test_validate_binary(self, manager):
        """Test the git version is reported."""
        assert (await manager.validate_binary()).startswith("git version")

    @pytest.mark.asyncio
    async def test_missing_binary(self, tmp_path):
        """Test an unusable git executable raises GitError."""
        manager = GitRepositoryManager(git_bin="/no/such/git", state_dir=tmp_path)
        with pytest.raises(GitError, match="/no/such/git"):
            await manager.validate_binary()

    @pytest.mark.asyncio
    async def test_ensure_mirror_is_idempotent(self, manager, upstream):
        """Test the mirror is created once and reused."""
        first = await manager.ensure_mirror(upstream)
        second = await manager.ensure_mirror(upstream)
        assert first == second == manager.mirror_path("upstream")
        assert (first / "HEAD").exists()

    @pytest.mark.asyncio
    async def test_resolve_branches(self, manager, upstream, temp_git_repo, resolve_ref):
        """Test exact and glob patterns resolve to the upstream heads."""
        await manager.update(upstream)
        heads = await manager.resolve_branches(upstream)

        assert heads == {
            "feature/login": resolve_ref(temp_git_repo, "feature/login"),
            "main": resolve_ref(temp_git_repo, "main"),
        }

    @pytest.mark.asyncio
    async def test_update_sees_new_commits(self, manager, upstream, temp_git_repo, resolve_ref):
        """Test a later fetch picks up a pushed commit."""
        await manager.update(upstream)
        before = await manager.resolve_branch(upstream, "main")

        _commit(temp_git_repo, "CHANGELOG.md", "v2\n", "Second commit")
        await manager.update(upstream)
        after = await manager.resolve_branch(upstream, "main")

        assert after != before
        assert after == resolve_ref(temp_git_repo, "main")

    @pytest.mark.asyncio
    async def test_unmatched_glob(self, manager, temp_git_repo):
        """Test patterns that match nothing raise GitError."""
        repo = _config(temp_git_repo.as_uri(), "hotfix/*")
        await manager.update(repo)
        with pytest.raises(GitError, match="no fetched remote branches"):
            await manager.resolve_branches(repo)

    @pytest.mark.asyncio
    async def test_unreachable_remote(self, manager, tmp_path):
        """Test fetching from a missing remote raises GitError."""
        repo = _config((tmp_path / "missing").as_uri(), "main")
        with pytest.raises(GitError, match="fetch failed"):
            await manager.update(repo)


# =============================================================================
# Worktree Tests
# =============================================================================


class TestWorktrees:
    """Tests for prepare_worktree and release_worktree."""

    @pytest.mark.asyncio
    async def test_prepare_checks_out_commit(self, manager, upstream, temp_git_repo, resolve_ref):
        """Test the worktree holds the requested commit."""
        await manager.update(upstream)
        commit = await manager.resolve_branch(upstream, "feature/login")

        path = await manager.prepare_worktree(upstream, "feature/login", "live", commit)

        assert path == manager.worktree_path("upstream", "feature/login", "live")
        assert (path / "login.py").exists()
        assert resolve_ref(path) == commit

    @pytest.mark.asyncio
    async def test_prepare_resets_dirty_worktree(self, manager, upstream):
        """Test reusing a worktree discards local changes and untracked files."""
        await manager.update(upstream)
        commit = await manager.resolve_branch(upstream, "main")
        path = await manager.prepare_worktree(upstream, "main", "live", commit)

        (path / "README.md").write_text("modified\n")
        (path / "build.out").write_text("artifact\n")
        again = await manager.prepare_worktree(upstream, "main", "live", commit)

        assert again == path
        assert (path / "README.md").read_text() == "# upstream\n"
        assert not (path / "build.out").exists()

    @pytest.mark.asyncio
    async def test_slots_are_separate(self, manager, upstream):
        """Test different slots of one branch get their own worktrees."""
        await manager.update(upstream)
        commit = await manager.resolve_branch(upstream, "main")

        live = await manager.prepare_worktree(upstream, "main", "live", commit)
        snapshot = await manager.prepare_worktree(upstream, "main", "snapshot:3600", commit)

        assert live != snapshot
        assert (live / "README.md").exists()
        assert (snapshot / "README.md").exists()

    @pytest.mark.asyncio
    async def test_leftover_directory_is_replaced(self, manager, upstream):
        """Test a stale directory without git metadata is recreated."""
        await manager.update(upstream)
        commit = await manager.resolve_branch(upstream, "main")
        path = manager.worktree_path("upstream", "main", "live")
        path.mkdir(parents=True)
        (path / "junk").write_text("x")

        await manager.prepare_worktree(upstream, "main", "live", commit)

        assert not (path / "junk").exists()
        assert (path / "README.md").exists()

    @pytest.mark.asyncio
    async def test_release(self, manager, upstream):
        """Test a released worktree is removed and can be prepared again."""
        await manager.update(upstream)
        commit = await manager.resolve_branch(upstream, "main")
        path = await manager.prepare_worktree(upstream, "main", "live", commit)

        await manager.release_worktree(upstream, path)
        assert not path.exists()

        path = await manager.prepare_worktree(upstream, "main", "live", commit)
        assert (path / "README.md").exists()

    @pytest.mark.asyncio
    async def test_unknown_commit(self, manager, upstream):
        """Test preparing a commit the mirror does not have raises GitError."""
        await manager.update(upstream)
        with pytest.raises(GitError):
            await manager.prepare_worktree(upstream, "main", "live", "0" * 40)

    @pytest.mark.asyncio
    async def test_branches_that_sanitize_alike(self, manager, temp_git_repo):
        """Test branches whose names sanitize to the same text keep their own checkouts."""
        for branch in ("rel/1", "rel_1"):
            subprocess.run(
                ["git", "checkout", "-b", branch, "main"],
                cwd=temp_git_repo,
                capture_output=True,
                check=True,
            )
            _commit(temp_git_repo, "name.txt", f"{branch}\n", f"Mark {branch}")
        repo = _config(temp_git_repo.as_uri(), "rel*")

        await manager.update(repo)
        heads = await manager.resolve_branches(repo)
        paths = {
            branch: await manager.prepare_worktree(repo, branch, "live", commit)
            for branch, commit in heads.items()
        }

        assert sorted(heads) == ["rel/1", "rel_1"]
        assert paths["rel/1"] != paths["rel_1"]
        assert (paths["rel/1"] / "name.txt").read_text() == "rel/1\n"
        assert (paths["rel_1"] / "name.txt").read_text() == "rel_1\n"
