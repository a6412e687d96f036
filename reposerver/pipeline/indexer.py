"""Indexer subprocess invocation.

The indexer is an external program that consumes a prepared worktree. It is
invoked as::

    <indexer_bin> index --repo <worktree> --repository <name> --branch <branch>
        --commit <commit> <global args...> <repo args...> <policy args...>

The argument groups are appended in that order so more specific settings can
override more general ones.
"""

from collections.abc import Sequence
from pathlib import Path

import structlog
from pydantic import Field

from .process import ProcessResult, ProcessTimeoutError, run_process, summarize_output

logger = structlog.get_logger(__name__)


class IndexerError(Exception):
    """Exception raised when an indexer run fails.

    Attributes:
        message: Explanation of the error.
        repository: Repository name.
        branch: Branch name.
        exit_code: Exit status of the indexer, if it ran to completion.
        stdout: Captured standard output.
        stderr: Captured standard error.
    """

    def __init__(
        self,
        message: str,
        repository: str,
        branch: str,
        exit_code: int | None = None,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        """Initialize the IndexerError.

        Args:
            message: Explanation of the error.
            repository: Repository name.
            branch: Branch name.
            exit_code: Exit status of the indexer.
            stdout: Captured standard output.
            stderr: Captured standard error.
        """
        self.message = message
        self.repository = repository
        self.branch = branch
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr

        super().__init__(f"{message} (repo={repository}, branch={branch})")


class IndexerResult(ProcessResult):
    """Result of a successful indexer run."""

    argv: list[str] = Field(default_factory=list, description="Executed command line")


def build_indexer_command(
    indexer_bin: str,
    worktree: Path,
    repository: str,
    branch: str,
    commit: str,
    global_args: Sequence[str] = (),
    repo_args: Sequence[str] = (),
    policy_args: Sequence[str] = (),
) -> list[str]:
    """Build the indexer command line.

    Args:
        indexer_bin: Indexer executable.
        worktree: Prepared worktree path.
        repository: Repository name.
        branch: Branch name.
        commit: Commit checked out in the worktree.
        global_args: Global args, appended first.
        repo_args: Repository args, appended second.
        policy_args: Branch and policy args, appended last.

    Returns:
        The argv list.
    """
    return [
        indexer_bin,
        "index",
        "--repo",
        str(worktree),
        "--repository",
        repository,
        "--branch",
        branch,
        "--commit",
        commit,
        *global_args,
        *repo_args,
        *policy_args,
    ]


async def run_indexer(
    indexer_bin: str,
    global_args: Sequence[str],
    repo_args: Sequence[str],
    policy_args: Sequence[str],
    repository: str,
    branch: str,
    commit: str,
    worktree: Path,
    timeout: float | None = None,
) -> IndexerResult:
    """Run the indexer against a prepared worktree.

    Args:
        indexer_bin: Indexer executable.
        global_args: Global indexer args.
        repo_args: Repository indexer args.
        policy_args: Branch and policy indexer args.
        repository: Repository name.
        branch: Branch name.
        commit: Commit checked out in the worktree.
        worktree: Worktree path.
        timeout: Seconds after which the indexer is killed, None for no limit.

    Returns:
        IndexerResult with the trimmed output and duration.

    Raises:
        IndexerError: If the indexer cannot be started, times out or exits
            with a non-zero status.
    """
    argv = build_indexer_command(
        indexer_bin,
        worktree,
        repository,
        branch,
        commit,
        global_args,
        repo_args,
        policy_args,
    )
    log = logger.bind(stage="index", repo=repository, branch=branch, commit=commit)
    log.info("indexer.begin", argv=argv)

    try:
        output = await run_process(argv, cwd=worktree, timeout=timeout)
    except ProcessTimeoutError:
        log.error("indexer.end", result="fail", reason="timeout", timeout_secs=timeout)
        raise IndexerError(
            f"indexer timed out after {timeout:g}s", repository, branch
        ) from None
    except OSError as e:
        log.error("indexer.end", result="fail", reason="spawn", error=str(e))
        raise IndexerError(f"failed to execute indexer: {e}", repository, branch) from e

    if not output.success:
        log.error(
            "indexer.end",
            result="fail",
            duration_ms=output.duration_ms,
            status_code=output.exit_code,
            stderr=output.stderr,
        )
        raise IndexerError(
            summarize_output(
                f"indexer failed with status {output.exit_code}", output.stdout, output.stderr
            ),
            repository,
            branch,
            exit_code=output.exit_code,
            stdout=output.stdout,
            stderr=output.stderr,
        )

    log.info(
        "indexer.end",
        result="ok",
        duration_ms=output.duration_ms,
        status_code=output.exit_code,
    )

    return IndexerResult(**output.model_dump(), argv=argv)
