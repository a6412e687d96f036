"""Hook command execution.

Hooks are shell commands configured around an indexing attempt (pre-index and
post-index), after a full sweep (finish hook) and for deleting pruned runs
(prune hook). Each invocation receives identifying values through fixed
``REPOSERVER_*`` environment variables and is bracketed by ``hook.begin`` /
``hook.end`` log events.
"""

from pathlib import Path

import structlog
from pydantic import BaseModel, ConfigDict, Field

from reposerver.config.models import HookConfig

from .process import ProcessResult, ProcessTimeoutError, run_process

logger = structlog.get_logger(__name__)

ENV_REPO = "REPOSERVER_REPO"
ENV_BRANCH = "REPOSERVER_BRANCH"
ENV_COMMIT = "REPOSERVER_COMMIT"
ENV_WORKTREE = "REPOSERVER_WORKTREE"
ENV_STATE_DIR = "REPOSERVER_STATE_DIR"
ENV_POLICY = "REPOSERVER_POLICY"
ENV_RUN_ID = "REPOSERVER_RUN_ID"


class HookError(Exception):
    """Base exception for hook failures.

    Attributes:
        message: Explanation of the error.
        hook_type: Hook label (``pre``, ``post``, ``global_finish``, ``prune``).
        hook_index: 1-based position of the hook in its list.
        command: The hook's shell command.
    """

    def __init__(self, message: str, hook_type: str, hook_index: int, command: str) -> None:
        """Initialize the HookError.

        Args:
            message: Explanation of the error.
            hook_type: Hook label.
            hook_index: 1-based position of the hook.
            command: The hook's shell command.
        """
        self.message = message
        self.hook_type = hook_type
        self.hook_index = hook_index
        self.command = command
        self.stdout = ""
        self.stderr = ""

        super().__init__(f"{message} ({hook_type} hook #{hook_index}: {command})")


class HookTimeoutError(HookError):
    """Raised when a hook exceeded its timeout and was killed."""

    def __init__(self, hook_type: str, hook_index: int, command: str, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"hook timed out after {timeout:g}s", hook_type, hook_index, command)


class HookFailedError(HookError):
    """Raised when a hook exited with a non-zero status."""

    def __init__(
        self,
        hook_type: str,
        hook_index: int,
        command: str,
        exit_code: int | None,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        super().__init__(f"hook failed with status {exit_code}", hook_type, hook_index, command)
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr


class HookContext(BaseModel):
    """Identifying values passed to a hook through its environment.

    Attributes:
        repository: Repository name.
        branch: Branch name.
        commit: Resolved commit id.
        worktree: Absolute worktree path.
        state_dir: Absolute state directory path.
        policy_id: Policy the attempt runs under, if any.
        run_id: Run identifier, set for prune hooks.
    """

    model_config = ConfigDict(frozen=True)

    repository: str = Field(..., description="Repository name")
    branch: str = Field(..., description="Branch name")
    commit: str = Field(..., description="Commit id")
    worktree: Path = Field(..., description="Worktree path")
    state_dir: Path = Field(..., description="State directory")
    policy_id: str | None = Field(None, description="Policy identifier")
    run_id: str | None = Field(None, description="Run identifier")

    def to_env(self) -> dict[str, str]:
        """Build the hook environment.

        Returns:
            Mapping of ``REPOSERVER_*`` variables. The five identifying
            variables are always present.
        """
        env = {
            ENV_REPO: self.repository,
            ENV_BRANCH: self.branch,
            ENV_COMMIT: self.commit,
            ENV_WORKTREE: str(self.worktree.resolve()),
            ENV_STATE_DIR: str(self.state_dir.resolve()),
        }
        if self.policy_id is not None:
            env[ENV_POLICY] = self.policy_id
        if self.run_id is not None:
            env[ENV_RUN_ID] = self.run_id
        return env


class HookResult(ProcessResult):
    """Result of a successful hook run."""

    hook_type: str = Field(..., description="Hook label")
    hook_index: int = Field(..., description="1-based hook position")


async def run_hook(
    hook: HookConfig,
    hook_type: str,
    hook_index: int,
    context: HookContext,
    shell: str = "sh",
) -> HookResult:
    """Run a hook command through the shell.

    Args:
        hook: Hook configuration.
        hook_type: Hook label used in logs and errors.
        hook_index: 1-based position of the hook in its list.
        context: Identifying values exported to the hook environment.
        shell: Shell executable, invoked as ``<shell> -c <command>``.

    Returns:
        HookResult with exit code, trimmed output and duration.

    Raises:
        HookTimeoutError: If the hook exceeded its timeout.
        HookFailedError: If the hook exited with a non-zero status.
        HookError: If the shell could not be started.
    """
    log = logger.bind(
        stage="hook",
        hook_type=hook_type,
        hook_index=hook_index,
        repo=context.repository,
        branch=context.branch,
        commit=context.commit,
        command=hook.command,
    )
    log.info("hook.begin")

    timeout = hook.timeout.total_seconds() if hook.timeout is not None else None

    try:
        output = await run_process(
            [shell, "-c", hook.command],
            env=context.to_env(),
            cwd=context.worktree,
            timeout=timeout,
        )
    except ProcessTimeoutError:
        log.error("hook.end", result="fail", timeout_secs=timeout, reason="timeout")
        raise HookTimeoutError(hook_type, hook_index, hook.command, timeout or 0.0) from None
    except OSError as e:
        log.error("hook.end", result="fail", error=str(e), reason="spawn")
        raise HookError(
            f"failed to execute hook: {e}", hook_type, hook_index, hook.command
        ) from e

    if not output.success:
        log.error(
            "hook.end",
            result="fail",
            duration_ms=output.duration_ms,
            status_code=output.exit_code,
            stderr=output.stderr,
        )
        raise HookFailedError(
            hook_type,
            hook_index,
            hook.command,
            output.exit_code,
            stdout=output.stdout,
            stderr=output.stderr,
        )

    log.info(
        "hook.end",
        result="ok",
        duration_ms=output.duration_ms,
        status_code=output.exit_code,
        stdout=output.stdout,
        stderr=output.stderr,
    )

    return HookResult(
        **output.model_dump(),
        hook_type=hook_type,
        hook_index=hook_index,
    )
