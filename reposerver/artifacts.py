"""Deletion of artifacts belonging to pruned runs.

When retention drops a run, the scheduler asks an :class:`ArtifactPruner` to
delete whatever the indexer produced for it. The service does not know the
artifact format, so the default implementation delegates to an operator
supplied prune hook. Failures are reported as :class:`ArtifactError` and never
roll back the committed state.
"""

from abc import ABC, abstractmethod
from pathlib import Path

import structlog

from reposerver.config.models import HookConfig
from reposerver.pipeline.hooks import HookContext, HookError, run_hook
from reposerver.retention.models import RetainedRun

logger = structlog.get_logger(__name__)


class ArtifactError(Exception):
    """Exception raised when a pruned run's artifacts cannot be deleted.

    Attributes:
        message: Explanation of the error.
        run_id: Identifier of the pruned run.
    """

    def __init__(self, message: str, run_id: str) -> None:
        self.message = message
        self.run_id = run_id
        super().__init__(f"{message} (run_id={run_id})")


class ArtifactPruner(ABC):
    """Deletes the artifacts of runs dropped from retention."""

    @abstractmethod
    async def delete_run(
        self,
        repository: str,
        branch: str,
        policy_id: str,
        run: RetainedRun,
    ) -> None:
        """Delete the artifacts of a pruned run.

        Args:
            repository: Repository name.
            branch: Branch name.
            policy_id: Policy the run belonged to.
            run: The pruned run.

        Raises:
            ArtifactError: If the artifacts cannot be deleted.
        """
        ...


class LoggingArtifactPruner(ArtifactPruner):
    """Records prune requests without deleting anything."""

    def __init__(self) -> None:
        self.requests: list[tuple[str, str, str, RetainedRun]] = []

    async def delete_run(
        self,
        repository: str,
        branch: str,
        policy_id: str,
        run: RetainedRun,
    ) -> None:
        self.requests.append((repository, branch, policy_id, run))
        logger.info(
            "artifacts.prune",
            stage="prune",
            repo=repository,
            branch=branch,
            policy=policy_id,
            run_id=run.run_id,
            commit=run.commit,
            result="skipped",
        )


class HookArtifactPruner(ArtifactPruner):
    """Runs the configured prune hook once per pruned run.

    The hook receives the usual ``REPOSERVER_*`` variables, with
    ``REPOSERVER_COMMIT`` set to the pruned run's commit and
    ``REPOSERVER_RUN_ID`` identifying the run.

    Attributes:
        hook: The prune hook.
        state_dir: State directory, also the hook's working directory.
        shell: Shell used to run the hook.
    """

    def __init__(self, hook: HookConfig, state_dir: Path, shell: str = "sh") -> None:
        self.hook = hook
        self.state_dir = state_dir
        self.shell = shell

    async def delete_run(
        self,
        repository: str,
        branch: str,
        policy_id: str,
        run: RetainedRun,
    ) -> None:
        context = HookContext(
            repository=repository,
            branch=branch,
            commit=run.commit,
            worktree=self.state_dir,
            state_dir=self.state_dir,
            policy_id=policy_id,
            run_id=run.run_id,
        )
        try:
            await run_hook(self.hook, "prune", 1, context, shell=self.shell)
        except HookError as e:
            raise ArtifactError(f"prune hook failed: {e}", run.run_id) from e
