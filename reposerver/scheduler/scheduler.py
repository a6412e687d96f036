"""Repository polling scheduler.

The scheduler drives every configured repository through poll cycles. A cycle
fetches the repository, resolves its branches, expands them into work units
and runs each unit through the indexing pipeline::

    prepare worktree -> pre hooks -> indexer -> post hooks -> commit state -> prune

A failure at any stage leaves the unit's stored state untouched; the unit is
retried on the next cycle. Repository-level failures (fetch, resolve) skip
only that repository.

Example:
    >>> async with Scheduler(config) as scheduler:
    ...     await scheduler.validate_runtime()
    ...     await scheduler.run_once()
"""

import asyncio
import contextlib
import signal
import time
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from types import TracebackType

import structlog

from reposerver.artifacts import (
    ArtifactError,
    ArtifactPruner,
    HookArtifactPruner,
    LoggingArtifactPruner,
)
from reposerver.config.models import AppConfig, HookConfig, RepositoryConfig
from reposerver.pipeline.hooks import HookContext, HookError, run_hook
from reposerver.pipeline.indexer import IndexerError, run_indexer
from reposerver.pipeline.process import ProcessTimeoutError, run_process
from reposerver.retention.engine import after_success, describe_decision, should_run
from reposerver.retention.models import PolicyState, RetainedRun
from reposerver.state.base import StateError, StateStore
from reposerver.state.store import JsonFileStateStore
from reposerver.vcs.base import GitCollaborator, GitError
from reposerver.vcs.repo import GitRepositoryManager

from .models import CycleStats, RunOutcome, RunRecord, Stage, WorkUnit
from .units import build_units

logger = structlog.get_logger(__name__)

FINISH_HOOK_REPOSITORY = "__global__"
FINISH_HOOK_BRANCH = "__sweep__"
FINISH_HOOK_COMMIT = "__none__"


def utc_now() -> datetime:
    return datetime.now(UTC)


class RuntimeValidationError(Exception):
    """Exception raised when the runtime environment is unusable at startup.

    Attributes:
        message: Explanation of the error.
        repository: Repository that failed validation, if applicable.
    """

    def __init__(self, message: str, repository: str | None = None) -> None:
        """Initialize the RuntimeValidationError.

        Args:
            message: Explanation of the error.
            repository: Repository that failed validation.
        """
        self.message = message
        self.repository = repository

        full_message = f"{message} (repo={repository})" if repository else message
        super().__init__(full_message)


class _UnitFailure(Exception):
    """Internal signal carrying the failed stage out of the pipeline."""

    def __init__(self, stage: Stage, error: Exception) -> None:
        self.stage = stage
        self.error = error
        super().__init__(str(error))


class Scheduler:
    """Polls repositories and drives the indexing pipeline.

    Attributes:
        config: Application configuration.
        git: Git collaborator.
        state_store: Durable policy bookkeeping.
        pruner: Deletes artifacts of pruned runs.
        clock: Returns the current time, timezone aware.
        last_runs: Most recent RunRecord per unit key.
    """

    def __init__(
        self,
        config: AppConfig,
        git: GitCollaborator | None = None,
        state_store: StateStore | None = None,
        pruner: ArtifactPruner | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the Scheduler.

        Args:
            config: Application configuration.
            git: Git collaborator. Defaults to a GitRepositoryManager rooted at
                the state directory.
            state_store: State store. Defaults to the JSON state file.
            pruner: Artifact pruner. Defaults to running the prune hook when
                one is configured, otherwise prune requests are only logged.
            clock: Time source, defaults to the current UTC time.
        """
        settings = config.global_config
        self.config = config
        self.git = git or GitRepositoryManager(
            git_bin=settings.git_bin, state_dir=settings.state_dir
        )
        self.state_store = state_store or JsonFileStateStore(settings.state_file)
        if pruner is not None:
            self.pruner = pruner
        elif settings.prune_hook is not None:
            self.pruner = HookArtifactPruner(
                settings.prune_hook, settings.state_dir, settings.shell
            )
        else:
            self.pruner = LoggingArtifactPruner()
        self.clock = clock or utc_now

        self.last_runs: dict[str, RunRecord] = {}

        self._repo_semaphore = asyncio.Semaphore(settings.max_repo_concurrency)
        self._unit_semaphore = asyncio.Semaphore(settings.max_concurrent_units)
        self._cycle_locks: dict[str, asyncio.Lock] = {}
        self._git_locks: dict[str, asyncio.Lock] = {}
        self._stop_event = asyncio.Event()
        self._sweep_done: set[str] = set()
        self._sweep_id = 1

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def open(self) -> None:
        """Create the state directory and open the state store.

        Raises:
            StateError: If the state cannot be loaded.
        """
        try:
            self.config.global_config.state_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StateError(f"failed to create state directory: {e}") from e
        await self.state_store.open()

    async def close(self) -> None:
        await self.state_store.close()

    async def __aenter__(self) -> "Scheduler":
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    def stop(self) -> None:
        """Ask :meth:`run_forever` to stop."""
        self._stop_event.set()

    def _cycle_lock(self, repo_name: str) -> asyncio.Lock:
        return self._cycle_locks.setdefault(repo_name, asyncio.Lock())

    def _git_lock(self, repo_name: str) -> asyncio.Lock:
        return self._git_locks.setdefault(repo_name, asyncio.Lock())

    # =========================================================================
    # Startup validation
    # =========================================================================

    async def validate_runtime(self) -> None:
        """Check binaries and every repository before serving.

        Verifies the git and indexer executables, then for each repository
        creates the mirror, fetches and resolves branches.

        Raises:
            RuntimeValidationError: On the first failing check.
        """
        settings = self.config.global_config
        start = time.perf_counter()
        logger.info(
            "startup.runtime_validation.begin",
            stage="startup",
            repo_count=len(self.config.repos),
        )

        try:
            await self.git.validate_binary()
        except GitError as e:
            raise RuntimeValidationError(f"git binary check failed: {e}") from e

        await self._validate_indexer_binary(settings.indexer_bin)

        for repo in self.config.repos:
            log = logger.bind(stage="startup", repo=repo.name)
            log.info("repo.validate.begin")
            try:
                async with self._git_lock(repo.name):
                    await self.git.ensure_mirror(repo)
                    await self.git.update(repo)
                    heads = await self.git.resolve_branches(repo)
            except GitError as e:
                log.error("repo.validate.end", result="fail", error=str(e))
                raise RuntimeValidationError(
                    f"repository validation failed: {e}", repository=repo.name
                ) from e
            log.info("repo.validate.end", result="ok", branch_count=len(heads))

        logger.info(
            "startup.runtime_validation.end",
            stage="startup",
            result="ok",
            duration_ms=int((time.perf_counter() - start) * 1000),
        )

    async def _validate_indexer_binary(self, indexer_bin: str) -> None:
        logger.info("startup.binary_check.begin", stage="startup", binary=indexer_bin)
        try:
            result = await run_process([indexer_bin, "--version"], timeout=30)
        except (OSError, ProcessTimeoutError) as e:
            logger.error(
                "startup.binary_check.end",
                stage="startup",
                binary=indexer_bin,
                result="fail",
                error=str(e),
            )
            raise RuntimeValidationError(f"binary '{indexer_bin}' is not available: {e}") from e

        if not result.success:
            logger.error(
                "startup.binary_check.end",
                stage="startup",
                binary=indexer_bin,
                result="fail",
                status_code=result.exit_code,
            )
            raise RuntimeValidationError(
                f"binary '{indexer_bin}' exited with status {result.exit_code}"
            )
        logger.info("startup.binary_check.end", stage="startup", binary=indexer_bin, result="ok")

    # =========================================================================
    # Run modes
    # =========================================================================

    async def run_once(self) -> list[CycleStats]:
        """Run one cycle for every repository, then the finish hook.

        Returns:
            Cycle summaries in repository configuration order.
        """
        logger.info(
            "startup.ready",
            stage="startup",
            mode="once",
            repo_count=len(self.config.repos),
        )
        stats = await asyncio.gather(
            *(self.run_repo_cycle(repo) for repo in self.config.repos)
        )
        await self.run_finish_hook("once", 1)
        return list(stats)

    async def run_forever(self) -> None:
        """Poll every repository on its own interval until stopped.

        Stops on SIGINT, SIGTERM or :meth:`stop`. In-flight work is cancelled,
        which kills and reaps any running hook or indexer process.
        """
        logger.info(
            "startup.ready",
            stage="startup",
            mode="forever",
            repo_count=len(self.config.repos),
        )

        loop = asyncio.get_running_loop()
        installed: list[signal.Signals] = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.add_signal_handler(sig, self._on_signal, sig)
                installed.append(sig)

        tasks = [
            asyncio.create_task(self._repo_loop(repo), name=f"repo:{repo.name}")
            for repo in self.config.repos
        ]
        try:
            await self._stop_event.wait()
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            for sig in installed:
                loop.remove_signal_handler(sig)
            logger.info("scheduler.stopped", stage="shutdown")

    def _on_signal(self, sig: signal.Signals) -> None:
        logger.info("startup.shutdown", stage="startup", signal=sig.name)
        self.stop()

    async def _repo_loop(self, repo: RepositoryConfig) -> None:
        interval = repo.interval.total_seconds()
        while not self._stop_event.is_set():
            try:
                await self.run_repo_cycle(repo)
            except Exception:
                logger.exception("cycle.crashed", stage="cycle", repo=repo.name)
            await self._mark_swept(repo.name)
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)

    async def _mark_swept(self, repo_name: str) -> None:
        self._sweep_done.add(repo_name)
        if len(self._sweep_done) < len(self.config.repos):
            return
        sweep_id = self._sweep_id
        self._sweep_done.clear()
        self._sweep_id += 1
        await self.run_finish_hook("forever", sweep_id)

    async def run_finish_hook(self, mode: str, sweep_id: int) -> None:
        """Run the global finish hook, if configured. Failures are logged only.

        Args:
            mode: ``once`` or ``forever``.
            sweep_id: Sequence number of the completed sweep.
        """
        settings = self.config.global_config
        hook = settings.finish_hook
        if hook is None:
            return

        start = time.perf_counter()
        log = logger.bind(stage="global_hook", mode=mode, sweep_id=sweep_id)
        log.info("global.finish_hook.begin", command=hook.command)
        context = HookContext(
            repository=FINISH_HOOK_REPOSITORY,
            branch=FINISH_HOOK_BRANCH,
            commit=FINISH_HOOK_COMMIT,
            worktree=settings.state_dir,
            state_dir=settings.state_dir,
        )
        try:
            await run_hook(hook, "global_finish", 1, context, shell=settings.shell)
        except HookError as e:
            log.error(
                "global.finish_hook.end",
                result="fail",
                duration_ms=int((time.perf_counter() - start) * 1000),
                error=str(e),
            )
            return
        log.info(
            "global.finish_hook.end",
            result="ok",
            duration_ms=int((time.perf_counter() - start) * 1000),
        )

    # =========================================================================
    # Repository cycle
    # =========================================================================

    async def run_repo_cycle(self, repo: RepositoryConfig) -> CycleStats:
        """Run one poll cycle for a repository.

        Cycles of one repository never overlap. Fetch and resolve failures
        skip the repository for this cycle.

        Args:
            repo: Repository configuration.

        Returns:
            Summary of the cycle.
        """
        stats = CycleStats(repository=repo.name)
        log = logger.bind(stage="cycle", repo=repo.name)

        async with self._cycle_lock(repo.name), self._repo_semaphore:
            start = time.perf_counter()
            log.info("cycle.begin")

            try:
                async with self._git_lock(repo.name):
                    await self.git.update(repo)
                    heads = await self.git.resolve_branches(repo)
            except GitError as e:
                stats.error = str(e)
                log.error(
                    "cycle.end",
                    result="fail",
                    duration_ms=int((time.perf_counter() - start) * 1000),
                    error=str(e),
                )
                return stats

            log.info("cycle.resolve.end", result="ok", heads=heads)

            units = build_units(repo, heads)
            stats.units_total = len(units)
            records = await asyncio.gather(*(self.process_unit(unit) for unit in units))

            for record in records:
                if record is None:
                    stats.units_skipped += 1
                elif record.succeeded:
                    stats.units_succeeded += 1
                else:
                    stats.units_failed += 1

            log.info(
                "cycle.summary",
                units_total=stats.units_total,
                units_skipped=stats.units_skipped,
                units_succeeded=stats.units_succeeded,
                units_failed=stats.units_failed,
            )
            log.info(
                "cycle.end",
                result="ok" if stats.units_failed == 0 else "fail",
                duration_ms=int((time.perf_counter() - start) * 1000),
            )

        return stats

    # =========================================================================
    # Unit pipeline
    # =========================================================================

    async def process_unit(self, unit: WorkUnit) -> RunRecord | None:
        """Decide and, if needed, run the pipeline for one unit.

        Args:
            unit: The (repository, branch, policy) to process.

        Returns:
            The RunRecord of the attempt, or None if the unit did not need to
            run.
        """
        repo = unit.repository
        policy_id = unit.policy.policy_id
        log = logger.bind(
            repo=repo.name,
            branch=unit.branch,
            commit=unit.commit,
            policy=policy_id,
        )

        async with self._unit_semaphore:
            started_at = self.clock()
            try:
                state = await self.state_store.get(repo.name, unit.branch, policy_id)
            except StateError as e:
                log.error("unit.end", stage=Stage.DECIDE.value, result="fail", error=str(e))
                return self._record(unit, uuid.uuid4().hex, started_at, Stage.DECIDE, e)

            reason = describe_decision(unit.policy, state, unit.commit, started_at)
            if not should_run(unit.policy, state, unit.commit, started_at):
                log.info("unit.skip", stage=Stage.DECIDE.value, reason=reason)
                return None

            run_id = uuid.uuid4().hex
            log = log.bind(run_id=run_id)
            log.info("unit.begin", stage=Stage.DECIDE.value, reason=reason)
            start = time.perf_counter()

            try:
                pruned = await self._run_pipeline(unit, run_id, started_at, state, log)
            except _UnitFailure as failure:
                log.error(
                    "unit.end",
                    result="fail",
                    failed_stage=failure.stage.value,
                    duration_ms=int((time.perf_counter() - start) * 1000),
                    error=str(failure.error),
                    stdout=getattr(failure.error, "stdout", ""),
                    stderr=getattr(failure.error, "stderr", ""),
                )
                return self._record(unit, run_id, started_at, failure.stage, failure.error)

            record = self._record(unit, run_id, started_at)
            log.info(
                "unit.end",
                result="ok",
                duration_ms=int((time.perf_counter() - start) * 1000),
                pruned=len(pruned),
            )
            return record

    async def _run_pipeline(
        self,
        unit: WorkUnit,
        run_id: str,
        started_at: datetime,
        state: PolicyState | None,
        log: structlog.stdlib.BoundLogger,
    ) -> list[RetainedRun]:
        repo = unit.repository
        settings = self.config.global_config
        policy_id = unit.policy.policy_id

        try:
            async with self._git_lock(repo.name):
                worktree = await self.git.prepare_worktree(
                    repo, unit.branch, policy_id, unit.commit
                )
        except GitError as e:
            raise _UnitFailure(Stage.PREPARE, e) from e
        log.info("unit.prepare.end", stage=Stage.PREPARE.value, result="ok", worktree=str(worktree))

        try:
            context = HookContext(
                repository=repo.name,
                branch=unit.branch,
                commit=unit.commit,
                worktree=worktree,
                state_dir=settings.state_dir,
                policy_id=policy_id,
            )

            await self._run_hooks(repo.pre_index_hooks, "pre", context, Stage.PRE_HOOK)

            try:
                await run_indexer(
                    settings.indexer_bin,
                    settings.indexer_args,
                    repo.indexer_args,
                    unit.policy.indexer_args,
                    repo.name,
                    unit.branch,
                    unit.commit,
                    worktree,
                    timeout=(
                        settings.indexer_timeout.total_seconds()
                        if settings.indexer_timeout is not None
                        else None
                    ),
                )
            except IndexerError as e:
                raise _UnitFailure(Stage.INDEX, e) from e

            await self._run_hooks(repo.post_index_hooks, "post", context, Stage.POST_HOOK)

            new_run = RetainedRun(
                run_id=run_id,
                commit=unit.commit,
                started_at=started_at,
                completed_at=self.clock(),
            )
            updated, pruned = after_success(unit.policy, state, new_run)

            # A committed state and the deletion requests for the runs it
            # dropped are never separated by a cancellation.
            commit = asyncio.ensure_future(self._commit_and_prune(unit, updated, pruned, log))
            try:
                await asyncio.shield(commit)
            except asyncio.CancelledError:
                with contextlib.suppress(_UnitFailure):
                    await asyncio.shield(commit)
                raise
        finally:
            if not settings.reuse_worktrees:
                await self._release_worktree(repo, worktree)

        return pruned

    async def _commit_and_prune(
        self,
        unit: WorkUnit,
        state: PolicyState,
        pruned: list[RetainedRun],
        log: structlog.stdlib.BoundLogger,
    ) -> None:
        repo = unit.repository
        try:
            await self.state_store.put(repo.name, unit.branch, unit.policy.policy_id, state)
        except StateError as e:
            raise _UnitFailure(Stage.COMMIT, e) from e
        log.info(
            "unit.commit.end",
            stage=Stage.COMMIT.value,
            result="ok",
            retained=len(state.retained_runs),
        )
        await self._prune(unit, pruned, log)

    async def _run_hooks(
        self,
        hooks: list[HookConfig],
        hook_type: str,
        context: HookContext,
        stage: Stage,
    ) -> None:
        shell = self.config.global_config.shell
        for index, hook in enumerate(hooks, start=1):
            try:
                await run_hook(hook, hook_type, index, context, shell=shell)
            except HookError as e:
                raise _UnitFailure(stage, e) from e

    async def _prune(
        self,
        unit: WorkUnit,
        pruned: list[RetainedRun],
        log: structlog.stdlib.BoundLogger,
    ) -> None:
        for run in pruned:
            try:
                await self.pruner.delete_run(
                    unit.repository.name, unit.branch, unit.policy.policy_id, run
                )
            except ArtifactError as e:
                log.error(
                    "unit.prune.end",
                    stage=Stage.PRUNE.value,
                    result="fail",
                    pruned_run_id=run.run_id,
                    error=str(e),
                )
                continue
            log.info(
                "unit.prune.end",
                stage=Stage.PRUNE.value,
                result="ok",
                pruned_run_id=run.run_id,
                pruned_commit=run.commit,
            )

    async def _release_worktree(self, repo: RepositoryConfig, worktree: Path) -> None:
        try:
            async with self._git_lock(repo.name):
                await self.git.release_worktree(repo, worktree)
        except GitError as e:
            logger.warning(
                "unit.release_worktree.end",
                stage=Stage.PREPARE.value,
                repo=repo.name,
                result="fail",
                error=str(e),
            )

    def _record(
        self,
        unit: WorkUnit,
        run_id: str,
        started_at: datetime,
        failed_stage: Stage | None = None,
        error: Exception | None = None,
    ) -> RunRecord:
        record = RunRecord(
            run_id=run_id,
            repository=unit.repository.name,
            branch=unit.branch,
            policy_id=unit.policy.policy_id,
            commit=unit.commit,
            started_at=started_at,
            finished_at=self.clock(),
            outcome=RunOutcome.SUCCESS if error is None else RunOutcome.FAILED,
            failed_stage=failed_stage,
            stdout=getattr(error, "stdout", "") or "",
            stderr=getattr(error, "stderr", "") or "",
            error=str(error) if error is not None else None,
        )
        self.last_runs[unit.key] = record
        return record
