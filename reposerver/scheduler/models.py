"""Pydantic models for the scheduler.

This module defines the unit of work the scheduler processes, the record of a
single pipeline attempt and the per-repository cycle summary.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from reposerver.config.models import RepositoryConfig
from reposerver.retention.models import PolicySpec
from reposerver.state.base import state_key


class Stage(str, Enum):
    """Pipeline stage, used in logs and to report where an attempt failed."""

    FETCH = "fetch"
    RESOLVE = "resolve"
    DECIDE = "decide"
    PREPARE = "prepare"
    PRE_HOOK = "pre_hook"
    INDEX = "index"
    POST_HOOK = "post_hook"
    COMMIT = "commit"
    PRUNE = "prune"


class RunOutcome(str, Enum):
    """Final outcome of a pipeline attempt."""

    SUCCESS = "success"
    FAILED = "failed"


class WorkUnit(BaseModel):
    """One (repository, branch, policy) evaluated in a cycle.

    Attributes:
        repository: Repository configuration.
        branch: Remote branch name.
        commit: Resolved head of the branch for this cycle.
        policy: Policy the unit runs under.
    """

    model_config = ConfigDict(frozen=True)

    repository: RepositoryConfig = Field(..., description="Repository configuration")
    branch: str = Field(..., description="Branch name")
    commit: str = Field(..., description="Resolved head commit")
    policy: PolicySpec = Field(..., description="Policy the unit runs under")

    @property
    def key(self) -> str:
        return state_key(self.repository.name, self.branch, self.policy.policy_id)


class RunRecord(BaseModel):
    """Immutable record of one pipeline attempt.

    Attributes:
        run_id: Unique run identifier.
        repository: Repository name.
        branch: Branch name.
        policy_id: Policy the attempt ran under.
        commit: Commit the attempt indexed.
        started_at: Attempt start time.
        finished_at: Attempt end time.
        outcome: Success or failure.
        failed_stage: Stage that failed, None on success.
        stdout: Output of the failing command, if any.
        stderr: Error output of the failing command, if any.
        error: Error message, None on success.
    """

    model_config = ConfigDict(frozen=True)

    run_id: str = Field(..., description="Run identifier")
    repository: str = Field(..., description="Repository name")
    branch: str = Field(..., description="Branch name")
    policy_id: str = Field(..., description="Policy identifier")
    commit: str = Field(..., description="Indexed commit")
    started_at: datetime = Field(..., description="Attempt start time")
    finished_at: datetime = Field(..., description="Attempt end time")
    outcome: RunOutcome = Field(..., description="Attempt outcome")
    failed_stage: Stage | None = Field(None, description="Failing stage")
    stdout: str = Field("", description="Captured output")
    stderr: str = Field("", description="Captured error output")
    error: str | None = Field(None, description="Error message")

    @property
    def succeeded(self) -> bool:
        return self.outcome == RunOutcome.SUCCESS


class CycleStats(BaseModel):
    """Summary of one repository cycle.

    Attributes:
        repository: Repository name.
        units_total: Units evaluated.
        units_skipped: Units that did not need to run.
        units_succeeded: Units whose pipeline succeeded.
        units_failed: Units whose pipeline failed.
        error: Repository-level error that aborted the cycle, if any.
    """

    repository: str
    units_total: int = 0
    units_skipped: int = 0
    units_succeeded: int = 0
    units_failed: int = 0
    error: str | None = None
