"""Pydantic models for retention decisions.

This module defines the resolved policy a work unit runs under and the
persistent per-policy bookkeeping (last indexed commit, last run time and the
retained runs, oldest first).
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

LIVE_POLICY_ID = "live"


class PolicyKind(str, Enum):
    """How a policy decides whether to run."""

    LIVE = "live"
    SNAPSHOT = "snapshot"


class PolicySpec(BaseModel):
    """Resolved retention policy for one branch.

    Attributes:
        kind: Live (commit-driven) or snapshot (time-driven).
        keep_count: Number of runs retained.
        interval_seconds: Snapshot interval, None for live policies.
        indexer_args: Branch and policy indexer args, in order.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: PolicyKind = Field(..., description="Policy kind")
    keep_count: int = Field(..., ge=1, description="Runs retained")
    interval_seconds: int | None = Field(None, gt=0, description="Snapshot interval")
    indexer_args: list[str] = Field(default_factory=list, description="Policy indexer args")

    @property
    def policy_id(self) -> str:
        """Stable identifier used in state keys and hook environments."""
        if self.kind == PolicyKind.SNAPSHOT:
            return f"snapshot:{self.interval_seconds}"
        return LIVE_POLICY_ID


class RetainedRun(BaseModel):
    """A successful run whose artifacts are kept.

    Attributes:
        run_id: Unique run identifier.
        commit: Commit that was indexed.
        started_at: When the attempt started.
        completed_at: When the state was committed.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    run_id: str = Field(..., description="Run identifier")
    commit: str = Field(..., description="Indexed commit")
    started_at: datetime | None = Field(None, description="Attempt start time")
    completed_at: datetime = Field(..., description="Completion time")


class PolicyState(BaseModel):
    """Persistent bookkeeping for one (repository, branch, policy).

    Attributes:
        last_commit: Commit of the last successful run.
        last_run_time: Start time of the last successful run.
        retained_runs: Retained runs, oldest first.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    last_commit: str | None = Field(None, description="Last indexed commit")
    last_run_time: datetime | None = Field(None, description="Last successful run start")
    retained_runs: list[RetainedRun] = Field(
        default_factory=list, description="Retained runs, oldest first"
    )
