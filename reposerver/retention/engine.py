"""Retention decisions.

Pure functions with no I/O: whether a unit must run, and how a successful run
changes the policy's bookkeeping. Live policies are commit-driven, snapshot
policies are time-driven and re-run an unchanged commit once their interval
has elapsed.
"""

from datetime import datetime

from .models import PolicyKind, PolicySpec, PolicyState, RetainedRun


def describe_decision(
    policy: PolicySpec,
    state: PolicyState | None,
    current_commit: str,
    now: datetime,
) -> str:
    """Explain the run decision for a unit.

    Args:
        policy: Policy the unit runs under.
        state: Current bookkeeping, None if never indexed.
        current_commit: Resolved head of the branch.
        now: Current time.

    Returns:
        One of ``never_indexed``, ``commit_changed``, ``unchanged``,
        ``interval_elapsed`` or ``interval_pending``.
    """
    if policy.kind == PolicyKind.LIVE:
        if state is None or state.last_commit is None:
            return "never_indexed"
        if state.last_commit != current_commit:
            return "commit_changed"
        return "unchanged"

    if state is None or state.last_run_time is None:
        return "never_indexed"
    elapsed = (now - state.last_run_time).total_seconds()
    if elapsed >= (policy.interval_seconds or 0):
        return "interval_elapsed"
    return "interval_pending"


def should_run(
    policy: PolicySpec,
    state: PolicyState | None,
    current_commit: str,
    now: datetime,
) -> bool:
    """Decide whether a unit must run the indexing pipeline.

    Args:
        policy: Policy the unit runs under.
        state: Current bookkeeping, None if never indexed.
        current_commit: Resolved head of the branch.
        now: Current time.

    Returns:
        True if the pipeline must run.
    """
    return describe_decision(policy, state, current_commit, now) in (
        "never_indexed",
        "commit_changed",
        "interval_elapsed",
    )


def after_success(
    policy: PolicySpec,
    state: PolicyState | None,
    new_run: RetainedRun,
) -> tuple[PolicyState, list[RetainedRun]]:
    """Record a successful run and apply the retention bound.

    The input state is not modified.

    Args:
        policy: Policy the run belongs to.
        state: Bookkeeping before the run, None if never indexed.
        new_run: The run that just succeeded.

    Returns:
        The updated state and the runs dropped from retention, oldest first.
    """
    runs = [*(state.retained_runs if state else []), new_run]
    overflow = max(len(runs) - policy.keep_count, 0)
    pruned, kept = runs[:overflow], runs[overflow:]

    updated = PolicyState(
        last_commit=new_run.commit,
        last_run_time=new_run.started_at or new_run.completed_at,
        retained_runs=kept,
    )
    return updated, pruned
