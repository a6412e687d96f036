"""Tests for the retention engine.

This module contains tests for:
- Run decisions for live and snapshot policies
- Retention bookkeeping after successful runs
- Expansion of branch policies into work units
"""

from datetime import UTC, datetime, timedelta

import pytest
from pydantic import ValidationError

from reposerver.config import parse_config
from reposerver.retention import (
    PolicyKind,
    PolicySpec,
    PolicyState,
    RetainedRun,
    after_success,
    describe_decision,
    should_run,
)
from reposerver.scheduler import build_units, policy_specs

T0 = datetime(2024, 1, 1, tzinfo=UTC)

LIVE = PolicySpec(kind=PolicyKind.LIVE, keep_count=1)
HOURLY = PolicySpec(kind=PolicyKind.SNAPSHOT, keep_count=2, interval_seconds=3600)


def _run(run_id: str, commit: str, at: datetime = T0) -> RetainedRun:
    return RetainedRun(run_id=run_id, commit=commit, started_at=at, completed_at=at)


# =============================================================================
# Model Tests
# =============================================================================


class TestPolicySpec:
    """Tests for PolicySpec."""

    def test_policy_ids(self):
        """Test policy identifiers for live and snapshot policies."""
        assert LIVE.policy_id == "live"
        assert HOURLY.policy_id == "snapshot:3600"

    def test_keep_count_must_be_positive(self):
        """Test keep_count below one is rejected."""
        with pytest.raises(ValidationError):
            PolicySpec(kind=PolicyKind.LIVE, keep_count=0)

    def test_state_is_frozen(self):
        """Test PolicyState cannot be mutated in place."""
        state = PolicyState(last_commit="a1")
        with pytest.raises(ValidationError):
            state.last_commit = "b2"


# =============================================================================
# Decision Tests
# =============================================================================


class TestShouldRun:
    """Tests for should_run and describe_decision."""

    def test_live_never_indexed(self):
        """Test a live policy without state must run."""
        assert should_run(LIVE, None, "a1", T0)
        assert describe_decision(LIVE, None, "a1", T0) == "never_indexed"

    def test_live_unchanged_commit(self):
        """Test a live policy skips an already indexed commit."""
        state = PolicyState(last_commit="a1", last_run_time=T0)
        later = T0 + timedelta(days=30)
        assert not should_run(LIVE, state, "a1", later)
        assert describe_decision(LIVE, state, "a1", later) == "unchanged"

    def test_live_commit_changed(self):
        """Test a live policy runs when the head moved."""
        state = PolicyState(last_commit="a1", last_run_time=T0)
        assert should_run(LIVE, state, "b2", T0)
        assert describe_decision(LIVE, state, "b2", T0) == "commit_changed"

    def test_snapshot_never_indexed(self):
        """Test a snapshot policy without state must run."""
        assert should_run(HOURLY, None, "a1", T0)

    def test_snapshot_interval_pending(self):
        """Test a snapshot policy waits for its interval even on a new commit."""
        state = PolicyState(last_commit="a1", last_run_time=T0)
        now = T0 + timedelta(seconds=3599)
        assert not should_run(HOURLY, state, "b2", now)
        assert describe_decision(HOURLY, state, "b2", now) == "interval_pending"

    def test_snapshot_interval_elapsed_same_commit(self):
        """Test a snapshot policy re-runs an unchanged commit once due."""
        state = PolicyState(last_commit="a1", last_run_time=T0)
        now = T0 + timedelta(seconds=3600)
        assert should_run(HOURLY, state, "a1", now)
        assert describe_decision(HOURLY, state, "a1", now) == "interval_elapsed"


# =============================================================================
# Retention Tests
# =============================================================================


class TestAfterSuccess:
    """Tests for after_success."""

    def test_first_run(self):
        """Test the first run creates state and prunes nothing."""
        state, pruned = after_success(LIVE, None, _run("r1", "a1"))
        assert state.last_commit == "a1"
        assert state.last_run_time == T0
        assert [r.run_id for r in state.retained_runs] == ["r1"]
        assert pruned == []

    def test_live_replaces_previous_run(self):
        """Test keep_count=1 prunes the previous run."""
        first, _ = after_success(LIVE, None, _run("r1", "a1"))
        second, pruned = after_success(LIVE, first, _run("r2", "b2"))
        assert [r.run_id for r in second.retained_runs] == ["r2"]
        assert [r.run_id for r in pruned] == ["r1"]

    def test_fifo_pruning(self):
        """Test the oldest runs are pruned first."""
        state = None
        all_pruned = []
        for i in range(5):
            at = T0 + timedelta(hours=i)
            state, pruned = after_success(HOURLY, state, _run(f"r{i}", "a1", at))
            all_pruned.extend(pruned)
            assert len(state.retained_runs) <= HOURLY.keep_count

        assert [r.run_id for r in state.retained_runs] == ["r3", "r4"]
        assert [r.run_id for r in all_pruned] == ["r0", "r1", "r2"]
        assert state.last_run_time == T0 + timedelta(hours=4)

    def test_input_state_untouched(self):
        """Test the previous state object is not modified."""
        before = PolicyState(
            last_commit="a1",
            last_run_time=T0,
            retained_runs=[_run("r1", "a1")],
        )
        snapshot = before.model_dump()
        after_success(LIVE, before, _run("r2", "b2", T0 + timedelta(minutes=1)))
        assert before.model_dump() == snapshot

    def test_shrunk_keep_count_prunes_excess(self):
        """Test lowering keep_count prunes every excess run at once."""
        state = PolicyState(
            last_commit="a1",
            last_run_time=T0,
            retained_runs=[_run("r1", "a1"), _run("r2", "a1"), _run("r3", "a1")],
        )
        updated, pruned = after_success(LIVE, state, _run("r4", "b2"))
        assert [r.run_id for r in updated.retained_runs] == ["r4"]
        assert [r.run_id for r in pruned] == ["r1", "r2", "r3"]


# =============================================================================
# Unit Expansion Tests
# =============================================================================


class TestWorkUnits:
    """Tests for policy_specs and build_units."""

    def _repo(self):
        raw = {
            "repo": [
                {
                    "name": "demo",
                    "url": "u",
                    "indexer_args": ["--repo-arg"],
                    "branches": ["feature/*"],
                    "policy": [
                        {
                            "branch": "main",
                            "latest_keep_count": 2,
                            "indexer_args": ["--branch-arg"],
                            "snapshot": [
                                {"interval": "1h", "keep_count": 3, "indexer_args": ["--snap"]}
                            ],
                        }
                    ],
                }
            ]
        }
        return parse_config(raw).repos[0]

    def test_policy_specs(self):
        """Test a branch policy expands into live and snapshot specs."""
        specs = policy_specs(self._repo().policy_for("main"))

        assert [s.policy_id for s in specs] == ["live", "snapshot:3600"]
        assert specs[0].keep_count == 2
        assert specs[0].indexer_args == ["--branch-arg"]
        assert specs[1].keep_count == 3
        assert specs[1].indexer_args == ["--branch-arg", "--snap"]

    def test_build_units(self):
        """Test units are built per branch and policy, ignoring unmatched branches."""
        units = build_units(
            self._repo(),
            {"main": "a1", "feature/x": "f1", "develop": "d1"},
        )

        assert [(u.branch, u.policy.policy_id, u.commit) for u in units] == [
            ("feature/x", "live", "f1"),
            ("main", "live", "a1"),
            ("main", "snapshot:3600", "a1"),
        ]
        assert units[1].key == "demo::main::live"
