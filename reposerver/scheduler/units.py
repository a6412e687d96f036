"""Expansion of resolved branches into work units."""

from reposerver.config.models import BranchPolicy, RepositoryConfig
from reposerver.retention.models import PolicyKind, PolicySpec

from .models import WorkUnit


def policy_specs(policy: BranchPolicy) -> list[PolicySpec]:
    """Resolve a branch policy into the independent policies it declares.

    Args:
        policy: Configured branch policy.

    Returns:
        The live policy first (if enabled), then one per snapshot interval.
        Snapshot indexer args follow the branch args.
    """
    specs: list[PolicySpec] = []
    if policy.live:
        specs.append(
            PolicySpec(
                kind=PolicyKind.LIVE,
                keep_count=policy.latest_keep_count,
                indexer_args=list(policy.indexer_args),
            )
        )
    for snapshot in policy.snapshots:
        specs.append(
            PolicySpec(
                kind=PolicyKind.SNAPSHOT,
                keep_count=snapshot.keep_count,
                interval_seconds=snapshot.interval_seconds,
                indexer_args=[*policy.indexer_args, *snapshot.indexer_args],
            )
        )
    return specs


def build_units(repo: RepositoryConfig, heads: dict[str, str]) -> list[WorkUnit]:
    """Build the work units of a repository cycle.

    Args:
        repo: Repository configuration.
        heads: Resolved branch heads, branch name to commit id.

    Returns:
        One unit per (branch, policy), branches in sorted order. Branches no
        policy governs are ignored.
    """
    units: list[WorkUnit] = []
    for branch in sorted(heads):
        policy = repo.policy_for(branch)
        if policy is None:
            continue
        for spec in policy_specs(policy):
            units.append(
                WorkUnit(repository=repo, branch=branch, commit=heads[branch], policy=spec)
            )
    return units
