"""Reposerver - polls git repositories and drives an external indexer.

The service tracks a fleet of repositories, decides per (repository, branch,
policy) when content must be re-indexed, runs the indexing pipeline and keeps
a bounded history of runs per policy.
"""

__version__ = "0.1.0"
