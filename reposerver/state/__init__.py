"""Durable per-policy bookkeeping.

Example:
    >>> from reposerver.state import JsonFileStateStore
    >>> async with JsonFileStateStore(state_dir / "state.json") as store:
    ...     state = await store.get("demo", "main", "live")
"""

from .base import StateError, StateStore, state_key
from .store import JsonFileStateStore, MemoryStateStore

__all__ = [
    "StateError",
    "StateStore",
    "state_key",
    "JsonFileStateStore",
    "MemoryStateStore",
]
