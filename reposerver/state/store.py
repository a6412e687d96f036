"""State store implementations.

:class:`JsonFileStateStore` keeps every policy record in one JSON document::

    {
      "version": 2,
      "policies": {
        "<repo>::<branch>::<policy_id>": {
          "last_commit": "...",
          "last_run_time": "2024-01-01T00:00:00Z",
          "retained_runs": [{"run_id": "...", "commit": "...", ...}]
        }
      }
    }

Documents written by earlier releases, which only tracked the last indexed
commit per branch under a ``branches`` table, are read as live-policy records.

:class:`MemoryStateStore` keeps records in memory only, for tests and dry runs.
"""

import asyncio
import contextlib
import json
import os
import time
from datetime import datetime
from pathlib import Path
from typing import Any

import structlog
from pydantic import ValidationError

from reposerver.retention.models import LIVE_POLICY_ID, PolicyState

from .base import KEY_SEPARATOR, StateError, StateStore, state_key

logger = structlog.get_logger(__name__)

STATE_VERSION = 2


class MemoryStateStore(StateStore):
    """State store that keeps records in a dictionary."""

    def __init__(self, records: dict[str, PolicyState] | None = None) -> None:
        self.records: dict[str, PolicyState] = dict(records or {})
        self._opened = False

    async def open(self) -> None:
        self._opened = True

    async def get(self, repository: str, branch: str, policy_id: str) -> PolicyState | None:
        if not self._opened:
            raise StateError("state store is not open")
        return self.records.get(state_key(repository, branch, policy_id))

    async def put(
        self,
        repository: str,
        branch: str,
        policy_id: str,
        state: PolicyState,
    ) -> None:
        if not self._opened:
            raise StateError("state store is not open")
        self.records[state_key(repository, branch, policy_id)] = state

    async def close(self) -> None:
        self._opened = False


class JsonFileStateStore(StateStore):
    """State store backed by an atomically replaced JSON file.

    Attributes:
        path: Location of the state document.
    """

    def __init__(self, path: Path | str) -> None:
        """Initialize the JsonFileStateStore.

        Args:
            path: Location of the state document. Its directory is created on
                first write.
        """
        self.path = Path(path)
        self._records: dict[str, PolicyState] | None = None
        self._lock = asyncio.Lock()

    async def open(self) -> None:
        start = time.perf_counter()
        logger.info("state.load.begin", stage="state", path=str(self.path))

        loop = asyncio.get_running_loop()
        self._records = await loop.run_in_executor(None, self._load)

        logger.info(
            "state.load.end",
            stage="state",
            result="ok",
            path=str(self.path),
            record_count=len(self._records),
            duration_ms=int((time.perf_counter() - start) * 1000),
        )

    async def get(self, repository: str, branch: str, policy_id: str) -> PolicyState | None:
        if self._records is None:
            raise StateError("state store is not open")
        return self._records.get(state_key(repository, branch, policy_id))

    async def put(
        self,
        repository: str,
        branch: str,
        policy_id: str,
        state: PolicyState,
    ) -> None:
        if self._records is None:
            raise StateError("state store is not open")

        key = state_key(repository, branch, policy_id)
        async with self._lock:
            records = {**self._records, key: state}
            start = time.perf_counter()
            try:
                await asyncio.get_running_loop().run_in_executor(None, self._write, records)
            except OSError as e:
                logger.error(
                    "state.save.end",
                    stage="state",
                    result="fail",
                    key=key,
                    path=str(self.path),
                    error=str(e),
                )
                raise StateError(f"failed to write state file {self.path}: {e}", key) from e

            self._records = records

        logger.info(
            "state.save.end",
            stage="state",
            result="ok",
            key=key,
            record_count=len(records),
            duration_ms=int((time.perf_counter() - start) * 1000),
        )

    async def close(self) -> None:
        self._records = None

    def _load(self) -> dict[str, PolicyState]:
        if not self.path.exists():
            return {}

        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError) as e:
            raise StateError(f"failed to read state file {self.path}: {e}") from e
        except json.JSONDecodeError as e:
            raise StateError(f"failed to parse state file {self.path}: {e}") from e

        if not isinstance(raw, dict):
            raise StateError(f"state file {self.path} is not a JSON object")

        try:
            if "policies" in raw:
                return {
                    key: PolicyState.model_validate(value)
                    for key, value in raw["policies"].items()
                }
            return _from_legacy(raw.get("branches", {}))
        except (ValidationError, AttributeError, TypeError, ValueError) as e:
            raise StateError(f"invalid state file {self.path}: {e}") from e

    def _write(self, records: dict[str, PolicyState]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)

        document = {
            "version": STATE_VERSION,
            "policies": {
                key: records[key].model_dump(mode="json") for key in sorted(records)
            },
        }
        payload = json.dumps(document, indent=2).encode("utf-8")

        tmp_path = self.path.with_name(f"{self.path.name}.tmp")
        try:
            with tmp_path.open("wb") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, self.path)
        except OSError:
            with contextlib.suppress(OSError):
                tmp_path.unlink()
            raise

        # The document is already in place; only its durability is in doubt.
        try:
            _fsync_dir(self.path.parent)
        except OSError as e:
            logger.warning(
                "state.fsync_dir.end",
                stage="state",
                result="fail",
                path=str(self.path.parent),
                error=str(e),
            )


def _from_legacy(branches: dict[str, Any]) -> dict[str, PolicyState]:
    records: dict[str, PolicyState] = {}
    for key, entry in branches.items():
        repository, _, branch = key.partition(KEY_SEPARATOR)
        if not branch:
            raise ValueError(f"malformed legacy state key '{key}'")
        last_success = entry.get("last_success_at")
        records[state_key(repository, branch, LIVE_POLICY_ID)] = PolicyState(
            last_commit=entry["last_indexed_commit"],
            last_run_time=datetime.fromisoformat(last_success) if last_success else None,
        )
    return records


def _fsync_dir(path: Path) -> None:
    fd = os.open(path, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)
