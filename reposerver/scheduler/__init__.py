"""Poll cycles, work units and the indexing pipeline driver.

Example:
    >>> from reposerver.scheduler import Scheduler
    >>> async with Scheduler(config) as scheduler:
    ...     stats = await scheduler.run_once()
"""

from .models import CycleStats, RunOutcome, RunRecord, Stage, WorkUnit
from .scheduler import RuntimeValidationError, Scheduler
from .units import build_units, policy_specs

__all__ = [
    "Scheduler",
    "RuntimeValidationError",
    "CycleStats",
    "RunOutcome",
    "RunRecord",
    "Stage",
    "WorkUnit",
    "build_units",
    "policy_specs",
]
