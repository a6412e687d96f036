"""Retention engine: run decisions and bounded run history."""

from .engine import after_success, describe_decision, should_run
from .models import LIVE_POLICY_ID, PolicyKind, PolicySpec, PolicyState, RetainedRun

__all__ = [
    "after_success",
    "describe_decision",
    "should_run",
    "LIVE_POLICY_ID",
    "PolicyKind",
    "PolicySpec",
    "PolicyState",
    "RetainedRun",
]
