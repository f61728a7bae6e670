"""Persistence for resolution snapshots and secret handles."""

from .planning import detect_plan_drift, load_snapshot, result_to_mapping, write_snapshot
from .state import InMemoryHandleLedger, JsonHandleLedger, SecretHandle

__all__ = [
    "InMemoryHandleLedger",
    "JsonHandleLedger",
    "SecretHandle",
    "detect_plan_drift",
    "load_snapshot",
    "result_to_mapping",
    "write_snapshot",
]
