"""
Call Engine

Status classification, call lifecycle and snapshot synchronization.

Modules:
    - clock: non-decreasing time source
    - status: semaphore classification (pure functions)
    - lifecycle: legal call transitions against a call store
    - sync: periodic refresh loop and snapshot cache
    - statistics: occupancy and historical counts
"""

from tablecall.engine.clock import Clock
from tablecall.engine.lifecycle import LifecycleController
from tablecall.engine.status import (
    describe_establishment,
    describe_table,
    resolve_settings,
    table_status,
    type_status,
)
from tablecall.engine.sync import SessionSubject, SnapshotCache, SyncLoop

__all__ = [
    "Clock",
    "LifecycleController",
    "SessionSubject",
    "SnapshotCache",
    "SyncLoop",
    "describe_establishment",
    "describe_table",
    "resolve_settings",
    "table_status",
    "type_status",
]
