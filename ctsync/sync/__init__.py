"""Synchronization components for change-tracking cycles."""

from ctsync.sync.change_feed import ChangeFeed
from ctsync.sync.models import CycleReport, CycleState, ReconcileResult
from ctsync.sync.orchestrator import CancellationToken, SyncCycle, SyncOrchestrator
from ctsync.sync.reconciler import POLICY, Action, Reconciler
from ctsync.sync.staging import StagingBuffer

__all__ = [
    "Action",
    "CancellationToken",
    "ChangeFeed",
    "CycleReport",
    "CycleState",
    "POLICY",
    "ReconcileResult",
    "Reconciler",
    "StagingBuffer",
    "SyncCycle",
    "SyncOrchestrator",
]
