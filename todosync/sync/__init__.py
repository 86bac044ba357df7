"""Client side of the versioned state synchronization protocol."""

from __future__ import annotations

from .protocol import MIN_POLL_INTERVAL_MS, PullResult, SyncSettings, SyncStatus
from .transport import RemoteStateClient
from .manager import DisabledSyncManager, SyncManager, create_sync_manager
from .reconcile import ReconcileResult, reconcile

__all__ = [
    # Protocol
    "MIN_POLL_INTERVAL_MS",
    "PullResult",
    "SyncSettings",
    "SyncStatus",
    # Transport
    "RemoteStateClient",
    # Manager
    "DisabledSyncManager",
    "SyncManager",
    "create_sync_manager",
    # Reconciliation
    "ReconcileResult",
    "reconcile",
]
