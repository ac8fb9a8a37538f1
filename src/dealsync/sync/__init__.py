"""CRM synchronization, conflict detection and consistency auditing.

Exports:
    SyncOperation: state_sync / amount_sync / full_sync.
    SyncOutcome: Result of one sync execution.
    ChangeBus / ChangeNotifier: Local change fan-out into sync intents.
    SyncDispatcher: Durable queue consumer with per-business single-flight.
    ExternalSyncWorker: Executes one intent against the CRM.
    ConflictDetector: Local vs CRM divergence, with resolution.
    ConsistencyAuditor: Stored vs derived state audits and repairs.
    ReconciliationService: Manual trigger surface.
"""

from __future__ import annotations

from src.dealsync.sync.errors import (
    BusinessNotFound,
    ConfigurationError,
    CredentialMissing,
    MappingMissing,
    SyncError,
)
from src.dealsync.sync.schemas import SyncOperation, SyncOutcome, SyncOutcomeStatus

__all__ = [
    "BusinessNotFound",
    "ChangeBus",
    "ChangeNotifier",
    "ConfigurationError",
    "ConflictDetector",
    "ConsistencyAuditor",
    "CredentialMissing",
    "ExternalSyncWorker",
    "MappingMissing",
    "ReconciliationService",
    "SyncDispatcher",
    "SyncError",
    "SyncOperation",
    "SyncOutcome",
    "SyncOutcomeStatus",
]

_LAZY = {
    "ChangeBus": "src.dealsync.sync.notifier",
    "ChangeNotifier": "src.dealsync.sync.notifier",
    "SyncDispatcher": "src.dealsync.sync.dispatcher",
    "ExternalSyncWorker": "src.dealsync.sync.worker",
    "ConflictDetector": "src.dealsync.sync.conflicts",
    "ConsistencyAuditor": "src.dealsync.sync.auditor",
    "ReconciliationService": "src.dealsync.sync.service",
}


def __getattr__(name: str):  # noqa: N807
    """Lazy-load components that import the business service, avoiding cycles."""
    if name in _LAZY:
        import importlib

        return getattr(importlib.import_module(_LAZY[name]), name)
    msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(msg)
