"""
Type definitions for the sync coordinator.
Contains input/output type definitions for all functions, grouped by module.
"""

from sync_coordinator.types.api import (
    ActiveLocksResponse,
    CleanupResponse,
    ErrorResponse,
    HealthResponse,
    LeaseResponse,
    LockHistoryResponse,
    LockStatusResponse,
    RunResponse,
    SyncRequest,
    SyncResponse,
    SyncStatusResponse,
)
from sync_coordinator.types.lease import (
    AcquireResult,
    HeldLease,
    LeaseRecord,
    LeaseStatus,
)
from sync_coordinator.types.run import (
    Busy,
    Completed,
    Failed,
    RunHandle,
    RunRecord,
    SyncOutcome,
    SyncPolicy,
    ThrottleDecision,
    Throttled,
)

__all__ = [
    # API types
    "SyncRequest",
    "SyncResponse",
    "SyncStatusResponse",
    "RunResponse",
    "LeaseResponse",
    "LockStatusResponse",
    "ActiveLocksResponse",
    "LockHistoryResponse",
    "CleanupResponse",
    "HealthResponse",
    "ErrorResponse",
    # Lease types
    "AcquireResult",
    "HeldLease",
    "LeaseRecord",
    "LeaseStatus",
    # Run types
    "RunHandle",
    "RunRecord",
    "ThrottleDecision",
    "SyncPolicy",
    "SyncOutcome",
    "Throttled",
    "Busy",
    "Completed",
    "Failed",
]
