"""
Coordination module.
Contains the lease manager, run ledger, sync coordinator and job registry.
"""

from sync_coordinator.coordination.coordinator import SyncCoordinator, derive_lock_name
from sync_coordinator.coordination.identity import generate_holder_id
from sync_coordinator.coordination.jobs import (
    bind_scope,
    get_sync_job,
    list_sync_jobs,
    register_sync_job,
)
from sync_coordinator.coordination.lease_manager import LeaseManager
from sync_coordinator.coordination.ledger import RunLedger

__all__ = [
    "LeaseManager",
    "RunLedger",
    "SyncCoordinator",
    "derive_lock_name",
    "generate_holder_id",
    "register_sync_job",
    "get_sync_job",
    "list_sync_jobs",
    "bind_scope",
]
