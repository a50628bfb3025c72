"""
Lock inspection and maintenance routes.
"""

import logging

from fastapi import APIRouter, Query

from sync_coordinator.api.dependencies import LeaseManagerDep
from sync_coordinator.constants import (
    API_V1_PREFIX,
    DEFAULT_ACTIVE_LEASE_LIMIT,
    DEFAULT_LEASE_HISTORY_LIMIT,
)
from sync_coordinator.types.api import (
    ActiveLocksResponse,
    CleanupResponse,
    LeaseResponse,
    LockHistoryResponse,
    LockStatusResponse,
)
from sync_coordinator.types.lease import LeaseRecord

logger = logging.getLogger(__name__)

router = APIRouter(prefix=f"{API_V1_PREFIX}/locks", tags=["Locks"])


def _lease_to_response(lease: LeaseRecord) -> LeaseResponse:
    """Convert a LeaseRecord to a LeaseResponse."""
    return LeaseResponse(
        lock_name=lease.lock_name,
        holder_id=lease.holder_id,
        acquired_at=lease.acquired_at,
        expires_at=lease.expires_at,
        renewed_at=lease.renewed_at,
        is_active=lease.is_active,
    )


@router.get(
    "/status",
    response_model=LockStatusResponse | ActiveLocksResponse,
    summary="Lock status",
    description="Status of one named lock, or every active lock when no name is given.",
)
async def lock_status(
    lease_manager: LeaseManagerDep,
    lock_name: str | None = Query(default=None, min_length=1, max_length=255),
) -> LockStatusResponse | ActiveLocksResponse:
    """
    Get lock status.

    Args:
        lease_manager: Lease manager.
        lock_name: Lock to inspect; all active locks when omitted.
    """
    if lock_name is not None:
        status = await lease_manager.is_held(lock_name)
        return LockStatusResponse(
            lock_name=status.lock_name,
            held=status.held,
            holder_id=status.holder_id,
            expires_at=status.expires_at,
        )

    leases = await lease_manager.active_leases(DEFAULT_ACTIVE_LEASE_LIMIT)
    return ActiveLocksResponse(active_locks=[_lease_to_response(lease) for lease in leases])


@router.get(
    "/history",
    response_model=LockHistoryResponse,
    summary="Lock history",
    description="Lease rows of any state, newest acquisition first.",
)
async def lock_history(
    lease_manager: LeaseManagerDep,
    lock_name: str | None = Query(default=None, min_length=1, max_length=255),
    limit: int = Query(default=DEFAULT_LEASE_HISTORY_LIMIT, ge=1, le=500),
) -> LockHistoryResponse:
    leases = await lease_manager.history(lock_name, limit)
    return LockHistoryResponse(history=[_lease_to_response(lease) for lease in leases])


@router.post(
    "/cleanup",
    response_model=CleanupResponse,
    summary="Clean up expired locks",
    description="Deactivate every active lease whose expiry has passed.",
)
async def cleanup_locks(lease_manager: LeaseManagerDep) -> CleanupResponse:
    count = await lease_manager.cleanup_expired()
    logger.info(f"Manual lock cleanup deactivated {count} leases")
    return CleanupResponse(
        cleaned_count=count,
        message=f"Cleaned up {count} expired locks",
    )
