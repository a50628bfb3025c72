"""
API request and response type definitions.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from sync_coordinator.constants import RunKind, RunStatus


class SyncRequest(BaseModel):
    """Request body for triggering a sync."""

    scope: dict[str, Any] = Field(default_factory=dict, description="Scope parameters, e.g. project key")
    bypass_throttle: bool = Field(default=False, description="Skip the minimum-interval check")
    minimum_interval_minutes: float | None = Field(
        default=None, ge=0, description="Override the configured minimum interval"
    )
    lease_duration_minutes: float | None = Field(
        default=None, gt=0, description="Override the configured lease duration"
    )


class SyncResponse(BaseModel):
    """
    Outcome of a sync trigger.

    ``outcome`` is one of throttled, busy, completed, failed.
    """

    outcome: str
    kind: RunKind
    lock_name: str | None = None
    run_id: int | None = None
    result: Any = None
    error: str | None = None
    holder_id: str | None = None
    minutes_remaining: int | None = None
    next_allowed_at: datetime | None = None


class RunResponse(BaseModel):
    """A run-history entry."""

    id: int
    kind: RunKind
    status: RunStatus
    scope: dict[str, Any]
    start_time: datetime
    end_time: datetime | None
    result: dict[str, Any] | None
    error: str | None
    lock_name: str | None = None

class SyncStatusResponse(BaseModel):
    """Throttle state and last completed run for a sync kind."""

    kind: RunKind
    last_sync: RunResponse | None
    can_sync: bool
    minutes_remaining: int
    next_allowed_sync: datetime | None


class LeaseResponse(BaseModel):
    """A lease row."""

    lock_name: str
    holder_id: str
    acquired_at: datetime
    expires_at: datetime
    renewed_at: datetime
    is_active: bool


class LockStatusResponse(BaseModel):
    """Status of a single named lock."""

    lock_name: str
    held: bool
    holder_id: str | None = None
    expires_at: datetime | None = None


class ActiveLocksResponse(BaseModel):
    """All currently active leases."""

    active_locks: list[LeaseResponse]


class LockHistoryResponse(BaseModel):
    """Lease history, newest first."""

    history: list[LeaseResponse]


class CleanupResponse(BaseModel):
    """Result of a manual expired-lease cleanup."""

    cleaned_count: int
    message: str


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    database: str
    timestamp: datetime


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str
    detail: str | None = None
