"""
Lease-related type definitions for internal use.
"""

from dataclasses import dataclass, field
from datetime import datetime

from sync_coordinator.clock import ensure_utc


@dataclass
class HeldLease:
    """
    A lease currently owned by this process.
    Tracked by the LeaseManager while its renewal loop runs.
    """

    lock_name: str
    holder_id: str
    acquired_at: datetime
    expires_at: datetime
    duration_minutes: float
    lost: bool = field(default=False)

    @property
    def key(self) -> tuple[str, str]:
        """Identity of the lease within a manager."""
        return (self.lock_name, self.holder_id)


@dataclass(frozen=True)
class AcquireResult:
    """
    Outcome of a lease acquisition attempt.

    When ``acquired`` is False, ``holder_id`` names the current holder.
    """

    acquired: bool
    holder_id: str | None
    expires_at: datetime | None = None
    lease: HeldLease | None = None


@dataclass(frozen=True)
class LeaseStatus:
    """Answer to "is this lock held right now?"."""

    lock_name: str
    held: bool
    holder_id: str | None = None
    expires_at: datetime | None = None


@dataclass(frozen=True)
class LeaseRecord:
    """Read-only snapshot of a lease row, for status and history views."""

    id: int
    lock_name: str
    holder_id: str
    acquired_at: datetime
    expires_at: datetime
    renewed_at: datetime
    is_active: bool

    @classmethod
    def from_model(cls, lease) -> "LeaseRecord":
        """Build a snapshot from a Lease model instance."""
        return cls(
            id=lease.id,
            lock_name=lease.lock_name,
            holder_id=lease.holder_id,
            acquired_at=ensure_utc(lease.acquired_at),
            expires_at=ensure_utc(lease.expires_at),
            renewed_at=ensure_utc(lease.renewed_at),
            is_active=lease.is_active,
        )
