"""
Run-ledger and coordinator type definitions.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar

from sync_coordinator.clock import ensure_utc
from sync_coordinator.config import get_settings
from sync_coordinator.constants import RunKind, RunStatus


@dataclass(frozen=True)
class RunHandle:
    """Handle returned by start_run; the only way to finalize that record."""

    run_id: int
    kind: RunKind
    scope: dict[str, Any]
    start_time: datetime
    lock_name: str | None = None


@dataclass(frozen=True)
class RunRecord:
    """Read-only snapshot of a run-history row."""

    id: int
    kind: RunKind
    status: RunStatus
    scope: dict[str, Any]
    start_time: datetime
    end_time: datetime | None
    result: dict[str, Any] | None
    error: str | None
    lock_name: str | None = None

    @property
    def duration_seconds(self) -> float | None:
        """Wall time of the run, if finished."""
        if self.end_time is None:
            return None
        return (self.end_time - self.start_time).total_seconds()

    @classmethod
    def from_model(cls, run) -> "RunRecord":
        """Build a snapshot from a SyncRun model instance."""
        return cls(
            id=run.id,
            kind=RunKind(run.kind),
            status=RunStatus(run.status),
            scope=run.scope or {},
            start_time=ensure_utc(run.start_time),
            end_time=ensure_utc(run.end_time) if run.end_time else None,
            result=run.result,
            error=run.error,
            lock_name=run.lock_name,
        )


@dataclass(frozen=True)
class ThrottleDecision:
    """
    Result of the throttle gate.

    ``minutes_remaining`` is whole minutes, rounded up; zero when allowed.
    """

    allowed: bool
    minutes_remaining: int = 0
    last_run_end: datetime | None = None
    next_allowed_at: datetime | None = None


@dataclass(frozen=True)
class SyncPolicy:
    """Per-invocation policy for SyncCoordinator.run."""

    minimum_interval_minutes: float
    lease_duration_minutes: float
    bypass_throttle: bool = False

    @classmethod
    def from_settings(
        cls,
        bypass_throttle: bool = False,
        minimum_interval_minutes: float | None = None,
        lease_duration_minutes: float | None = None,
    ) -> "SyncPolicy":
        """Build a policy from configured defaults, with optional overrides."""
        settings = get_settings()
        return cls(
            minimum_interval_minutes=(
                minimum_interval_minutes
                if minimum_interval_minutes is not None
                else settings.sync_minimum_interval_minutes
            ),
            lease_duration_minutes=(
                lease_duration_minutes
                if lease_duration_minutes is not None
                else settings.lease_default_duration_minutes
            ),
            bypass_throttle=bypass_throttle,
        )


# Coordinator outcomes. Each carries enough to map onto a status code
# without the coordinator knowing about HTTP.


@dataclass(frozen=True)
class Throttled:
    """The kind ran too recently; nothing was touched."""

    outcome: ClassVar[str] = "throttled"

    minutes_remaining: int
    next_allowed_at: datetime | None = None


@dataclass(frozen=True)
class Busy:
    """Another holder owns the lease for this kind and scope."""

    outcome: ClassVar[str] = "busy"

    holder_id: str | None
    lock_name: str = ""


@dataclass(frozen=True)
class Completed:
    """The work ran and returned."""

    outcome: ClassVar[str] = "completed"

    result: Any
    run_id: int
    lock_name: str = ""
    duration_seconds: float = field(default=0.0)


@dataclass(frozen=True)
class Failed:
    """The work ran and raised; recorded in the ledger, not re-raised."""

    outcome: ClassVar[str] = "failed"

    error: str
    run_id: int
    lock_name: str = ""
    duration_seconds: float = field(default=0.0)


SyncOutcome = Throttled | Busy | Completed | Failed
