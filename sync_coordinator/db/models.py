"""
SQLAlchemy database models.
Defines the lease and run-history tables used for cross-pod coordination.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from sync_coordinator.clock import ensure_utc
from sync_coordinator.constants import RunKind, RunStatus

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in development and tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class Lease(Base):
    """
    A time-bounded exclusive claim on a named resource.

    Key constraints:
    - at most one row per lock_name with is_active = true, enforced by the
      partial unique index uq_sync_leases_active_lock
    - rows are flipped inactive on release or expiry and kept for audit
    """

    __tablename__ = "sync_leases"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    lock_name: Mapped[str] = mapped_column(String(255), nullable=False)
    holder_id: Mapped[str] = mapped_column(String(255), nullable=False)

    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    renewed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        # One active holder per lock name, keyed on lock_name alone
        Index(
            "uq_sync_leases_active_lock",
            "lock_name",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
        Index("ix_sync_leases_name_active", "lock_name", "is_active"),
        Index("ix_sync_leases_expires_at", "expires_at"),
        Index("ix_sync_leases_acquired_at", "acquired_at"),
    )

    def is_expired_at(self, now: datetime) -> bool:
        """Check whether the lease has expired as of ``now``."""
        return ensure_utc(self.expires_at) <= now

    def __repr__(self) -> str:
        return (
            f"Lease(lock_name={self.lock_name}, holder={self.holder_id}, "
            f"active={self.is_active}, expires_at={self.expires_at})"
        )


class SyncRun(Base):
    """
    One invocation of a synchronization job.

    end_time is set iff status != running; the running -> completed|failed
    transition happens once, guarded by a conditional update.
    """

    __tablename__ = "sync_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    kind: Mapped[RunKind] = mapped_column(
        Enum(RunKind, name="sync_run_kind", create_constraint=True, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    status: Mapped[RunStatus] = mapped_column(
        Enum(RunStatus, name="sync_run_status", create_constraint=True, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=RunStatus.RUNNING,
    )

    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Lock the run was made under; the sweeper leaves runs with a live lease alone
    lock_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    scope: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    result: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        # Throttle gate lookup: latest completed run of a kind
        Index("ix_sync_runs_kind_status_end", "kind", "status", "end_time"),
        Index("ix_sync_runs_start_time", "start_time"),
        Index("ix_sync_runs_lock_name", "lock_name"),
    )

    @property
    def is_finished(self) -> bool:
        """Check if the run has left the running state."""
        return self.status != RunStatus.RUNNING

    def __repr__(self) -> str:
        return f"SyncRun(id={self.id}, kind={self.kind}, status={self.status})"
