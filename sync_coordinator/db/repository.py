"""
Lease and run-history repositories.
Implements the data access patterns for cross-pod sync coordination.

Repositories never commit; the caller owns the transaction.
"""

import logging
from datetime import datetime
from typing import Any, Sequence

from sqlalchemy import and_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from sync_coordinator.constants import RunKind, RunStatus
from sync_coordinator.db.models import Lease, SyncRun

logger = logging.getLogger(__name__)


class LeaseRepository:
    """
    Repository for lease database operations.

    Implements atomic operations for:
    - Lazy expiry of active-but-expired leases
    - Reading the active lease under FOR UPDATE
    - Holder-matched renewal and release
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize the repository with a database session.

        Args:
            session: The async database session.
        """
        self._session = session

    async def expire_stale(self, now: datetime, lock_name: str | None = None) -> int:
        """
        Flip active leases whose expiry has passed to inactive.

        Args:
            now: Current time.
            lock_name: Restrict to one lock; all locks when None.

        Returns:
            Number of leases deactivated.
        """
        filters = [Lease.is_active.is_(True), Lease.expires_at <= now]
        if lock_name is not None:
            filters.append(Lease.lock_name == lock_name)

        stmt = (
            update(Lease)
            .where(and_(*filters))
            .values(is_active=False, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        count = result.rowcount or 0

        if count > 0:
            logger.info(
                "Deactivated expired leases",
                extra={"lock_name": lock_name, "count": count},
            )

        return count

    async def get_active(self, lock_name: str, for_update: bool = False) -> Lease | None:
        """
        Get the active lease for a lock.

        Args:
            lock_name: The lock name.
            for_update: Take a row lock (SELECT ... FOR UPDATE).

        Returns:
            The active Lease or None.
        """
        stmt = (
            select(Lease)
            .where(and_(Lease.lock_name == lock_name, Lease.is_active.is_(True)))
            .order_by(Lease.acquired_at.desc())
            .limit(1)
        )
        if for_update:
            stmt = stmt.with_for_update()

        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def create(
        self,
        lock_name: str,
        holder_id: str,
        now: datetime,
        expires_at: datetime,
    ) -> Lease:
        """
        Insert a new active lease.

        Raises IntegrityError if another active lease for lock_name was
        committed concurrently.
        """
        lease = Lease(
            lock_name=lock_name,
            holder_id=holder_id,
            acquired_at=now,
            expires_at=expires_at,
            renewed_at=now,
            is_active=True,
            created_at=now,
            updated_at=now,
        )
        self._session.add(lease)
        await self._session.flush()
        return lease

    async def renew(
        self,
        lock_name: str,
        holder_id: str,
        now: datetime,
        expires_at: datetime,
    ) -> bool:
        """
        Extend an unexpired lease owned by holder_id.

        Returns:
            True if the lease was extended, False if it is no longer held.
        """
        stmt = (
            update(Lease)
            .where(
                and_(
                    Lease.lock_name == lock_name,
                    Lease.holder_id == holder_id,
                    Lease.is_active.is_(True),
                    Lease.expires_at > now,
                )
            )
            .values(expires_at=expires_at, renewed_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return (result.rowcount or 0) > 0

    async def release(self, lock_name: str, holder_id: str, now: datetime) -> bool:
        """
        Deactivate an unexpired lease owned by holder_id.

        Expired leases are left for lazy expiry so that a late release
        mutates nothing.

        Returns:
            True if a lease was released.
        """
        stmt = (
            update(Lease)
            .where(
                and_(
                    Lease.lock_name == lock_name,
                    Lease.holder_id == holder_id,
                    Lease.is_active.is_(True),
                    Lease.expires_at > now,
                )
            )
            .values(is_active=False, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return (result.rowcount or 0) > 0

    async def list_active(self, now: datetime, limit: int = 20) -> Sequence[Lease]:
        """List active, unexpired leases, newest first."""
        stmt = (
            select(Lease)
            .where(and_(Lease.is_active.is_(True), Lease.expires_at > now))
            .order_by(Lease.acquired_at.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def history(self, lock_name: str | None = None, limit: int = 50) -> Sequence[Lease]:
        """List leases of any state, newest acquisition first."""
        stmt = select(Lease).order_by(Lease.acquired_at.desc(), Lease.id.desc()).limit(limit)
        if lock_name is not None:
            stmt = stmt.where(Lease.lock_name == lock_name)

        result = await self._session.execute(stmt)
        return result.scalars().all()


class RunRepository:
    """
    Repository for run-history database operations.

    Terminal transitions are conditional on status = running so each
    record is finalized at most once.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def create(
        self,
        kind: RunKind,
        scope: dict[str, Any],
        start_time: datetime,
        lock_name: str | None = None,
    ) -> SyncRun:
        """Insert a new running record."""
        run = SyncRun(
            kind=kind,
            scope=scope,
            lock_name=lock_name,
            start_time=start_time,
            status=RunStatus.RUNNING,
            created_at=start_time,
            updated_at=start_time,
        )
        self._session.add(run)
        await self._session.flush()

        logger.info(
            "Started sync run",
            extra={"run_id": run.id, "kind": kind.value},
        )
        return run

    async def get(self, run_id: int) -> SyncRun | None:
        """Get a run by ID."""
        stmt = select(SyncRun).where(SyncRun.id == run_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def finalize(
        self,
        run_id: int,
        status: RunStatus,
        end_time: datetime,
        result: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> SyncRun | None:
        """
        Move a running record to a terminal status.

        Args:
            run_id: The run ID.
            status: COMPLETED or FAILED.
            end_time: Completion time.
            result: Result payload for completed runs.
            error: Error message for failed runs.

        Returns:
            Updated SyncRun or None if the record was not running.
        """
        if status == RunStatus.RUNNING:
            raise ValueError("finalize requires a terminal status")

        stmt = (
            update(SyncRun)
            .where(and_(SyncRun.id == run_id, SyncRun.status == RunStatus.RUNNING))
            .values(
                status=status,
                end_time=end_time,
                result=result,
                error=error,
                updated_at=end_time,
            )
            .returning(SyncRun)
            .execution_options(synchronize_session=False, populate_existing=True)
        )
        result_obj = await self._session.execute(stmt)
        return result_obj.scalar_one_or_none()

    async def last_completed(self, kind: RunKind) -> SyncRun | None:
        """Get the most recent completed run of a kind, by end time."""
        stmt = (
            select(SyncRun)
            .where(
                and_(
                    SyncRun.kind == kind,
                    SyncRun.status == RunStatus.COMPLETED,
                    SyncRun.end_time.is_not(None),
                )
            )
            .order_by(SyncRun.end_time.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def history(self, kind: RunKind | None = None, limit: int = 10) -> Sequence[SyncRun]:
        """List runs, newest start first."""
        stmt = select(SyncRun).order_by(SyncRun.start_time.desc(), SyncRun.id.desc()).limit(limit)
        if kind is not None:
            stmt = stmt.where(SyncRun.kind == kind)

        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def fail_abandoned(self, started_before: datetime, now: datetime, error: str) -> int:
        """
        Mark running records that started before a cutoff as failed.

        Runs whose lock still has an active, unexpired lease are skipped:
        their holder is alive and renewing, so the run is still in progress.

        Returns:
            Number of records reconciled.
        """
        live_lease = (
            select(Lease.id)
            .where(
                and_(
                    Lease.lock_name == SyncRun.lock_name,
                    Lease.is_active.is_(True),
                    Lease.expires_at > now,
                )
            )
            .correlate(SyncRun)
            .exists()
        )

        stmt = (
            update(SyncRun)
            .where(
                and_(
                    SyncRun.status == RunStatus.RUNNING,
                    SyncRun.start_time < started_before,
                    ~live_lease,
                )
            )
            .values(
                status=RunStatus.FAILED,
                end_time=now,
                error=error,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        count = result.rowcount or 0

        if count > 0:
            logger.warning(
                f"Marked {count} abandoned sync runs as failed",
                extra={"started_before": started_before.isoformat()},
            )

        return count
