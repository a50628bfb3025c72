"""
Lease manager for cross-pod mutual exclusion.

Wraps the lease table with holder-identity generation, a background
renewal loop per held lease, scoped acquisition, and an explicit
shutdown hook. Coordination happens only through the database: the row
lock taken in acquire serializes racing pods, and the partial unique index
on active lock names rejects a second active row if two transactions both
pass their read check.
"""

import asyncio
import logging
from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sync_coordinator.clock import Clock, SystemClock, ensure_utc, minutes
from sync_coordinator.config import get_settings
from sync_coordinator.constants import (
    DEFAULT_ACTIVE_LEASE_LIMIT,
    DEFAULT_LEASE_HISTORY_LIMIT,
    LEASE_RENEWAL_DIVISOR,
    SPAN_ACQUIRE_LEASE,
    SPAN_RELEASE_LEASE,
)
from sync_coordinator.coordination.identity import generate_holder_id
from sync_coordinator.db.connection import get_session_context, store_errors
from sync_coordinator.db.repository import LeaseRepository
from sync_coordinator.exceptions import InvalidLeaseRequestError, StoreUnavailableError
from sync_coordinator.observability.metrics import get_metrics
from sync_coordinator.observability.tracing import get_tracer
from sync_coordinator.types.lease import AcquireResult, HeldLease, LeaseRecord, LeaseStatus

logger = logging.getLogger(__name__)

MAX_LOCK_NAME_LENGTH = 255


class LeaseManager:
    """
    Acquires, renews and releases named leases on behalf of one process.

    Features:
    - Atomic check-then-insert under SELECT ... FOR UPDATE
    - Lazy expiry: expired leases are freed by whoever looks next
    - Renewal every duration / 3 while held; stops when the lease is lost
    - hold() context manager releasing on every exit path
    - release_on_shutdown() for the owning process's signal handling
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        clock: Clock | None = None,
        renewal_interval_seconds: float | None = None,
        max_acquire_attempts: int | None = None,
        holder_id_factory: Callable[[], str] = generate_holder_id,
    ):
        """
        Initialize the lease manager.

        Args:
            session_factory: Session factory; the global one when None.
            clock: Time source. Defaults to the system clock.
            renewal_interval_seconds: Fixed renewal period. Defaults to a
                third of each lease's duration.
            max_acquire_attempts: Attempts when an acquire loses an insert race.
            holder_id_factory: Source of fresh holder ids.
        """
        settings = get_settings()

        self._session_factory = session_factory
        self._clock = clock or SystemClock()
        self._renewal_interval_seconds = renewal_interval_seconds
        self._max_acquire_attempts = max_acquire_attempts or settings.lease_acquire_max_attempts
        self._default_duration = settings.lease_default_duration_minutes
        self._new_holder_id = holder_id_factory

        self._held: dict[tuple[str, str], HeldLease] = {}
        self._renewals: dict[tuple[str, str], asyncio.Task] = {}
        self._metrics = get_metrics()

    @property
    def held_leases(self) -> list[HeldLease]:
        """Leases this manager currently believes it holds."""
        return list(self._held.values())

    async def acquire(
        self,
        lock_name: str,
        duration_minutes: float | None = None,
    ) -> AcquireResult:
        """
        Try to take the lease for lock_name.

        Contention is not an error: the result carries acquired=False and
        the current holder's id. On success a renewal loop is started.

        Args:
            lock_name: Name of the resource to lock.
            duration_minutes: Lease lifetime; configured default when None.

        Returns:
            AcquireResult describing the outcome.

        Raises:
            InvalidLeaseRequestError: Empty name or non-positive duration.
            StoreUnavailableError: The database could not be reached.
        """
        duration = self._default_duration if duration_minutes is None else duration_minutes
        self._validate(lock_name, duration)

        with get_tracer().start_as_current_span(SPAN_ACQUIRE_LEASE) as span:
            span.set_attribute("lock_name", lock_name)

            for attempt in range(1, self._max_acquire_attempts + 1):
                try:
                    with store_errors("acquire"):
                        result = await self._try_acquire(lock_name, duration)
                except IntegrityError:
                    # Another pod committed an active row between our read and insert
                    logger.info(
                        "Lost lease insert race, retrying",
                        extra={"lock_name": lock_name, "attempt": attempt},
                    )
                    continue

                span.set_attribute("acquired", result.acquired)
                self._metrics.record_lease_acquire(lock_name, result.acquired)

                if result.acquired and result.lease is not None:
                    self._track(result.lease)
                return result

            # Every attempt lost a race; report whoever won
            status = await self.is_held(lock_name)
            span.set_attribute("acquired", False)
            self._metrics.record_lease_acquire(lock_name, False)
            return AcquireResult(
                acquired=False,
                holder_id=status.holder_id,
                expires_at=status.expires_at,
            )

    async def _try_acquire(self, lock_name: str, duration: float) -> AcquireResult:
        """One acquire transaction: expire, read under lock, insert or back off."""
        now = self._clock.now()

        async with get_session_context(self._session_factory) as session:
            repo = LeaseRepository(session)

            await repo.expire_stale(now, lock_name=lock_name)
            existing = await repo.get_active(lock_name, for_update=True)

            if existing is not None and not existing.is_expired_at(now):
                # Read before rollback; rollback expires loaded instances
                current_holder = existing.holder_id
                current_expiry = ensure_utc(existing.expires_at)
                await session.rollback()
                logger.info(
                    "Lease already held",
                    extra={
                        "lock_name": lock_name,
                        "holder_id": current_holder,
                        "expires_at": current_expiry.isoformat(),
                    },
                )
                return AcquireResult(
                    acquired=False,
                    holder_id=current_holder,
                    expires_at=current_expiry,
                )

            if existing is not None:
                # Expired exactly at the boundary of the cleanup above
                existing.is_active = False
                existing.updated_at = now
                await session.flush()

            holder_id = self._new_holder_id()
            expires_at = now + minutes(duration)
            await repo.create(lock_name, holder_id, now, expires_at)

        logger.info(
            "Acquired lease",
            extra={
                "lock_name": lock_name,
                "holder_id": holder_id,
                "expires_at": expires_at.isoformat(),
            },
        )
        lease = HeldLease(
            lock_name=lock_name,
            holder_id=holder_id,
            acquired_at=now,
            expires_at=expires_at,
            duration_minutes=duration,
        )
        return AcquireResult(acquired=True, holder_id=holder_id, expires_at=expires_at, lease=lease)

    async def renew(
        self,
        lock_name: str,
        holder_id: str,
        duration_minutes: float | None = None,
    ) -> bool:
        """
        Extend a lease owned by holder_id.

        Args:
            lock_name: The lock name.
            holder_id: The holder that must currently own the lease.
            duration_minutes: New lifetime from now.

        Returns:
            True if extended; False if the lease is no longer held by holder_id.

        Raises:
            StoreUnavailableError: The database could not be reached.
        """
        duration = self._default_duration if duration_minutes is None else duration_minutes
        self._validate(lock_name, duration)

        now = self._clock.now()
        expires_at = now + minutes(duration)

        with store_errors("renew"):
            async with get_session_context(self._session_factory) as session:
                renewed = await LeaseRepository(session).renew(lock_name, holder_id, now, expires_at)

        held = self._held.get((lock_name, holder_id))
        if renewed and held is not None:
            held.expires_at = expires_at

        self._metrics.record_lease_renew(lock_name, "renewed" if renewed else "lost")
        if renewed:
            logger.debug(
                "Renewed lease",
                extra={"lock_name": lock_name, "holder_id": holder_id, "expires_at": expires_at.isoformat()},
            )
        else:
            logger.warning(
                "No active lease found for renewal",
                extra={"lock_name": lock_name, "holder_id": holder_id},
            )
        return renewed

    async def release(self, lock_name: str, holder_id: str) -> bool:
        """
        Release a lease. Idempotent.

        Args:
            lock_name: The lock name.
            holder_id: The holder releasing the lease.

        Returns:
            True if an active lease was deactivated, False if there was none.

        Raises:
            StoreUnavailableError: The database could not be reached.
        """
        key = (lock_name, holder_id)
        await self._stop_renewal(key)

        with get_tracer().start_as_current_span(SPAN_RELEASE_LEASE) as span:
            span.set_attribute("lock_name", lock_name)
            now = self._clock.now()

            with store_errors("release"):
                async with get_session_context(self._session_factory) as session:
                    released = await LeaseRepository(session).release(lock_name, holder_id, now)

        self._held.pop(key, None)

        if released:
            self._metrics.record_lease_released(lock_name)
            logger.info(
                "Released lease",
                extra={"lock_name": lock_name, "holder_id": holder_id},
            )
        else:
            logger.warning(
                "No active lease to release",
                extra={"lock_name": lock_name, "holder_id": holder_id},
            )
        return released

    @asynccontextmanager
    async def hold(
        self,
        lock_name: str,
        duration_minutes: float | None = None,
    ) -> AsyncGenerator[AcquireResult, None]:
        """
        Acquire for the duration of a block, releasing on every exit path.

        Callers must check ``result.acquired`` before doing protected work.

        Example:
            async with manager.hold("changelog-sync", 30) as result:
                if result.acquired:
                    await sync_changelogs()
        """
        result = await self.acquire(lock_name, duration_minutes)
        try:
            yield result
        finally:
            if result.acquired and result.lease is not None:
                await self.release(result.lease.lock_name, result.lease.holder_id)

    async def release_on_shutdown(self, lease: HeldLease | None = None) -> int:
        """
        Release leases as the process shuts down.

        Registered by the owning process (signal handler, application
        lifespan); the manager installs no signal handlers itself.
        Best effort: store failures are logged and the remaining leases are
        left to expire.

        Args:
            lease: A single lease to release; every held lease when None.

        Returns:
            Number of leases released.
        """
        targets = [lease] if lease is not None else self.held_leases
        released = 0

        for target in targets:
            try:
                if await self.release(target.lock_name, target.holder_id):
                    released += 1
            except StoreUnavailableError:
                logger.exception(
                    "Failed to release lease on shutdown",
                    extra={"lock_name": target.lock_name, "holder_id": target.holder_id},
                )

        if targets:
            logger.info(
                f"Released {released}/{len(targets)} leases on shutdown",
            )
        return released

    async def is_held(self, lock_name: str) -> LeaseStatus:
        """
        Report whether a lock is currently held, expiring it lazily if due.

        Raises:
            StoreUnavailableError: The database could not be reached.
        """
        now = self._clock.now()

        with store_errors("is_held"):
            async with get_session_context(self._session_factory) as session:
                repo = LeaseRepository(session)
                await repo.expire_stale(now, lock_name=lock_name)
                lease = await repo.get_active(lock_name)

        if lease is None or lease.is_expired_at(now):
            return LeaseStatus(lock_name=lock_name, held=False)

        return LeaseStatus(
            lock_name=lock_name,
            held=True,
            holder_id=lease.holder_id,
            expires_at=ensure_utc(lease.expires_at),
        )

    async def history(
        self,
        lock_name: str | None = None,
        limit: int = DEFAULT_LEASE_HISTORY_LIMIT,
    ) -> list[LeaseRecord]:
        """Lease rows of any state, newest acquisition first."""
        with store_errors("history"):
            async with get_session_context(self._session_factory) as session:
                leases = await LeaseRepository(session).history(lock_name, limit)

        return [LeaseRecord.from_model(lease) for lease in leases]

    async def active_leases(self, limit: int = DEFAULT_ACTIVE_LEASE_LIMIT) -> list[LeaseRecord]:
        """Active, unexpired leases across all lock names."""
        now = self._clock.now()

        with store_errors("active_leases"):
            async with get_session_context(self._session_factory) as session:
                leases = await LeaseRepository(session).list_active(now, limit)

        return [LeaseRecord.from_model(lease) for lease in leases]

    async def cleanup_expired(self) -> int:
        """
        Deactivate every expired-but-active lease.

        Returns:
            Number of leases deactivated.
        """
        now = self._clock.now()

        with store_errors("cleanup_expired"):
            async with get_session_context(self._session_factory) as session:
                count = await LeaseRepository(session).expire_stale(now)

        self._metrics.record_leases_expired(count)
        return count

    def renewal_interval(self, duration_minutes: float) -> float:
        """Seconds between renewals for a lease of the given duration."""
        if self._renewal_interval_seconds is not None:
            return self._renewal_interval_seconds
        return duration_minutes * 60 / LEASE_RENEWAL_DIVISOR

    def _track(self, lease: HeldLease) -> None:
        """Remember a held lease and start its renewal loop."""
        self._held[lease.key] = lease
        self._renewals[lease.key] = asyncio.create_task(
            self._renewal_loop(lease),
            name=f"lease-renewal:{lease.lock_name}",
        )

    async def _renewal_loop(self, lease: HeldLease) -> None:
        """
        Periodically extend a held lease.

        A store error skips one tick; a failed renewal means the lease was
        lost (expired and possibly reassigned) and ends the loop.
        """
        interval = self.renewal_interval(lease.duration_minutes)

        try:
            while True:
                await asyncio.sleep(interval)

                try:
                    renewed = await self.renew(lease.lock_name, lease.holder_id, lease.duration_minutes)
                except StoreUnavailableError as e:
                    self._metrics.record_lease_renew(lease.lock_name, "error")
                    logger.warning(
                        "Lease renewal failed, retrying next tick",
                        extra={"lock_name": lease.lock_name, "holder_id": lease.holder_id, "error": str(e)},
                    )
                    continue
                except Exception:
                    self._metrics.record_lease_renew(lease.lock_name, "error")
                    logger.exception(
                        "Error in lease renewal loop",
                        extra={"lock_name": lease.lock_name, "holder_id": lease.holder_id},
                    )
                    continue

                if not renewed:
                    lease.lost = True
                    self._held.pop(lease.key, None)
                    logger.warning(
                        "Lease lost; stopping renewal",
                        extra={"lock_name": lease.lock_name, "holder_id": lease.holder_id},
                    )
                    return
        finally:
            if self._renewals.get(lease.key) is asyncio.current_task():
                self._renewals.pop(lease.key, None)

    async def _stop_renewal(self, key: tuple[str, str]) -> None:
        """Cancel the renewal loop for a lease and wait for it to finish."""
        task = self._renewals.pop(key, None)
        if task is None or task is asyncio.current_task():
            return

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    @staticmethod
    def _validate(lock_name: str, duration_minutes: float) -> None:
        if not lock_name or not lock_name.strip():
            raise InvalidLeaseRequestError("lock_name must be a non-empty string")
        if len(lock_name) > MAX_LOCK_NAME_LENGTH:
            raise InvalidLeaseRequestError(f"lock_name longer than {MAX_LOCK_NAME_LENGTH} characters")
        if duration_minutes <= 0:
            raise InvalidLeaseRequestError("duration_minutes must be positive")
