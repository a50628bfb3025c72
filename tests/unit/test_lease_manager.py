"""
Unit tests for the lease manager.

Pods are simulated by separate LeaseManager instances sharing one database
and one frozen clock.
"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from sync_coordinator.clock import FrozenClock
from sync_coordinator.coordination.identity import generate_holder_id
from sync_coordinator.coordination.lease_manager import LeaseManager
from sync_coordinator.exceptions import InvalidLeaseRequestError, StoreUnavailableError


class TestAcquire:
    """Tests for lease acquisition."""

    async def test_acquire_free_lock(self, make_pod):
        """Test that a free lock is acquired with the requested duration."""
        pod_x = make_pod("pod-x")

        result = await pod_x.acquire("sync-all", 30)

        assert result.acquired is True
        assert result.holder_id == "pod-x-1"
        assert result.lease is not None
        assert (result.expires_at - result.lease.acquired_at).total_seconds() == 30 * 60
        assert pod_x.held_leases == [result.lease]

    async def test_contended_lock_reports_holder(self, make_pod):
        """Pod Y asking for a lock pod X holds gets X's id back."""
        pod_x = make_pod("pod-x")
        pod_y = make_pod("pod-y")

        first = await pod_x.acquire("sync-all", 30)
        second = await pod_y.acquire("sync-all", 30)

        assert first.acquired is True
        assert second.acquired is False
        assert second.holder_id == first.holder_id
        assert second.expires_at == first.expires_at
        assert second.lease is None
        assert pod_y.held_leases == []

    async def test_same_manager_cannot_reacquire(self, make_pod):
        """Test that holding a lock does not make it reentrant."""
        pod_x = make_pod("pod-x")

        first = await pod_x.acquire("sync-all", 30)
        second = await pod_x.acquire("sync-all", 30)

        assert first.acquired is True
        assert second.acquired is False
        assert second.holder_id == first.holder_id

    async def test_expired_lease_is_taken_over(self, make_pod, clock: FrozenClock):
        """An unrenewed lease frees itself once its expiry passes."""
        pod_x = make_pod("pod-x", renewal_interval_seconds=3600)
        pod_y = make_pod("pod-y")

        first = await pod_x.acquire("sync-all", 30)
        clock.advance(minutes=30)
        second = await pod_y.acquire("sync-all", 30)

        assert second.acquired is True
        assert second.holder_id != first.holder_id

        history = await pod_y.history("sync-all")
        assert [lease.holder_id for lease in history] == [second.holder_id, first.holder_id]
        assert [lease.is_active for lease in history] == [True, False]

    async def test_lease_still_held_just_before_expiry(self, make_pod, clock: FrozenClock):
        """Test that a lease one second short of expiry still excludes others."""
        pod_x = make_pod("pod-x", renewal_interval_seconds=3600)
        pod_y = make_pod("pod-y")

        await pod_x.acquire("sync-all", 30)
        clock.advance(minutes=29, seconds=59)

        assert (await pod_y.acquire("sync-all", 30)).acquired is False

    async def test_different_locks_are_independent(self, make_pod):
        """Test that leases on different names do not exclude each other."""
        pod_x = make_pod("pod-x")
        pod_y = make_pod("pod-y")

        assert (await pod_x.acquire("sync-project-ABC", 30)).acquired is True
        assert (await pod_y.acquire("sync-project-XYZ", 30)).acquired is True

    async def test_default_duration_from_settings(self, lease_manager: LeaseManager):
        """Test that omitting the duration uses the configured default."""
        result = await lease_manager.acquire("sync-all")

        assert result.lease.duration_minutes == 30.0

    @pytest.mark.parametrize("lock_name", ["", "   ", "x" * 256])
    async def test_invalid_lock_name(self, lease_manager: LeaseManager, lock_name: str):
        """Test that unusable lock names are rejected before touching the store."""
        with pytest.raises(InvalidLeaseRequestError):
            await lease_manager.acquire(lock_name, 30)

    @pytest.mark.parametrize("duration", [0, -5])
    async def test_invalid_duration(self, lease_manager: LeaseManager, duration: float):
        """Test that non-positive durations are rejected."""
        with pytest.raises(InvalidLeaseRequestError):
            await lease_manager.acquire("sync-all", duration)

    async def test_invalid_request_is_value_error(self, lease_manager: LeaseManager):
        """Test that precondition failures can be caught as ValueError."""
        with pytest.raises(ValueError):
            await lease_manager.acquire("", 30)

    async def test_store_failure_raises(self, lease_manager: LeaseManager):
        """Test that connectivity failures surface as StoreUnavailableError."""
        error = OperationalError("SELECT 1", {}, Exception("connection refused"))

        with patch.object(lease_manager, "_try_acquire", AsyncMock(side_effect=error)):
            with pytest.raises(StoreUnavailableError) as exc_info:
                await lease_manager.acquire("sync-all", 30)

        assert exc_info.value.operation == "acquire"
        assert lease_manager.held_leases == []


class TestRenewal:
    """Tests for lease renewal."""

    async def test_renew_extends_expiry(self, make_pod, clock: FrozenClock):
        """Test that renewal pushes expiry to now + duration."""
        pod_x = make_pod("pod-x", renewal_interval_seconds=3600)

        result = await pod_x.acquire("sync-all", 30)
        clock.advance(minutes=20)

        assert await pod_x.renew("sync-all", result.holder_id, 30) is True

        status = await pod_x.is_held("sync-all")
        assert status.expires_at == clock.now() + (result.expires_at - result.lease.acquired_at)
        assert pod_x.held_leases[0].expires_at == status.expires_at

    async def test_renew_by_other_holder_fails(self, make_pod):
        """Test that a holder cannot extend someone else's lease."""
        pod_x = make_pod("pod-x")
        pod_y = make_pod("pod-y")

        await pod_x.acquire("sync-all", 30)

        assert await pod_y.renew("sync-all", "pod-y-1", 30) is False

    async def test_renew_after_expiry_fails(self, make_pod, clock: FrozenClock):
        """Test that an expired lease is not revived."""
        pod_x = make_pod("pod-x", renewal_interval_seconds=3600)

        result = await pod_x.acquire("sync-all", 30)
        clock.advance(minutes=31)

        assert await pod_x.renew("sync-all", result.holder_id, 30) is False

    async def test_renewal_loop_keeps_lease_alive(self, make_pod, clock: FrozenClock):
        """Test that the background loop extends a held lease."""
        pod_x = make_pod("pod-x", renewal_interval_seconds=0.05)
        pod_y = make_pod("pod-y")

        result = await pod_x.acquire("sync-all", 1)
        clock.advance(seconds=50)
        await asyncio.sleep(0.3)

        status = await pod_x.is_held("sync-all")
        assert status.expires_at == clock.now() + (result.expires_at - result.lease.acquired_at)

        clock.advance(seconds=30)
        assert (await pod_y.acquire("sync-all", 1)).acquired is False

    async def test_renewal_loop_stops_when_lease_lost(self, make_pod, clock: FrozenClock):
        """A lease that expired under its holder is reported lost and dropped."""
        pod_x = make_pod("pod-x", renewal_interval_seconds=0.05)
        pod_y = make_pod("pod-y")

        result = await pod_x.acquire("sync-all", 1)
        clock.advance(minutes=2)
        taken = await pod_y.acquire("sync-all", 30)
        await asyncio.sleep(0.3)

        assert taken.acquired is True
        assert result.lease.lost is True
        assert pod_x.held_leases == []

        status = await pod_y.is_held("sync-all")
        assert status.holder_id == taken.holder_id

    async def test_renewal_loop_survives_store_errors(self, make_pod, clock: FrozenClock):
        """Test that a failed renewal tick is retried on the next one."""
        pod_x = make_pod("pod-x", renewal_interval_seconds=0.05)

        result = await pod_x.acquire("sync-all", 1)
        real_renew = pod_x.renew
        calls = 0

        async def flaky_renew(*args, **kwargs):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise StoreUnavailableError("renew")
            return await real_renew(*args, **kwargs)

        with patch.object(pod_x, "renew", flaky_renew):
            clock.advance(seconds=30)
            await asyncio.sleep(0.3)

        assert calls > 1
        assert result.lease.lost is False
        status = await pod_x.is_held("sync-all")
        assert status.expires_at == clock.now() + (result.expires_at - result.lease.acquired_at)

    def test_renewal_interval_is_third_of_duration(self):
        """Test the default renewal cadence."""
        manager = LeaseManager(clock=FrozenClock())

        assert manager.renewal_interval(30) == 600
        assert manager.renewal_interval(1) == 20


class TestRelease:
    """Tests for lease release."""

    async def test_release_frees_lock(self, make_pod):
        """Releasing lets another pod acquire immediately."""
        pod_x = make_pod("pod-x")
        pod_y = make_pod("pod-y")

        first = await pod_x.acquire("sync-all", 30)
        assert await pod_x.release("sync-all", first.holder_id) is True

        second = await pod_y.acquire("sync-all", 30)
        assert second.acquired is True
        assert pod_x.held_leases == []

    async def test_release_is_idempotent(self, lease_manager: LeaseManager):
        """Test that a second release is a no-op."""
        result = await lease_manager.acquire("sync-all", 30)

        assert await lease_manager.release("sync-all", result.holder_id) is True
        assert await lease_manager.release("sync-all", result.holder_id) is False

    async def test_release_by_non_holder_is_noop(self, make_pod):
        """Test that releasing with the wrong holder id leaves the lease alone."""
        pod_x = make_pod("pod-x")
        pod_y = make_pod("pod-y")

        first = await pod_x.acquire("sync-all", 30)

        assert await pod_y.release("sync-all", "pod-y-1") is False
        status = await pod_y.is_held("sync-all")
        assert status.held is True
        assert status.holder_id == first.holder_id

    async def test_late_release_does_not_touch_new_holder(self, make_pod, clock: FrozenClock):
        """A holder releasing after losing its lease must not free the new one."""
        pod_x = make_pod("pod-x", renewal_interval_seconds=3600)
        pod_y = make_pod("pod-y")

        first = await pod_x.acquire("sync-all", 30)
        clock.advance(minutes=31)
        second = await pod_y.acquire("sync-all", 30)

        assert await pod_x.release("sync-all", first.holder_id) is False

        status = await pod_y.is_held("sync-all")
        assert status.holder_id == second.holder_id

    async def test_release_stops_renewal(self, make_pod):
        """Test that no renewal task survives a release."""
        pod_x = make_pod("pod-x", renewal_interval_seconds=0.05)

        result = await pod_x.acquire("sync-all", 30)
        await pod_x.release("sync-all", result.holder_id)

        assert pod_x._renewals == {}


class TestHold:
    """Tests for the scoped hold() helper."""

    async def test_hold_releases_on_exit(self, make_pod):
        """Test that the lock is free again after the block."""
        pod_x = make_pod("pod-x")

        async with pod_x.hold("changelog-sync", 30) as result:
            assert result.acquired is True
            assert (await pod_x.is_held("changelog-sync")).held is True

        assert (await pod_x.is_held("changelog-sync")).held is False

    async def test_hold_releases_on_error(self, make_pod):
        """Test that an exception in the block still releases the lock."""
        pod_x = make_pod("pod-x")

        with pytest.raises(RuntimeError):
            async with pod_x.hold("changelog-sync", 30):
                raise RuntimeError("sync failed")

        assert (await pod_x.is_held("changelog-sync")).held is False

    async def test_hold_when_busy(self, make_pod):
        """Test that a contended hold yields a not-acquired result and frees nothing."""
        pod_x = make_pod("pod-x")
        pod_y = make_pod("pod-y")

        first = await pod_x.acquire("changelog-sync", 30)

        async with pod_y.hold("changelog-sync", 30) as result:
            assert result.acquired is False
            assert result.holder_id == first.holder_id

        status = await pod_x.is_held("changelog-sync")
        assert status.held is True


class TestShutdown:
    """Tests for release_on_shutdown."""

    async def test_release_all_held(self, make_pod):
        """Test that every held lease is released."""
        pod_x = make_pod("pod-x")

        await pod_x.acquire("lock-a", 30)
        await pod_x.acquire("lock-b", 30)

        assert await pod_x.release_on_shutdown() == 2
        assert pod_x.held_leases == []
        assert (await pod_x.is_held("lock-a")).held is False
        assert (await pod_x.is_held("lock-b")).held is False

    async def test_release_single_lease(self, make_pod):
        """Test that a single lease can be released on its own."""
        pod_x = make_pod("pod-x")

        first = await pod_x.acquire("lock-a", 30)
        await pod_x.acquire("lock-b", 30)

        assert await pod_x.release_on_shutdown(first.lease) == 1
        assert [lease.lock_name for lease in pod_x.held_leases] == ["lock-b"]

    async def test_store_failure_is_logged_not_raised(self, make_pod):
        """Test that shutdown release is best effort."""
        pod_x = make_pod("pod-x")
        await pod_x.acquire("lock-a", 30)

        with patch.object(pod_x, "release", AsyncMock(side_effect=StoreUnavailableError("release"))):
            assert await pod_x.release_on_shutdown() == 0

    async def test_nothing_held(self, lease_manager: LeaseManager):
        """Test that shutdown with no leases does nothing."""
        assert await lease_manager.release_on_shutdown() == 0


class TestInspection:
    """Tests for is_held, history, active_leases and cleanup."""

    async def test_is_held_free_lock(self, lease_manager: LeaseManager):
        """Test status of a lock nobody has taken."""
        status = await lease_manager.is_held("sync-all")

        assert status.held is False
        assert status.holder_id is None

    async def test_is_held_expires_lazily(self, make_pod, clock: FrozenClock):
        """Test that a status check frees an expired lease."""
        pod_x = make_pod("pod-x", renewal_interval_seconds=3600)

        await pod_x.acquire("sync-all", 30)
        clock.advance(minutes=30)

        assert (await pod_x.is_held("sync-all")).held is False
        history = await pod_x.history("sync-all")
        assert history[0].is_active is False

    async def test_history_newest_first(self, lease_manager: LeaseManager, clock: FrozenClock):
        """Test history ordering and limit."""
        for _ in range(3):
            result = await lease_manager.acquire("sync-all", 30)
            await lease_manager.release("sync-all", result.holder_id)
            clock.advance(minutes=1)

        history = await lease_manager.history("sync-all")
        assert len(history) == 3
        assert [lease.acquired_at for lease in history] == sorted(
            (lease.acquired_at for lease in history), reverse=True
        )

        assert len(await lease_manager.history("sync-all", limit=2)) == 2

    async def test_active_leases(self, make_pod, clock: FrozenClock):
        """Test that only active, unexpired leases are listed."""
        pod_x = make_pod("pod-x", renewal_interval_seconds=3600)

        await pod_x.acquire("lock-short", 5)
        await pod_x.acquire("lock-long", 30)
        clock.advance(minutes=10)

        active = await pod_x.active_leases()
        assert [lease.lock_name for lease in active] == ["lock-long"]

    async def test_cleanup_expired(self, make_pod, clock: FrozenClock):
        """Test that cleanup deactivates every expired lease and counts them."""
        pod_x = make_pod("pod-x", renewal_interval_seconds=3600)

        await pod_x.acquire("lock-a", 5)
        await pod_x.acquire("lock-b", 5)
        await pod_x.acquire("lock-c", 30)
        clock.advance(minutes=5)

        assert await pod_x.cleanup_expired() == 2
        assert await pod_x.cleanup_expired() == 0


class TestHolderIdentity:
    """Tests for holder id generation."""

    def test_holder_ids_are_unique(self):
        """Test that repeated calls never collide."""
        ids = {generate_holder_id() for _ in range(100)}

        assert len(ids) == 100

    def test_holder_id_uses_hostname(self, monkeypatch):
        """Test that the pod name prefixes the holder id."""
        monkeypatch.setenv("HOSTNAME", "sync-api-7d9f")

        assert generate_holder_id().startswith("sync-api-7d9f-")
