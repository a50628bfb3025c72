"""
Integration tests for the API endpoints.
"""

from unittest.mock import AsyncMock, patch

import pytest
from httpx import AsyncClient

from sync_coordinator.clock import FrozenClock
from sync_coordinator.constants import RunKind
from sync_coordinator.coordination.jobs import register_sync_job, unregister_sync_job
from sync_coordinator.coordination.ledger import RunLedger
from sync_coordinator.exceptions import StoreUnavailableError


@pytest.fixture
def sync_jobs():
    """Register sync jobs for the duration of a test."""

    @register_sync_job(RunKind.FULL)
    async def sync_everything(scope: dict) -> dict:
        return {"projects": 3}

    @register_sync_job(RunKind.PROJECT)
    async def sync_project(scope: dict) -> dict:
        return {"project": scope["key"], "issues": 17}

    @register_sync_job(RunKind.CHANGELOG)
    async def sync_changelogs(scope: dict) -> None:
        raise RuntimeError("Jira returned 503")

    yield

    for kind in RunKind:
        unregister_sync_job(kind)


class TestHealthAPI:
    """Integration tests for health endpoints."""

    @pytest.mark.asyncio
    async def test_health(self, client: AsyncClient):
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"] == "healthy"

    @pytest.mark.asyncio
    async def test_ready_and_live(self, client: AsyncClient):
        assert (await client.get("/ready")).json() == {"ready": True}
        assert (await client.get("/live")).json() == {"alive": True}

    @pytest.mark.asyncio
    async def test_metrics(self, client: AsyncClient):
        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "sync_runs_total" in response.text
        assert "sync_lease_acquire_total" in response.text


@pytest.mark.usefixtures("sync_jobs")
class TestSyncAPI:
    """Integration tests for sync endpoints."""

    @pytest.mark.asyncio
    async def test_trigger_completed(self, client: AsyncClient):
        """Test that a successful sync returns 200 with the result."""
        response = await client.post("/v1/sync/project", json={"scope": {"key": "ABC"}})

        assert response.status_code == 200
        data = response.json()
        assert data["outcome"] == "completed"
        assert data["kind"] == "project"
        assert data["lock_name"] == "sync-project-ABC"
        assert data["result"] == {"project": "ABC", "issues": 17}
        assert data["run_id"] is not None

    @pytest.mark.asyncio
    async def test_trigger_failed(self, client: AsyncClient):
        """Test that a failing sync returns 500 with the error."""
        response = await client.post("/v1/sync/changelog", json={})

        assert response.status_code == 500
        data = response.json()
        assert data["outcome"] == "failed"
        assert data["error"] == "Jira returned 503"

    @pytest.mark.asyncio
    async def test_trigger_throttled(self, client: AsyncClient, clock: FrozenClock):
        """Test that a repeat within the interval returns 429."""
        first = await client.post("/v1/sync/full", json={})
        clock.advance(minutes=1)
        second = await client.post("/v1/sync/full", json={})

        assert first.status_code == 200
        assert second.status_code == 429
        data = second.json()
        assert data["outcome"] == "throttled"
        assert data["minutes_remaining"] == 29
        assert data["next_allowed_at"] is not None

    @pytest.mark.asyncio
    async def test_trigger_bypass_throttle(self, client: AsyncClient):
        """Test that bypass_throttle skips the interval."""
        await client.post("/v1/sync/full", json={})
        response = await client.post("/v1/sync/full", json={"bypass_throttle": True})

        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_trigger_interval_override(self, client: AsyncClient):
        """Test that the request can shorten the minimum interval."""
        await client.post("/v1/sync/full", json={})
        response = await client.post("/v1/sync/full", json={"minimum_interval_minutes": 0})

        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_trigger_busy(self, client: AsyncClient, make_pod):
        """Test that a lock held by another pod returns 409."""
        other_pod = make_pod("pod-x")
        held = await other_pod.acquire("sync-full", 30)

        response = await client.post("/v1/sync/full", json={})

        assert response.status_code == 409
        data = response.json()
        assert data["outcome"] == "busy"
        assert data["holder_id"] == held.holder_id

    @pytest.mark.asyncio
    async def test_trigger_unregistered_kind(self, client: AsyncClient):
        """Test that a known kind without a job returns 404."""
        response = await client.post("/v1/sync/board", json={})

        assert response.status_code == 404
        assert response.json()["error"] == "unknown_sync_kind"

    @pytest.mark.asyncio
    async def test_trigger_invalid_kind(self, client: AsyncClient):
        response = await client.post("/v1/sync/payroll", json={})

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_trigger_invalid_duration(self, client: AsyncClient):
        response = await client.post("/v1/sync/full", json={"lease_duration_minutes": 0})

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_store_unavailable(self, client: AsyncClient, ledger: RunLedger):
        """Test that a database outage maps to 503."""
        with patch.object(ledger, "can_run", AsyncMock(side_effect=StoreUnavailableError("can_run"))):
            response = await client.post("/v1/sync/full", json={})

        assert response.status_code == 503
        assert response.json()["error"] == "store_unavailable"

    @pytest.mark.asyncio
    async def test_status(self, client: AsyncClient, clock: FrozenClock):
        """Test throttle status before and after a sync."""
        before = await client.get("/v1/sync/status", params={"kind": "full"})
        assert before.status_code == 200
        assert before.json()["can_sync"] is True
        assert before.json()["last_sync"] is None

        await client.post("/v1/sync/full", json={})
        clock.advance(minutes=10)

        after = (await client.get("/v1/sync/status", params={"kind": "full"})).json()
        assert after["can_sync"] is False
        assert after["minutes_remaining"] == 20
        assert after["last_sync"]["status"] == "completed"

    @pytest.mark.asyncio
    async def test_history_and_get_run(self, client: AsyncClient, clock: FrozenClock):
        """Test run history listing and single-run lookup."""
        await client.post("/v1/sync/project", json={"scope": {"key": "ABC"}})
        clock.advance(minutes=1)
        await client.post("/v1/sync/changelog", json={})

        response = await client.get("/v1/sync/history")
        assert response.status_code == 200
        history = response.json()
        assert [run["kind"] for run in history] == ["changelog", "project"]
        assert [run["status"] for run in history] == ["failed", "completed"]

        filtered = (await client.get("/v1/sync/history", params={"kind": "project"})).json()
        assert len(filtered) == 1

        run = await client.get(f"/v1/sync/runs/{history[1]['id']}")
        assert run.status_code == 200
        assert run.json()["scope"] == {"key": "ABC"}
        assert run.json()["lock_name"] == "sync-project-ABC"

        missing = await client.get("/v1/sync/runs/999")
        assert missing.status_code == 404


class TestLocksAPI:
    """Integration tests for lock endpoints."""

    @pytest.mark.asyncio
    async def test_status_for_lock(self, client: AsyncClient, make_pod):
        other_pod = make_pod("pod-x")
        held = await other_pod.acquire("sync-full", 30)

        response = await client.get("/v1/locks/status", params={"lock_name": "sync-full"})

        assert response.status_code == 200
        data = response.json()
        assert data["held"] is True
        assert data["holder_id"] == held.holder_id

        free = (await client.get("/v1/locks/status", params={"lock_name": "sync-board-1"})).json()
        assert free["held"] is False

    @pytest.mark.asyncio
    async def test_status_all_active(self, client: AsyncClient, make_pod):
        other_pod = make_pod("pod-x")
        await other_pod.acquire("lock-a", 30)
        await other_pod.acquire("lock-b", 30)

        response = await client.get("/v1/locks/status")

        assert response.status_code == 200
        names = {lock["lock_name"] for lock in response.json()["active_locks"]}
        assert names == {"lock-a", "lock-b"}

    @pytest.mark.asyncio
    async def test_history(self, client: AsyncClient, make_pod, clock: FrozenClock):
        other_pod = make_pod("pod-x")
        first = await other_pod.acquire("sync-full", 30)
        await other_pod.release("sync-full", first.holder_id)
        clock.advance(minutes=1)
        await other_pod.acquire("sync-full", 30)

        response = await client.get("/v1/locks/history", params={"lock_name": "sync-full"})

        assert response.status_code == 200
        history = response.json()["history"]
        assert [lease["is_active"] for lease in history] == [True, False]

    @pytest.mark.asyncio
    async def test_cleanup(self, client: AsyncClient, make_pod, clock: FrozenClock):
        other_pod = make_pod("pod-x", renewal_interval_seconds=3600)
        await other_pod.acquire("lock-a", 5)
        await other_pod.acquire("lock-b", 30)
        clock.advance(minutes=10)

        response = await client.post("/v1/locks/cleanup")

        assert response.status_code == 200
        assert response.json()["cleaned_count"] == 1
