"""
Unit tests for the sync job registry.
"""

import pytest

from sync_coordinator.constants import RunKind
from sync_coordinator.coordination.jobs import (
    bind_scope,
    get_sync_job,
    list_sync_jobs,
    register_sync_job,
    unregister_sync_job,
)
from sync_coordinator.exceptions import UnknownSyncKindError


@pytest.fixture(autouse=True)
def clean_registry():
    """Leave the registry as each test found it."""
    yield
    for kind in RunKind:
        unregister_sync_job(kind)


class TestJobRegistry:
    """Tests for job registration and lookup."""

    def test_register_and_get(self):
        """Test that a registered job can be looked up by kind."""

        @register_sync_job("changelog")
        async def sync_changelogs(scope: dict) -> dict:
            return {"changelogs": 0}

        assert get_sync_job(RunKind.CHANGELOG) is sync_changelogs
        assert "changelog" in list_sync_jobs()

    def test_unknown_kind_raises(self):
        """Test that an unregistered kind raises UnknownSyncKindError."""
        with pytest.raises(UnknownSyncKindError) as exc_info:
            get_sync_job("board")

        assert exc_info.value.kind == "board"
        assert "board" in str(exc_info.value)

    def test_unknown_kind_is_key_error(self):
        with pytest.raises(KeyError):
            get_sync_job("sprint")

    def test_register_replaces_previous(self):
        """Test that registering twice keeps the latest job."""

        @register_sync_job("full")
        async def first(scope: dict) -> None:
            return None

        @register_sync_job("full")
        async def second(scope: dict) -> None:
            return None

        assert get_sync_job("full") is second

    def test_register_invalid_kind(self):
        """Test that jobs can only be registered for known kinds."""
        with pytest.raises(ValueError):
            register_sync_job("payroll")


class TestBindScope:
    """Tests for bind_scope."""

    async def test_bound_work_receives_scope(self):
        """Test that the coordinator-facing work passes the scope through."""
        received = {}

        async def sync_project(scope: dict) -> str:
            received.update(scope)
            return scope["key"]

        work = bind_scope(sync_project, {"key": "ABC"})

        assert await work() == "ABC"
        assert received == {"key": "ABC"}
