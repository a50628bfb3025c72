"""
Sync job registry.

Work callbacks for each sync kind are registered here by the application
(Jira project/board/sprint sync, changelog sync, metric recalculation).
Callbacks know nothing about leases or throttling; the coordinator wraps
them.

Sync jobs should be idempotent: a job whose lease was lost mid-run may
overlap with a later run of the same kind.
"""

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from sync_coordinator.constants import RunKind
from sync_coordinator.exceptions import UnknownSyncKindError

logger = logging.getLogger(__name__)

# Type alias for sync job functions: scope in, result payload out
SyncJob = Callable[[dict[str, Any]], Awaitable[Any]]

# Job registry
_jobs: dict[RunKind, SyncJob] = {}


def register_sync_job(kind: RunKind | str) -> Callable[[SyncJob], SyncJob]:
    """
    Decorator to register the work callback for a sync kind.

    Args:
        kind: The sync kind this callback handles.

    Returns:
        Decorator function.

    Example:
        @register_sync_job("project")
        async def sync_project(scope: dict) -> dict:
            ...
    """
    run_kind = RunKind(kind)

    def decorator(job: SyncJob) -> SyncJob:
        if run_kind in _jobs and _jobs[run_kind] is not job:
            logger.warning(f"Replacing sync job for kind: {run_kind.value}")
        _jobs[run_kind] = job
        logger.info(f"Registered sync job for kind: {run_kind.value}")
        return job

    return decorator


def unregister_sync_job(kind: RunKind | str) -> None:
    """Remove the callback for a sync kind, if any."""
    _jobs.pop(RunKind(kind), None)


def get_sync_job(kind: RunKind | str) -> SyncJob:
    """
    Get the work callback for a sync kind.

    Raises:
        UnknownSyncKindError: If nothing is registered for the kind.
    """
    job = _jobs.get(RunKind(kind))
    if job is None:
        raise UnknownSyncKindError(str(kind))
    return job


def list_sync_jobs() -> list[str]:
    """List all registered sync kinds."""
    return [kind.value for kind in _jobs]


def bind_scope(job: SyncJob, scope: dict[str, Any]) -> Callable[[], Awaitable[Any]]:
    """Bind a scope to a job, producing the zero-argument work the coordinator runs."""

    async def work() -> Any:
        return await job(scope)

    return work
