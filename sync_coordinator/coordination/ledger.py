"""
Run ledger: append-only history of sync runs plus the throttle gate.
"""

import logging
import math
from datetime import timedelta
from typing import Any

from pydantic_core import to_jsonable_python
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sync_coordinator.clock import Clock, SystemClock, minutes
from sync_coordinator.constants import DEFAULT_RUN_HISTORY_LIMIT, RunKind, RunStatus
from sync_coordinator.db.connection import get_session_context, store_errors
from sync_coordinator.db.repository import RunRepository
from sync_coordinator.observability.metrics import get_metrics
from sync_coordinator.types.run import RunHandle, RunRecord, ThrottleDecision

logger = logging.getLogger(__name__)


def to_result_payload(result: Any) -> dict[str, Any] | None:
    """
    Convert a work result into a JSON object for the result column.

    Non-mapping results are wrapped as {"value": ...}.
    """
    if result is None:
        return None
    payload = to_jsonable_python(result)
    if isinstance(payload, dict):
        return payload
    return {"value": payload}


class RunLedger:
    """
    Records sync runs and answers "may this kind run again yet?".

    A running record whose creator crashed is invisible to can_run, which
    only looks at completed runs; fail_abandoned reconciles such records.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        clock: Clock | None = None,
    ):
        self._session_factory = session_factory
        self._clock = clock or SystemClock()
        self._metrics = get_metrics()

    async def start_run(
        self,
        kind: RunKind | str,
        scope: dict[str, Any] | None = None,
        lock_name: str | None = None,
    ) -> RunHandle:
        """
        Create a running record.

        Args:
            kind: Sync kind.
            scope: Scope parameters stored with the run.
            lock_name: Lease the run is made under. While that lease is live
                fail_abandoned leaves the run alone.

        Raises:
            StoreUnavailableError: The database could not be reached.
        """
        kind = RunKind(kind)
        scope_payload = to_jsonable_python(scope or {})
        now = self._clock.now()

        with store_errors("start_run"):
            async with get_session_context(self._session_factory) as session:
                run = await RunRepository(session).create(kind, scope_payload, now, lock_name=lock_name)

        return RunHandle(run_id=run.id, kind=kind, scope=scope_payload, start_time=now, lock_name=lock_name)

    async def finish(self, handle: RunHandle, result: Any = None) -> RunRecord | None:
        """
        Mark a run completed.

        Returns:
            The updated record, or None if it had already left running.
        """
        return await self._finalize(handle, RunStatus.COMPLETED, result=to_result_payload(result))

    async def fail(self, handle: RunHandle, error: str) -> RunRecord | None:
        """
        Mark a run failed.

        Returns:
            The updated record, or None if it had already left running.
        """
        return await self._finalize(handle, RunStatus.FAILED, error=error)

    async def _finalize(
        self,
        handle: RunHandle,
        status: RunStatus,
        result: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> RunRecord | None:
        now = self._clock.now()

        with store_errors("finalize_run"):
            async with get_session_context(self._session_factory) as session:
                run = await RunRepository(session).finalize(
                    handle.run_id,
                    status,
                    end_time=now,
                    result=result,
                    error=error,
                )

        if run is None:
            logger.warning(
                "Sync run was already finalized",
                extra={"run_id": handle.run_id, "kind": handle.kind.value, "status": status.value},
            )
            return None

        logger.info(
            f"Sync run {status.value}",
            extra={"run_id": handle.run_id, "kind": handle.kind.value, "error": error},
        )
        return RunRecord.from_model(run)

    async def can_run(
        self,
        kind: RunKind | str,
        minimum_interval_minutes: float,
    ) -> ThrottleDecision:
        """
        Check whether enough time has passed since the last completed run.

        Args:
            kind: Sync kind.
            minimum_interval_minutes: Required gap after the last completion.

        Returns:
            ThrottleDecision; minutes_remaining is rounded up.
        """
        if minimum_interval_minutes < 0:
            raise ValueError("minimum_interval_minutes must not be negative")

        last = await self.last_completed(kind)
        if last is None or last.end_time is None:
            return ThrottleDecision(allowed=True)

        now = self._clock.now()
        interval = minutes(minimum_interval_minutes)
        next_allowed_at = last.end_time + interval
        # An end_time ahead of our clock (skew between pods) counts as "just finished"
        elapsed = max(now - last.end_time, timedelta(0))

        if elapsed >= interval:
            return ThrottleDecision(
                allowed=True,
                last_run_end=last.end_time,
                next_allowed_at=next_allowed_at,
            )

        remaining = interval - elapsed
        return ThrottleDecision(
            allowed=False,
            minutes_remaining=math.ceil(remaining.total_seconds() / 60),
            last_run_end=last.end_time,
            next_allowed_at=next_allowed_at,
        )

    async def last_completed(self, kind: RunKind | str) -> RunRecord | None:
        """The most recent completed run of a kind."""
        with store_errors("last_completed"):
            async with get_session_context(self._session_factory) as session:
                run = await RunRepository(session).last_completed(RunKind(kind))

        return RunRecord.from_model(run) if run is not None else None

    async def get_history(
        self,
        kind: RunKind | str | None = None,
        limit: int = DEFAULT_RUN_HISTORY_LIMIT,
    ) -> list[RunRecord]:
        """Runs of any status, newest first."""
        kind_filter = RunKind(kind) if kind is not None else None

        with store_errors("get_history"):
            async with get_session_context(self._session_factory) as session:
                runs = await RunRepository(session).history(kind_filter, limit)

        return [RunRecord.from_model(run) for run in runs]

    async def fail_abandoned(self, older_than_minutes: float) -> int:
        """
        Reconcile running records that nobody will ever finish.

        Runs recorded under a lock that still has a live lease are kept.

        Args:
            older_than_minutes: Runs started longer ago than this are failed.

        Returns:
            Number of records marked failed.
        """
        now = self._clock.now()
        cutoff = now - minutes(older_than_minutes)
        error = f"abandoned: no completion recorded within {older_than_minutes:g} minutes"

        with store_errors("fail_abandoned"):
            async with get_session_context(self._session_factory) as session:
                count = await RunRepository(session).fail_abandoned(cutoff, now, error)

        self._metrics.record_runs_abandoned(count)
        return count

    async def get_run(self, run_id: int) -> RunRecord | None:
        """Get a single run by ID."""
        with store_errors("get_run"):
            async with get_session_context(self._session_factory) as session:
                run = await RunRepository(session).get(run_id)

        return RunRecord.from_model(run) if run is not None else None