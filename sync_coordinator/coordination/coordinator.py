"""
Sync coordinator.

Combines the throttle gate, the lease and the run ledger into one policy:

    check throttle -> acquire lease -> record run -> execute work
                   -> finalize run -> always release lease

State per invocation: Idle -> Throttled | Busy | Running -> Completed | Failed.
Running is the only state that holds both a lease and a ledger entry.
"""

import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from typing import Any
from urllib.parse import quote

from sync_coordinator.constants import LOCK_NAME_PREFIX, SPAN_EXECUTE_SYNC, RunKind
from sync_coordinator.coordination.lease_manager import LeaseManager
from sync_coordinator.coordination.ledger import RunLedger
from sync_coordinator.exceptions import StoreUnavailableError
from sync_coordinator.observability.logging import log_context
from sync_coordinator.observability.metrics import get_metrics
from sync_coordinator.observability.tracing import get_tracer
from sync_coordinator.types.run import (
    Busy,
    Completed,
    Failed,
    RunHandle,
    SyncOutcome,
    SyncPolicy,
    Throttled,
)

logger = logging.getLogger(__name__)

SyncWork = Callable[[], Awaitable[Any]]


def _lock_segment_value(value: Any) -> str | None:
    """Escaped value for one scope entry; None when the entry contributes nothing."""
    if value is None:
        return None
    if isinstance(value, (list, tuple, set, frozenset)):
        items = [str(v) for v in value]
        if isinstance(value, (set, frozenset)):
            items.sort()
        if not items:
            return None
        return ",".join(quote(item, safe="-") for item in items)
    return quote(str(value), safe="-")


def derive_lock_name(kind: RunKind | str, scope: Mapping[str, Any] | None = None) -> str:
    """
    Lock name for a kind and scope.

    A ``key`` entry is the resource's own identifier and is appended bare;
    every other entry is appended as ``name=value`` in key order. List
    values are joined with commas. Separators inside names and values are
    percent-escaped, so distinct scopes never share a name.

        ("project", {"key": "ABC"})          -> "sync-project-ABC"
        ("sprint", {"board_id": 3, "sprint_id": 12})
                                             -> "sync-sprint-board_id=3-sprint_id=12"
    """
    scope = scope or {}
    parts = [LOCK_NAME_PREFIX, RunKind(kind).value]

    identifier = _lock_segment_value(scope.get("key"))
    if identifier is not None:
        parts.append(identifier)

    for name in sorted(scope):
        if name == "key":
            continue
        value = _lock_segment_value(scope[name])
        if value is not None:
            # quote() leaves "-" alone; names must not contain the separator
            escaped_name = quote(str(name), safe="").replace("-", "%2D")
            parts.append(f"{escaped_name}={value}")

    return "-".join(parts)


def describe_error(error: BaseException) -> str:
    """Message recorded for a failed run."""
    return str(error) or type(error).__name__


class SyncCoordinator:
    """
    Runs sync work so that at most one pod runs a given kind and scope at a
    time, and no kind reruns within its minimum interval.

    Work failures are returned as Failed, never re-raised. Store failures
    during acquire or run creation raise StoreUnavailableError.
    """

    def __init__(
        self,
        lease_manager: LeaseManager | None = None,
        ledger: RunLedger | None = None,
    ):
        self.lease_manager = lease_manager or LeaseManager()
        self.ledger = ledger or RunLedger()
        self._metrics = get_metrics()

    async def run(
        self,
        kind: RunKind | str,
        scope: Mapping[str, Any] | None,
        policy: SyncPolicy | None,
        work: SyncWork,
    ) -> SyncOutcome:
        """
        Run work under the throttle gate and an exclusive lease.

        Args:
            kind: Sync kind.
            scope: Scope parameters, recorded in the ledger and part of the lock name.
            policy: Throttle and lease settings; configured defaults when None.
            work: Zero-argument coroutine function doing the actual sync.

        Returns:
            Throttled, Busy, Completed or Failed.

        Raises:
            StoreUnavailableError: The store could not be reached to ask.
        """
        kind = RunKind(kind)
        scope = dict(scope or {})
        policy = policy or SyncPolicy.from_settings()
        lock_name = derive_lock_name(kind, scope)

        with log_context(sync_kind=kind.value, lock_name=lock_name):
            if not policy.bypass_throttle:
                decision = await self.ledger.can_run(kind, policy.minimum_interval_minutes)
                if not decision.allowed:
                    logger.warning(
                        f"{kind.value.capitalize()} sync throttled",
                        extra={
                            "minutes_remaining": decision.minutes_remaining,
                            "next_allowed_at": decision.next_allowed_at.isoformat() if decision.next_allowed_at else None,
                        },
                    )
                    self._metrics.record_sync(kind.value, Throttled.outcome)
                    return Throttled(
                        minutes_remaining=decision.minutes_remaining,
                        next_allowed_at=decision.next_allowed_at,
                    )

            acquired = await self.lease_manager.acquire(lock_name, policy.lease_duration_minutes)
            if not acquired.acquired or acquired.lease is None:
                logger.warning(
                    f"{kind.value.capitalize()} sync already running elsewhere",
                    extra={"holder_id": acquired.holder_id},
                )
                self._metrics.record_sync(kind.value, Busy.outcome)
                return Busy(holder_id=acquired.holder_id, lock_name=lock_name)

            lease = acquired.lease
            try:
                handle = await self.ledger.start_run(kind, scope, lock_name=lock_name)
                return await self._execute(handle, lock_name, work)
            finally:
                await self._release(lease.lock_name, lease.holder_id)

    async def _execute(self, handle: RunHandle, lock_name: str, work: SyncWork) -> SyncOutcome:
        """Run the work and record its outcome; never raises for work errors."""
        started = time.monotonic()

        with log_context(run_id=handle.run_id):
            logger.info("Starting sync work")

            with get_tracer().start_as_current_span(SPAN_EXECUTE_SYNC) as span:
                span.set_attribute("sync.kind", handle.kind.value)
                span.set_attribute("sync.run_id", handle.run_id)
                span.set_attribute("lock_name", lock_name)

                try:
                    result = await work()
                except Exception as e:
                    duration = time.monotonic() - started
                    error = describe_error(e)
                    span.record_exception(e)
                    logger.exception(
                        "Sync work failed",
                        extra={"error": error, "duration": f"{duration:.2f}s"},
                    )
                    await self._finalize_quietly(self.ledger.fail(handle, error))
                    self._metrics.record_sync(handle.kind.value, Failed.outcome, duration)
                    return Failed(
                        error=error,
                        run_id=handle.run_id,
                        lock_name=lock_name,
                        duration_seconds=duration,
                    )

            duration = time.monotonic() - started
            logger.info(
                "Sync work completed",
                extra={"duration": f"{duration:.2f}s"},
            )
            await self._finalize_quietly(self.ledger.finish(handle, result))
            self._metrics.record_sync(handle.kind.value, Completed.outcome, duration)
            return Completed(
                result=result,
                run_id=handle.run_id,
                lock_name=lock_name,
                duration_seconds=duration,
            )

    async def _finalize_quietly(self, finalize: Awaitable[Any]) -> None:
        """
        Await a ledger finalization, logging store failures.

        The record stays running and is reconciled by the sweeper.
        """
        try:
            await finalize
        except StoreUnavailableError:
            logger.exception("Failed to record sync run outcome")

    async def _release(self, lock_name: str, holder_id: str) -> None:
        """Release the lease; a failure leaves it to expire on its own."""
        try:
            await self.lease_manager.release(lock_name, holder_id)
        except StoreUnavailableError:
            logger.exception(
                "Failed to release lease; it will expire",
                extra={"holder_id": holder_id},
            )
