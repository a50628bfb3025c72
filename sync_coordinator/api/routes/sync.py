"""
Sync trigger and run-history routes.
"""

import logging

from fastapi import APIRouter, HTTPException, Query, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from sync_coordinator.api.dependencies import CoordinatorDep, LedgerDep
from sync_coordinator.config import get_settings
from sync_coordinator.constants import API_V1_PREFIX, DEFAULT_RUN_HISTORY_LIMIT, RunKind
from sync_coordinator.coordination.jobs import bind_scope, get_sync_job
from sync_coordinator.types.api import RunResponse, SyncRequest, SyncResponse, SyncStatusResponse
from sync_coordinator.types.run import (
    Busy,
    Completed,
    Failed,
    RunRecord,
    SyncOutcome,
    SyncPolicy,
    Throttled,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix=f"{API_V1_PREFIX}/sync", tags=["Sync"])


def _run_to_response(run: RunRecord) -> RunResponse:
    """Convert a RunRecord to a RunResponse."""
    return RunResponse(
        id=run.id,
        kind=run.kind,
        status=run.status,
        scope=run.scope,
        start_time=run.start_time,
        end_time=run.end_time,
        result=run.result,
        error=run.error,
        lock_name=run.lock_name,
    )


def _outcome_to_response(kind: RunKind, outcome: SyncOutcome) -> tuple[int, SyncResponse]:
    """Map a coordinator outcome onto a status code and body."""
    match outcome:
        case Throttled():
            return status.HTTP_429_TOO_MANY_REQUESTS, SyncResponse(
                outcome=outcome.outcome,
                kind=kind,
                error=f"Sync throttled. Please wait {outcome.minutes_remaining} more minutes.",
                minutes_remaining=outcome.minutes_remaining,
                next_allowed_at=outcome.next_allowed_at,
            )
        case Busy():
            return status.HTTP_409_CONFLICT, SyncResponse(
                outcome=outcome.outcome,
                kind=kind,
                lock_name=outcome.lock_name,
                holder_id=outcome.holder_id,
                error="Sync already in progress",
            )
        case Completed():
            return status.HTTP_200_OK, SyncResponse(
                outcome=outcome.outcome,
                kind=kind,
                lock_name=outcome.lock_name,
                run_id=outcome.run_id,
                result=outcome.result,
            )
        case Failed():
            return status.HTTP_500_INTERNAL_SERVER_ERROR, SyncResponse(
                outcome=outcome.outcome,
                kind=kind,
                lock_name=outcome.lock_name,
                run_id=outcome.run_id,
                error=outcome.error,
            )
    raise TypeError(f"Unknown sync outcome: {outcome!r}")


@router.post(
    "/{kind}",
    response_model=SyncResponse,
    summary="Trigger a sync",
    description=(
        "Run the registered sync job for a kind under the throttle gate and an "
        "exclusive lease. 429 when throttled, 409 when another pod holds the lease."
    ),
    responses={
        409: {"model": SyncResponse},
        429: {"model": SyncResponse},
        500: {"model": SyncResponse},
    },
)
async def trigger_sync(
    kind: RunKind,
    request: SyncRequest,
    coordinator: CoordinatorDep,
) -> JSONResponse:
    """
    Trigger a sync of the given kind.

    The call blocks until the work finishes.

    Args:
        kind: Sync kind.
        request: Scope and policy overrides.
        coordinator: Sync coordinator.

    Returns:
        SyncResponse with a status code matching the outcome.
    """
    job = get_sync_job(kind)
    policy = SyncPolicy.from_settings(
        bypass_throttle=request.bypass_throttle,
        minimum_interval_minutes=request.minimum_interval_minutes,
        lease_duration_minutes=request.lease_duration_minutes,
    )

    outcome = await coordinator.run(kind, request.scope, policy, bind_scope(job, request.scope))

    status_code, body = _outcome_to_response(kind, outcome)
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))


@router.get(
    "/status",
    response_model=SyncStatusResponse,
    summary="Sync status",
    description="Last completed run of a kind and whether it may run again yet.",
)
async def sync_status(
    ledger: LedgerDep,
    kind: RunKind = Query(default=RunKind.FULL),
    minimum_interval_minutes: float | None = Query(default=None, ge=0),
) -> SyncStatusResponse:
    interval = (
        minimum_interval_minutes
        if minimum_interval_minutes is not None
        else get_settings().sync_minimum_interval_minutes
    )

    last = await ledger.last_completed(kind)
    decision = await ledger.can_run(kind, interval)

    return SyncStatusResponse(
        kind=kind,
        last_sync=_run_to_response(last) if last is not None else None,
        can_sync=decision.allowed,
        minutes_remaining=decision.minutes_remaining,
        next_allowed_sync=decision.next_allowed_at,
    )


@router.get(
    "/history",
    response_model=list[RunResponse],
    summary="Sync history",
    description="Recent runs of any status, newest first.",
)
async def sync_history(
    ledger: LedgerDep,
    kind: RunKind | None = Query(default=None),
    limit: int = Query(default=DEFAULT_RUN_HISTORY_LIMIT, ge=1, le=100),
) -> list[RunResponse]:
    runs = await ledger.get_history(kind, limit)
    return [_run_to_response(run) for run in runs]


@router.get(
    "/runs/{run_id}",
    response_model=RunResponse,
    summary="Get a sync run",
    description="Get a single run-history entry.",
)
async def get_run(run_id: int, ledger: LedgerDep) -> RunResponse:
    run = await ledger.get_run(run_id)
    if run is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Sync run not found",
        )
    return _run_to_response(run)
