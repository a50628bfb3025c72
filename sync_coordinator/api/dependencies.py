"""
FastAPI dependencies for the coordination services.

Services are built once per application by create_app and stored on
app.state, so tests can inject their own.
"""

from typing import Annotated

from fastapi import Depends, Request

from sync_coordinator.coordination.coordinator import SyncCoordinator
from sync_coordinator.coordination.lease_manager import LeaseManager
from sync_coordinator.coordination.ledger import RunLedger


def get_lease_manager(request: Request) -> LeaseManager:
    return request.app.state.lease_manager


def get_ledger(request: Request) -> RunLedger:
    return request.app.state.ledger


def get_coordinator(request: Request) -> SyncCoordinator:
    return request.app.state.coordinator


# Type aliases for dependency injection
LeaseManagerDep = Annotated[LeaseManager, Depends(get_lease_manager)]
LedgerDep = Annotated[RunLedger, Depends(get_ledger)]
CoordinatorDep = Annotated[SyncCoordinator, Depends(get_coordinator)]
