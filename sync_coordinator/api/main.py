"""
FastAPI application entry point.
"""

import logging
import time
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sync_coordinator import __version__
from sync_coordinator.api.routes import health_router, locks_router, sync_router
from sync_coordinator.clock import Clock
from sync_coordinator.config import get_settings
from sync_coordinator.coordination.coordinator import SyncCoordinator
from sync_coordinator.coordination.lease_manager import LeaseManager
from sync_coordinator.coordination.ledger import RunLedger
from sync_coordinator.db import close_db, create_tables, get_engine, init_db
from sync_coordinator.exceptions import (
    InvalidLeaseRequestError,
    StoreUnavailableError,
    UnknownSyncKindError,
)
from sync_coordinator.observability.logging import setup_logging
from sync_coordinator.observability.metrics import get_metrics, setup_metrics
from sync_coordinator.observability.tracing import (
    instrument_fastapi,
    instrument_sqlalchemy,
    setup_tracing,
    shutdown_tracing,
)
from sync_coordinator.types.api import ErrorResponse

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Handles startup and shutdown events. Leases still held at shutdown are
    released so other pods need not wait for them to expire.
    """
    # Startup
    setup_logging()
    setup_metrics()
    setup_tracing()
    if app.state.session_factory is None:
        await init_db()
        instrument_sqlalchemy(get_engine().sync_engine)
        # Local SQLite databases are not managed by Alembic
        if get_settings().database_url.startswith("sqlite"):
            await create_tables()

    lease_manager: LeaseManager = app.state.lease_manager
    try:
        cleaned = await lease_manager.cleanup_expired()
        logger.info(f"Cleaned up {cleaned} expired leases on startup")
    except StoreUnavailableError:
        logger.warning("Startup lease cleanup skipped: database unavailable")

    logger.info("Application started")

    yield

    # Shutdown
    await lease_manager.release_on_shutdown()
    if app.state.session_factory is None:
        await close_db()
    shutdown_tracing()
    logger.info("Application shutdown")


def _error_response(status_code: int, error: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=error, detail=detail).model_dump(),
    )


def add_exception_handlers(app: FastAPI) -> None:
    """Map coordination errors onto HTTP responses."""

    @app.exception_handler(StoreUnavailableError)
    async def store_unavailable_handler(request: Request, exc: StoreUnavailableError) -> JSONResponse:
        return _error_response(status.HTTP_503_SERVICE_UNAVAILABLE, "store_unavailable", str(exc))

    @app.exception_handler(UnknownSyncKindError)
    async def unknown_kind_handler(request: Request, exc: UnknownSyncKindError) -> JSONResponse:
        return _error_response(status.HTTP_404_NOT_FOUND, "unknown_sync_kind", str(exc))

    @app.exception_handler(InvalidLeaseRequestError)
    async def invalid_request_handler(request: Request, exc: InvalidLeaseRequestError) -> JSONResponse:
        return _error_response(status.HTTP_400_BAD_REQUEST, "invalid_request", str(exc))


async def record_request_metrics(request: Request, call_next):
    """Record request count and latency per route."""
    started = time.perf_counter()
    response = await call_next(request)

    route = request.scope.get("route")
    endpoint = getattr(route, "path", request.url.path)
    get_metrics().record_api_request(
        method=request.method,
        endpoint=endpoint,
        status=response.status_code,
        duration_seconds=time.perf_counter() - started,
    )
    return response


def create_app(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    clock: Clock | None = None,
    lease_manager: LeaseManager | None = None,
    ledger: RunLedger | None = None,
    coordinator: SyncCoordinator | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        session_factory: Session factory for the coordination services;
            the global one (set up by the lifespan) when None.
        clock: Time source for the services.
        lease_manager: Prebuilt lease manager.
        ledger: Prebuilt run ledger.
        coordinator: Prebuilt coordinator.

    Returns:
        FastAPI: The configured application instance.
    """
    app = FastAPI(
        title="Sync Coordinator API",
        description="Cross-pod lease coordination and sync throttling on PostgreSQL",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    lease_manager = lease_manager or LeaseManager(session_factory=session_factory, clock=clock)
    ledger = ledger or RunLedger(session_factory=session_factory, clock=clock)

    app.state.session_factory = session_factory
    app.state.lease_manager = lease_manager
    app.state.ledger = ledger
    app.state.coordinator = coordinator or SyncCoordinator(lease_manager=lease_manager, ledger=ledger)

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.middleware("http")(record_request_metrics)

    add_exception_handlers(app)

    # Include routers
    app.include_router(health_router)
    app.include_router(locks_router)
    app.include_router(sync_router)

    # Instrument with OpenTelemetry
    instrument_fastapi(app)

    return app


def run() -> None:
    """Run the API server."""
    settings = get_settings()
    app = create_app()

    uvicorn.run(
        app,
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


# Create app instance for uvicorn
app = create_app()


if __name__ == "__main__":
    run()
