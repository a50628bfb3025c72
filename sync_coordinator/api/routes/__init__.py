"""
API routes module.
"""

from sync_coordinator.api.routes.health import router as health_router
from sync_coordinator.api.routes.locks import router as locks_router
from sync_coordinator.api.routes.sync import router as sync_router

__all__ = ["health_router", "locks_router", "sync_router"]
