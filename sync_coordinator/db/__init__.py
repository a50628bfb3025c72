"""
Database module.
Contains database connection, models, and repository implementations.
"""

from sync_coordinator.db.connection import (
    close_db,
    create_session_factory,
    create_tables,
    get_engine,
    get_session_context,
    get_session_factory,
    get_test_engine,
    init_db,
    store_errors,
)
from sync_coordinator.db.models import Base, Lease, SyncRun

__all__ = [
    "get_session_context",
    "get_session_factory",
    "create_session_factory",
    "get_engine",
    "get_test_engine",
    "init_db",
    "create_tables",
    "close_db",
    "store_errors",
    "Lease",
    "SyncRun",
    "Base",
]
