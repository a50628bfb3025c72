"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class RunStatus(StrEnum):
    """
    Sync run lifecycle states.

    State transitions (each record moves exactly once):
    - RUNNING -> COMPLETED (work returned)
    - RUNNING -> FAILED (work raised, or abandoned run swept)
    """

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class RunKind(StrEnum):
    """Kinds of synchronization job tracked by the run ledger."""

    FULL = "full"
    PROJECT = "project"
    BOARD = "board"
    SPRINT = "sprint"
    ISSUE = "issue"
    CHANGELOG = "changelog"


# Renewal runs every duration / divisor, so two renewals land before natural expiry
LEASE_RENEWAL_DIVISOR = 3

# Default values
DEFAULT_LEASE_HISTORY_LIMIT = 50
DEFAULT_ACTIVE_LEASE_LIMIT = 20
DEFAULT_RUN_HISTORY_LIMIT = 10
LOCK_NAME_PREFIX = "sync"

# API constants
API_V1_PREFIX = "/v1"

# Metrics names
METRIC_LEASE_ACQUIRE = "sync_lease_acquire_total"
METRIC_LEASE_RENEW = "sync_lease_renew_total"
METRIC_LEASE_RELEASED = "sync_lease_released_total"
METRIC_LEASE_EXPIRED = "sync_lease_expired_total"
METRIC_SYNC_RUNS = "sync_runs_total"
METRIC_SYNC_DURATION = "sync_run_duration_seconds"
METRIC_RUNS_ABANDONED = "sync_runs_abandoned_total"
METRIC_API_REQUESTS = "api_requests_total"
METRIC_API_LATENCY = "api_request_latency_seconds"

# Trace span names
SPAN_ACQUIRE_LEASE = "acquire_lease"
SPAN_RELEASE_LEASE = "release_lease"
SPAN_EXECUTE_SYNC = "execute_sync"
