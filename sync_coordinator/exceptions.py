"""
Exception taxonomy for the coordination core.

Contention and throttling are expected outcomes and are returned as data,
never raised. Only the conditions below surface as exceptions.
"""


class CoordinationError(Exception):
    """Base class for coordination errors."""


class StoreUnavailableError(CoordinationError):
    """The lease or run-history store could not be reached or failed mid-transaction."""

    def __init__(self, operation: str, cause: BaseException | None = None):
        self.operation = operation
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Store unavailable during {operation}{detail}")


class InvalidLeaseRequestError(CoordinationError, ValueError):
    """Lease request violates a precondition (empty name, non-positive duration)."""


class UnknownSyncKindError(CoordinationError, KeyError):
    """No work callback is registered for the requested sync kind."""

    def __init__(self, kind: str):
        self.kind = kind
        super().__init__(kind)

    def __str__(self) -> str:
        return f"No sync job registered for kind: {self.kind}"
