"""
Sweeper for expired leases and abandoned sync runs.

Expiry is enforced lazily by every acquire and status check, so the
sweeper is housekeeping: it keeps the active set small and fails run
records whose creator died before finalizing them.
"""

import asyncio
import logging
import signal
from dataclasses import dataclass

from sync_coordinator.config import get_settings
from sync_coordinator.coordination.lease_manager import LeaseManager
from sync_coordinator.coordination.ledger import RunLedger
from sync_coordinator.db import close_db, init_db
from sync_coordinator.observability.logging import setup_logging
from sync_coordinator.observability.metrics import setup_metrics
from sync_coordinator.observability.tracing import setup_tracing, shutdown_tracing

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SweepResult:
    """Counts from one sweep."""

    leases_expired: int = 0
    runs_abandoned: int = 0


class Sweeper:
    """
    Periodic sweeper.

    Runs periodically to:
    1. Deactivate active leases whose expiry has passed
    2. Mark running sync records older than the abandon threshold failed
    """

    def __init__(
        self,
        interval_seconds: float | None = None,
        lease_manager: LeaseManager | None = None,
        ledger: RunLedger | None = None,
        fail_abandoned_runs: bool | None = None,
        abandon_after_minutes: float | None = None,
    ):
        """
        Initialize the sweeper.

        Args:
            interval_seconds: Seconds between sweeps.
            lease_manager: Lease manager to sweep with.
            ledger: Run ledger to reconcile.
            fail_abandoned_runs: Whether to fail stale running records.
            abandon_after_minutes: Age after which a running record is abandoned.
        """
        settings = get_settings()
        self.interval = settings.sweeper_interval_seconds if interval_seconds is None else interval_seconds
        self.lease_manager = lease_manager or LeaseManager()
        self.ledger = ledger or RunLedger()
        self.fail_abandoned_runs = (
            settings.sweeper_fail_abandoned_runs if fail_abandoned_runs is None else fail_abandoned_runs
        )
        self.abandon_after_minutes = (
            settings.run_abandon_after_minutes if abandon_after_minutes is None else abandon_after_minutes
        )
        self._stopped = asyncio.Event()

    @property
    def running(self) -> bool:
        return not self._stopped.is_set()

    async def start(self) -> None:
        """Start the sweeper loop; returns after stop() is called."""
        logger.info(f"Sweeper starting with interval {self.interval}s")
        self._stopped.clear()

        while not self._stopped.is_set():
            try:
                result = await self.run_once()

                if result.leases_expired or result.runs_abandoned:
                    logger.info(
                        f"Swept {result.leases_expired} expired leases, "
                        f"{result.runs_abandoned} abandoned runs"
                    )

            except Exception as e:
                logger.exception(f"Error in sweeper loop: {e}")

            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

        logger.info("Sweeper stopped")

    async def stop(self) -> None:
        """Stop the sweeper."""
        logger.info("Sweeper stopping")
        self._stopped.set()

    async def run_once(self) -> SweepResult:
        """
        Run one sweep (for testing or cron-style execution).

        Returns:
            Counts of leases expired and runs failed.
        """
        leases_expired = await self.lease_manager.cleanup_expired()

        runs_abandoned = 0
        if self.fail_abandoned_runs:
            runs_abandoned = await self.ledger.fail_abandoned(self.abandon_after_minutes)

        return SweepResult(leases_expired=leases_expired, runs_abandoned=runs_abandoned)


async def run_async() -> None:
    """Run the sweeper asynchronously."""
    setup_logging()
    setup_metrics()
    setup_tracing()
    await init_db()

    sweeper = Sweeper()

    # Handle shutdown signals
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(sweeper.stop())
        )

    try:
        await sweeper.start()
    finally:
        await sweeper.lease_manager.release_on_shutdown()
        await close_db()
        shutdown_tracing()


def run() -> None:
    """Run the sweeper."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
