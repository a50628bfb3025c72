"""
Sweeper module.
Contains the periodic sweeper for expired leases and abandoned runs.
"""

from sync_coordinator.sweeper.main import Sweeper, SweepResult, run

__all__ = ["Sweeper", "SweepResult", "run"]
