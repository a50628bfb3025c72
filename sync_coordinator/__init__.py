"""
Distributed Sync Coordinator

Database-backed leases, run history and throttling that let several stateless
dashboard replicas share Jira synchronization jobs without a coordination service.
"""

__version__ = "1.0.0"
