"""
Holder identity generation.

A holder id names one acquisition by one process: host, pid, wall-clock
milliseconds and a short random suffix. It is never persisted on its own,
only as the holder_id of the lease it proves ownership of.
"""

import os
import time
from uuid import uuid4

MAX_HOSTNAME_LENGTH = 200


def current_hostname() -> str:
    """Pod name from HOSTNAME (set by Kubernetes), else the node name."""
    return (os.environ.get("HOSTNAME") or os.uname().nodename or "unknown")[:MAX_HOSTNAME_LENGTH]


def generate_holder_id() -> str:
    """Generate a fresh holder id for a lease acquisition."""
    return f"{current_hostname()}-{os.getpid()}-{int(time.time() * 1000)}-{uuid4().hex[:8]}"
