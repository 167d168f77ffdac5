"""Testing utilities for repobridge.

This package provides an in-memory transport so sessions, channels and
queries can be exercised without a backend worker process.
"""

from repobridge.testing.loopback import LoopbackTransport, SentRequest

__all__ = [
    "LoopbackTransport",
    "SentRequest",
]
