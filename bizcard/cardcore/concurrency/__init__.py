"""
Concurrency control for CardCore mutations.

This module handles:
- Optimistic, version-checked updates of profile and card records
- Retry with exponential backoff for transient store errors

Invariants:
    - Exactly one of N concurrent updates with the same expected version wins
    - Retries are bounded by the policy; terminal errors are never swallowed
"""

from .retry import (
    DATABASE_POLICY,
    OPTIMISTIC_LOCK_POLICY,
    RetryPolicy,
    retrying,
    with_retry,
)
from .versioned import ConflictSignal, VersionedController, VersionedUpdate

__all__ = [
    "VersionedController",
    "VersionedUpdate",
    "ConflictSignal",
    "RetryPolicy",
    "DATABASE_POLICY",
    "OPTIMISTIC_LOCK_POLICY",
    "with_retry",
    "retrying",
]
