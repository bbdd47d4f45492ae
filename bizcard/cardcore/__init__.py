"""
CardCore - Mutation and analytics backend for digital business cards.

This package implements the server side of a business card product:
- Versioned (optimistic concurrency) updates of profile and card records
- Retry with exponential backoff for transient store contention
- Buffered, anonymized view analytics with a guaranteed final drain

Architecture:
    ┌─────────────┐     ┌─────────────┐     ┌──────────────────────┐
    │   Client    │────▶│  HTTP API   │────▶│ Profile / Card       │
    │  (browser)  │     │  (FastAPI)  │     │ services             │
    └─────────────┘     └──────┬──────┘     └──────────┬───────────┘
                               │                       │
                     record_event (sync)      with_retry + update_versioned
                               │                       │
                               ▼                       ▼
                        ┌─────────────┐     ┌──────────────────────┐
                        │  Telemetry  │────▶│     Record store     │
                        │  pipeline   │batch│  (SQLite / memory)   │
                        └─────────────┘     └──────────────────────┘

Invariants:
    - Every versioned record starts at version 1 and gains exactly 1 per
      successful update
    - Of N concurrent updates with the same expected version, one succeeds
      and the others observe a conflict
    - Analytics never block or fail a request
    - All owner-scoped operations require the principal

How to change safely:
    - New versioned tables go through VersionedController, never raw writes
    - New transient error codes widen retries for every caller
    - Keep the conflict response shape {conflict, currentVersion, message}
"""

from ._version import __version__

__all__ = ["__version__"]
