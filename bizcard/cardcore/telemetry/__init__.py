"""
Telemetry for CardCore - buffered, anonymized card analytics.

This module handles:
- IP address anonymization
- In-memory buffering with size, timer and shutdown flush triggers
- Shutdown hook registration for the final drain

Invariants:
    - Recording an event never fails the request that recorded it
    - Buffered memory is bounded; overflow drops events with a warning
"""

from .anonymize import anonymize_ip
from .pipeline import AnalyticsEvent, TelemetryPipeline
from .shutdown import ShutdownHooks

__all__ = [
    "anonymize_ip",
    "AnalyticsEvent",
    "TelemetryPipeline",
    "ShutdownHooks",
]
