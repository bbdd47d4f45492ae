"""
Buffered analytics ingestion for CardCore.

The TelemetryPipeline decouples card view / vCard download recording from
the request path. Events are anonymized, buffered in memory and written to
the store in batches:
- when the buffer reaches buffer_size (background flush, not awaited)
- every flush_interval seconds (timer task)
- on shutdown (force_flush, bounded number of attempts)

Invariants:
    - record_event never raises and never waits on the store
    - At most one flush is in flight; overlapping triggers are no-ops
    - The buffer is detached in one step with no await in between, so events
      recorded during a batch insert are neither lost nor sent twice
    - A failed batch goes back to the front of the buffer in original order,
      unless that would grow the buffer past 2 * buffer_size, in which case
      the batch is dropped with a warning
    - A cancelled batch insert re-buffers its events the same way
    - stop() waits for an in-flight flush before cancelling the timer
    - The flushing guard is released on every path

How to change safely:
    - Never await between reading and replacing the buffer
    - Keep force_flush bounded so shutdown always completes
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from typing import Any

from ..store.base import RecordStore, utc_now_iso
from .anonymize import anonymize_ip

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AnalyticsEvent:
    """One observation of a card (page view or vCard download).

    Attributes:
        card_id: Card that was viewed
        ip_address: Anonymized origin address
        user_agent: Client agent string, if sent
        referrer: Referrer URL, if sent
        viewed_at: Observation time (ISO-8601 UTC)
    """

    card_id: str
    ip_address: str
    user_agent: str | None
    referrer: str | None
    viewed_at: str

    def to_row(self) -> dict[str, Any]:
        return asdict(self)


class TelemetryPipeline:
    """Process-wide buffer of analytics events with batched persistence.

    Construct one instance per process and inject it where events are
    recorded. The store should carry the service role, since analytics rows
    are not owner scoped at write time.

    Attributes:
        store: Store used for batch inserts
        table: Destination table
        buffer_size: Buffer length that triggers a flush
        flush_interval: Seconds between periodic flushes

    Example:
        >>> pipeline = TelemetryPipeline(store.with_service_role())
        >>> await pipeline.start()
        >>> pipeline.record_event("card-1", "203.0.113.9", "Mozilla/5.0", None)
        >>> await pipeline.stop()  # drains the buffer
    """

    def __init__(
        self,
        store: RecordStore,
        table: str = "card_analytics",
        buffer_size: int = 100,
        flush_interval: float = 10.0,
        force_flush_attempts: int = 3,
        force_flush_delay: float = 1.0,
    ) -> None:
        """Initialize the pipeline.

        Args:
            store: Store used for batch inserts
            table: Destination table
            buffer_size: Buffer length that triggers a flush
            flush_interval: Seconds between periodic flushes
            force_flush_attempts: Flush attempts made by force_flush
            force_flush_delay: Seconds between force_flush attempts
        """
        self.store = store
        self.table = table
        self.buffer_size = buffer_size
        self.flush_interval = flush_interval
        self.force_flush_attempts = force_flush_attempts
        self.force_flush_delay = force_flush_delay

        self._buffer: list[AnalyticsEvent] = []
        self._flushing = False
        self._idle = asyncio.Event()
        self._idle.set()
        self._running = False
        self._timer_task: asyncio.Task | None = None
        self._pending_flush: asyncio.Task | None = None
        self._background_tasks: set[asyncio.Task] = set()
        self._flushed_count = 0
        self._dropped_count = 0
        self._flush_attempts = 0

    @property
    def max_buffer(self) -> int:
        """Bound applied when failed events are re-buffered."""
        return self.buffer_size * 2

    def record_event(
        self,
        card_id: str,
        ip_address: str | None,
        user_agent: str | None = None,
        referrer: str | None = None,
    ) -> None:
        """Queue one analytics event. Never raises.

        Args:
            card_id: Card that was viewed or downloaded
            ip_address: Raw client address (anonymized before buffering)
            user_agent: Client agent string
            referrer: Referrer URL
        """
        try:
            self._buffer.append(
                AnalyticsEvent(
                    card_id=card_id,
                    ip_address=anonymize_ip(ip_address),
                    user_agent=user_agent,
                    referrer=referrer,
                    viewed_at=utc_now_iso(),
                )
            )

            if len(self._buffer) >= self.buffer_size:
                self._schedule_flush("buffer_full")
        except Exception as e:
            logger.error(f"Failed to record analytics event: {e}", exc_info=True)

    def _schedule_flush(self, trigger: str) -> None:
        """Spawn a background flush unless one is already scheduled or running."""
        if self._flushing:
            return
        if self._pending_flush is not None and not self._pending_flush.done():
            return

        task = asyncio.get_running_loop().create_task(self.flush())
        self._pending_flush = task
        self._background_tasks.add(task)
        task.add_done_callback(lambda t: self._on_background_done(t, trigger))

    def _on_background_done(self, task: asyncio.Task, trigger: str) -> None:
        self._background_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                f"Background analytics flush failed: {error}",
                exc_info=error,
                extra={"trigger": trigger},
            )

    async def flush(self) -> int:
        """Write all buffered events in one batch.

        Returns:
            Number of events persisted (0 if skipped or failed)
        """
        if self._flushing:
            return 0
        if not self._buffer:
            return 0

        self._flushing = True
        self._idle.clear()
        self._flush_attempts += 1
        events, self._buffer = self._buffer, []

        try:
            logger.debug(f"Flushing {len(events)} analytics events")
            await self.store.batch_insert(self.table, [e.to_row() for e in events])
        except Exception as e:
            logger.error(
                f"Analytics batch insert failed: {e}",
                extra={"events": len(events), "error_code": getattr(e, "code", None)},
            )
            self._requeue(events)
            return 0
        except asyncio.CancelledError:
            logger.warning(
                f"Analytics batch insert cancelled, re-buffering {len(events)} events",
                extra={"events": len(events)},
            )
            self._requeue(events)
            raise
        finally:
            self._flushing = False
            self._idle.set()

        self._flushed_count += len(events)
        logger.info(
            f"Flushed {len(events)} analytics events",
            extra={"events": len(events), "table": self.table},
        )
        return len(events)

    def _requeue(self, events: list[AnalyticsEvent]) -> None:
        """Put a failed batch back at the front of the buffer, bounded."""
        if len(events) + len(self._buffer) > self.max_buffer:
            self._dropped_count += len(events)
            logger.warning(
                f"Analytics buffer overflow - dropping {len(events)} events",
                extra={
                    "dropped": len(events),
                    "buffered": len(self._buffer),
                    "max_buffer": self.max_buffer,
                },
            )
            return
        self._buffer[:0] = events

    async def force_flush(self) -> bool:
        """Drain the buffer with a bounded number of attempts.

        A flush started by another trigger is waited for and does not use up
        an attempt.

        Returns:
            True if the buffer is empty afterwards
        """
        attempts = 0
        while attempts < self.force_flush_attempts:
            await self._idle.wait()
            # Another trigger took the flight between wake-up and here
            if self._flushing:
                continue
            if not self._buffer:
                break

            attempts += 1
            logger.info(f"Force flush attempt {attempts}/{self.force_flush_attempts}")

            await self.flush()

            if self._buffer and attempts < self.force_flush_attempts:
                await asyncio.sleep(self.force_flush_delay)

        await self._idle.wait()
        if self._buffer:
            logger.warning(
                f"Failed to flush {len(self._buffer)} analytics events "
                f"after {self.force_flush_attempts} attempts",
                extra={"lost": len(self._buffer)},
            )
            return False

        logger.info("All analytics events flushed")
        return True

    async def start(self) -> None:
        """Start the periodic flush timer."""
        if self._running:
            logger.warning("Telemetry pipeline already running")
            return

        self._running = True
        self._timer_task = asyncio.create_task(self._flush_loop())
        logger.info(
            "Started telemetry pipeline",
            extra={
                "table": self.table,
                "buffer_size": self.buffer_size,
                "flush_interval": self.flush_interval,
            },
        )

    async def stop(self) -> None:
        """Stop the timer and drain the buffer.

        An in-flight flush is awaited before the timer is cancelled, so its
        batch is either persisted or back in the buffer for force_flush.
        """
        self._running = False
        await self._idle.wait()
        if self._timer_task is not None:
            self._timer_task.cancel()
            await asyncio.gather(self._timer_task, return_exceptions=True)
            self._timer_task = None

        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)

        await self.force_flush()
        logger.info("Stopped telemetry pipeline")

    async def _flush_loop(self) -> None:
        """Background loop for periodic flushes."""
        try:
            while self._running:
                await asyncio.sleep(self.flush_interval)
                if self._buffer and not self._flushing:
                    try:
                        await self.flush()
                    except Exception as e:
                        logger.error(f"Periodic analytics flush failed: {e}", exc_info=True)
        except asyncio.CancelledError:
            logger.debug("Telemetry flush timer cancelled")

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def snapshot(self) -> list[AnalyticsEvent]:
        """Copy of the buffered events, oldest first."""
        return list(self._buffer)

    @property
    def stats(self) -> dict[str, Any]:
        """Get pipeline statistics."""
        return {
            "running": self._running,
            "buffer_size": len(self._buffer),
            "flush_in_progress": self._flushing,
            "flush_attempts": self._flush_attempts,
            "flushed_count": self._flushed_count,
            "dropped_count": self._dropped_count,
        }
