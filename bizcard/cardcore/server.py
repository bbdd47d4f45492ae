"""
CardCore server container.

Builds and owns every component of a running process:
- Record store (SQLite, or in-memory for ":memory:")
- Versioned controller and retry policies
- Telemetry pipeline (service-role store, periodic flush timer)
- Profile, card and analytics services
- Shutdown hooks (telemetry drain, store close)

Invariants:
    - Services are available only after start()
    - stop() runs the shutdown hooks exactly once: the telemetry pipeline is
      drained before the store is closed
    - One TelemetryPipeline per process

How to change safely:
    - Register new shutdown work with self.hooks, in start()
    - Hooks run newest first, so register dependencies before dependents
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from .concurrency.retry import OPTIMISTIC_LOCK_POLICY, RetryPolicy
from .concurrency.versioned import VersionedController
from .config import ServerConfig
from .services.analytics import AnalyticsService
from .services.cards import CardService
from .services.profile import ProfileService
from .store.base import RecordStore, create_record_store
from .telemetry.pipeline import TelemetryPipeline
from .telemetry.shutdown import ShutdownHooks

logger = logging.getLogger(__name__)


class Server:
    """CardCore server orchestrator.

    Attributes:
        config: Server configuration
        store: Record store instance
        telemetry: Analytics pipeline (None when telemetry is disabled)
        profiles: Profile service
        cards: Card service
        analytics: Analytics report service
        hooks: Shutdown hooks run by stop()

    Example:
        >>> server = Server()
        >>> await server.start()
        >>> card = await server.cards.create_card("user:1", "Work")
        >>> await server.stop()
    """

    def __init__(
        self,
        config: ServerConfig | None = None,
        store: RecordStore | None = None,
    ) -> None:
        """Initialize the server.

        Args:
            config: Optional server configuration (loaded from env if not provided)
            store: Optional pre-built store (built from config.store if not provided)
        """
        self.config = config or ServerConfig.from_env()
        self._running = False
        self._shutdown_event = asyncio.Event()

        self.store: RecordStore = store or create_record_store(self.config.store)
        self.database_policy = RetryPolicy.from_config(self.config.retry)
        self.occ_policy = RetryPolicy.from_config(
            self.config.occ_retry,
            transient_codes=OPTIMISTIC_LOCK_POLICY.transient_codes,
            transient_messages=OPTIMISTIC_LOCK_POLICY.transient_messages,
        )
        self.hooks = ShutdownHooks()

        # Components (initialized in start())
        self.occ: VersionedController | None = None
        self.telemetry: TelemetryPipeline | None = None
        self.profiles: ProfileService | None = None
        self.cards: CardService | None = None
        self.analytics: AnalyticsService | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Connect the store and start every component."""
        if self._running:
            logger.warning("Server already running")
            return

        logger.info("Starting CardCore server")
        self.config.log_config()

        try:
            if self.config.store.database_path != ":memory:":
                Path(self.config.store.database_path).parent.mkdir(parents=True, exist_ok=True)

            await self.store.connect()
            self.hooks.register("store", self.store.close)
            logger.info("Record store connected")

            self.occ = VersionedController(self.store)

            telemetry_config = self.config.telemetry
            if telemetry_config.enabled:
                self.telemetry = TelemetryPipeline(
                    self.store.with_service_role(),
                    table=telemetry_config.table,
                    buffer_size=telemetry_config.buffer_size,
                    flush_interval=telemetry_config.flush_interval_seconds,
                    force_flush_attempts=telemetry_config.force_flush_attempts,
                    force_flush_delay=telemetry_config.force_flush_delay_seconds,
                )
                await self.telemetry.start()
                self.hooks.register("telemetry", self.telemetry.stop)

            self.profiles = ProfileService(self.occ, self.database_policy, self.occ_policy)
            self.cards = CardService(
                self.occ,
                telemetry=self.telemetry,
                database_policy=self.database_policy,
                occ_policy=self.occ_policy,
            )
            self.analytics = AnalyticsService(self.store, table=telemetry_config.table)

            self._running = True
            logger.info("CardCore server started successfully")

        except Exception as e:
            logger.error(f"Server startup failed: {e}", exc_info=True)
            await self.hooks.run()
            raise

    async def stop(self) -> None:
        """Stop the server gracefully, draining buffered analytics."""
        if not self._running:
            return

        logger.info("Stopping CardCore server")
        await self.hooks.run()

        self._running = False
        self._shutdown_event.set()
        logger.info("CardCore server stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()

    async def wait_for_shutdown(self) -> None:
        await self._shutdown_event.wait()
