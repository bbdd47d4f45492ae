"""
Shutdown hook registry.

Components register async callables that must complete before the process
exits (the telemetry pipeline registers its forced flush). The host runs the
hooks once, on graceful shutdown or when SIGINT / SIGTERM arrives.

Invariants:
    - Hooks run at most once per registry
    - Hooks run in reverse registration order
    - A failing hook is logged and does not prevent the others from running
"""

from __future__ import annotations

import asyncio
import logging
import signal
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)

Hook = Callable[[], Awaitable[object]]


class ShutdownHooks:
    """Ordered registry of async shutdown hooks.

    Example:
        >>> hooks = ShutdownHooks()
        >>> hooks.register("telemetry", pipeline.stop)
        >>> hooks.install_signal_handlers(loop, on_complete=server.request_shutdown)
        >>> await hooks.run()
    """

    def __init__(self) -> None:
        self._hooks: list[tuple[str, Hook]] = []
        self._ran = False
        self._lock = asyncio.Lock()

    @property
    def names(self) -> list[str]:
        return [name for name, _ in self._hooks]

    def register(self, name: str, hook: Hook) -> None:
        """Register a hook to run at shutdown."""
        self._hooks.append((name, hook))
        logger.debug(f"Registered shutdown hook: {name}")

    async def run(self) -> None:
        """Run every hook once, newest first."""
        async with self._lock:
            if self._ran:
                return
            self._ran = True

            for name, hook in reversed(self._hooks):
                logger.info(f"Running shutdown hook: {name}")
                try:
                    await hook()
                except Exception as e:
                    logger.error(f"Shutdown hook {name} failed: {e}", exc_info=True)

    def install_signal_handlers(
        self,
        loop: asyncio.AbstractEventLoop,
        on_complete: Callable[[], None] | None = None,
    ) -> None:
        """Run the hooks when SIGINT or SIGTERM is received.

        Args:
            loop: Event loop to attach the handlers to
            on_complete: Called after the hooks have finished
        """

        def handle_signal(sig: int) -> None:
            logger.info(f"Received signal {sig}, running shutdown hooks")
            task = loop.create_task(self.run())
            if on_complete is not None:
                task.add_done_callback(lambda _: on_complete())

        for sig in HANDLED_SIGNALS:
            loop.add_signal_handler(sig, handle_signal, sig)
