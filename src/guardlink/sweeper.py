"""Background sweep for ack timeouts and stale heartbeats.

Both are expected steady-state behavior of an unreliable device network, so
the loop logs failures and keeps going rather than surfacing them.
"""

import asyncio
import logging

from guardlink.commands.dispatcher import CommandDispatcher

logger = logging.getLogger(__name__)


class Sweeper:
    """Runs ``expire_stale`` and the offline sweep on a timer."""

    def __init__(self, dispatcher: CommandDispatcher, interval: float = 5) -> None:
        self.dispatcher = dispatcher
        self.interval = interval
        self._running = False
        self._task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        logger.info("Starting sweeper (interval=%ss)", self.interval)
        self._running = True
        self._task = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        logger.info("Stopping sweeper")
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    async def sweep_once(self) -> None:
        expired = await self.dispatcher.expire_stale()
        offline = self.dispatcher.sweep_offline()
        if expired or offline:
            logger.info(
                "Sweep: %d command(s) expired, %d device(s) offline", len(expired), len(offline)
            )

    async def _sweep_loop(self) -> None:
        while self._running:
            try:
                await self.sweep_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Sweep failed")

            await asyncio.sleep(self.interval)
