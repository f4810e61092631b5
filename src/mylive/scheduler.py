"""Timer that drives the engine's poll cycle."""

from __future__ import annotations

import asyncio
import contextlib
import logging

from .engine import PollReport, ReconciliationEngine

__all__ = ["PollScheduler"]


logger = logging.getLogger(__name__)


class PollScheduler:
    """Invoke :meth:`ReconciliationEngine.run_poll_cycle` periodically.

    Each tick runs the cycle in its own task. Stopping the scheduler cancels
    the timer only; a cycle that is already running completes and applies its
    results.
    """

    def __init__(self, engine: ReconciliationEngine, *, interval_seconds: float | None = None):
        self.engine = engine
        self._interval_override = interval_seconds
        self._timer: asyncio.Task[None] | None = None
        self._cycle: asyncio.Task[PollReport | None] | None = None

    @property
    def running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    @property
    def interval_seconds(self) -> float:
        if self._interval_override is not None:
            return self._interval_override
        return self.engine.preferences.poll_interval_minutes * 60.0

    def start(self) -> None:
        """(Re)start the timer with the current interval."""

        if self._timer is not None:
            self._timer.cancel()
        interval = self.interval_seconds
        self._timer = asyncio.create_task(self._run(interval))
        logger.info("Polling every %.0f seconds", interval)

    async def stop(self) -> None:
        timer, self._timer = self._timer, None
        if timer is None:
            return
        timer.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await timer
        logger.info("Polling stopped")

    def sync(self) -> None:
        """Start or stop the timer depending on whether polling is useful."""

        if self.engine.should_poll:
            if not self.running:
                self.start()
        elif self._timer is not None:
            self._timer.cancel()
            self._timer = None
            logger.info("Polling stopped: no channels or no API key")

    def trigger(self) -> asyncio.Task[PollReport | None] | None:
        """Run a cycle now unless one is already in flight."""

        if self._cycle is not None and not self._cycle.done():
            logger.warning("Poll cycle still running; tick dropped")
            return None
        self._cycle = asyncio.create_task(self._run_cycle())
        return self._cycle

    async def wait_idle(self) -> None:
        """Wait for an in-flight cycle to finish."""

        cycle = self._cycle
        if cycle is not None and not cycle.done():
            with contextlib.suppress(asyncio.CancelledError):
                await cycle

    async def _run(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            if not self.engine.should_poll:
                continue
            logger.debug("Updating channels...")
            self.trigger()

    async def _run_cycle(self) -> PollReport | None:
        try:
            return await self.engine.run_poll_cycle()
        except Exception:
            logger.exception("Poll cycle failed")
            return None
