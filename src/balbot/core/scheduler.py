"""Long-lived loop that runs one engine tick per poll interval."""

from __future__ import annotations

import asyncio

from balbot.errors import BalbotError
from balbot.logging import get_logger
from balbot.rebalancer.engine import RebalanceEngine

logger = get_logger("core.scheduler")


class RebalanceScheduler:
    """Runs ``engine.tick()`` repeatedly until stopped.

    After a tick that raised, the next tick waits ``error_retry_seconds``
    instead of the poll interval. Stopping never cancels an in-flight tick;
    ``stop()`` waits for it to finish.

    Attributes:
        engine: The engine to drive.
        poll_interval_seconds: Delay between ticks.
        error_retry_seconds: Delay after a failed tick.
    """

    def __init__(
        self,
        engine: RebalanceEngine,
        poll_interval_seconds: float = 60.0,
        error_retry_seconds: float = 30.0,
    ) -> None:
        """Initialize the scheduler.

        Args:
            engine: Configured RebalanceEngine.
            poll_interval_seconds: Delay between ticks.
            error_retry_seconds: Delay after a tick raised.
        """
        self.engine = engine
        self.poll_interval_seconds = poll_interval_seconds
        self.error_retry_seconds = error_retry_seconds
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._ticks_run = 0
        self._ticks_failed = 0

    async def start(self) -> None:
        """Start the loop in a background task."""
        if self._task is not None:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            "scheduler_started",
            poll_interval_seconds=self.poll_interval_seconds,
            error_retry_seconds=self.error_retry_seconds,
        )

    async def stop(self) -> None:
        """Stop spawning ticks and wait for the current one to finish."""
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None
        logger.info(
            "scheduler_stopped", ticks_run=self._ticks_run, ticks_failed=self._ticks_failed
        )

    async def run_once(self) -> bool:
        """Run a single tick. Returns False if it raised."""
        self._ticks_run += 1
        try:
            await self.engine.tick()
        except BalbotError as e:
            # The engine has already notified the operator.
            self._ticks_failed += 1
            logger.error("tick_failed", error=str(e), error_type=type(e).__name__)
            return False
        except Exception as e:
            self._ticks_failed += 1
            logger.exception("tick_crashed", error=str(e))
            return False
        return True

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            ok = await self.run_once()
            delay = self.poll_interval_seconds if ok else self.error_retry_seconds
            await self._wait(delay)

    async def _wait(self, delay: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except TimeoutError:
            pass

    @property
    def is_running(self) -> bool:
        """Whether the loop task is alive."""
        return self._task is not None and not self._task.done()

    @property
    def ticks_run(self) -> int:
        return self._ticks_run

    @property
    def ticks_failed(self) -> int:
        return self._ticks_failed
