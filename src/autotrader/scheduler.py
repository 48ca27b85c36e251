"""Fixed-interval trigger for position monitor passes.

Each tick starts a pass in its own task and sleeps for the interval without
waiting for it, so a slow pass never delays the next one. Overlapping passes
are safe because every close goes through the store's status
compare-and-swap.
"""

import asyncio

from autotrader.logging import get_logger
from autotrader.position.monitor import MonitorReport, PositionMonitor

logger = get_logger(__name__)


class MonitorScheduler:
    """Runs PositionMonitor.monitor_positions() every interval_seconds.

    Args:
        monitor: The position monitor to drive.
        interval_seconds: Delay between pass starts.
    """

    def __init__(self, monitor: PositionMonitor, interval_seconds: float = 30.0) -> None:
        self._monitor = monitor
        self._interval = interval_seconds
        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._passes: set[asyncio.Task[MonitorReport]] = set()

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Begin triggering passes in the background."""
        if self._running:
            logger.warning("monitor_scheduler_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("monitor_scheduler_started", interval=self._interval)

    async def stop(self) -> None:
        """Stop triggering passes and wait for in-flight passes to finish."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._passes:
            await asyncio.gather(*self._passes, return_exceptions=True)
        logger.info("monitor_scheduler_stopped")

    async def run_once(self) -> MonitorReport:
        """Run a single pass now, independent of the schedule."""
        return await self._monitor.monitor_positions()

    async def _run_loop(self) -> None:
        while self._running:
            task = asyncio.create_task(self.run_once())
            self._passes.add(task)
            task.add_done_callback(self._on_pass_done)
            await asyncio.sleep(self._interval)

    def _on_pass_done(self, task: asyncio.Task[MonitorReport]) -> None:
        self._passes.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "monitor_pass_error",
                error=str(exc),
                exc_info=exc,
            )
