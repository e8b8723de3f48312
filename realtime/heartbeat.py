"""
Heartbeat monitor.

Sends a liveness probe at a fixed interval while the connection is up. The
probe content belongs to the channel (a ``ping`` text frame, a typed ``PING``
payload, ...); the monitor only decides when to call it.
"""

import asyncio
import logging
from typing import Callable, Optional

from .reporting import ErrorReporter, LoggingErrorReporter


logger = logging.getLogger(__name__)


class HeartbeatMonitor:
    """Periodic probe scheduler bound to a connection-state predicate."""

    def __init__(self,
                 is_active: Callable[[], bool],
                 error_reporter: Optional[ErrorReporter] = None):
        """
        Args:
            is_active: Returns True while probes should be sent (connected)
            error_reporter: Receives probe failures
        """
        self._is_active = is_active
        self._error_reporter = error_reporter or LoggingErrorReporter(logger)
        self._task: Optional[asyncio.Task] = None
        self._generation = 0
        self.ticks = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, interval: float, probe: Callable[[], None]) -> None:
        """
        Arm the recurring probe, replacing any previous schedule.

        Must be called from a running event loop.
        """
        if interval <= 0:
            raise ValueError(f"Heartbeat interval must be positive, got {interval}")
        self.stop()
        generation = self._generation
        self._task = asyncio.get_running_loop().create_task(
            self._heartbeat_loop(interval, probe, generation)
        )
        logger.debug(f"Heartbeat started (interval={interval}s)")

    def stop(self) -> None:
        """Cancel the probe schedule; no-op when not started."""
        self._generation += 1
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            logger.debug("Heartbeat stopped")

    async def _heartbeat_loop(self, interval: float, probe: Callable[[], None], generation: int) -> None:
        while True:
            await asyncio.sleep(interval)

            if generation != self._generation:
                return
            # Late tick after the connection dropped
            if not self._is_active():
                continue

            self.ticks += 1
            try:
                probe()
            except Exception as e:
                self._error_reporter.report_error("Heartbeat probe failed", {"error": e})
