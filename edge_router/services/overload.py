"""
Overload Shedder
Rejects requests while the event loop is lagging

A background task sleeps for a fixed interval and measures how late it wakes
up. The smoothed lag is compared against the threshold on every request,
which costs one float comparison.
"""

import asyncio
import time
from typing import Optional

import structlog

from edge_router.exceptions import OverloadRejection

logger = structlog.get_logger(__name__)


class OverloadShedder:
    """Event loop lag gate"""

    def __init__(
        self,
        max_lag_ms: float = 70.0,
        check_interval_ms: float = 500.0,
        smoothing: float = 1 / 3,
    ):
        self.max_lag_ms = max_lag_ms
        self.check_interval_ms = check_interval_ms
        self.smoothing = smoothing
        self.lag_ms = 0.0
        self._task: Optional[asyncio.Task] = None

    @property
    def enabled(self) -> bool:
        return self.max_lag_ms > 0

    @property
    def running(self) -> bool:
        return self._task is not None

    def too_busy(self) -> bool:
        return self.enabled and self.lag_ms > self.max_lag_ms

    def check(self):
        """
        Raises:
            OverloadRejection: If the smoothed lag is over the threshold
        """
        if self.too_busy():
            raise OverloadRejection(self.lag_ms, self.max_lag_ms)

    def record_lag(self, lag_ms: float) -> float:
        """Fold one measurement into the smoothed lag"""
        lag_ms = max(0.0, lag_ms)
        self.lag_ms = self.smoothing * lag_ms + (1 - self.smoothing) * self.lag_ms
        return self.lag_ms

    def start(self):
        if self._task is not None or not self.enabled:
            return
        self._task = asyncio.ensure_future(self._measure())
        logger.info("Overload shedder started", max_lag_ms=self.max_lag_ms, interval_ms=self.check_interval_ms)

    def stop(self):
        """Release the polling task; the gate keeps its last reading"""
        if self._task is not None:
            self._task.cancel()
            self._task = None
            logger.info("Overload shedder stopped")

    async def _measure(self):
        interval = self.check_interval_ms / 1000
        was_busy = False
        while True:
            started = time.monotonic()
            await asyncio.sleep(interval)
            lag_ms = (time.monotonic() - started - interval) * 1000
            self.record_lag(lag_ms)

            busy = self.too_busy()
            if busy != was_busy:
                logger.warning("Event loop lag threshold crossed", lag_ms=round(self.lag_ms, 1), shedding=busy)
                was_busy = busy
