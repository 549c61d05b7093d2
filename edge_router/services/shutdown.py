"""
Shutdown Coordinator
Tracks in-flight requests and drains them when the process is told to stop
"""

import asyncio
from contextlib import asynccontextmanager
from enum import Enum
from typing import Callable, List

import structlog

logger = structlog.get_logger(__name__)


class ShutdownState(str, Enum):
    RUNNING = "running"
    DRAINING = "draining"
    STOPPED = "stopped"


class ShutdownCoordinator:
    """
    Running -> Draining -> Stopped

    Draining starts on the termination signal; Stopped is reached once the
    in-flight count hits zero or the drain timeout has elapsed.
    """

    def __init__(self, drain_timeout: float = 10.0):
        self.drain_timeout = drain_timeout
        self.state = ShutdownState.RUNNING
        self.active = 0
        self._idle = asyncio.Event()
        self._idle.set()
        self._on_drain: List[Callable[[], None]] = []

    @property
    def accepting(self) -> bool:
        return self.state == ShutdownState.RUNNING

    def on_drain(self, callback: Callable[[], None]):
        """Register a callback run once when draining begins"""
        self._on_drain.append(callback)

    @asynccontextmanager
    async def track(self):
        """Count the enclosed request as in flight"""
        self.active += 1
        self._idle.clear()
        try:
            yield
        finally:
            self.active -= 1
            if self.active == 0:
                self._idle.set()

    def begin_drain(self):
        if self.state != ShutdownState.RUNNING:
            return
        self.state = ShutdownState.DRAINING
        logger.info("Draining in-flight requests", active=self.active, timeout=self.drain_timeout)
        for callback in self._on_drain:
            try:
                callback()
            except Exception as e:
                logger.error("Drain callback failed", callback=getattr(callback, "__qualname__", repr(callback)), error=str(e))

    async def wait_drained(self) -> bool:
        """
        Wait for in-flight requests to finish

        Returns:
            True if every request completed before the drain timeout
        """
        try:
            await asyncio.wait_for(self._idle.wait(), timeout=self.drain_timeout)
        except asyncio.TimeoutError:
            logger.warning("Drain timeout elapsed", still_active=self.active)
            return False
        return True

    def mark_stopped(self):
        self.state = ShutdownState.STOPPED
        logger.info("Edge router stopped")
