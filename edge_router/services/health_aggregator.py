"""
Dependency Health Aggregator
Polls the heartbeat of every backend the router depends on

The aggregate gates the router's own heartbeat so that load balancers stop
sending traffic while a required backend is down.
"""

import asyncio
import time
from types import MappingProxyType
from typing import Dict, Mapping, Optional

import httpx
import structlog

from edge_router.models.origin import Origin

logger = structlog.get_logger(__name__)


class HealthAggregator:
    """
    Holds the last known health of each dependency.

    The state is replaced as a whole after every check cycle, so readers
    always see one consistent snapshot.
    """

    def __init__(
        self,
        dependencies: Dict[str, Origin],
        heartbeat_path: str = "/__heartbeat__",
        interval: float = 10.0,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.dependencies = dict(dependencies)
        self.heartbeat_path = heartbeat_path
        self.interval = interval
        self.timeout = timeout
        self._transport = transport
        self._state: Mapping[str, bool] = MappingProxyType({name: False for name in self.dependencies})
        self._client: Optional[httpx.AsyncClient] = None
        self._task: Optional[asyncio.Task] = None
        self._refresh: Optional[asyncio.Task] = None
        self._checked_at: Optional[float] = None

    @property
    def state(self) -> Mapping[str, bool]:
        """Snapshot of dependency name -> last known healthy"""
        return self._state

    def is_healthy(self) -> bool:
        """True when every dependency answered its last check"""
        return all(self._state.values())

    async def start(self):
        """Start polling in the background; the first check runs immediately"""
        if self._task is not None:
            logger.warning("Health aggregator already started")
            return
        self._client = httpx.AsyncClient(timeout=self.timeout, trust_env=False, transport=self._transport)
        self._task = asyncio.ensure_future(self._poll())
        logger.info(
            "Health aggregator started",
            dependencies={name: str(origin) for name, origin in self.dependencies.items()},
            interval=self.interval,
        )

    async def stop(self):
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        if self._refresh is not None:
            self._refresh.cancel()
            await asyncio.gather(self._refresh, return_exceptions=True)
            self._refresh = None
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        logger.info("Health aggregator stopped")

    async def _poll(self):
        while True:
            await self.check_now()
            await asyncio.sleep(self.interval)

    async def check_now(self) -> Mapping[str, bool]:
        """Check every dependency once and publish the new snapshot"""
        names = list(self.dependencies)
        results = await asyncio.gather(*(self._check(name, self.dependencies[name]) for name in names))
        previous = self._state
        self._state = MappingProxyType(dict(zip(names, results)))
        self._checked_at = time.monotonic()

        for name, healthy in self._state.items():
            if previous.get(name) != healthy:
                logger.info("Dependency health changed", dependency=name, healthy=healthy)
        return self._state

    async def refresh(self, max_age: float) -> Mapping[str, bool]:
        """
        Re-check on demand, at most once per max_age seconds

        Concurrent callers share one in-flight check.
        """
        if self._checked_at is not None and time.monotonic() - self._checked_at < max_age:
            return self._state
        if self._refresh is None or self._refresh.done():
            self._refresh = asyncio.ensure_future(self.check_now())
        return await asyncio.shield(self._refresh)

    async def _check(self, name: str, origin: Origin) -> bool:
        url = f"{origin}{self.heartbeat_path}"
        try:
            if self._client is not None:
                response = await self._client.get(url)
            else:
                async with httpx.AsyncClient(timeout=self.timeout, trust_env=False, transport=self._transport) as client:
                    response = await client.get(url)
        except httpx.HTTPError as e:
            logger.warning("Dependency unreachable", dependency=name, url=url, error=repr(e))
            return False

        if response.is_success:
            return True
        logger.warning("Dependency unhealthy", dependency=name, url=url, status_code=response.status_code)
        return False
