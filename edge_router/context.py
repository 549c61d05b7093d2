"""
Router context

Everything a request handler needs, built once at startup and shared
read-only by all requests.
"""

from dataclasses import dataclass
from typing import Optional

import httpx

from edge_router.config import Origins, RouterSettings, resolve_origins
from edge_router.services.forwarder import Forwarder
from edge_router.services.health_aggregator import HealthAggregator
from edge_router.services.overload import OverloadShedder
from edge_router.services.shutdown import ShutdownCoordinator
from edge_router.utils.metrics import RouterMetrics


@dataclass(frozen=True)
class RouterContext:
    settings: RouterSettings
    origins: Origins
    forwarder: Forwarder
    health: HealthAggregator
    shedder: OverloadShedder
    shutdown: ShutdownCoordinator
    metrics: RouterMetrics


def build_context(
    settings: RouterSettings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> RouterContext:
    """
    Resolve origins and create the shared services

    Args:
        settings: Loaded settings
        transport: Optional upstream transport (tests)

    Raises:
        ConfigurationError: If a backend URL cannot be resolved
    """
    origins = resolve_origins(settings)

    forwarder = Forwarder(
        connect_timeout=settings.upstream_connect_timeout,
        read_timeout=settings.upstream_read_timeout,
        max_body_bytes=settings.max_body_bytes,
        transport=transport,
    )
    health = HealthAggregator(
        dependencies={"identity": origins.identity, "write": origins.write},
        heartbeat_path=settings.heartbeat_path,
        interval=settings.health_check_interval,
        timeout=settings.health_check_timeout,
        transport=transport,
    )
    shedder = OverloadShedder(
        max_lag_ms=settings.overload_max_lag_ms,
        check_interval_ms=settings.overload_check_interval_ms,
        smoothing=settings.overload_smoothing,
    )
    shutdown = ShutdownCoordinator(drain_timeout=settings.drain_timeout)
    shutdown.on_drain(shedder.stop)

    return RouterContext(
        settings=settings,
        origins=origins,
        forwarder=forwarder,
        health=health,
        shedder=shedder,
        shutdown=shutdown,
        metrics=RouterMetrics(),
    )
