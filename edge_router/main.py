"""
Edge Router - Main Application
Dispatches requests to the identity, write, static and verifier services
"""

import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import httpx
import structlog
import uvicorn
from fastapi import FastAPI

from edge_router.config import RouterSettings, load_settings
from edge_router.context import build_context
from edge_router.exceptions import ConfigurationError
from edge_router.middleware import EdgeRouterMiddleware
from edge_router.routes import health
from edge_router.services.shutdown import ShutdownCoordinator
from edge_router.utils.logger import init_logging, setup_logging

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan events"""
    context = app.state.context
    logger.info("Starting edge router", version=context.settings.service_version)

    await context.forwarder.start()
    await context.health.start()
    context.shedder.start()

    yield

    context.shutdown.begin_drain()
    drained = await context.shutdown.wait_drained()

    await context.health.stop()
    await context.forwarder.stop()
    context.shedder.stop()
    context.shutdown.mark_stopped()
    logger.info("Edge router shutdown complete", drained=drained)


def create_app(
    settings: Optional[RouterSettings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """
    Build the application

    Args:
        settings: Settings to use, loaded from the environment when omitted
        transport: Optional upstream transport shared by forwarder and health checks

    Raises:
        ConfigurationError: If settings are missing or a backend URL is invalid
    """
    settings = settings or load_settings()
    context = build_context(settings, transport=transport)

    app = FastAPI(
        title="Edge Router",
        description="HTTP edge router for the identity, write, static and verifier services",
        version=settings.service_version,
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.context = context

    app.include_router(health.router, prefix=settings.heartbeat_path, tags=["Health"])
    if settings.metrics_path:
        app.add_api_route(settings.metrics_path, health.metrics, methods=["GET"], include_in_schema=False)

    app.add_middleware(EdgeRouterMiddleware, context=context)
    return app


class EdgeServer(uvicorn.Server):
    """uvicorn server that starts draining as soon as the exit signal arrives"""

    def __init__(self, config: uvicorn.Config, coordinator: ShutdownCoordinator):
        super().__init__(config)
        self.coordinator = coordinator

    def handle_exit(self, sig, frame):
        self.coordinator.begin_drain()
        super().handle_exit(sig, frame)


def main() -> int:
    """Run the edge router; returns the process exit code"""
    init_logging()

    try:
        settings = load_settings()
        setup_logging(os.getenv("LOGGING_CONFIG_PATH"), settings.log_level, settings.log_format)
        settings.log_config()
        app = create_app(settings)
    except ConfigurationError as e:
        logger.error("Invalid configuration, refusing to start", error=str(e))
        return 1

    config = uvicorn.Config(
        app,
        host=settings.bind_host,
        port=settings.bind_port,
        lifespan="on",
        access_log=False,
        log_config=None,
        timeout_graceful_shutdown=settings.drain_timeout,
    )
    server = EdgeServer(config, coordinator=app.state.context.shutdown)
    server.run()
    return 0 if server.started else 1


if __name__ == "__main__":
    raise SystemExit(main())
