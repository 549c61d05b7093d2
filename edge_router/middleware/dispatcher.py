"""
Edge router dispatcher

Pure ASGI middleware running every HTTP request through the ordered stage
list. The wrapped application only serves the internal endpoints.
"""

import time

import structlog
from starlette.datastructures import MutableHeaders
from starlette.requests import Request
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from edge_router.context import RouterContext
from edge_router.exceptions import ForwardError
from edge_router.middleware.stages import build_stages, error_response
from edge_router.models.routing import Exchange, Forward, ForwardFailure, ShortCircuit

logger = structlog.get_logger(__name__)


class EdgeRouterMiddleware:
    def __init__(self, app: ASGIApp, context: RouterContext):
        self.app = app
        self.context = context
        self.stages = build_stages(context, app)

    async def __call__(self, scope: Scope, receive: Receive, send: Send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        shutdown = self.context.shutdown
        if not shutdown.accepting:
            response = error_response(503, "Server is shutting down", {"Connection": "close"})
            await response(scope, receive, send)
            return

        async with shutdown.track():
            await self.dispatch(scope, receive, send)

    async def dispatch(self, scope: Scope, receive: Receive, send: Send):
        request = Request(scope, receive)
        exchange = Exchange(started_at=time.monotonic())
        reached = []

        async def send_wrapper(message: Message):
            if message["type"] == "http.response.start":
                exchange.status_code = message["status"]
                headers = MutableHeaders(scope=message)
                for stage in reached:
                    if stage.on_headers is not None:
                        stage.on_headers(request, headers)
            elif message["type"] == "http.response.body":
                exchange.bytes_sent += len(message.get("body", b""))
            await send(message)

        try:
            for stage in self.stages:
                reached.append(stage)
                result = await stage.handle(request)
                if isinstance(result, Forward):
                    exchange.target = stage.name
                    exchange.outcome = await self.context.forwarder.forward(result.origin, request, send_wrapper)
                    self.report(request, exchange)
                    return
                if isinstance(result, ShortCircuit):
                    await result.response(scope, receive, send_wrapper)
                    return
        finally:
            for stage in reached:
                if stage.on_complete is not None:
                    stage.on_complete(request, exchange)

    def report(self, request: Request, exchange: Exchange):
        """Log and count forward failures; backpressure and client errors are not faults"""
        outcome = exchange.outcome
        if not isinstance(outcome, ForwardFailure):
            return

        cause = outcome.cause
        self.context.metrics.forward_failures.labels(target=exchange.target, reason=type(cause).__name__).inc()
        details = dict(
            method=request.method,
            path=request.url.path,
            target=exchange.target,
            origin=str(outcome.origin),
            status_code=outcome.status_code,
            response_started=outcome.response_started,
            error=str(cause),
        )
        if isinstance(cause, ForwardError):
            logger.error("Forward failed", **details)
        else:
            logger.info("Forward aborted", **details)
