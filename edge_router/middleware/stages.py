"""
Request pipeline stages

The order of this list is the order every request goes through. Each stage
can answer the request, forward it, or pass it on.

 1. heartbeat / internal endpoints (before logging)
 2. overload shedding
 3. access logging
 4. body size limit
 5. request metrics
 6. transport security
 7. legacy response headers
 8. verifier route
 9. fake verification (test mode only)
10. read/write API routing
11. response metrics
12. static catch-all
"""

import time
from typing import Dict, Iterable, List, Optional

import structlog
from starlette.datastructures import URL, MutableHeaders
from starlette.requests import Request
from starlette.responses import JSONResponse, RedirectResponse

from edge_router.config import Origins
from edge_router.exceptions import BodyTooLargeError, OverloadRejection
from edge_router.models.origin import DEFAULT_PORTS, Origin
from edge_router.models.routing import (
    ASGIApp,
    CONTINUE,
    Exchange,
    RouteRule,
    ShortCircuit,
    Stage,
    StageResult,
)
from edge_router.routes.api import ApiRouter
from edge_router.utils.metrics import RouterMetrics

logger = structlog.get_logger("edge_router.access")

VERIFY_PATH = "/verify"
FAKE_VERIFICATION_PATH = "/wsapi/fake_verification"


def error_response(status_code: int, message: str, headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": True, "message": message, "status_code": status_code},
        headers=headers,
    )


def internal_endpoints(routes_app: ASGIApp, paths: Iterable[str]) -> Stage:
    """Heartbeat and metrics are served by the application routes"""
    internal = frozenset(path for path in paths if path)

    async def handle(request: Request) -> StageResult:
        if request.url.path in internal:
            return ShortCircuit(routes_app)
        return CONTINUE

    return Stage("internal", handle)


def overload_gate(shedder, metrics: RouterMetrics) -> Stage:
    async def handle(request: Request) -> StageResult:
        try:
            shedder.check()
        except OverloadRejection:
            metrics.overload_rejections.inc()
            return ShortCircuit(error_response(503, "Server is too busy", {"Retry-After": "1"}))
        return CONTINUE

    return Stage("overload", handle)


def access_log() -> Stage:
    async def handle(request: Request) -> StageResult:
        logger.info(
            "Request received",
            method=request.method,
            path=request.url.path,
            client_ip=request.client.host if request.client else "unknown",
        )
        return CONTINUE

    def on_complete(request: Request, exchange: Exchange):
        logger.info(
            "Request completed",
            method=request.method,
            path=request.url.path,
            status_code=exchange.status_code,
            target=exchange.target,
            bytes_sent=exchange.bytes_sent,
            duration_ms=round((time.monotonic() - exchange.started_at) * 1000, 1),
        )

    return Stage("access_log", handle, on_complete=on_complete)


def body_limit(max_body_bytes: int) -> Stage:
    """Reject declared oversize bodies before reading them; streamed bodies are counted by the forwarder"""

    async def handle(request: Request) -> StageResult:
        declared = request.headers.get("content-length")
        if declared is None or not max_body_bytes:
            return CONTINUE
        try:
            length = int(declared)
        except ValueError:
            return ShortCircuit(error_response(400, "Invalid Content-Length", {"Connection": "close"}))
        if length > max_body_bytes:
            error = BodyTooLargeError(max_body_bytes, length)
            logger.info("Request body too large", path=request.url.path, content_length=length, limit=max_body_bytes)
            return ShortCircuit(error_response(error.status_code, str(error), {"Connection": "close"}))
        return CONTINUE

    return Stage("body_limit", handle)


def request_metrics(metrics: RouterMetrics) -> Stage:
    async def handle(request: Request) -> StageResult:
        metrics.requests.labels(method=request.method).inc()
        return CONTINUE

    def on_complete(request: Request, exchange: Exchange):
        metrics.latency.labels(target=exchange.target).observe(time.monotonic() - exchange.started_at)
        metrics.responses.labels(target=exchange.target, status=str(exchange.status_code)).inc()

    return Stage("request_metrics", handle, on_complete=on_complete)


def transport_security(force_https: bool, security_headers: Dict[str, str]) -> Stage:
    async def handle(request: Request) -> StageResult:
        if force_https and request.headers.get("x-forwarded-proto", "").lower() == "http":
            host = request.headers.get("host", request.url.hostname or "")
            if host.endswith(":80"):
                host = host[:-3]
            target = URL(f"https://{host}{request.url.path}")
            if request.url.query:
                target = target.replace(query=request.url.query)
            return ShortCircuit(RedirectResponse(str(target), status_code=301))
        return CONTINUE

    def on_headers(request: Request, headers: MutableHeaders):
        for name, value in security_headers.items():
            headers[name] = value

    return Stage("transport_security", handle, on_headers=on_headers if security_headers else None)


def legacy_headers(response_headers: Dict[str, str]) -> Stage:
    async def handle(request: Request) -> StageResult:
        return CONTINUE

    def on_headers(request: Request, headers: MutableHeaders):
        for name, value in response_headers.items():
            headers[name] = value

    return Stage("legacy_headers", handle, on_headers=on_headers if response_headers else None)


def host_matches(host_header: str, origin: Origin) -> bool:
    """Compare a Host header with an origin, ignoring an explicit default port"""
    host, _, port = host_header.strip().lower().rpartition(":")
    if not host or "]" in port:
        host, port = host_header.strip().lower(), ""
    host = host.strip("[]")
    if host != origin.host:
        return False
    if not port:
        return True
    return port.isdigit() and int(port) in (origin.port, DEFAULT_PORTS.get(origin.scheme))


def verifier_rule(origins: Origins) -> RouteRule:
    """
    /verify goes to the verifier. Requests addressed to the verifier's public
    hostname do too, unless that hostname is the router's own.
    """
    host_routing = origins.verifier_host_routing
    public_verifier = origins.public_verifier

    def matches(request: Request) -> bool:
        if request.url.path == VERIFY_PATH:
            return True
        return host_routing and host_matches(request.headers.get("host", ""), public_verifier)

    return RouteRule("verifier", matches, origins.verifier)


def fake_verification_rule(origins: Origins) -> RouteRule:
    return RouteRule("fake_verification", lambda request: request.url.path == FAKE_VERIFICATION_PATH, origins.identity)


def rule_stage(rule: RouteRule) -> Stage:
    async def handle(request: Request) -> StageResult:
        return rule.evaluate(request)

    return Stage(rule.name, handle)


def response_metrics(metrics: RouterMetrics) -> Stage:
    """Size of responses that fell through to the catch-all"""

    async def handle(request: Request) -> StageResult:
        return CONTINUE

    def on_complete(request: Request, exchange: Exchange):
        metrics.response_bytes.labels(target=exchange.target).observe(exchange.bytes_sent)

    return Stage("response_metrics", handle, on_complete=on_complete)


def build_stages(context, routes_app: ASGIApp) -> List[Stage]:
    """Assemble the pipeline once, at startup"""
    settings = context.settings
    origins = context.origins

    stages = [
        internal_endpoints(routes_app, (settings.heartbeat_path, settings.metrics_path)),
        overload_gate(context.shedder, context.metrics),
        access_log(),
        body_limit(settings.max_body_bytes),
        request_metrics(context.metrics),
        transport_security(settings.force_https, settings.security_headers),
        legacy_headers(settings.legacy_response_headers),
    ]

    rules = []
    if origins.verifier is not None:
        rules.append(verifier_rule(origins))
    if settings.fake_verification:
        rules.append(fake_verification_rule(origins))
    rules.extend(ApiRouter(origins.identity, origins.write).rules())
    stages.extend(rule_stage(rule) for rule in rules)

    stages.append(response_metrics(context.metrics))
    stages.append(rule_stage(RouteRule("static", lambda request: True, origins.static)))
    return stages
