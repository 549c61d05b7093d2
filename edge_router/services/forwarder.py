"""
Upstream Forwarder
Streams a single request to one backend origin and relays the response back

Connection pooling follows the shared-client pattern:
- One AsyncClient created at app startup, closed at shutdown
- Limits bound the number of upstream connections per worker
- Request and response bodies are streamed, never buffered whole
"""

import asyncio
from http.cookiejar import CookieJar, DefaultCookiePolicy
from typing import List, Optional, Tuple

import httpx
import structlog
from starlette.requests import ClientDisconnect, Request
from starlette.responses import JSONResponse
from starlette.types import Receive, Send

from edge_router.exceptions import (
    BodyTooLargeError,
    ClientDisconnected,
    EdgeRouterError,
    ForwardError,
    UpstreamTimeout,
    UpstreamUnavailable,
)
from edge_router.models.origin import Origin
from edge_router.models.routing import ForwardFailure, ForwardOutcome, ForwardSuccess

logger = structlog.get_logger(__name__)

# Connection-scoped headers, never relayed in either direction
HOP_BY_HOP = {
    b"connection",
    b"keep-alive",
    b"proxy-connection",
    b"proxy-authenticate",
    b"proxy-authorization",
    b"te",
    b"trailer",
    b"upgrade",
}

RawHeaders = List[Tuple[bytes, bytes]]


class RequestBody:
    """Inbound body stream that enforces the size ceiling while it is read"""

    def __init__(self, request: Request, max_bytes: int = 0):
        self.request = request
        self.max_bytes = max_bytes
        self.received = 0
        self.exhausted = False

    async def __aiter__(self):
        async for chunk in self.request.stream():
            self.received += len(chunk)
            if self.max_bytes and self.received > self.max_bytes:
                raise BodyTooLargeError(self.max_bytes, self.received)
            if chunk:
                yield chunk
        self.exhausted = True


def rewrite_request_headers(raw: RawHeaders, origin: Origin) -> RawHeaders:
    """Copy headers in order, pointing Host at the origin"""
    host = origin.netloc.encode("latin-1")
    headers = []
    host_seen = False
    for name, value in raw:
        lowered = name.lower()
        if lowered in HOP_BY_HOP:
            continue
        if lowered == b"host":
            if host_seen:
                continue
            headers.append((name, host))
            host_seen = True
            continue
        headers.append((name, value))
    if not host_seen:
        headers.insert(0, (b"host", host))
    return headers


def relay_response_headers(raw: RawHeaders) -> RawHeaders:
    return [(name, value) for name, value in raw if name.lower() not in HOP_BY_HOP]


def has_body(request: Request) -> bool:
    headers = request.headers
    return "content-length" in headers or "transfer-encoding" in headers


class Forwarder:
    """
    Proxies requests to backend origins over a shared httpx client.

    Lifecycle:
        - Call start() during app startup (lifespan)
        - Call stop() during app shutdown
    """

    # Connection pool settings (per worker)
    MAX_CONNECTIONS = 200
    MAX_KEEPALIVE = 50
    KEEPALIVE_EXPIRY = 5.0

    # Timeout settings
    WRITE_TIMEOUT = 10.0
    POOL_TIMEOUT = 10.0

    def __init__(
        self,
        connect_timeout: float = 5.0,
        read_timeout: float = 30.0,
        max_body_bytes: int = 0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.connect_timeout = connect_timeout
        self.read_timeout = read_timeout
        self.max_body_bytes = max_body_bytes
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def started(self) -> bool:
        return self._client is not None

    async def start(self):
        """Create the shared upstream client"""
        if self._client is not None:
            logger.warning("Forwarder already started")
            return

        limits = httpx.Limits(
            max_connections=self.MAX_CONNECTIONS,
            max_keepalive_connections=self.MAX_KEEPALIVE,
            keepalive_expiry=self.KEEPALIVE_EXPIRY,
        )
        timeout = httpx.Timeout(
            connect=self.connect_timeout,
            read=self.read_timeout,
            write=self.WRITE_TIMEOUT,
            pool=self.POOL_TIMEOUT,
        )

        # Upstream cookies belong to the client, never to the shared connection pool
        cookies = httpx.Cookies(CookieJar(policy=DefaultCookiePolicy(allowed_domains=[])))

        self._client = httpx.AsyncClient(
            limits=limits,
            timeout=timeout,
            cookies=cookies,
            follow_redirects=False,
            trust_env=False,
            transport=self._transport,
        )

        logger.info(
            "Forwarder started",
            max_connections=self.MAX_CONNECTIONS,
            connect_timeout=self.connect_timeout,
            read_timeout=self.read_timeout,
        )

    async def stop(self):
        """Close the shared client and release its connections"""
        if self._client:
            await self._client.aclose()
            self._client = None
            logger.info("Forwarder stopped")

    def build_upstream_request(self, origin: Origin, request: Request, body: Optional[RequestBody]) -> httpx.Request:
        """Same method, path, query, headers and body; only the Host differs"""
        scope = request.scope
        raw_path = scope.get("raw_path") or scope["path"].encode("utf-8")
        query = scope.get("query_string", b"")
        target = raw_path + b"?" + query if query else raw_path

        url = httpx.URL(origin.url).copy_with(raw_path=target)
        return httpx.Request(
            request.method,
            url,
            headers=rewrite_request_headers(scope["headers"], origin),
            content=body,
        )

    async def forward(self, origin: Origin, request: Request, send: Send) -> ForwardOutcome:
        """
        Forward one request to origin and stream the response into send

        Args:
            origin: Target backend
            request: Inbound request (body not yet read)
            send: ASGI send callable of the inbound connection

        Returns:
            ForwardSuccess, or ForwardFailure with the cause. The client always
            receives a terminated response.
        """
        if self._client is None:
            raise RuntimeError("Forwarder not started")

        body = RequestBody(request, self.max_body_bytes) if has_body(request) else None
        upstream_request = self.build_upstream_request(origin, request, body)

        try:
            upstream = await self._client.send(upstream_request, stream=True)
        except BodyTooLargeError as e:
            return await self._fail(origin, e, request, send, close=True)
        except ClientDisconnect:
            # Nobody left to answer
            cause = ClientDisconnected("Client disconnected while sending the request body")
            return ForwardFailure(origin, cause, None, response_started=False, bytes_streamed=0)
        except httpx.TimeoutException as e:
            cause = UpstreamTimeout(f"Upstream timed out: {e!r}", str(origin))
            return await self._fail(origin, cause, request, send)
        except httpx.HTTPError as e:
            cause = UpstreamUnavailable(f"Upstream unavailable: {e!r}", str(origin))
            return await self._fail(origin, cause, request, send)

        try:
            await send({
                "type": "http.response.start",
                "status": upstream.status_code,
                "headers": relay_response_headers(upstream.headers.raw),
            })
            return await self._relay(origin, upstream, request.receive, send, watch_disconnect=body is None or body.exhausted)
        finally:
            await upstream.aclose()

    async def _relay(
        self,
        origin: Origin,
        upstream: httpx.Response,
        receive: Receive,
        send: Send,
        watch_disconnect: bool,
    ) -> ForwardOutcome:
        """Stream the upstream body, aborting when the client disconnects"""
        streamed = 0

        async def stream_body():
            nonlocal streamed
            async for chunk in upstream.aiter_raw():
                if chunk:
                    streamed += len(chunk)
                    await send({"type": "http.response.body", "body": chunk, "more_body": True})
            await send({"type": "http.response.body", "body": b"", "more_body": False})

        async def wait_for_disconnect():
            while True:
                message = await receive()
                if message["type"] == "http.disconnect":
                    return

        relay = asyncio.ensure_future(stream_body())
        tasks = {relay}
        if watch_disconnect:
            tasks.add(asyncio.ensure_future(wait_for_disconnect()))

        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        if relay.cancelled():
            cause = ClientDisconnected("Client disconnected before the response was relayed")
            return ForwardFailure(origin, cause, upstream.status_code, response_started=True, bytes_streamed=streamed)

        error = relay.exception()
        if error is None:
            return ForwardSuccess(origin, upstream.status_code, streamed)
        if isinstance(error, httpx.TimeoutException):
            cause = UpstreamTimeout(f"Upstream timed out mid-response: {error!r}", str(origin))
        elif isinstance(error, httpx.HTTPError):
            cause = UpstreamUnavailable(f"Upstream failed mid-response: {error!r}", str(origin))
        elif isinstance(error, OSError):
            cause = ClientDisconnected(f"Client connection lost: {error!r}")
        else:
            raise error
        return ForwardFailure(origin, cause, upstream.status_code, response_started=True, bytes_streamed=streamed)

    async def _fail(
        self,
        origin: Origin,
        cause: EdgeRouterError,
        request: Request,
        send: Send,
        close: bool = False,
    ) -> ForwardOutcome:
        """Answer the client with a failure status before any upstream bytes went out"""
        status_code = getattr(cause, "status_code", ForwardError.status_code)
        headers = {"Connection": "close"} if close else None
        response = JSONResponse(
            status_code=status_code,
            content={"error": type(cause).__name__, "message": str(cause)},
            headers=headers,
        )
        await response(request.scope, request.receive, send)
        return ForwardFailure(origin, cause, status_code, response_started=False)
