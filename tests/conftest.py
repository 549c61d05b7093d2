"""
Pytest fixtures for edge router tests
"""

from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Set

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI

from edge_router.config import load_settings
from edge_router.context import RouterContext
from edge_router.main import create_app

IDENTITY_URL = "http://identity.internal:10002"
WRITE_URL = "http://writer.internal:10004"
STATIC_URL = "http://static.internal:10003"
VERIFIER_URL = "http://verifier.internal:10000"

HEARTBEAT_PATH = "/__heartbeat__"


def upstream_response(status_code: int = 200, body: bytes = b"", headers: Optional[Dict[str, str]] = None) -> httpx.Response:
    """Streaming response, as a real upstream connection would produce"""
    headers = dict(headers or {})
    headers.setdefault("content-length", str(len(body)))
    return httpx.Response(status_code, headers=headers, stream=httpx.ByteStream(body))


class MockUpstream:
    """In-process stand-in for every backend, keyed by host.

    Records each forwarded request with its body; heartbeat probes are kept
    apart so routing assertions only see proxied traffic.
    """

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.probes: List[httpx.Request] = []
        self.down: Set[str] = set()
        self.unhealthy: Set[str] = set()
        self.handlers: Dict[str, Callable[[httpx.Request], httpx.Response]] = {}

    def handler(self, request: httpx.Request) -> httpx.Response:
        host = request.url.host
        if host in self.down:
            raise httpx.ConnectError("Connection refused", request=request)

        if request.url.path == HEARTBEAT_PATH:
            self.probes.append(request)
            if host in self.unhealthy:
                return httpx.Response(500, text="bad")
            return httpx.Response(200, text="ok")

        self.requests.append(request)
        if host in self.handlers:
            return self.handlers[host](request)

        body = f"{host} {request.method} {request.url.raw_path.decode()}".encode()
        return upstream_response(200, body, {"Content-Type": "text/plain", "X-Upstream": host})

    @property
    def hosts(self) -> List[str]:
        return [request.url.host for request in self.requests]

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@dataclass
class Router:
    app: FastAPI
    client: httpx.AsyncClient

    @property
    def context(self) -> RouterContext:
        return self.app.state.context


@pytest.fixture
def upstream():
    return MockUpstream()


@pytest.fixture
def settings_factory():
    """Settings with test backends; keyword arguments override"""
    def factory(**overrides):
        values = dict(
            identity_service_url=IDENTITY_URL,
            write_service_url=WRITE_URL,
            static_service_url=STATIC_URL,
            bind_host="127.0.0.1",
            bind_port=8080,
            _env_file=None,
        )
        values.update(overrides)
        return load_settings(**values)
    return factory


@pytest.fixture
def settings(settings_factory):
    return settings_factory()


@pytest_asyncio.fixture
async def router_factory(upstream, settings_factory):
    """Build routers driven in-process; the forwarder is started, lifespan is not run"""
    routers = []

    async def factory(**overrides) -> Router:
        app = create_app(settings_factory(**overrides), transport=upstream.transport())
        await app.state.context.forwarder.start()
        client = httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://router.test")
        router = Router(app=app, client=client)
        routers.append(router)
        return router

    yield factory

    for router in routers:
        await router.client.aclose()
        await router.context.forwarder.stop()
        await router.context.health.stop()


@pytest_asyncio.fixture
async def router(router_factory):
    return await router_factory()
