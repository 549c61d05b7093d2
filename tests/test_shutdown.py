"""
Tests for graceful shutdown
"""

import asyncio
import signal

import pytest
import uvicorn
from starlette.testclient import TestClient

from edge_router import main as main_module
from edge_router.main import EdgeServer, create_app
from edge_router.services.shutdown import ShutdownCoordinator, ShutdownState


class TestShutdownCoordinator:
    def test_initial_state(self):
        coordinator = ShutdownCoordinator()
        assert coordinator.state == ShutdownState.RUNNING
        assert coordinator.accepting is True
        assert coordinator.active == 0

    def test_begin_drain_is_idempotent(self):
        calls = []
        coordinator = ShutdownCoordinator()
        coordinator.on_drain(lambda: calls.append("drain"))

        coordinator.begin_drain()
        coordinator.begin_drain()

        assert coordinator.state == ShutdownState.DRAINING
        assert coordinator.accepting is False
        assert calls == ["drain"]

    def test_failing_callback_does_not_stop_drain(self):
        calls = []

        def broken():
            raise RuntimeError("boom")

        coordinator = ShutdownCoordinator()
        coordinator.on_drain(broken)
        coordinator.on_drain(lambda: calls.append("after"))

        coordinator.begin_drain()

        assert coordinator.state == ShutdownState.DRAINING
        assert calls == ["after"]

    @pytest.mark.asyncio
    async def test_waits_for_in_flight_requests(self):
        coordinator = ShutdownCoordinator(drain_timeout=5)
        releases = [asyncio.Event() for _ in range(3)]
        finished = []

        async def request(index, release):
            async with coordinator.track():
                await release.wait()
                finished.append(index)

        tasks = [asyncio.ensure_future(request(i, release)) for i, release in enumerate(releases)]
        await asyncio.sleep(0)
        assert coordinator.active == 3

        coordinator.begin_drain()
        assert coordinator.accepting is False
        waiter = asyncio.ensure_future(coordinator.wait_drained())

        for release in releases:
            await asyncio.sleep(0.01)
            assert not waiter.done()
            release.set()

        assert await waiter is True
        assert sorted(finished) == [0, 1, 2]
        assert coordinator.active == 0
        await asyncio.gather(*tasks)

    @pytest.mark.asyncio
    async def test_idle_drains_immediately(self):
        coordinator = ShutdownCoordinator(drain_timeout=0.1)
        coordinator.begin_drain()
        assert await coordinator.wait_drained() is True

    @pytest.mark.asyncio
    async def test_drain_timeout(self):
        coordinator = ShutdownCoordinator(drain_timeout=0.05)
        release = asyncio.Event()

        async def stuck():
            async with coordinator.track():
                await release.wait()

        task = asyncio.ensure_future(stuck())
        await asyncio.sleep(0)
        coordinator.begin_drain()

        assert await coordinator.wait_drained() is False
        assert coordinator.active == 1

        release.set()
        await task

    def test_mark_stopped(self):
        coordinator = ShutdownCoordinator()
        coordinator.begin_drain()
        coordinator.mark_stopped()
        assert coordinator.state == ShutdownState.STOPPED


class TestDrainingRouter:
    @pytest.mark.asyncio
    async def test_rejects_new_requests_while_draining(self, router, upstream):
        router.context.shutdown.begin_drain()

        response = await router.client.get("/index.html")

        assert response.status_code == 503
        assert response.headers["connection"] == "close"
        assert upstream.requests == []

    @pytest.mark.asyncio
    async def test_drain_stops_overload_polling(self, router):
        router.context.shedder.start()
        assert router.context.shedder.running

        router.context.shutdown.begin_drain()

        assert not router.context.shedder.running

    def test_lifespan(self, settings, upstream):
        app = create_app(settings, transport=upstream.transport())
        context = app.state.context

        with TestClient(app) as client:
            assert context.forwarder.started
            response = client.get("/index.html")
            assert response.status_code == 200
            assert context.shutdown.state == ShutdownState.RUNNING

        assert context.shutdown.state == ShutdownState.STOPPED
        assert not context.forwarder.started
        assert not context.shedder.running


class TestServer:
    def test_exit_signal_starts_draining(self, settings):
        app = create_app(settings)
        coordinator = app.state.context.shutdown
        server = EdgeServer(uvicorn.Config(app), coordinator=coordinator)

        server.handle_exit(signal.SIGTERM, None)

        assert coordinator.state == ShutdownState.DRAINING
        assert server.should_exit is True

    def test_drain_timeout_reaches_server(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        for name, value in {
            "IDENTITY_SERVICE_URL": "http://identity.internal:10002",
            "WRITE_SERVICE_URL": "http://writer.internal:10004",
            "STATIC_SERVICE_URL": "http://static.internal:10003",
            "BIND_HOST": "127.0.0.1",
            "BIND_PORT": "8080",
            "DRAIN_TIMEOUT": "0.5",
        }.items():
            monkeypatch.setenv(name, value)
        monkeypatch.setattr(main_module, "init_logging", lambda: None)
        monkeypatch.setattr(main_module, "setup_logging", lambda *args: None)

        configs = []
        monkeypatch.setattr(EdgeServer, "run", lambda self, sockets=None: configs.append(self.config))

        main_module.main()

        assert configs[0].timeout_graceful_shutdown == 0.5
        assert configs[0].port == 8080

    def test_invalid_configuration_exits_nonzero(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.delenv("IDENTITY_SERVICE_URL", raising=False)
        monkeypatch.setattr(main_module, "init_logging", lambda: None)
        monkeypatch.setattr(main_module, "setup_logging", lambda *args: None)

        assert main_module.main() == 1
