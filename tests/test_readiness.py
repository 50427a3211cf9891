"""Tests for upstream readiness probing."""

import asyncio

import pytest

from localproxy.errors import ConnectivityTimeout
from localproxy.proxy.readiness import probe_upstream, wait_for_upstream

from .conftest import free_port, make_config


async def _noop(reader, writer):
    writer.close()


@pytest.mark.proxy
class TestReadiness:

    @pytest.mark.asyncio
    async def test_live_upstream_is_ready_first_try(self):
        server = await asyncio.start_server(_noop, '127.0.0.1', 0)
        port = server.sockets[0].getsockname()[1]
        try:
            assert await probe_upstream('http', '127.0.0.1', port, timeout=1.0) is None
            assert await wait_for_upstream('http', '127.0.0.1', port, config=make_config()) == 1
        finally:
            server.close()
            await server.wait_closed()

    @pytest.mark.asyncio
    async def test_dead_upstream_times_out(self):
        port = free_port()
        with pytest.raises(ConnectivityTimeout) as exc_info:
            await wait_for_upstream('http', '127.0.0.1', port, retries=2, timeout=0.5, delay=0.05,
                                    max_duration=5, config=make_config())
        assert exc_info.value.attempts == 2
        assert exc_info.value.port == port
        assert exc_info.value.reason

    @pytest.mark.asyncio
    async def test_upstream_that_comes_up_late(self):
        port = free_port()
        servers = []

        async def start_later():
            await asyncio.sleep(0.3)
            servers.append(await asyncio.start_server(_noop, '127.0.0.1', port))

        starter = asyncio.create_task(start_later())
        try:
            attempt = await wait_for_upstream('http', '127.0.0.1', port, retries=10, timeout=0.5, delay=0.2,
                                              max_duration=5, config=make_config())
            assert attempt > 1
        finally:
            await starter
            for server in servers:
                server.close()
                await server.wait_closed()

    @pytest.mark.asyncio
    async def test_overall_bound(self):
        loop = asyncio.get_running_loop()
        started = loop.time()
        with pytest.raises(ConnectivityTimeout):
            await wait_for_upstream('http', '127.0.0.1', free_port(), retries=100, timeout=0.2, delay=0.2,
                                    max_duration=1.0, config=make_config())
        assert loop.time() - started < 3.0
