"""Unit tests for the shared HTTP client manager."""

from __future__ import annotations

import pytest

from headb.config import OAuthConfig
from headb.services.http import HTTPClientManager


class TestHTTPClientManager:
    def test_client_before_startup(self):
        with pytest.raises(RuntimeError):
            HTTPClientManager().client

    async def test_startup_and_shutdown(self):
        manager = HTTPClientManager()

        await manager.startup(OAuthConfig(max_connections=5, read_timeout=3.0))
        client = manager.client

        assert manager.is_started
        assert client.timeout.read == 3.0
        assert client.headers["User-Agent"].startswith("headb/")

        await manager.shutdown()
        assert not manager.is_started
        assert client.is_closed

    async def test_startup_twice_keeps_client(self):
        manager = HTTPClientManager()
        await manager.startup(OAuthConfig())
        first = manager.client

        await manager.startup(OAuthConfig())

        assert manager.client is first
        await manager.shutdown()
