"""Shared HTTP client for calls to the OAuth provider.

One httpx.AsyncClient is opened in the application lifespan and reused by
sign-in requests and device-flow pollers, so repeated polling keeps its
connection to the provider alive.
"""

from __future__ import annotations

import httpx
import structlog

from headb import __version__
from headb.config import OAuthConfig

logger = structlog.get_logger()


class HTTPClientManager:
    """Owns the shared httpx.AsyncClient.

    Usage:
        # In FastAPI lifespan
        await http_client_manager.startup(settings.oauth)
        yield
        await http_client_manager.shutdown()

        # In code
        client = http_client_manager.client
    """

    def __init__(self) -> None:
        self._client: httpx.AsyncClient | None = None
        self._log = logger.bind(component="http_client")

    @property
    def client(self) -> httpx.AsyncClient:
        """Get the shared HTTP client.

        Raises:
            RuntimeError: If client is not initialized (call startup first)
        """
        if self._client is None:
            raise RuntimeError("HTTP client not initialized. Call startup() first.")
        return self._client

    @property
    def is_started(self) -> bool:
        return self._client is not None

    async def startup(self, config: OAuthConfig) -> None:
        """Open the client with pool limits and timeouts from the OAuth config."""
        if self._client is not None:
            self._log.warning("http_client.already_started")
            return

        self._client = httpx.AsyncClient(
            limits=httpx.Limits(
                max_connections=config.max_connections,
                max_keepalive_connections=config.max_connections,
            ),
            timeout=httpx.Timeout(config.read_timeout, connect=config.connect_timeout),
            headers={"Accept": "application/json", "User-Agent": f"headb/{__version__}"},
        )

        self._log.info("http_client.started", max_connections=config.max_connections)

    async def shutdown(self) -> None:
        """Close the HTTP client and release resources."""
        if self._client is None:
            return

        await self._client.aclose()
        self._client = None
        self._log.info("http_client.shutdown")


# Global singleton instance
http_client_manager = HTTPClientManager()


def get_http_client() -> httpx.AsyncClient | None:
    """Get the shared client, or None when the lifespan has not started it."""
    try:
        return http_client_manager.client
    except RuntimeError:
        return None
