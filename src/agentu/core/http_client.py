"""HTTP client management for AgentU.

One pooled ``httpx.AsyncClient`` is shared by provider backends and the
embedding backend. Per-request timeouts come from provider configuration.
"""

from typing import Any

import httpx

from .config import Settings, get_settings_instance
from .logging import get_logger

logger = get_logger(__name__)


class HTTPClientManager:
    """Manages HTTP client connections with pooling for external APIs."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._client: httpx.AsyncClient | None = None
        self._settings = settings

    async def get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client with connection pooling."""
        if self._client is None:
            settings = self._settings or get_settings_instance()
            logger.debug("Creating new HTTP client with connection pooling")
            self._client = httpx.AsyncClient(
                limits=httpx.Limits(max_keepalive_connections=20, max_connections=100, keepalive_expiry=30.0),
                timeout=httpx.Timeout(60.0, read=float(settings.llm_stream_read_timeout)),
                follow_redirects=True,
                headers={"User-Agent": f"AgentU/{settings.version}"},
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            logger.debug("Closing HTTP client")
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> httpx.AsyncClient:
        return await self.get_client()

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> Any:
        await self.close()


# Global HTTP client manager instance
http_client_manager = HTTPClientManager()


async def get_http_client() -> httpx.AsyncClient:
    """Get HTTP client for external API calls."""
    return await http_client_manager.get_client()


async def close_http_client() -> None:
    """Close HTTP client (call during shutdown)."""
    await http_client_manager.close()
