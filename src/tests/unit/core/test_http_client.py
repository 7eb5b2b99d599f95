"""Tests for the pooled HTTP client manager."""

import pytest

from agentu.core.http_client import HTTPClientManager, close_http_client, get_http_client


class TestHTTPClientManager:
    @pytest.mark.asyncio
    async def test_client_is_reused_until_closed(self, test_settings):
        manager = HTTPClientManager(test_settings)

        first = await manager.get_client()
        assert await manager.get_client() is first
        assert first.headers["user-agent"].startswith("AgentU/")

        await manager.close()
        assert first.is_closed
        second = await manager.get_client()
        assert second is not first
        await manager.close()

    @pytest.mark.asyncio
    async def test_context_manager_closes_client(self, test_settings):
        async with HTTPClientManager(test_settings) as client:
            assert not client.is_closed
        assert client.is_closed

    @pytest.mark.asyncio
    async def test_shared_client_shutdown(self):
        client = await get_http_client()
        await close_http_client()
        assert client.is_closed
        # Closing again is a no-op
        await close_http_client()
