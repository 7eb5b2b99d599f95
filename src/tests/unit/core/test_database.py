"""Tests for database lifecycle helpers when no database is configured."""

import pytest

from agentu.core.database import check_db_connection, close_db


class TestDatabaseLifecycle:
    @pytest.mark.asyncio
    async def test_connection_check_fails_without_url(self):
        assert await check_db_connection() is False

    @pytest.mark.asyncio
    async def test_close_without_engine_is_noop(self):
        await close_db()
