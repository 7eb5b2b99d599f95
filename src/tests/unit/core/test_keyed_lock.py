"""Tests for the per-key asyncio lock registry."""

import asyncio

import pytest

from agentu.core.keyed_lock import KeyedLockRegistry


class TestKeyedLockRegistry:
    @pytest.mark.asyncio
    async def test_same_key_is_mutually_exclusive(self):
        registry = KeyedLockRegistry()
        inside = 0
        max_inside = 0

        async def worker():
            nonlocal inside, max_inside
            async with registry.hold("session:1"):
                inside += 1
                max_inside = max(max_inside, inside)
                await asyncio.sleep(0)
                inside -= 1

        await asyncio.gather(*(worker() for _ in range(20)))
        assert max_inside == 1

    @pytest.mark.asyncio
    async def test_different_keys_run_in_parallel(self):
        registry = KeyedLockRegistry()
        both_inside = asyncio.Event()
        entered = 0

        async def worker(key):
            nonlocal entered
            async with registry.hold(key):
                entered += 1
                if entered == 2:
                    both_inside.set()
                await asyncio.wait_for(both_inside.wait(), timeout=1)

        await asyncio.gather(worker("a"), worker("b"))
        assert entered == 2

    @pytest.mark.asyncio
    async def test_locks_released_after_use(self):
        registry = KeyedLockRegistry()
        async with registry.hold("k"):
            assert len(registry) == 1
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_lock_released_on_error(self):
        registry = KeyedLockRegistry()
        with pytest.raises(RuntimeError):
            async with registry.hold("k"):
                raise RuntimeError("boom")
        assert len(registry) == 0
        async with registry.hold("k"):
            pass
