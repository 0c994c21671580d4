"""
Unit tests for KeyedLock.
"""
import asyncio

import pytest

from caseai.core.locks import KeyedLock


class TestKeyedLock:
    @pytest.mark.asyncio
    async def test_same_key_is_exclusive(self):
        lock = KeyedLock()
        holding = asyncio.Event()
        release = asyncio.Event()
        order = []

        async def first():
            async with lock.acquire("case-1"):
                order.append("first_in")
                holding.set()
                await release.wait()
                order.append("first_out")

        async def second():
            await holding.wait()
            async with lock.acquire("case-1"):
                order.append("second_in")

        tasks = [asyncio.create_task(first()), asyncio.create_task(second())]
        await holding.wait()
        await asyncio.sleep(0.01)

        assert order == ["first_in"]
        assert lock.locked("case-1")

        release.set()
        await asyncio.gather(*tasks)
        assert order == ["first_in", "first_out", "second_in"]

    @pytest.mark.asyncio
    async def test_different_keys_overlap(self):
        lock = KeyedLock()
        entered = {"a": asyncio.Event(), "b": asyncio.Event()}

        async def hold(key, other):
            async with lock.acquire(key):
                entered[key].set()
                # Times out if both keys shared one lock.
                await asyncio.wait_for(entered[other].wait(), timeout=1)

        await asyncio.gather(hold("a", "b"), hold("b", "a"))

        assert len(lock) == 0

    @pytest.mark.asyncio
    async def test_map_empties_after_release(self):
        lock = KeyedLock()

        async def use(key):
            async with lock.acquire(key):
                assert len(lock) >= 1
                await asyncio.sleep(0)

        await asyncio.gather(*(use(key) for key in ["a", "a", "b", ("case-1", "overall", "")]))

        assert len(lock) == 0
        assert not lock.locked("a")

    @pytest.mark.asyncio
    async def test_released_on_error(self):
        lock = KeyedLock()

        with pytest.raises(RuntimeError):
            async with lock.acquire("k"):
                raise RuntimeError("boom")

        assert len(lock) == 0
        async with lock.acquire("k"):
            assert lock.locked("k")
