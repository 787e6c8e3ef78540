import sys
import os

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
import asyncio

import pytest

from storefront.async_ops import KeyedLock, LoopThread, retry_on_conflict, settle_each
from storefront.errors import BackendError, ConflictError


@pytest.mark.asyncio
async def test_keyed_lock_serializes_same_key():
    """Операции с одним ключом выполняются в порядке вызова"""
    locks = KeyedLock()
    log = []

    async def op(key, name, pause):
        async with locks.hold(key):
            log.append(f"{name}:start")
            await asyncio.sleep(pause)
            log.append(f"{name}:end")

    await asyncio.gather(op("k", "a", 0.02), op("k", "b", 0.0))
    assert log == ["a:start", "a:end", "b:start", "b:end"]
    assert len(locks) == 0


@pytest.mark.asyncio
async def test_keyed_lock_different_keys_run_in_parallel():
    locks = KeyedLock()
    log = []

    async def op(key, pause):
        async with locks.hold(key):
            log.append(f"{key}:start")
            await asyncio.sleep(pause)
            log.append(f"{key}:end")

    await asyncio.gather(op("a", 0.02), op("b", 0.0))
    assert log.index("b:start") < log.index("a:end")


@pytest.mark.asyncio
async def test_keyed_lock_released_on_error():
    locks = KeyedLock()
    with pytest.raises(RuntimeError):
        async with locks.hold("k"):
            assert locks.is_busy("k")
            raise RuntimeError("boom")
    assert not locks.is_busy("k")
    assert len(locks) == 0


@pytest.mark.asyncio
async def test_settle_each_keeps_order():
    async def double(x):
        await asyncio.sleep(0.01 * (3 - x))
        return x * 2

    assert await settle_each([1, 2, 3], double) == [(1, 2), (2, 4), (3, 6)]


@pytest.mark.asyncio
async def test_retry_on_conflict():
    calls = []

    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise ConflictError("stale")
        return "ok"

    assert await retry_on_conflict(flaky, attempts=3) == "ok"
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_retry_on_conflict_gives_up():
    async def always():
        raise ConflictError("stale")

    with pytest.raises(ConflictError):
        await retry_on_conflict(always, attempts=2)


@pytest.mark.asyncio
async def test_retry_does_not_retry_other_errors():
    calls = []

    async def down():
        calls.append(1)
        raise BackendError("down")

    with pytest.raises(BackendError):
        await retry_on_conflict(down, attempts=5)
    assert len(calls) == 1


def test_loop_thread_runs_coroutines():
    loop = LoopThread()
    try:

        async def answer():
            await asyncio.sleep(0)
            return 42

        assert loop.run(answer()) == 42
    finally:
        loop.stop()
