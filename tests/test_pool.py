"""Tests for the bounded worker pool."""

from __future__ import annotations

import asyncio

import pytest
from structlog.testing import capture_logs

from envforge.pool import PoolResult, WorkerPool, released_slot


async def _echo(value):
    await asyncio.sleep(0)
    return value


async def _boom(message):
    raise RuntimeError(message)


class TestWorkerPool:
    def test_rejects_zero_concurrency(self):
        with pytest.raises(ValueError, match="max_concurrency"):
            WorkerPool(max_concurrency=0)

    def test_submit_is_chainable(self):
        pool = WorkerPool(2).submit("a", _echo, 1).submit("b", _echo, 2)
        assert pool.item_count == 2

    @pytest.mark.asyncio
    async def test_runs_every_item(self):
        pool = WorkerPool(2)
        for i in range(5):
            pool.submit(f"item-{i}", _echo, i)

        result = await pool.run_all()

        assert isinstance(result, PoolResult)
        assert result.succeeded == 5
        assert result.failed == 0
        assert [i.status for i in result.items] == ["completed"] * 5
        assert pool.item_count == 0

    @pytest.mark.asyncio
    async def test_failure_does_not_cancel_siblings(self):
        pool = WorkerPool(4).submit("ok", _echo, "fine").submit("bad", _boom, "exploded")

        with capture_logs() as logs:
            result = await pool.run_all()

        assert result.succeeded == 1
        assert result.failed == 1
        bad = next(i for i in result.items if i.name == "bad")
        assert bad.error == "exploded"
        failed_events = [e for e in logs if e["event"] == "pool.item_failed"]
        assert failed_events and failed_events[0]["name"] == "bad"

    @pytest.mark.asyncio
    async def test_concurrency_is_capped(self):
        running = 0
        peak = 0

        async def _track():
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1

        pool = WorkerPool(max_concurrency=2)
        for i in range(6):
            pool.submit(f"t{i}", _track)
        await pool.run_all()

        assert peak == 2

    @pytest.mark.asyncio
    async def test_to_dict(self):
        pool = WorkerPool(1).submit("only", _echo, 1)
        data = (await pool.run_all()).to_dict()
        assert data["total"] == 1
        assert data["succeeded"] == 1
        assert data["items"][0]["name"] == "only"
        assert data["items"][0]["duration_seconds"] is not None
        assert data["failed"] == 0


class TestReleasedSlot:
    @pytest.mark.asyncio
    async def test_waiter_hands_slot_to_the_item_it_waits_on(self):
        ready = asyncio.Event()

        async def _wait_for_ready():
            async with released_slot():
                await asyncio.wait_for(ready.wait(), timeout=1)
            return "woke"

        async def _set_ready():
            ready.set()

        pool = WorkerPool(max_concurrency=1).submit("waiter", _wait_for_ready).submit("setter", _set_ready)

        result = await pool.run_all()

        assert result.succeeded == 2
        assert result.failed == 0

    @pytest.mark.asyncio
    async def test_slot_is_retaken_after_the_block(self):
        running = 0
        peak = 0
        ready = asyncio.Event()

        async def _busy():
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1
            ready.set()

        async def _wait_then_busy():
            async with released_slot():
                await ready.wait()
            await _busy()

        pool = WorkerPool(max_concurrency=1).submit("first", _wait_then_busy)
        for i in range(3):
            pool.submit(f"busy-{i}", _busy)
        result = await pool.run_all()

        assert result.succeeded == 4
        assert peak == 1

    @pytest.mark.asyncio
    async def test_noop_outside_pool(self):
        async with released_slot():
            pass
