# tests/test_scheduler.py
"""Unit tests for periodic tasks: budgets, skipping, start/stop."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import asyncio
import threading
import pytest
from datetime import datetime, timedelta, timezone
from crowdpass.services.scheduler import IntervalTickSource, ManualTickSource, PeriodicTask, Scheduler

NOW = datetime(2026, 3, 1, 6, 0, tzinfo=timezone.utc)


async def wait_until(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


class TestPeriodicTask:
    @pytest.mark.asyncio
    async def test_manual_ticks_drive_the_function(self):
        calls = []
        source = ManualTickSource()
        task = PeriodicTask("aggregation", calls.append, source, budget=1.0)
        stop = asyncio.Event()
        runner = asyncio.create_task(task.run(stop))

        source.fire(NOW)
        source.fire(NOW + timedelta(seconds=5))
        await wait_until(lambda: len(calls) == 2)
        stop.set()
        await runner

        assert calls == [NOW, NOW + timedelta(seconds=5)]
        assert task.ticks_run == 2
        assert not task.running

    @pytest.mark.asyncio
    async def test_over_budget_tick_skips_until_done(self):
        release = threading.Event()
        calls = []

        def slow(now):
            calls.append(now)
            release.wait(2)

        task = PeriodicTask("alerts", slow, ManualTickSource(), budget=0.05)
        assert await task.run_tick(NOW) is False
        assert task.ticks_over_budget == 1

        assert await task.run_tick(NOW + timedelta(seconds=10)) is False
        assert task.ticks_skipped == 1
        assert calls == [NOW]    # never overlapped

        release.set()
        await asyncio.sleep(0.2)
        assert await task.run_tick(NOW + timedelta(seconds=20)) is True
        assert calls == [NOW, NOW + timedelta(seconds=20)]

    @pytest.mark.asyncio
    async def test_failing_tick_is_logged_not_raised(self):
        def boom(now):
            raise RuntimeError("zone table corrupt")

        task = PeriodicTask("expiry_sweep", boom, ManualTickSource(), budget=1.0)
        assert await task.run_tick(NOW) is True


class TestTickSources:
    @pytest.mark.asyncio
    async def test_interval_source_returns_time(self):
        source = IntervalTickSource(0.01, clock=lambda: NOW)
        assert await source.wait(asyncio.Event()) == NOW

    @pytest.mark.asyncio
    async def test_sources_return_none_when_stopped(self):
        stop = asyncio.Event()
        stop.set()
        assert await IntervalTickSource(5).wait(stop) is None
        assert await ManualTickSource().wait(stop) is None

    def test_interval_must_be_positive(self):
        with pytest.raises(ValueError):
            IntervalTickSource(0)


class TestScheduler:
    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        calls = []
        scheduler = Scheduler()
        task = scheduler.add(PeriodicTask("aggregation", calls.append, IntervalTickSource(0.01), budget=1.0))
        scheduler.start()
        await wait_until(lambda: len(calls) >= 2)
        await scheduler.stop()
        assert not task.running
