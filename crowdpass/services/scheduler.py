# crowdpass/services/scheduler.py
"""
Periodic ticks for aggregation, alerting and the expiry sweep.

Each PeriodicTask runs its function in a worker thread, bounded by a
per-tick budget. A tick that overruns is logged; the task keeps skipping
ticks until the overrunning call returns, so work never overlaps and never
queues up.

Tick sources:
  IntervalTickSource  fires every N seconds (production)
  ManualTickSource    fires when fire(now) is called (tests)
"""

import asyncio
from datetime import datetime
from typing import Awaitable, Callable, Optional
from crowdpass.utils.clock import utcnow
from crowdpass.utils.logger import get_logger

logger = get_logger(__name__)


class TickSource:
    async def wait(self, stop_event: asyncio.Event) -> Optional[datetime]:
        """Wait for the next tick. Returns its time, or None once stop_event is set."""
        raise NotImplementedError


class IntervalTickSource(TickSource):
    def __init__(self, interval: float, clock: Callable[[], datetime] = utcnow):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.interval = interval
        self.clock = clock

    async def wait(self, stop_event: asyncio.Event) -> Optional[datetime]:
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=self.interval)
            return None
        except asyncio.TimeoutError:
            return self.clock()


class ManualTickSource(TickSource):
    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()

    def fire(self, now: datetime):
        self._queue.put_nowait(now)

    async def wait(self, stop_event: asyncio.Event) -> Optional[datetime]:
        if stop_event.is_set():
            return None
        getter = asyncio.ensure_future(self._queue.get())
        stopper = asyncio.ensure_future(stop_event.wait())
        done, pending = await asyncio.wait({getter, stopper}, return_when=asyncio.FIRST_COMPLETED)
        for fut in pending:
            fut.cancel()
        if getter in done:
            return getter.result()
        return None


class PeriodicTask:
    def __init__(self, name: str, fn: Callable[[datetime], object],
                 tick_source: TickSource, budget: float):
        self.name = name
        self.fn = fn
        self.tick_source = tick_source
        self.budget = budget
        self.ticks_run = 0
        self.ticks_skipped = 0
        self.ticks_over_budget = 0
        self._inflight: Optional[asyncio.Future] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        self._running = True
        if stop_event is None:
            stop_event = asyncio.Event()
        logger.info(f"[SCHED] {self.name} started (budget {self.budget}s)")
        try:
            while not stop_event.is_set():
                now = await self.tick_source.wait(stop_event)
                if now is None:
                    break
                await self.run_tick(now)
        finally:
            self._running = False
            logger.info(f"[SCHED] {self.name} stopped "
                        f"(run={self.ticks_run} skipped={self.ticks_skipped} over_budget={self.ticks_over_budget})")

    async def run_tick(self, now: datetime) -> bool:
        """Run one tick. Returns False if it was skipped or overran its budget."""
        if self._inflight is not None and not self._inflight.done():
            self.ticks_skipped += 1
            logger.warning(f"[SCHED] {self.name}: previous tick still running, skipping {now.isoformat()}")
            return False

        self._inflight = asyncio.ensure_future(asyncio.to_thread(self._call, now))
        try:
            await asyncio.wait_for(asyncio.shield(self._inflight), timeout=self.budget)
        except asyncio.TimeoutError:
            self.ticks_over_budget += 1
            logger.warning(f"[SCHED] {self.name}: tick at {now.isoformat()} exceeded its "
                           f"{self.budget}s budget; skipping ticks until it finishes")
            return False
        self.ticks_run += 1
        return True

    def _call(self, now: datetime):
        try:
            self.fn(now)
        except Exception as e:
            logger.error(f"[SCHED] {self.name} tick failed: {e}", exc_info=True)


class Scheduler:
    """Owns the periodic tasks and background loops of one running app."""

    def __init__(self):
        self.tasks: list[PeriodicTask] = []
        self.background: list[Callable[[asyncio.Event], Awaitable[None]]] = []
        self._stop_event: Optional[asyncio.Event] = None
        self._handles: list[asyncio.Task] = []

    def add(self, task: PeriodicTask) -> PeriodicTask:
        self.tasks.append(task)
        return task

    def add_background(self, loop_fn: Callable[[asyncio.Event], Awaitable[None]]):
        self.background.append(loop_fn)

    def start(self):
        """Spawn every task on the running event loop."""
        self._stop_event = asyncio.Event()
        self._handles = [asyncio.create_task(t.run(self._stop_event), name=f"tick-{t.name}")
                         for t in self.tasks]
        self._handles += [asyncio.create_task(fn(self._stop_event)) for fn in self.background]
        logger.info(f"[SCHED] Started {len(self.tasks)} periodic task(s), "
                    f"{len(self.background)} background loop(s)")

    async def stop(self):
        if self._stop_event is not None:
            self._stop_event.set()
        results = await asyncio.gather(*self._handles, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error(f"[SCHED] Task ended with error: {result}")
        self._handles = []
