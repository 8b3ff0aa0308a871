"""Background memory-pressure monitor.

Samples memory usage on a fixed interval and emits a
``memory-pressure`` event when usage crosses the threshold. The
monitor is advisory: it never throttles or cancels work in flight.

Pressure is measured as:
- process RSS / memory budget, when a budget is configured
- process RSS / total system memory otherwise
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable

import psutil

from contextshield.events import EventBus, EventType

logger = logging.getLogger(__name__)


@dataclass
class MemorySample:
    """One memory reading."""
    pressure: float  # 0.0 to 1.0+
    used: int        # bytes
    total: int       # bytes

    def to_dict(self) -> dict[str, Any]:
        return {
            "pressure": self.pressure,
            "heap_used": self.used,
            "heap_total": self.total,
        }


def sample_memory(budget_mb: float | None = None) -> MemorySample:
    """Take a memory reading with psutil."""
    if budget_mb:
        rss = psutil.Process().memory_info().rss
        total = int(budget_mb * 1024 * 1024)
        return MemorySample(pressure=rss / total, used=rss, total=total)

    total = psutil.virtual_memory().total
    rss = psutil.Process().memory_info().rss
    return MemorySample(pressure=rss / total, used=rss, total=total)


class MemoryMonitor:
    """Periodically checks memory pressure.

    Usage:
        monitor = MemoryMonitor(bus, interval_s=5.0, threshold=0.7)
        await monitor.start()
        # ... memory-pressure events arrive on the bus ...
        await monitor.stop()
    """

    def __init__(
        self,
        bus: EventBus,
        interval_s: float = 5.0,
        threshold: float = 0.7,
        budget_mb: float | None = None,
        probe: Callable[[], MemorySample] | None = None,
    ):
        self.bus = bus
        self.interval_s = interval_s
        self.threshold = threshold
        self.budget_mb = budget_mb
        self._probe = probe or (lambda: sample_memory(self.budget_mb))

        self._running = False
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._running

    def sample(self) -> MemorySample:
        return self._probe()

    def check(self) -> MemorySample:
        """Take one reading and emit an event if it is over threshold."""
        reading = self.sample()
        if reading.pressure > self.threshold:
            self.bus.emit(EventType.MEMORY_PRESSURE, reading.to_dict())
        return reading

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info(f"Memory monitor started (every {self.interval_s}s, threshold {self.threshold:.0%})")

    async def stop(self) -> None:
        self._running = False
        task = self.cancel()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass

    def cancel(self) -> asyncio.Task | None:
        """Stop the loop without awaiting it. Returns the cancelled task."""
        self._running = False
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            logger.info("Memory monitor stopped")
            return task
        return None

    async def _loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.interval_s)
            try:
                self.check()
            except psutil.Error as e:
                logger.warning(f"Memory sample failed: {e}")
