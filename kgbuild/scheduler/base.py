"""
Polling Scheduler Base

One background loop per pipeline stage. Each tick does one unit of work
(run_once); the loop then sleeps for the active interval if work was found
and the idle interval otherwise. wake() cuts the sleep short.

Errors raised by a tick are logged and the loop carries on at the next tick;
nothing propagates out of the loop.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod

logger = logging.getLogger(__name__)

IDLE = "idle"
ACTIVE = "active"


class PollingScheduler(ABC):
    """
    Background loop with idle and active cadences.

    Args:
        idle_interval: Seconds between ticks that found no work
        active_interval: Seconds between ticks that did work
    """

    name = "scheduler"

    def __init__(self, idle_interval: float, active_interval: float) -> None:
        self.idle_interval = idle_interval
        self.active_interval = active_interval
        self.running = False
        self.task: asyncio.Task | None = None
        self._state = IDLE
        self._wake = asyncio.Event()

    @property
    def state(self) -> str:
        return self._state

    def _set_state(self, state: str) -> None:
        """Log a state change once, on the transition only."""
        if state != self._state:
            logger.info(f"{self.name}: {self._state} -> {state}")
            self._state = state

    def start(self) -> None:
        """Start the scheduler background task."""
        if self.running:
            logger.warning(f"{self.name} already running")
            return

        self.running = True
        self._wake = asyncio.Event()
        self.task = asyncio.create_task(self._run(), name=self.name)
        logger.info(
            f"{self.name} started (idle: {self.idle_interval}s, active: {self.active_interval}s)"
        )

    async def stop(self) -> None:
        """Stop the scheduler, cancelling any tick in flight."""
        if not self.running:
            return

        self.running = False
        if self.task:
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass
            self.task = None

        logger.info(f"{self.name} stopped")

    def wake(self) -> None:
        """Run the next tick now instead of after the current sleep."""
        self._wake.set()

    async def _sleep(self, seconds: float) -> None:
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
        self._wake.clear()

    async def _run(self) -> None:
        """Main loop."""
        while self.running:
            try:
                worked = await self.run_once()
            except Exception as e:
                logger.error(f"Error in {self.name}: {e}", exc_info=True)
                worked = False

            await self._sleep(self.active_interval if worked else self.idle_interval)

    async def run_until_idle(self, max_ticks: int = 10_000) -> int:
        """
        Tick until a tick finds no work.

        Returns:
            Number of ticks that did work
        """
        ticks = 0
        while ticks < max_ticks and await self.run_once():
            ticks += 1
        return ticks

    @abstractmethod
    async def run_once(self) -> bool:
        """Do one unit of work; return True if there was any."""
        ...

    @abstractmethod
    async def cleanup(self) -> None:
        """Start-up sweep of rows left behind by a previous process."""
        ...
