"""
Expiry Sweeper — background closure of idle conversations.

Runs a sweep callable (normally ``DecisionOrchestrator.sweep_expired``, which
closes each record under its user's lock) on a cron schedule. Lazy expiry on
access already guarantees correctness; the sweep releases idle threads from
the live set even when no further message arrives.
"""

import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from croniter import croniter

from scheduling_kernel.observability.logging import get_logger

logger = get_logger(__name__)

SweepFn = Callable[[Optional[datetime]], Awaitable[int]]


class ExpirySweeper:
    def __init__(self, sweep: SweepFn, schedule: str = "0 * * * *"):
        if not croniter.is_valid(schedule):
            raise ValueError(f"Invalid sweep schedule: {schedule!r}")
        self.sweep = sweep
        self.schedule = schedule
        self._running = False

    @property
    def status(self) -> str:
        return "running" if self._running else "stopped"

    def next_run(self, after: Optional[datetime] = None) -> datetime:
        """Next time the schedule fires strictly after ``after``."""
        after = after or datetime.now(timezone.utc)
        return croniter(self.schedule, after).get_next(datetime)

    async def run_once(self, now: Optional[datetime] = None) -> int:
        closed = await self.sweep(now)
        logger.debug("Expiry sweep finished", closed=closed)
        return closed

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Sweep on schedule until ``stop_event`` is set."""
        self._running = True
        if stop_event is None:
            stop_event = asyncio.Event()

        try:
            while not stop_event.is_set():
                now = datetime.now(timezone.utc)
                delay = (self.next_run(now) - now).total_seconds()
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=max(delay, 0.0))
                except asyncio.TimeoutError:
                    await self.run_once()
        finally:
            self._running = False
