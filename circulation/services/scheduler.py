"""Periodic directory sync.

The scheduler owns the schedule state that would otherwise be a global cron
hook: when the next run is due and how the last one went. Runs never overlap;
``run_now`` refuses to start while a run is in progress, and a scheduled tick
that lands during a run is skipped.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional

from config import settings
from circulation.errors import CirculationError, InvalidState
from circulation.records import to_iso, utcnow
from circulation.services.reconciler import SyncResult

logger = logging.getLogger(__name__)

SyncRunner = Callable[[], Awaitable[SyncResult]]


@dataclass
class SyncRunStatus:
    started_at: datetime
    finished_at: Optional[datetime] = None
    ok: Optional[bool] = None
    trigger: str = "manual"
    result: Optional[SyncResult] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": to_iso(self.started_at),
            "finished_at": to_iso(self.finished_at),
            "ok": self.ok,
            "trigger": self.trigger,
            "result": self.result.to_dict() if self.result else None,
            "error": self.error,
        }


class SyncScheduler:
    def __init__(
        self,
        runner: SyncRunner,
        interval: Optional[timedelta] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.runner = runner
        self.interval = interval or timedelta(hours=settings.sync_interval_hours)
        self.clock = clock
        self.last_run: Optional[SyncRunStatus] = None
        self.next_run_at: Optional[datetime] = None
        self._lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._lock.locked()

    @property
    def started(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_now(self, trigger: str = "manual") -> SyncResult:
        """Run one sync and return its counts; errors are recorded, then re-raised."""
        if self._lock.locked():
            raise InvalidState("A directory sync is already running.")
        async with self._lock:
            status = SyncRunStatus(started_at=self.clock(), trigger=trigger)
            self.last_run = status
            try:
                result = await self.runner()
            except CirculationError as e:
                status.ok = False
                status.error = str(e)
                logger.error("Directory sync (%s) failed: %s", trigger, e)
                raise
            except Exception as e:
                status.ok = False
                status.error = f"{type(e).__name__}: {e}"
                logger.exception("Directory sync (%s) crashed", trigger)
                raise
            finally:
                status.finished_at = self.clock()
            status.ok = True
            status.result = result
            return result

    def start(self) -> None:
        """Start the periodic loop on the running event loop; the first run is one interval away."""
        if self.started:
            return
        self.next_run_at = self.clock() + self.interval
        self._task = asyncio.create_task(self._loop())
        logger.info("Directory sync scheduled every %s, next run at %s", self.interval, to_iso(self.next_run_at))

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        self.next_run_at = None

    async def tick(self) -> Optional[SyncResult]:
        """Run the scheduled sync if one is due; returns its result, or None if skipped or failed."""
        now = self.clock()
        if self.next_run_at is not None and now < self.next_run_at:
            return None
        self.next_run_at = now + self.interval
        if self.running:
            logger.warning("Skipping scheduled directory sync: previous run still in progress")
            return None
        try:
            return await self.run_now(trigger="scheduled")
        except Exception:
            # already recorded in last_run and logged; the schedule keeps going
            return None

    async def _loop(self) -> None:
        while True:
            delay = (self.next_run_at - self.clock()).total_seconds() if self.next_run_at else 0
            await asyncio.sleep(max(0.0, delay))
            await self.tick()

    def status(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "scheduled": self.started,
            "interval_hours": self.interval.total_seconds() / 3600,
            "next_run_at": to_iso(self.next_run_at),
            "last_run": self.last_run.to_dict() if self.last_run else None,
        }
