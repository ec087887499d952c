"""Background task scheduler for periodic jobs (alert sweep)."""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from medstock.core.events import EventBus

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ScheduledTask:
    name: str
    func: Callable[[], Any]
    interval: timedelta
    next_run: datetime
    last_run: Optional[datetime] = None
    run_count: int = 0
    last_error: Optional[str] = None

    def is_due(self, now: datetime) -> bool:
        return now >= self.next_run

    async def execute(self) -> None:
        if asyncio.iscoroutinefunction(self.func):
            await self.func()
        else:
            # Sync jobs hit the database; keep them off the event loop
            await asyncio.to_thread(self.func)

    def as_status(self) -> Dict[str, Any]:
        return {
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "next_run": self.next_run.isoformat(),
            "interval_seconds": int(self.interval.total_seconds()),
            "run_count": self.run_count,
            "last_error": self.last_error,
        }


@dataclass
class TaskScheduler:
    """Runs registered jobs at fixed intervals on the event loop.

    Nothing is persisted; after a restart every job is scheduled afresh.
    """

    tick_seconds: int = 30
    _tasks: Dict[str, ScheduledTask] = field(default_factory=dict)
    _running: bool = False
    _loop_task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    def add_task(self, name: str, func: Callable, interval_seconds: int, first_delay_seconds: int = 10) -> None:
        self._tasks[name] = ScheduledTask(
            name=name,
            func=func,
            interval=timedelta(seconds=interval_seconds),
            next_run=_utcnow() + timedelta(seconds=first_delay_seconds),
        )
        logger.info("Task %s registered, interval %ss", name, interval_seconds)

    def remove_task(self, name: str) -> None:
        self._tasks.pop(name, None)

    async def run_due(self, now: Optional[datetime] = None) -> int:
        """Run every job whose ``next_run`` has passed; returns how many ran.

        A failing job keeps its schedule and records the error.
        """
        now = now or _utcnow()
        due = [task for task in self._tasks.values() if task.is_due(now)]
        for task in due:
            try:
                await task.execute()
            except Exception as exc:
                task.last_error = str(exc)
                logger.exception("Task %s failed", task.name)
            else:
                task.last_run = now
                task.run_count += 1
                task.last_error = None
            task.next_run = now + task.interval
        return len(due)

    async def _loop(self) -> None:
        while self._running:
            await self.run_due()
            await asyncio.sleep(self.tick_seconds)

    def launch(self) -> asyncio.Task:
        """Start the loop on the running event loop."""
        self._running = True
        self._loop_task = asyncio.create_task(self._loop())
        logger.info("Scheduler running with %d task(s)", len(self._tasks))
        return self._loop_task

    def stop(self) -> None:
        self._running = False
        if self._loop_task is not None:
            self._loop_task.cancel()
            self._loop_task = None
        logger.info("Scheduler stopped")

    def get_status(self) -> Dict[str, Any]:
        return {name: task.as_status() for name, task in self._tasks.items()}


def alert_sweep_job(session_factory: Callable[[], Session], bus: EventBus) -> Callable[[], None]:
    """Job that reconciles every stock item's alerts in a fresh session."""
    from medstock.services.alert_engine import AlertEngine

    def run() -> None:
        with session_factory() as db:
            AlertEngine(db, bus).sweep()

    run.__name__ = "alert_sweep"
    return run


scheduler = TaskScheduler()
