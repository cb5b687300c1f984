"""
Cron Scheduler

Runs coroutine jobs on cron expressions (croniter) or fixed intervals
inside the bot's event loop. A failing run is logged and the job keeps
its schedule.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Dict, Callable, Awaitable

from croniter import croniter

logger = logging.getLogger("scheduler")

JobFactory = Callable[[], Awaitable[None]]


@dataclass
class ScheduledJob:
    name: str
    factory: JobFactory
    cron: Optional[str] = None
    interval: Optional[float] = None
    next_run: Optional[datetime] = None
    runs: int = 0
    failures: int = 0

    def compute_next(self, now: datetime) -> datetime:
        if self.cron:
            return croniter(self.cron, now).get_next(datetime)
        return now + timedelta(seconds=self.interval)


class CronScheduler:
    """Cron and interval jobs on asyncio tasks."""

    def __init__(self, clock: Callable[[], datetime] = datetime.now):
        self.clock = clock
        self.jobs: Dict[str, ScheduledJob] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    def add_cron(self, name: str, expression: str, factory: JobFactory) -> ScheduledJob:
        """Register a cron job. Raises ValueError on a bad expression."""
        if not croniter.is_valid(expression):
            raise ValueError(f"Invalid cron expression for {name}: {expression}")
        job = ScheduledJob(name=name, factory=factory, cron=expression)
        job.next_run = job.compute_next(self.clock())
        self.jobs[name] = job
        logger.info(f"Scheduled {name} ({expression}), next run {job.next_run.isoformat()}")
        return job

    def add_interval(self, name: str, seconds: float, factory: JobFactory) -> ScheduledJob:
        if seconds <= 0:
            raise ValueError(f"Interval for {name} must be positive")
        job = ScheduledJob(name=name, factory=factory, interval=seconds)
        job.next_run = job.compute_next(self.clock())
        self.jobs[name] = job
        logger.info(f"Scheduled {name} every {seconds:.0f}s")
        return job

    def next_run(self, name: str) -> Optional[datetime]:
        job = self.jobs.get(name)
        return job.next_run if job else None

    async def run_job(self, job: ScheduledJob) -> bool:
        """Run a job once. Returns False when it raised."""
        job.runs += 1
        try:
            await job.factory()
            return True
        except Exception:
            job.failures += 1
            logger.exception(f"Scheduled job {job.name} failed")
            return False

    async def _loop(self, job: ScheduledJob) -> None:
        while True:
            delay = max(0.0, (job.next_run - self.clock()).total_seconds())
            await asyncio.sleep(delay)
            await self.run_job(job)
            job.next_run = job.compute_next(self.clock())
            logger.debug(f"{job.name} next run {job.next_run.isoformat()}")

    def start(self) -> None:
        for name, job in self.jobs.items():
            if name not in self._tasks or self._tasks[name].done():
                self._tasks[name] = asyncio.create_task(self._loop(job), name=f"scheduler:{name}")
        logger.info(f"Scheduler started with {len(self._tasks)} job(s)")

    async def stop(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("Scheduler stopped")

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks.values())
