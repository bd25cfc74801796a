"""
Recurring job scheduler
Cron-driven asyncio job runner with per-job status and error buffers

Each job gets one asyncio task that sleeps until its next cron fire time and
then runs the handler to completion, so a job never overlaps itself. Fire
times come from APScheduler's CronTrigger; the clock is pluggable so tests can
drive time with VirtualClock or call tick() directly.
"""

import os
import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

from apscheduler.triggers.cron import CronTrigger

from admin_alerts import send_error_alert
from performance_monitor import OperationTimer
from services.exceptions import JobNotFoundError, ScheduleHandlerError

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = 'America/New_York'
MAX_RECENT_ERRORS = 10

JobHandler = Callable[[], Awaitable[Any]]

def get_scheduler_timezone() -> str:
    return os.getenv('SCHEDULER_TIMEZONE', DEFAULT_TIMEZONE)

class SystemClock:
    """Wall-clock time"""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep_until(self, when: datetime):
        delay = (when - self.now()).total_seconds()
        if delay > 0:
            await asyncio.sleep(delay)

class VirtualClock:
    """Manually advanced clock; sleepers wake when advance() passes their deadline"""

    def __init__(self, start: Optional[datetime] = None):
        start = start or datetime(2025, 1, 1, tzinfo=timezone.utc)
        if start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        self._now = start
        self._sleepers: List[tuple] = []

    def now(self) -> datetime:
        return self._now

    async def sleep_until(self, when: datetime):
        if when <= self._now:
            return
        future = asyncio.get_running_loop().create_future()
        self._sleepers.append((when, future))
        try:
            await future
        finally:
            self._sleepers = [(w, f) for w, f in self._sleepers if f is not future]

    def advance(self, delta: timedelta):
        self.set(self._now + delta)

    def set(self, when: datetime):
        self._now = when
        for deadline, future in list(self._sleepers):
            if deadline <= self._now and not future.done():
                future.set_result(None)

@dataclass
class ScheduledJob:
    name: str
    schedule: str
    handler: JobHandler
    trigger: CronTrigger
    last_run: Optional[datetime] = None
    last_duration_ms: Optional[int] = None
    run_count: int = 0
    errors: Deque[Dict[str, Any]] = field(default_factory=lambda: deque(maxlen=MAX_RECENT_ERRORS))
    next_run: Optional[datetime] = None
    running: bool = False
    last_fire: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'schedule': self.schedule,
            'last_run': self.last_run.isoformat() if self.last_run else None,
            'last_duration_ms': self.last_duration_ms,
            'run_count': self.run_count,
            'next_run': self.next_run.isoformat() if self.next_run else None,
            'running': self.running,
            'recent_errors': list(self.errors),
        }

class JobScheduler:
    """In-process cron scheduler for the worker's recurring jobs"""

    def __init__(self, clock=None, timezone_name: Optional[str] = None):
        self.clock = clock or SystemClock()
        self.timezone = timezone_name or get_scheduler_timezone()
        self._jobs: Dict[str, ScheduledJob] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._started = False

    @property
    def is_running(self) -> bool:
        return self._started

    @property
    def job_names(self) -> List[str]:
        return list(self._jobs)

    def _get_job(self, name: str) -> ScheduledJob:
        job = self._jobs.get(name)
        if job is None:
            raise JobNotFoundError(name)
        return job

    def _next_fire_time(self, job: ScheduledJob, now: datetime) -> Optional[datetime]:
        # Strictly after now and at least a second past the previous fire
        reference = now + timedelta(microseconds=1)
        if job.last_fire is not None and job.last_fire + timedelta(seconds=1) > reference:
            reference = job.last_fire + timedelta(seconds=1)
        return job.trigger.get_next_fire_time(None, reference)

    def schedule(self, name: str, expression: str, handler: JobHandler) -> ScheduledJob:
        """
        Register a recurring job

        Args:
            name: Unique job name
            expression: Five-field cron expression
            handler: Zero-argument coroutine function

        Returns:
            ScheduledJob: The registered job
        """
        if name in self._jobs:
            raise ValueError(f"Job already scheduled: {name}")

        trigger = CronTrigger.from_crontab(expression, timezone=self.timezone)
        job = ScheduledJob(name=name, schedule=expression, handler=handler, trigger=trigger)
        job.next_run = self._next_fire_time(job, self.clock.now())
        self._jobs[name] = job
        logger.info(f"📅 Scheduled job {name} ({expression}, {self.timezone}) - next run {job.next_run}")

        if self._started:
            self._tasks[name] = asyncio.create_task(self._job_loop(job), name=f"job:{name}")
        return job

    def start(self):
        """Spawn one loop task per job; a second call is a no-op"""
        if self._started:
            logger.info("ℹ️ Job scheduler already running")
            return
        self._started = True
        for job in self._jobs.values():
            self._tasks[job.name] = asyncio.create_task(self._job_loop(job), name=f"job:{job.name}")
        logger.info(f"✅ Job scheduler started with {len(self._jobs)} jobs")

    async def stop(self):
        """Cancel pending recurrences; a handler already running is left to finish"""
        if not self._started:
            return
        self._started = False
        tasks = list(self._tasks.items())
        self._tasks.clear()
        for name, task in tasks:
            if not self._jobs[name].running:
                task.cancel()
        for _, task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("✅ Job scheduler stopped")

    async def _job_loop(self, job: ScheduledJob):
        while self._started:
            job.next_run = self._next_fire_time(job, self.clock.now())
            if job.next_run is None:
                logger.warning(f"⚠️ Job {job.name} has no further fire times")
                return
            await self.clock.sleep_until(job.next_run)
            if not self._started:
                return
            job.last_fire = job.next_run
            if job.running:
                logger.warning(f"⚠️ Job {job.name} still running - skipping scheduled run at {job.last_fire}")
                continue
            await self.run_job(job.name)

    async def run_job(self, name: str) -> bool:
        """
        Run a job's handler once, recording status

        Handler exceptions are logged and kept in the job's error buffer;
        they never propagate to the caller.

        Returns:
            bool: True if the handler completed without raising
        """
        job = self._get_job(name)
        job.running = True
        started_at = self.clock.now()
        timer = OperationTimer(f"job {name}")
        logger.info(f"🔄 Running job {name}")

        try:
            with timer:
                await job.handler()
            logger.info(f"✅ Job {name} completed")
            return True
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = ScheduleHandlerError(name, e)
            job.errors.append({
                'time': self.clock.now().isoformat(),
                'message': str(e) or e.__class__.__name__,
                'type': e.__class__.__name__,
            })
            logger.error(f"❌ Job handler failed: {error}", exc_info=True)
            await send_error_alert(
                "JobScheduler",
                f"Scheduled job {name} failed: {e}",
                "scheduler",
                {'job': name, 'error_type': e.__class__.__name__}
            )
            return False
        finally:
            job.running = False
            job.last_run = started_at
            job.last_duration_ms = int(timer.duration_ms)
            job.run_count += 1

    async def trigger(self, name: str) -> bool:
        """Manually run a job now; returns False if it is already running"""
        job = self._get_job(name)
        if job.running:
            logger.warning(f"⚠️ Manual trigger ignored - job {name} already running")
            return False
        logger.info(f"👤 Manual trigger for job {name}")
        await self.run_job(name)
        return True

    async def tick(self, now: Optional[datetime] = None) -> List[str]:
        """Run every due job in registration order; for use without start()"""
        now = now or self.clock.now()
        ran = []
        for job in list(self._jobs.values()):
            if job.next_run is None or job.next_run > now or job.running:
                continue
            job.last_fire = job.next_run
            await self.run_job(job.name)
            job.next_run = self._next_fire_time(job, now)
            ran.append(job.name)
        return ran

    def get_status(self) -> List[Dict[str, Any]]:
        return [job.to_dict() for job in self._jobs.values()]

_job_scheduler: Optional[JobScheduler] = None

def get_job_scheduler() -> JobScheduler:
    global _job_scheduler
    if _job_scheduler is None:
        _job_scheduler = JobScheduler()
    return _job_scheduler
