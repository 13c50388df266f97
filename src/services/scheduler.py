"""Background job loop driving collection, rollups, retention and forecast accuracy."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from config import settings
from .clock import in_operating_window, in_window, local_today, spot_tz, to_local, utc_now
from .jobs import JobRegistry, job_registry

logger = logging.getLogger("jollykite.hub.scheduler")

JobFunc = Callable[[datetime], Awaitable[Any]]
JobGate = Callable[[datetime], bool]

SUNDAY = 6
MISFIRE_GRACE = timedelta(hours=1)


@dataclass
class ScheduledJob:
    """A job that is due every ``interval``, or once a day (optionally once a week) at ``at`` local time."""

    name: str
    run: JobFunc
    interval: Optional[timedelta] = None
    at: Optional[time] = None
    weekday: Optional[int] = None
    gate: Optional[JobGate] = None
    description: str = ""
    last_started: Optional[datetime] = field(default=None, init=False)
    last_fired_on: Optional[date] = field(default=None, init=False)
    task: Optional[asyncio.Task[None]] = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        if (self.interval is None) == (self.at is None):
            raise ValueError(f"job {self.name!r} needs exactly one of interval or at")

    @property
    def running(self) -> bool:
        return self.task is not None and not self.task.done()

    def is_due(self, now: datetime) -> bool:
        if self.interval is not None:
            return self.last_started is None or now - self.last_started >= self.interval

        local = to_local(now)
        if self.weekday is not None and local.weekday() != self.weekday:
            return False
        if self.last_fired_on == local.date():
            return False
        trigger = datetime.combine(local.date(), self.at, tzinfo=spot_tz())
        # Late starts catch up within the grace period, not hours later
        return trigger <= local < trigger + MISFIRE_GRACE

    def allowed(self, now: datetime) -> bool:
        return self.gate is None or self.gate(now)

    def describe(self) -> Dict[str, Any]:
        if self.interval is not None:
            schedule = f"every {int(self.interval.total_seconds())}s"
        else:
            schedule = f"daily at {self.at.strftime('%H:%M')}"
            if self.weekday is not None:
                schedule = f"weekly (weekday {self.weekday}) at {self.at.strftime('%H:%M')}"
        return {
            "name": self.name,
            "schedule": schedule,
            "gated": self.gate is not None,
            "running": self.running,
            "lastStarted": self.last_started.isoformat() if self.last_started else None,
            "description": self.description,
        }


class Scheduler:
    def __init__(
        self,
        jobs: Sequence[ScheduledJob] = (),
        *,
        registry: Optional[JobRegistry] = None,
        tick_seconds: Optional[float] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._jobs: Dict[str, ScheduledJob] = {job.name: job for job in jobs}
        self._registry = registry or job_registry
        self._tick_seconds = tick_seconds
        self._clock = clock
        self._task: Optional[asyncio.Task[None]] = None
        self._running = False

    @property
    def jobs(self) -> List[ScheduledJob]:
        return list(self._jobs.values())

    @property
    def running(self) -> bool:
        return self._running

    def add(self, job: ScheduledJob) -> None:
        self._jobs[job.name] = job

    def get(self, name: str) -> Optional[ScheduledJob]:
        return self._jobs.get(name)

    async def start(self) -> None:
        if self._task is not None:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="jollykite-scheduler")
        logger.info("Scheduler started with %d job(s)", len(self._jobs))

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            finally:
                self._task = None
        pending = [job.task for job in self._jobs.values() if job.running]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info("Scheduler stopped")

    async def _loop(self) -> None:
        while self._running:
            try:
                self.tick()
            except Exception:  # noqa: BLE001 - the loop must survive a broken job definition
                logger.exception("Scheduler tick failed")
            await asyncio.sleep(self._tick_seconds or settings.scheduler_tick_seconds)

    def tick(self, now: Optional[datetime] = None) -> List[str]:
        """Start every job that is due and not already running; returns the started job names."""
        current = now or self._clock()
        started: List[str] = []
        for job in self._jobs.values():
            if job.running or not job.is_due(current):
                continue
            if not job.allowed(current):
                continue
            self._mark_started(job, current)
            job.task = asyncio.create_task(self._execute(job, current, "schedule"), name=f"job-{job.name}")
            started.append(job.name)
        return started

    async def trigger(self, name: str, *, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Run a job right away, outside its schedule and gate; waits for it to finish."""
        job = self._jobs.get(name)
        if job is None:
            raise KeyError(name)
        if job.running:
            return {"job": name, "status": "skipped", "message": "already running"}
        current = now or self._clock()
        self._mark_started(job, current)
        job.task = asyncio.create_task(self._execute(job, current, "manual"), name=f"job-{job.name}")
        await job.task
        last = await self._registry.last(name)
        return last.to_payload() if last else {"job": name, "status": "unknown"}

    @staticmethod
    def _mark_started(job: ScheduledJob, now: datetime) -> None:
        job.last_started = now
        job.last_fired_on = to_local(now).date()

    async def _execute(self, job: ScheduledJob, now: datetime, trigger: str) -> None:
        run = await self._registry.start(job.name, trigger=trigger)
        try:
            result = await job.run(now)
        except asyncio.CancelledError:
            await self._registry.finish(run, "failed", error="cancelled")
            raise
        except Exception as exc:  # noqa: BLE001 - a failing job must not take the loop down
            logger.error("Job %s failed: %s", job.name, exc, exc_info=True)
            await self._registry.finish(run, "failed", error=str(exc) or exc.__class__.__name__)
            return
        message = _summarize(result)
        logger.debug("Job %s finished: %s", job.name, message)
        await self._registry.finish(run, "succeeded", message=message)


def _summarize(result: Any) -> Optional[str]:
    if result is None:
        return None
    if hasattr(result, "to_payload"):
        result = result.to_payload()
    return str(result)


def in_snapshot_window(now: datetime) -> bool:
    # The end hour itself is still captured (20:00-20:59 at the defaults)
    return in_window(now, settings.snapshot_window_start_hour, settings.snapshot_window_end_hour + 1)


def build_default_jobs() -> List[ScheduledJob]:
    # Imported here so the scheduler core has no dependency on the service singletons
    from .accuracy import accuracy_evaluator
    from .archive import archive_compactor
    from .collector import collection_cycle
    from .measurements import measurement_store
    from .notifications import notification_gate

    async def collect(now: datetime) -> Any:
        return await collection_cycle.run(now=now)

    async def archive(now: datetime) -> int:
        return len(await archive_compactor.run_hourly(now))

    async def prune_raw(now: datetime) -> int:
        return await measurement_store.prune(settings.raw_retention_days, now=now)

    async def reset_notifications(now: datetime) -> int:
        return await notification_gate.reset_daily_log(local_today(now))

    async def snapshots(now: datetime) -> int:
        return await accuracy_evaluator.capture_snapshots(now)

    async def evaluate(now: datetime) -> Any:
        return await accuracy_evaluator.evaluate(now)

    async def cleanup_snapshots(now: datetime) -> int:
        return await accuracy_evaluator.cleanup_snapshots(settings.snapshot_retention_days, now=now)

    jobs = [
        ScheduledJob(
            "collect",
            collect,
            interval=timedelta(seconds=settings.collection_interval_seconds),
            gate=in_operating_window,
            description="Read the stations and publish the new measurement",
        ),
        ScheduledJob(
            "archive",
            archive,
            interval=timedelta(seconds=settings.archive_interval_seconds),
            description="Roll the last closed hour into the archive",
        ),
        ScheduledJob(
            "raw-retention",
            prune_raw,
            at=time(0, 5),
            description="Delete raw measurements past the retention window",
        ),
        ScheduledJob(
            "notification-reset",
            reset_notifications,
            at=time(0, 5),
            description="Clear the once-a-day notification log",
        ),
        ScheduledJob(
            "forecast-snapshots",
            snapshots,
            interval=timedelta(hours=settings.snapshot_interval_hours),
            gate=in_snapshot_window,
            description="Record the raw forecast for later accuracy checks",
        ),
        ScheduledJob(
            "forecast-accuracy",
            evaluate,
            at=time(settings.accuracy_eval_hour, 0),
            description="Recompute the forecast correction factor",
        ),
        ScheduledJob(
            "snapshot-cleanup",
            cleanup_snapshots,
            at=time(1, 0),
            weekday=SUNDAY,
            description="Delete forecast snapshots past the retention window",
        ),
    ]

    if settings.archive_retention_days:
        retention = settings.archive_retention_days

        async def cleanup_archive(now: datetime) -> int:
            return await archive_compactor.cleanup(retention, now=now)

        jobs.append(
            ScheduledJob(
                "archive-retention",
                cleanup_archive,
                at=time(0, 15),
                description="Delete hourly aggregates past the archive retention window",
            )
        )
    return jobs


scheduler = Scheduler(registry=job_registry)

__all__ = ["ScheduledJob", "Scheduler", "build_default_jobs", "in_snapshot_window", "scheduler"]
