from __future__ import annotations

import asyncio
from datetime import date, datetime, time, timedelta, timezone

import pytest

from services.clock import in_operating_window
from services.jobs import JobRegistry
from services.scheduler import ScheduledJob, Scheduler, build_default_jobs, in_snapshot_window

# 10:00 local at the spot (UTC+7)
MORNING = datetime(2025, 3, 10, 3, 0, tzinfo=timezone.utc)


def _local(hour: int, minute: int = 0, *, day: int = 10) -> datetime:
    return datetime(2025, 3, day, hour, minute, tzinfo=timezone.utc) - timedelta(hours=7)


@pytest.mark.anyio
async def test_job_never_overlaps_itself() -> None:
    release = asyncio.Event()
    calls = 0

    async def slow(now: datetime) -> None:
        nonlocal calls
        calls += 1
        await release.wait()

    job = ScheduledJob("slow", slow, interval=timedelta(seconds=1))
    scheduler = Scheduler([job], registry=JobRegistry())

    assert scheduler.tick(MORNING) == ["slow"]
    await asyncio.sleep(0)
    assert scheduler.tick(MORNING + timedelta(seconds=5)) == []
    assert job.running

    release.set()
    await job.task
    assert calls == 1
    assert scheduler.tick(MORNING + timedelta(seconds=10)) == ["slow"]
    await job.task
    assert calls == 2


@pytest.mark.anyio
async def test_failing_job_is_recorded_and_runs_again() -> None:
    registry = JobRegistry()

    async def broken(now: datetime) -> None:
        raise RuntimeError("station exploded")

    async def healthy(now: datetime) -> str:
        return "ok"

    jobs = [
        ScheduledJob("broken", broken, interval=timedelta(minutes=5)),
        ScheduledJob("healthy", healthy, interval=timedelta(minutes=5)),
    ]
    scheduler = Scheduler(jobs, registry=registry)

    for step in range(2):
        started = scheduler.tick(MORNING + timedelta(minutes=5 * step))
        assert sorted(started) == ["broken", "healthy"]
        await asyncio.gather(*(job.task for job in scheduler.jobs))

    runs = await registry.list("broken")
    assert [run["status"] for run in runs] == ["failed", "failed"]
    assert runs[0]["error"] == "station exploded"
    healthy_runs = await registry.list("healthy")
    assert [run["status"] for run in healthy_runs] == ["succeeded", "succeeded"]
    assert healthy_runs[0]["message"] == "ok"


@pytest.mark.anyio
async def test_gate_keeps_collection_inside_operating_window() -> None:
    calls: list[datetime] = []

    async def collect(now: datetime) -> None:
        calls.append(now)

    job = ScheduledJob("collect", collect, interval=timedelta(minutes=5), gate=in_operating_window)
    scheduler = Scheduler([job], registry=JobRegistry())

    assert scheduler.tick(_local(5, 55)) == []
    assert scheduler.tick(_local(19, 0)) == []
    assert scheduler.tick(_local(6, 0)) == ["collect"]
    await job.task
    assert calls == [_local(6, 0)]


@pytest.mark.parametrize(
    ("hour", "minute", "expected"),
    [(4, 59, False), (5, 0, True), (20, 0, True), (20, 30, True), (21, 0, False)],
)
def test_snapshot_window_includes_its_last_hour(hour: int, minute: int, expected: bool) -> None:
    assert in_snapshot_window(_local(hour, minute)) is expected


def test_daily_job_fires_once_per_local_day() -> None:
    async def noop(now: datetime) -> None:
        return None

    job = ScheduledJob("reset", noop, at=time(0, 5))

    assert not job.is_due(_local(0, 4))
    assert job.is_due(_local(0, 6))
    job.last_fired_on = date(2025, 3, 10)
    assert not job.is_due(_local(0, 30))
    assert job.is_due(_local(0, 7, day=11))
    # Too late to catch up on a missed trigger
    assert not job.is_due(_local(3, 0, day=12))


def test_weekly_job_only_on_its_weekday() -> None:
    async def noop(now: datetime) -> None:
        return None

    job = ScheduledJob("cleanup", noop, at=time(1, 0), weekday=6)

    # 2025-03-16 is a Sunday
    assert job.is_due(_local(1, 10, day=16))
    assert not job.is_due(_local(1, 10, day=15))


def test_job_needs_exactly_one_schedule() -> None:
    async def noop(now: datetime) -> None:
        return None

    with pytest.raises(ValueError):
        ScheduledJob("bad", noop)
    with pytest.raises(ValueError):
        ScheduledJob("bad", noop, interval=timedelta(minutes=1), at=time(1, 0))


def test_default_jobs(settings_override) -> None:
    names = [job.name for job in build_default_jobs()]
    assert names == [
        "collect",
        "archive",
        "raw-retention",
        "notification-reset",
        "forecast-snapshots",
        "forecast-accuracy",
        "snapshot-cleanup",
    ]
    settings_override(archive_retention_days=365)
    assert "archive-retention" in [job.name for job in build_default_jobs()]


@pytest.mark.anyio
async def test_loop_start_and_stop() -> None:
    ran = asyncio.Event()

    async def tick_job(now: datetime) -> None:
        ran.set()

    scheduler = Scheduler(
        [ScheduledJob("tick", tick_job, interval=timedelta(hours=1))],
        registry=JobRegistry(),
        tick_seconds=0.01,
    )
    await scheduler.start()
    await asyncio.wait_for(ran.wait(), timeout=1)
    await scheduler.stop()
    assert scheduler.running is False


@pytest.mark.anyio
async def test_trigger_runs_outside_schedule() -> None:
    registry = JobRegistry()

    async def archive(now: datetime) -> int:
        return 3

    scheduler = Scheduler([ScheduledJob("archive", archive, at=time(4, 0))], registry=registry)
    result = await scheduler.trigger("archive", now=MORNING)

    assert result["status"] == "succeeded"
    assert result["trigger"] == "manual"
    assert result["message"] == "3"
    with pytest.raises(KeyError):
        await scheduler.trigger("missing")
