from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest

from services.archive import archive_compactor
from services.measurements import Measurement, measurement_store

# 10:00 local at the spot
HOUR = datetime(2025, 3, 10, 3, 0, tzinfo=timezone.utc)


async def _fill_hour(start: datetime, speeds: list[float], direction: float = 90.0) -> None:
    for index, speed in enumerate(speeds):
        await measurement_store.append(
            Measurement(
                timestamp=start + timedelta(minutes=index * 5),
                station_id="pak_nam_pran",
                wind_speed=speed,
                wind_gust=speed + 4.0,
                max_daily_gust=None,
                wind_direction=direction,
                wind_direction_avg=None,
                temperature=28.0,
                humidity=None,
                pressure=1011.0,
            )
        )


@pytest.mark.anyio
async def test_rollup_is_idempotent() -> None:
    await _fill_hour(HOUR, [10.0, 12.0, 14.0, 16.0])

    first = await archive_compactor.rollup_hour(HOUR)
    second = await archive_compactor.rollup_hour(HOUR + timedelta(minutes=20))

    assert first == second
    assert first.sample_count == 4
    assert first.avg_speed == pytest.approx(13.0)
    assert first.min_speed == pytest.approx(10.0)
    assert first.max_gust == pytest.approx(20.0)
    assert first.avg_humidity is None

    stored = await archive_compactor.archived_days(7, now=HOUR + timedelta(hours=2))
    assert len(stored) == 1
    assert stored[0].sample_count == 4


@pytest.mark.anyio
async def test_rollup_of_empty_hour_writes_nothing() -> None:
    assert await archive_compactor.rollup_hour(HOUR) is None
    assert await archive_compactor.get(HOUR) is None


@pytest.mark.anyio
async def test_run_hourly_rolls_last_closed_hour() -> None:
    await _fill_hour(HOUR, [8.0, 9.0])
    await _fill_hour(HOUR + timedelta(hours=1), [20.0])

    archived = await archive_compactor.run_hourly(HOUR + timedelta(hours=1, minutes=2))
    assert [row.hour_bucket for row in archived] == [HOUR]
    assert archived[0].sample_count == 2


@pytest.mark.anyio
async def test_late_hourly_run_catches_up_skipped_hours() -> None:
    for offset, speed in ((0, 8.0), (1, 12.0), (2, 16.0)):
        await _fill_hour(HOUR + timedelta(hours=offset), [speed, speed])

    first = await archive_compactor.run_hourly(HOUR + timedelta(hours=1, minutes=59, seconds=58))
    # Next start drifted past a full hour boundary
    second = await archive_compactor.run_hourly(HOUR + timedelta(hours=3, seconds=1))

    assert [row.hour_bucket for row in first] == [HOUR]
    assert [row.hour_bucket for row in second] == [HOUR, HOUR + timedelta(hours=1), HOUR + timedelta(hours=2)]
    stored = await archive_compactor.archived_days(1, now=HOUR + timedelta(hours=3))
    assert sorted(row.avg_speed for row in stored) == [8.0, 12.0, 16.0]


@pytest.mark.anyio
async def test_raw_pruning_leaves_archive_alone() -> None:
    await _fill_hour(HOUR, [11.0, 13.0])
    await archive_compactor.rollup_hour(HOUR)

    removed = await measurement_store.prune(7, now=HOUR + timedelta(days=10))
    assert removed == 2
    assert await archive_compactor.get(HOUR) is not None


@pytest.mark.anyio
async def test_archive_queries() -> None:
    await _fill_hour(HOUR, [10.0, 12.0], direction=350.0)
    await _fill_hour(HOUR + timedelta(days=1), [20.0, 22.0], direction=10.0)
    # 03:00 local, outside the requested day window
    await _fill_hour(HOUR - timedelta(hours=7), [5.0])
    for bucket in (HOUR, HOUR + timedelta(days=1), HOUR - timedelta(hours=7)):
        await archive_compactor.rollup_hour(bucket)

    now = HOUR + timedelta(days=1, hours=3)
    day = await archive_compactor.archived_day(date(2025, 3, 10), 6, 19)
    assert [row.avg_speed for row in day] == [pytest.approx(11.0)]

    stats = await archive_compactor.statistics(30, now=now)
    assert stats["hours_recorded"] == 3
    assert stats["total_measurements"] == 5
    assert stats["overall_max_speed"] == pytest.approx(22.0)

    pattern = await archive_compactor.hourly_pattern(30, now=now)
    ten = next(entry for entry in pattern if entry["hour"] == "10")
    assert ten["days_recorded"] == 2
    assert ten["avg_speed"] == pytest.approx(16.0)

    removed = await archive_compactor.cleanup(1, now=now)
    assert removed == 2
