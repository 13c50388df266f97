from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from services.measurements import Measurement, measurement_store

# 12:00 local time at the spot (UTC+7)
NOON = datetime(2025, 3, 10, 5, 0, tzinfo=timezone.utc)


def _measurement(minutes: float, speed: float = 12.0, *, station: str = "pak_nam_pran", direction: float = 90.0) -> Measurement:
    return Measurement(
        timestamp=NOON + timedelta(minutes=minutes),
        station_id=station,
        wind_speed=speed,
        wind_gust=speed + 3.0,
        max_daily_gust=None,
        wind_direction=direction,
        wind_direction_avg=direction,
        temperature=29.0,
        humidity=70.0,
        pressure=1010.5,
    )


def _at(timestamp: datetime, speed: float) -> Measurement:
    return Measurement(
        timestamp=timestamp,
        station_id="pak_nam_pran",
        wind_speed=speed,
        wind_gust=None,
        max_daily_gust=None,
        wind_direction=90.0,
        wind_direction_avg=None,
    )


@pytest.mark.anyio
async def test_append_ignores_duplicate_station_timestamp() -> None:
    first = _measurement(0)
    assert await measurement_store.append(first) is True
    assert await measurement_store.append(first) is False
    # Same instant from another station is a different row
    assert await measurement_store.append(_measurement(0, station="hua_hin")) is True
    assert await measurement_store.total_count() == 2


@pytest.mark.anyio
async def test_latest_and_last_measurements_are_chronological() -> None:
    for minutes, speed in ((0, 10.0), (5, 11.0), (10, 12.0), (15, 13.0)):
        await measurement_store.append(_measurement(minutes, speed))

    latest = await measurement_store.latest()
    assert latest is not None
    assert latest.wind_speed == pytest.approx(13.0)

    recent = await measurement_store.last_measurements(3)
    assert [m.wind_speed for m in recent] == [11.0, 12.0, 13.0]


@pytest.mark.anyio
async def test_list_hours_and_statistics() -> None:
    await measurement_store.append(_measurement(-180, 5.0))
    await measurement_store.append(_measurement(-30, 10.0, direction=80.0))
    await measurement_store.append(_measurement(-10, 14.0, direction=100.0))

    window = await measurement_store.list_hours(1, now=NOON)
    assert [m.wind_speed for m in window] == [14.0, 10.0]

    stats = await measurement_store.statistics(1, now=NOON)
    assert stats["count"] == 2
    assert stats["avgSpeed"] == pytest.approx(12.0)
    assert stats["maxGust"] == pytest.approx(17.0)
    assert stats["avgDirection"] == 90


@pytest.mark.anyio
async def test_statistics_on_empty_store() -> None:
    stats = await measurement_store.statistics(24, now=NOON)
    assert stats["count"] == 0
    assert stats["avgSpeed"] is None


@pytest.mark.anyio
async def test_prune_removes_only_old_rows() -> None:
    await measurement_store.append(_measurement(-8 * 24 * 60))
    await measurement_store.append(_measurement(-60))
    removed = await measurement_store.prune(7, now=NOON)
    assert removed == 1
    assert await measurement_store.total_count() == 1


@pytest.mark.anyio
async def test_trend_is_anchored_at_latest_measurement() -> None:
    for step in range(14):
        await measurement_store.append(_measurement(step * 5, 10.0 if step < 8 else 15.0))
    trend = await measurement_store.trend(now=NOON + timedelta(hours=5))
    assert trend.classification == "increasing_strong"
    assert trend.direction_trend == "stable"


@pytest.mark.anyio
async def test_trend_ignores_yesterday_evening() -> None:
    # Yesterday 18:00-18:55 local, then today from 06:05 local
    evening = datetime(2025, 3, 9, 11, 0, tzinfo=timezone.utc)
    for step in range(12):
        await measurement_store.append(_at(evening + timedelta(minutes=5 * step), 10.0))
    morning = datetime(2025, 3, 9, 23, 5, tzinfo=timezone.utc)
    await measurement_store.append(_at(morning, 5.0))
    for step in range(1, 7):
        await measurement_store.append(_at(morning + timedelta(minutes=5 * step), 10.0))

    trend = await measurement_store.trend(now=morning + timedelta(minutes=31))

    assert trend.window_minutes == 15
    assert trend.classification == "stable"


@pytest.mark.anyio
async def test_trend_without_data_is_insufficient() -> None:
    trend = await measurement_store.trend()
    assert trend.classification == "insufficient_data"


@pytest.mark.anyio
async def test_latest_per_station() -> None:
    await measurement_store.append(_measurement(0, 10.0, station="pak_nam_pran"))
    await measurement_store.append(_measurement(5, 11.0, station="pak_nam_pran"))
    await measurement_store.append(_measurement(3, 9.0, station="hua_hin"))
    latest = {m.station_id: m.wind_speed for m in await measurement_store.latest_per_station()}
    assert latest == {"hua_hin": 9.0, "pak_nam_pran": 11.0}


@pytest.mark.anyio
async def test_today_buckets_use_local_hours() -> None:
    await measurement_store.append(_measurement(1, 10.0))
    await measurement_store.append(_measurement(3, 12.0))
    await measurement_store.append(_measurement(7, 14.0))

    intervals = await measurement_store.today_intervals(6, 20, 5, now=NOON)
    assert [bucket["time"] for bucket in intervals] == ["12:00", "12:05"]
    assert intervals[0]["avg_speed"] == pytest.approx(11.0)
    assert intervals[0]["measurements"] == 2

    hourly = await measurement_store.today_hourly(6, 19, now=NOON)
    assert hourly == [
        {"hour": "12", "avg_speed": 12.0, "max_gust": 17.0, "avg_direction": 90, "measurements": 3}
    ]


@pytest.mark.anyio
async def test_week_history_groups_by_local_day() -> None:
    await measurement_store.append(_measurement(0, 10.0))
    await measurement_store.append(_measurement(-24 * 60, 8.0))
    # 02:00 local, outside the operating window
    await measurement_store.append(_measurement(-10 * 60, 20.0))

    days = await measurement_store.week_history(7, now=NOON + timedelta(minutes=1))
    assert [day["date"] for day in days] == ["2025-03-10", "2025-03-09"]
    assert [len(day["data"]) for day in days] == [1, 1]


def test_measurement_payload_includes_safety() -> None:
    payload = _measurement(0, 18.0, direction=270.0).to_payload()
    assert payload["windSpeed"] == 18.0
    assert payload["timestamp"] == "2025-03-10T05:00:00.000Z"
    assert payload["safety"]["level"] == "danger"
