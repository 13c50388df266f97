from __future__ import annotations

from datetime import datetime, timezone

import pytest
from httpx import Response

from config import settings
from services.correction import correction_record
from services.errors import ExternalFetchError
from services.forecast import KMH_TO_KNOTS, ForecastEngine
from services.measurements import Measurement, measurement_store


def _hours(day: str, start: int = 0, end: int = 24) -> list[str]:
    return [f"{day}T{hour:02d}:00" for hour in range(start, end)]


def _wind_payload(day: str = "2025-03-10", speed_kmh: float = 20.0) -> dict:
    times = _hours(day)
    return {
        "hourly": {
            "time": times,
            "wind_speed_10m": [speed_kmh + index for index in range(len(times))],
            "wind_direction_10m": [90] * len(times),
            "wind_gusts_10m": [speed_kmh + 10] * len(times),
            "precipitation_probability": [5] * len(times),
        }
    }


def _marine_payload(day: str = "2025-03-10") -> dict:
    # Starts at 04:00 so values line up by time, not by position
    times = _hours(day, start=4)
    return {
        "hourly": {
            "time": times,
            "wave_height": [round(0.1 * (4 + index), 2) for index in range(len(times))],
            "wave_direction": [100] * len(times),
            "wave_period": [4.5] * len(times),
        }
    }


@pytest.fixture
def engine() -> ForecastEngine:
    return ForecastEngine(correction_record, measurement_store)


@pytest.mark.anyio
async def test_fetch_raw_keeps_window_hours_and_converts_units(respx_mock, engine: ForecastEngine) -> None:
    respx_mock.get(settings.forecast_base_url).mock(return_value=Response(200, json=_wind_payload()))
    respx_mock.get(settings.marine_base_url).mock(return_value=Response(200, json=_marine_payload()))

    entries = await engine.fetch_raw()
    await engine.close()

    payloads = [entry.to_payload() for entry in entries]
    assert [payload["hour"] for payload in payloads] == [6, 8, 10, 12, 14, 16, 18]
    six = entries[0]
    assert six.target_time == datetime(2025, 3, 9, 23, 0, tzinfo=timezone.utc)
    assert six.speed == pytest.approx(26.0 * KMH_TO_KNOTS)
    assert six.gust == pytest.approx(30.0 * KMH_TO_KNOTS)
    assert six.wave_height == pytest.approx(0.6)
    assert six.corrected is False
    assert six.correction_factor_applied == 1.0
    assert payloads[0]["safety"]["windType"] == "onshore"


@pytest.mark.anyio
async def test_marine_failure_leaves_waves_empty(respx_mock, engine: ForecastEngine) -> None:
    respx_mock.get(settings.forecast_base_url).mock(return_value=Response(200, json=_wind_payload()))
    respx_mock.get(settings.marine_base_url).mock(return_value=Response(502))

    entries = await engine.fetch_raw()
    await engine.close()

    assert len(entries) == 7
    assert all(entry.wave_height is None for entry in entries)


@pytest.mark.anyio
async def test_fetch_applies_current_correction_factor(respx_mock, engine: ForecastEngine) -> None:
    respx_mock.get(settings.forecast_base_url).mock(return_value=Response(200, json=_wind_payload()))
    respx_mock.get(settings.marine_base_url).mock(return_value=Response(200, json=_marine_payload()))
    await correction_record.replace(1.2, 5)

    raw = await engine.fetch_raw()
    corrected = await engine.fetch()
    await engine.close()

    assert corrected[0].corrected is True
    assert corrected[0].correction_factor_applied == pytest.approx(1.2)
    assert corrected[0].speed == pytest.approx(raw[0].speed * 1.2)
    assert corrected[0].gust == pytest.approx(raw[0].gust * 1.2)
    # The cached copy must stay uncorrected
    assert (await engine.fetch_raw())[0].speed == pytest.approx(raw[0].speed)


@pytest.mark.anyio
async def test_wind_failure_without_cache_raises(respx_mock, engine: ForecastEngine) -> None:
    respx_mock.get(settings.forecast_base_url).mock(return_value=Response(500))

    with pytest.raises(ExternalFetchError):
        await engine.fetch_raw()
    await engine.close()


@pytest.mark.anyio
async def test_wind_failure_serves_stale_copy(respx_mock, engine: ForecastEngine, settings_override) -> None:
    settings_override(forecast_cache_ttl=0)
    respx_mock.get(settings.forecast_base_url).mock(return_value=Response(200, json=_wind_payload()))
    respx_mock.get(settings.marine_base_url).mock(return_value=Response(200, json=_marine_payload()))
    fresh = await engine.fetch_raw()

    respx_mock.get(settings.forecast_base_url).mock(return_value=Response(500))
    stale = await engine.fetch_raw()
    await engine.close()

    assert [entry.target_time for entry in stale] == [entry.target_time for entry in fresh]


@pytest.mark.anyio
async def test_today_timeline_combines_history_and_forecast(respx_mock, engine: ForecastEngine) -> None:
    respx_mock.get(settings.forecast_base_url).mock(return_value=Response(200, json=_wind_payload()))
    respx_mock.get(settings.marine_base_url).mock(return_value=Response(200, json=_marine_payload()))
    # 11:00 local
    now = datetime(2025, 3, 10, 4, 0, tzinfo=timezone.utc)
    await measurement_store.append(
        Measurement(
            timestamp=now,
            station_id="pak_nam_pran",
            wind_speed=14.0,
            wind_gust=18.0,
            max_daily_gust=None,
            wind_direction=100.0,
            wind_direction_avg=None,
        )
    )

    timeline = await engine.today_timeline(now)
    await engine.close()

    assert timeline["date"] == "2025-03-10"
    assert [bucket["time"] for bucket in timeline["history"]] == ["11:00"]
    assert [entry["hour"] for entry in timeline["forecast"]] == [12, 14, 16, 18]
    assert all(entry["corrected"] for entry in timeline["forecast"])
