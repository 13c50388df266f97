"""Open-Meteo wind and marine forecast with statistical speed correction."""

from __future__ import annotations

import asyncio
import logging
import time as time_utils
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from config import settings
from .clock import ensure_utc, isoformat, local_today, spot_tz, to_local, utc_now
from .correction import CorrectionFactorRecord, correction_record
from .errors import ExternalFetchError, MalformedPayloadError
from .measurements import MeasurementStore, measurement_store
from .safety import classify_safety

logger = logging.getLogger("jollykite.hub.forecast")

KMH_TO_KNOTS = 0.539957
WIND_FIELDS = ("wind_speed_10m", "wind_direction_10m", "wind_gusts_10m", "precipitation_probability")
MARINE_FIELDS = ("wave_height", "wave_direction", "wave_period")


@dataclass(slots=True)
class ForecastEntry:
    target_time: datetime
    speed: float
    gust: Optional[float]
    direction: Optional[float]
    precipitation_probability: Optional[float] = None
    wave_height: Optional[float] = None
    wave_direction: Optional[float] = None
    wave_period: Optional[float] = None
    corrected: bool = False
    correction_factor_applied: float = 1.0

    def to_payload(self) -> Dict[str, Any]:
        local = to_local(self.target_time)
        return {
            "targetTime": isoformat(self.target_time),
            "date": local.date().isoformat(),
            "hour": local.hour,
            "speed": round(self.speed, 1),
            "gust": round(self.gust, 1) if self.gust is not None else None,
            "direction": round(self.direction) if self.direction is not None else None,
            "precipitationProbability": self.precipitation_probability,
            "waveHeight": self.wave_height,
            "waveDirection": self.wave_direction,
            "wavePeriod": self.wave_period,
            "corrected": self.corrected,
            "correctionFactorApplied": round(self.correction_factor_applied, 4),
            "safety": classify_safety(self.direction, self.speed).to_payload(),
        }


@dataclass
class CachedForecast:
    entries: List[ForecastEntry]
    fetched_at: datetime
    expires_at: float


def _series(hourly: Dict[str, Any], key: str, index: int) -> Optional[float]:
    values = hourly.get(key)
    if not isinstance(values, list) or index >= len(values):
        return None
    value = values[index]
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _parse_local(value: Any) -> Optional[datetime]:
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=spot_tz())
    return ensure_utc(parsed)


class ForecastEngine:
    def __init__(
        self,
        correction: CorrectionFactorRecord,
        measurements: MeasurementStore,
        *,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._correction = correction
        self._measurements = measurements
        self._client = client
        self._cache: Optional[CachedForecast] = None
        self._lock: Optional[asyncio.Lock] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {
                "User-Agent": settings.station_user_agent,
                "Accept": "application/json",
            }
            self._client = httpx.AsyncClient(headers=headers, timeout=settings.forecast_request_timeout)
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None
        self._lock = None

    def clear_cache(self) -> None:
        self._cache = None

    def _base_params(self) -> Dict[str, Any]:
        return {
            "latitude": settings.spot_latitude,
            "longitude": settings.spot_longitude,
            "timezone": settings.timezone,
            "forecast_days": settings.forecast_days,
        }

    async def fetch_raw(self, *, allow_stale: bool = True) -> List[ForecastEntry]:
        """Uncorrected forecast entries.

        When the provider is down the last good copy is served, unless ``allow_stale`` is false.
        """
        ttl = settings.forecast_cache_ttl
        cached = self._cache
        if ttl > 0 and cached and cached.expires_at > time_utils.monotonic():
            return [replace(entry) for entry in cached.entries]

        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            cached = self._cache
            if ttl > 0 and cached and cached.expires_at > time_utils.monotonic():
                return [replace(entry) for entry in cached.entries]
            try:
                entries = await self._fetch_entries()
            except ExternalFetchError as exc:
                if cached is None or not allow_stale:
                    raise
                logger.warning(
                    "Forecast fetch failed (%s); serving copy from %s",
                    exc,
                    isoformat(cached.fetched_at),
                )
                return [replace(entry) for entry in cached.entries]
            self._cache = CachedForecast(
                entries=entries,
                fetched_at=utc_now(),
                expires_at=time_utils.monotonic() + ttl,
            )
            return [replace(entry) for entry in entries]

    async def fetch(self) -> List[ForecastEntry]:
        """Forecast with speed and gust scaled by the current correction factor."""
        entries = await self.fetch_raw()
        factor = (await self._correction.current()).value
        for entry in entries:
            entry.speed *= factor
            if entry.gust is not None:
                entry.gust *= factor
            entry.corrected = True
            entry.correction_factor_applied = factor
        return entries

    async def today_timeline(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Today's 5-minute history followed by the corrected forecast for the hours still ahead."""
        current = ensure_utc(now)
        today = local_today(current)
        history = await self._measurements.today_intervals(
            settings.operating_start_hour,
            settings.operating_end_hour,
            5,
            now=current,
        )
        try:
            entries = await self.fetch()
        except ExternalFetchError as exc:
            logger.warning("Timeline without forecast: %s", exc)
            entries = []
        upcoming = [
            entry.to_payload()
            for entry in entries
            if entry.target_time > current and to_local(entry.target_time).date() == today
        ]
        return {
            "date": today.isoformat(),
            "history": history,
            "forecast": upcoming,
        }

    async def _fetch_entries(self) -> List[ForecastEntry]:
        client = await self._get_client()
        wind = await self._get_json(
            client,
            settings.forecast_base_url,
            {**self._base_params(), "hourly": ",".join(WIND_FIELDS)},
            "open-meteo",
        )
        try:
            marine = await self._get_json(
                client,
                settings.marine_base_url,
                {**self._base_params(), "hourly": ",".join(MARINE_FIELDS)},
                "open-meteo-marine",
            )
        except ExternalFetchError as exc:
            logger.warning("Marine forecast unavailable, continuing without waves: %s", exc)
            marine = {}

        hourly = wind.get("hourly")
        if not isinstance(hourly, dict) or not isinstance(hourly.get("time"), list):
            raise MalformedPayloadError("open-meteo", "missing hourly block")

        marine_hourly = marine.get("hourly") if isinstance(marine, dict) else None
        waves: Dict[datetime, int] = {}
        if isinstance(marine_hourly, dict) and isinstance(marine_hourly.get("time"), list):
            for index, stamp in enumerate(marine_hourly["time"]):
                parsed = _parse_local(stamp)
                if parsed is not None:
                    waves[parsed] = index

        entries: List[ForecastEntry] = []
        for index, stamp in enumerate(hourly["time"]):
            target = _parse_local(stamp)
            if target is None:
                continue
            local_hour = to_local(target).hour
            if not settings.operating_start_hour <= local_hour <= settings.operating_end_hour:
                continue
            if (local_hour - settings.operating_start_hour) % settings.forecast_hour_step:
                continue
            speed = _series(hourly, "wind_speed_10m", index)
            if speed is None:
                continue
            gust = _series(hourly, "wind_gusts_10m", index)
            entry = ForecastEntry(
                target_time=target,
                speed=speed * KMH_TO_KNOTS,
                gust=gust * KMH_TO_KNOTS if gust is not None else None,
                direction=_series(hourly, "wind_direction_10m", index),
                precipitation_probability=_series(hourly, "precipitation_probability", index),
            )
            wave_index = waves.get(target)
            if wave_index is not None:
                entry.wave_height = _series(marine_hourly, "wave_height", wave_index)
                entry.wave_direction = _series(marine_hourly, "wave_direction", wave_index)
                entry.wave_period = _series(marine_hourly, "wave_period", wave_index)
            entries.append(entry)

        logger.info("Fetched %d forecast entries", len(entries))
        return entries

    @staticmethod
    async def _get_json(client: httpx.AsyncClient, url: str, params: Dict[str, Any], source: str) -> Dict[str, Any]:
        logger.debug("Fetching forecast from %s", url)
        try:
            response = await client.get(url, params=params)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise ExternalFetchError(source, f"HTTP {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            raise ExternalFetchError(source, str(exc) or exc.__class__.__name__) from exc
        try:
            payload = response.json()
        except ValueError as exc:
            raise MalformedPayloadError(source, "response is not JSON") from exc
        if not isinstance(payload, dict):
            raise MalformedPayloadError(source, "expected an object")
        return payload


forecast_engine = ForecastEngine(correction_record, measurement_store)

__all__ = ["ForecastEngine", "ForecastEntry", "KMH_TO_KNOTS", "forecast_engine"]
