"""Station adapters and the failover aggregator that turns them into one reading per cycle."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence

import httpx

from config import StationConfig, settings
from .calibration import CalibrationStore, apply_offset, calibration_store
from .errors import ExternalFetchError, MalformedPayloadError
from .measurements import Measurement

logger = logging.getLogger("jollykite.hub.stations")

MPH_TO_KNOTS = 0.868976
MS_TO_KNOTS = 1.943844
INHG_TO_HPA = 33.8639


def fahrenheit_to_celsius(value: Optional[float]) -> Optional[float]:
    if value is None:
        return None
    return (value - 32.0) * 5.0 / 9.0


def _number(payload: Mapping[str, Any], key: str) -> Optional[float]:
    value = payload.get(key)
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        result = float(value)
    elif isinstance(value, str) and value.strip():
        try:
            result = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if math.isnan(result) or math.isinf(result):
        return None
    return result


def _required(payload: Mapping[str, Any], key: str, source: str) -> float:
    value = _number(payload, key)
    if value is None:
        raise MalformedPayloadError(source, f"missing numeric field '{key}'")
    return value


def _epoch(seconds: float, source: str) -> datetime:
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError) as exc:
        raise MalformedPayloadError(source, f"timestamp {seconds!r} out of range") from exc


def _scaled(value: Optional[float], factor: float) -> Optional[float]:
    return value * factor if value is not None else None


@dataclass(slots=True)
class StationReading:
    """Provider reading already converted to knots, °C and hPa, before calibration."""

    timestamp: datetime
    wind_speed: float
    wind_gust: Optional[float]
    max_daily_gust: Optional[float]
    wind_direction: float
    wind_direction_avg: Optional[float]
    temperature: Optional[float]
    humidity: Optional[float]
    pressure: Optional[float]


class StationAdapter:
    kind: str = ""
    headers: Dict[str, str] = {}

    async def fetch(self, client: httpx.AsyncClient, station: StationConfig) -> StationReading:
        try:
            response = await client.get(station.url, headers=self.headers or None)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise ExternalFetchError(station.id, f"HTTP {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            raise ExternalFetchError(station.id, str(exc) or exc.__class__.__name__) from exc
        try:
            payload = response.json()
        except ValueError as exc:
            raise MalformedPayloadError(station.id, "response is not JSON") from exc
        return self.parse(payload, station.id)

    def parse(self, payload: Any, source: str) -> StationReading:
        raise NotImplementedError


class AmbientWeatherAdapter(StationAdapter):
    """Ambient Weather public device feed (mph, °F, inHg, epoch milliseconds)."""

    kind = "ambient"
    headers = {"Referer": "https://jollykite.com/"}

    def parse(self, payload: Any, source: str) -> StationReading:
        devices = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(devices, list) or not devices or not isinstance(devices[0], dict):
            raise MalformedPayloadError(source, "no device data")
        last = devices[0].get("lastData")
        if not isinstance(last, dict):
            raise MalformedPayloadError(source, "device has no lastData")

        stamp = _required(last, "dateutc", source)
        pressure_in = _number(last, "baromrelin")
        return StationReading(
            timestamp=_epoch(stamp / 1000.0, source),
            wind_speed=_required(last, "windspeedmph", source) * MPH_TO_KNOTS,
            wind_gust=_scaled(_number(last, "windgustmph"), MPH_TO_KNOTS),
            max_daily_gust=_scaled(_number(last, "maxdailygust"), MPH_TO_KNOTS),
            wind_direction=_required(last, "winddir", source),
            wind_direction_avg=_number(last, "winddir_avg10m"),
            temperature=fahrenheit_to_celsius(_number(last, "tempf")),
            humidity=_number(last, "humidity"),
            pressure=_scaled(pressure_in, INHG_TO_HPA),
        )


class WeathercloudAdapter(StationAdapter):
    """Weathercloud device values endpoint (m/s, °C, hPa, epoch seconds)."""

    kind = "weathercloud"
    headers = {"X-Requested-With": "XMLHttpRequest"}

    def parse(self, payload: Any, source: str) -> StationReading:
        if not isinstance(payload, dict):
            raise MalformedPayloadError(source, "expected an object")
        stamp = _required(payload, "epoch", source)
        return StationReading(
            timestamp=_epoch(stamp, source),
            wind_speed=_required(payload, "wspd", source) * MS_TO_KNOTS,
            wind_gust=_scaled(_number(payload, "wspdhi"), MS_TO_KNOTS),
            max_daily_gust=None,
            wind_direction=_required(payload, "wdir", source),
            wind_direction_avg=_number(payload, "wdiravg"),
            temperature=_number(payload, "temp"),
            humidity=_number(payload, "hum"),
            pressure=_number(payload, "bar"),
        )


ADAPTERS: Dict[str, StationAdapter] = {
    adapter.kind: adapter for adapter in (AmbientWeatherAdapter(), WeathercloudAdapter())
}


@dataclass(slots=True)
class StationFailure:
    station_id: str
    error: str

    def to_payload(self) -> Dict[str, str]:
        return {"stationId": self.station_id, "error": self.error}


@dataclass(slots=True)
class CollectionResult:
    measurement: Optional[Measurement] = None
    station_id: Optional[str] = None
    failures: List[StationFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.measurement is not None


class StationAggregator:
    """Reads the primary station and falls through the others in order until one answers."""

    def __init__(
        self,
        stations: Optional[Sequence[StationConfig]] = None,
        *,
        calibration: CalibrationStore,
        adapters: Optional[Mapping[str, StationAdapter]] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._stations = list(stations) if stations is not None else None
        self._calibration = calibration
        self._adapters = dict(adapters or ADAPTERS)
        self._client = client

    @property
    def stations(self) -> List[StationConfig]:
        stations = self._stations if self._stations is not None else list(settings.stations)
        # Primary first, the rest keep their declared order
        return sorted(stations, key=lambda station: not station.primary)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                headers={"User-Agent": settings.station_user_agent, "Accept": "application/json"},
                timeout=settings.station_request_timeout,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def collect(self) -> CollectionResult:
        result = CollectionResult()
        client = await self._get_client()
        for station in self.stations:
            adapter = self._adapters.get(station.kind)
            if adapter is None:
                result.failures.append(StationFailure(station.id, f"no adapter for '{station.kind}'"))
                continue
            try:
                reading = await adapter.fetch(client, station)
            except ExternalFetchError as exc:
                logger.warning("Station %s unavailable: %s", station.id, exc)
                result.failures.append(StationFailure(station.id, str(exc)))
                continue

            offset = await self._calibration.get_offset()
            result.measurement = Measurement(
                timestamp=reading.timestamp,
                station_id=station.id,
                wind_speed=reading.wind_speed,
                wind_gust=reading.wind_gust,
                max_daily_gust=reading.max_daily_gust,
                wind_direction=apply_offset(reading.wind_direction, offset),
                wind_direction_avg=apply_offset(reading.wind_direction_avg, offset),
                temperature=reading.temperature,
                humidity=reading.humidity,
                pressure=reading.pressure,
            )
            result.station_id = station.id
            if result.failures:
                logger.info("Using fallback station %s after %d failure(s)", station.id, len(result.failures))
            return result

        logger.error("No data from any of %d station(s)", len(result.failures))
        return result


station_aggregator = StationAggregator(calibration=calibration_store)

__all__ = [
    "ADAPTERS",
    "AmbientWeatherAdapter",
    "CollectionResult",
    "StationAdapter",
    "StationAggregator",
    "StationFailure",
    "StationReading",
    "WeathercloudAdapter",
    "station_aggregator",
]
