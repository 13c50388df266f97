from __future__ import annotations

import sqlite3
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional

from config import settings
from .clock import ensure_utc, isoformat, local_today, parse_iso, spot_tz, to_local, utc_now
from .database import Database, database
from .safety import classify_safety
from .trend import TrendThresholds, TrendWindow, circular_mean, compute_trend, direction_stability

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS measurements (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        station_id TEXT NOT NULL,
        ts TEXT NOT NULL,
        wind_speed REAL NOT NULL,
        wind_gust REAL,
        max_daily_gust REAL,
        wind_direction REAL NOT NULL,
        wind_direction_avg REAL,
        temperature REAL,
        humidity REAL,
        pressure REAL,
        UNIQUE(station_id, ts)
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_measurements_ts ON measurements(ts);",
)

COLUMNS = (
    "station_id, ts, wind_speed, wind_gust, max_daily_gust, wind_direction, "
    "wind_direction_avg, temperature, humidity, pressure"
)


def _round(value: Optional[float], digits: int = 1) -> Optional[float]:
    return round(value, digits) if value is not None else None


@dataclass(frozen=True, slots=True)
class Measurement:
    """One normalized station reading: knots, degrees, °C, %, hPa."""

    timestamp: datetime
    station_id: str
    wind_speed: float
    wind_gust: Optional[float]
    max_daily_gust: Optional[float]
    wind_direction: float
    wind_direction_avg: Optional[float]
    temperature: Optional[float] = None
    humidity: Optional[float] = None
    pressure: Optional[float] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "timestamp": isoformat(self.timestamp),
            "stationId": self.station_id,
            "windSpeed": _round(self.wind_speed),
            "windGust": _round(self.wind_gust),
            "maxDailyGust": _round(self.max_daily_gust),
            "windDirection": round(self.wind_direction),
            "windDirectionAvg": round(self.wind_direction_avg) if self.wind_direction_avg is not None else None,
            "temperature": _round(self.temperature),
            "humidity": _round(self.humidity),
            "pressure": _round(self.pressure, 2),
            "safety": classify_safety(self.wind_direction, self.wind_speed).to_payload(),
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Measurement":
        return cls(
            timestamp=parse_iso(row["ts"]),
            station_id=row["station_id"],
            wind_speed=row["wind_speed"],
            wind_gust=row["wind_gust"],
            max_daily_gust=row["max_daily_gust"],
            wind_direction=row["wind_direction"],
            wind_direction_avg=row["wind_direction_avg"],
            temperature=row["temperature"],
            humidity=row["humidity"],
            pressure=row["pressure"],
        )


def _thresholds() -> TrendThresholds:
    return TrendThresholds(
        stable_pct=settings.trend_stable_pct,
        strong_pct=settings.trend_strong_pct,
        long_window=timedelta(minutes=settings.trend_long_window_minutes),
        short_window=timedelta(minutes=settings.trend_short_window_minutes),
        max_gap=timedelta(minutes=settings.trend_max_gap_minutes),
        min_window_samples=settings.trend_min_window_samples,
    )


class MeasurementStore:
    """Append-only measurement log with windowed reads.

    The log is the spot-level series: rows from whichever station supplied a
    cycle are read back together, ordered by timestamp.
    """

    def __init__(self, db: Database) -> None:
        self._db = db
        self._db.register_schema(*SCHEMA)

    async def append(self, measurement: Measurement) -> bool:
        """Persist one reading; returns False when ``(station, timestamp)`` already exists."""

        def _insert(conn: sqlite3.Connection) -> bool:
            cursor = conn.execute(
                f"""
                INSERT OR IGNORE INTO measurements ({COLUMNS})
                VALUES (:station_id, :ts, :wind_speed, :wind_gust, :max_daily_gust, :wind_direction,
                        :wind_direction_avg, :temperature, :humidity, :pressure);
                """,
                {
                    "station_id": measurement.station_id,
                    "ts": isoformat(measurement.timestamp),
                    "wind_speed": measurement.wind_speed,
                    "wind_gust": measurement.wind_gust,
                    "max_daily_gust": measurement.max_daily_gust,
                    "wind_direction": measurement.wind_direction,
                    "wind_direction_avg": measurement.wind_direction_avg,
                    "temperature": measurement.temperature,
                    "humidity": measurement.humidity,
                    "pressure": measurement.pressure,
                },
            )
            return cursor.rowcount > 0

        return await self._db.write(_insert)

    async def latest(self) -> Optional[Measurement]:
        rows = await self._select(f"SELECT {COLUMNS} FROM measurements ORDER BY ts DESC LIMIT 1;")
        return rows[0] if rows else None

    async def last_measurements(self, count: int = 4) -> List[Measurement]:
        """Most recent ``count`` readings in chronological order."""
        rows = await self._select(
            f"SELECT {COLUMNS} FROM measurements ORDER BY ts DESC LIMIT ?;",
            (max(count, 1),),
        )
        rows.reverse()
        return rows

    async def between(self, start: datetime, end: datetime) -> List[Measurement]:
        """Readings with ``start <= timestamp < end``, oldest first."""
        return await self._select(
            f"SELECT {COLUMNS} FROM measurements WHERE ts >= ? AND ts < ? ORDER BY ts ASC;",
            (isoformat(start), isoformat(end)),
        )

    async def list_hours(self, hours: float = 24.0, *, now: Optional[datetime] = None) -> List[Measurement]:
        """Readings from the last ``hours``, newest first."""
        cutoff = ensure_utc(now) - timedelta(hours=hours)
        return await self._select(
            f"SELECT {COLUMNS} FROM measurements WHERE ts >= ? ORDER BY ts DESC;",
            (isoformat(cutoff),),
        )

    async def latest_per_station(self) -> List[Measurement]:
        return await self._select(
            f"""
            SELECT {COLUMNS} FROM measurements AS m
            WHERE m.ts = (SELECT MAX(ts) FROM measurements WHERE station_id = m.station_id)
            ORDER BY station_id ASC;
            """
        )

    async def statistics(self, hours: float = 24.0, *, now: Optional[datetime] = None) -> Dict[str, Any]:
        samples = await self.list_hours(hours, now=now)
        if not samples:
            return {
                "hours": hours,
                "count": 0,
                "avgSpeed": None,
                "minSpeed": None,
                "maxSpeed": None,
                "avgGust": None,
                "maxGust": None,
                "avgDirection": None,
            }
        speeds = [s.wind_speed for s in samples]
        gusts = [s.wind_gust for s in samples if s.wind_gust is not None]
        direction = circular_mean([s.wind_direction for s in samples])
        return {
            "hours": hours,
            "count": len(samples),
            "avgSpeed": _round(sum(speeds) / len(speeds)),
            "minSpeed": _round(min(speeds)),
            "maxSpeed": _round(max(speeds)),
            "avgGust": _round(sum(gusts) / len(gusts)) if gusts else None,
            "maxGust": _round(max(gusts)) if gusts else None,
            "avgDirection": round(direction) if direction is not None else None,
        }

    async def trend(self, *, now: Optional[datetime] = None) -> TrendWindow:
        thresholds = _thresholds()
        latest = await self.latest()
        if latest is None:
            return compute_trend([], thresholds=thresholds, now=now)
        lookback = 2 * max(thresholds.long_window, thresholds.short_window)
        recent = await self._select(
            f"SELECT {COLUMNS} FROM measurements WHERE ts >= ? ORDER BY ts ASC;",
            (isoformat(latest.timestamp - lookback),),
        )
        window = compute_trend(
            [(m.timestamp, m.wind_speed) for m in recent],
            thresholds=thresholds,
            now=now,
        )
        directions = await self.last_measurements(6)
        window.direction_trend, window.direction_spread = direction_stability(
            [m.wind_direction for m in directions]
        )
        return window

    async def prune(self, older_than_days: float, *, now: Optional[datetime] = None) -> int:
        cutoff = isoformat(ensure_utc(now) - timedelta(days=older_than_days))

        def _delete(conn: sqlite3.Connection) -> int:
            return conn.execute("DELETE FROM measurements WHERE ts < ?;", (cutoff,)).rowcount

        return await self._db.write(_delete)

    async def total_count(self) -> int:
        def _count(conn: sqlite3.Connection) -> int:
            return conn.execute("SELECT COUNT(1) FROM measurements;").fetchone()[0]

        return await self._db.read(_count)

    async def today_hourly(
        self,
        start_hour: int = 6,
        end_hour: int = 19,
        *,
        now: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        buckets = await self._today_buckets(start_hour, end_hour, 60, now=now)
        return [
            {
                "hour": f"{hour:02d}",
                "avg_speed": entry["avg_speed"],
                "max_gust": entry["max_gust"],
                "avg_direction": entry["avg_direction"],
                "measurements": entry["measurements"],
            }
            for (hour, _), entry in buckets
        ]

    async def today_intervals(
        self,
        start_hour: int = 6,
        end_hour: int = 20,
        interval_minutes: int = 5,
        *,
        now: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        buckets = await self._today_buckets(start_hour, end_hour, interval_minutes, now=now)
        return [
            {
                "hour": hour,
                "minute": minute,
                "time": f"{hour:02d}:{minute:02d}",
                **entry,
            }
            for (hour, minute), entry in buckets
        ]

    async def week_history(self, days: int = 7, *, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Operating-window readings of the last ``days`` grouped per local day, newest day first."""
        samples = await self.list_hours(days * 24, now=now)
        grouped: Dict[date, List[Dict[str, Any]]] = defaultdict(list)
        for sample in reversed(samples):
            local = to_local(sample.timestamp)
            if not settings.operating_start_hour <= local.hour < settings.operating_end_hour:
                continue
            grouped[local.date()].append(
                {
                    "time": isoformat(sample.timestamp),
                    "avg_speed": _round(sample.wind_speed),
                    "max_gust": _round(sample.wind_gust if sample.wind_gust is not None else sample.wind_speed),
                    "direction": round(sample.wind_direction),
                }
            )
        ordered = sorted(grouped.items(), key=lambda item: item[0], reverse=True)[:days]
        return [{"date": day.isoformat(), "data": data} for day, data in ordered]

    async def clear(self) -> None:
        def _truncate(conn: sqlite3.Connection) -> None:
            conn.execute("DELETE FROM measurements;")

        await self._db.write(_truncate)

    async def _today_buckets(
        self,
        start_hour: int,
        end_hour: int,
        interval_minutes: int,
        *,
        now: Optional[datetime] = None,
    ) -> List[tuple[tuple[int, int], Dict[str, Any]]]:
        interval = max(1, min(interval_minutes, 60))
        today = local_today(now)
        day_start = datetime.combine(today, datetime.min.time(), tzinfo=spot_tz())
        samples = await self.between(day_start, day_start + timedelta(days=1))

        grouped: Dict[tuple[int, int], List[Measurement]] = defaultdict(list)
        for sample in samples:
            local = to_local(sample.timestamp)
            if not start_hour <= local.hour <= end_hour:
                continue
            grouped[(local.hour, (local.minute // interval) * interval)].append(sample)

        buckets = []
        for key in sorted(grouped):
            members = grouped[key]
            speeds = [m.wind_speed for m in members]
            gusts = [m.wind_gust for m in members if m.wind_gust is not None]
            direction = circular_mean([m.wind_direction for m in members])
            buckets.append(
                (
                    key,
                    {
                        "avg_speed": _round(sum(speeds) / len(speeds), 2),
                        "max_gust": _round(max(gusts), 2) if gusts else None,
                        "avg_direction": round(direction) if direction is not None else None,
                        "measurements": len(members),
                    },
                )
            )
        return buckets

    async def _select(self, query: str, params: tuple = ()) -> List[Measurement]:
        def _run(conn: sqlite3.Connection) -> List[Measurement]:
            return [Measurement.from_row(row) for row in conn.execute(query, params)]

        return await self._db.read(_run)


measurement_store = MeasurementStore(database)

__all__ = ["Measurement", "MeasurementStore", "measurement_store"]
