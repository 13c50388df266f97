"""Hourly rollups of raw measurements into the long-term archive."""

from __future__ import annotations

import logging
import sqlite3
from collections import defaultdict
from dataclasses import asdict, dataclass
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional

from config import settings
from .clock import ensure_utc, isoformat, parse_iso, spot_tz, to_local, utc_now
from .database import Database, database
from .measurements import MeasurementStore, measurement_store
from .trend import circular_mean

logger = logging.getLogger("jollykite.hub.archive")

# How far back the hourly job looks when nothing has been archived recently
CATCH_UP_WINDOW = timedelta(hours=24)

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS hourly_archive (
        spot_id TEXT NOT NULL,
        hour_bucket TEXT NOT NULL,
        avg_speed REAL NOT NULL,
        min_speed REAL NOT NULL,
        max_speed REAL NOT NULL,
        avg_gust REAL,
        max_gust REAL,
        avg_direction REAL,
        avg_temperature REAL,
        avg_humidity REAL,
        avg_pressure REAL,
        sample_count INTEGER NOT NULL,
        computed_at TEXT NOT NULL,
        PRIMARY KEY (spot_id, hour_bucket)
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_hourly_archive_bucket ON hourly_archive(hour_bucket);",
)


def _mean(values: List[float]) -> Optional[float]:
    return sum(values) / len(values) if values else None


def hour_floor(timestamp: datetime) -> datetime:
    return ensure_utc(timestamp).replace(minute=0, second=0, microsecond=0)


@dataclass(slots=True)
class HourlyAggregate:
    spot_id: str
    hour_bucket: datetime
    avg_speed: float
    min_speed: float
    max_speed: float
    avg_gust: Optional[float]
    max_gust: Optional[float]
    avg_direction: Optional[float]
    avg_temperature: Optional[float]
    avg_humidity: Optional[float]
    avg_pressure: Optional[float]
    sample_count: int

    def to_payload(self) -> Dict[str, Any]:
        data = asdict(self)
        data["hour_bucket"] = isoformat(self.hour_bucket)
        return data

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "HourlyAggregate":
        return cls(
            spot_id=row["spot_id"],
            hour_bucket=parse_iso(row["hour_bucket"]),
            avg_speed=row["avg_speed"],
            min_speed=row["min_speed"],
            max_speed=row["max_speed"],
            avg_gust=row["avg_gust"],
            max_gust=row["max_gust"],
            avg_direction=row["avg_direction"],
            avg_temperature=row["avg_temperature"],
            avg_humidity=row["avg_humidity"],
            avg_pressure=row["avg_pressure"],
            sample_count=row["sample_count"],
        )


class ArchiveCompactor:
    def __init__(self, db: Database, measurements: MeasurementStore, *, spot_id: Optional[str] = None) -> None:
        self._db = db
        self._measurements = measurements
        self._spot_id = spot_id
        self._db.register_schema(*SCHEMA)

    @property
    def spot_id(self) -> str:
        return self._spot_id or settings.primary_station_id

    async def rollup_hour(self, hour_start: datetime) -> Optional[HourlyAggregate]:
        """Recompute the aggregate for one hour from raw rows and overwrite any previous value."""
        bucket = hour_floor(hour_start)
        samples = await self._measurements.between(bucket, bucket + timedelta(hours=1))
        if not samples:
            logger.info("No measurements to archive for %s", isoformat(bucket))
            return None

        speeds = [s.wind_speed for s in samples]
        gusts = [s.wind_gust for s in samples if s.wind_gust is not None]
        aggregate = HourlyAggregate(
            spot_id=self.spot_id,
            hour_bucket=bucket,
            avg_speed=sum(speeds) / len(speeds),
            min_speed=min(speeds),
            max_speed=max(speeds),
            avg_gust=_mean(gusts),
            max_gust=max(gusts) if gusts else None,
            avg_direction=circular_mean([s.wind_direction for s in samples]),
            avg_temperature=_mean([s.temperature for s in samples if s.temperature is not None]),
            avg_humidity=_mean([s.humidity for s in samples if s.humidity is not None]),
            avg_pressure=_mean([s.pressure for s in samples if s.pressure is not None]),
            sample_count=len(samples),
        )
        await self._db.write(lambda conn: self._upsert(conn, aggregate))
        logger.info(
            "Archived %s: avg %.1f kn over %d measurement(s)",
            isoformat(bucket),
            aggregate.avg_speed,
            aggregate.sample_count,
        )
        return aggregate

    async def run_hourly(self, now: Optional[datetime] = None) -> List[HourlyAggregate]:
        """Roll up every closed hour with readings since the newest archived one, oldest first.

        The newest archived hour is recomputed too, so a late start never skips an
        hour and readings stored after the last run are picked up.
        """
        current = hour_floor(now or utc_now())
        start = current - CATCH_UP_WINDOW
        newest = await self.newest_bucket()
        if newest is not None and newest > start:
            start = newest
        samples = await self._measurements.between(start, current)
        hours = sorted({hour_floor(sample.timestamp) for sample in samples})
        archived: List[HourlyAggregate] = []
        for hour in hours:
            aggregate = await self.rollup_hour(hour)
            if aggregate is not None:
                archived.append(aggregate)
        return archived

    async def newest_bucket(self) -> Optional[datetime]:
        def _max(conn: sqlite3.Connection) -> Optional[str]:
            return conn.execute(
                "SELECT MAX(hour_bucket) FROM hourly_archive WHERE spot_id = ?;", (self.spot_id,)
            ).fetchone()[0]

        value = await self._db.read(_max)
        return parse_iso(value) if value else None

    @staticmethod
    def _upsert(conn: sqlite3.Connection, aggregate: HourlyAggregate) -> None:
        conn.execute(
            """
            INSERT INTO hourly_archive (
                spot_id, hour_bucket, avg_speed, min_speed, max_speed, avg_gust, max_gust,
                avg_direction, avg_temperature, avg_humidity, avg_pressure, sample_count, computed_at
            ) VALUES (
                :spot_id, :hour_bucket, :avg_speed, :min_speed, :max_speed, :avg_gust, :max_gust,
                :avg_direction, :avg_temperature, :avg_humidity, :avg_pressure, :sample_count, :computed_at
            )
            ON CONFLICT(spot_id, hour_bucket) DO UPDATE SET
                avg_speed=excluded.avg_speed,
                min_speed=excluded.min_speed,
                max_speed=excluded.max_speed,
                avg_gust=excluded.avg_gust,
                max_gust=excluded.max_gust,
                avg_direction=excluded.avg_direction,
                avg_temperature=excluded.avg_temperature,
                avg_humidity=excluded.avg_humidity,
                avg_pressure=excluded.avg_pressure,
                sample_count=excluded.sample_count,
                computed_at=excluded.computed_at;
            """,
            {**aggregate.to_payload(), "computed_at": isoformat(utc_now())},
        )

    async def get(self, hour_start: datetime) -> Optional[HourlyAggregate]:
        rows = await self._select(
            "SELECT * FROM hourly_archive WHERE spot_id = ? AND hour_bucket = ?;",
            (self.spot_id, isoformat(hour_floor(hour_start))),
        )
        return rows[0] if rows else None

    async def archived_days(self, days: int = 30, *, now: Optional[datetime] = None) -> List[HourlyAggregate]:
        cutoff = ensure_utc(now) - timedelta(days=days)
        return await self._select(
            "SELECT * FROM hourly_archive WHERE spot_id = ? AND hour_bucket >= ? ORDER BY hour_bucket DESC;",
            (self.spot_id, isoformat(cutoff)),
        )

    async def archived_day(self, day: date, start_hour: int = 6, end_hour: int = 19) -> List[HourlyAggregate]:
        """Aggregates of one local day whose local hour lies in ``[start_hour, end_hour]``."""
        day_start = datetime.combine(day, datetime.min.time(), tzinfo=spot_tz())
        rows = await self._select(
            """
            SELECT * FROM hourly_archive
            WHERE spot_id = ? AND hour_bucket >= ? AND hour_bucket < ?
            ORDER BY hour_bucket ASC;
            """,
            (self.spot_id, isoformat(day_start), isoformat(day_start + timedelta(days=1))),
        )
        return [row for row in rows if start_hour <= to_local(row.hour_bucket).hour <= end_hour]

    async def statistics(self, days: int = 30, *, now: Optional[datetime] = None) -> Dict[str, Any]:
        rows = await self.archived_days(days, now=now)
        gusts = [row.max_gust for row in rows if row.max_gust is not None]
        return {
            "days": days,
            "hours_recorded": len(rows),
            "overall_avg_speed": _mean([row.avg_speed for row in rows]),
            "overall_max_speed": max((row.max_speed for row in rows), default=None),
            "overall_max_gust": max(gusts) if gusts else None,
            "total_measurements": sum(row.sample_count for row in rows),
        }

    async def hourly_pattern(self, days: int = 30, *, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Average speed per local hour of day across the last ``days``."""
        rows = await self.archived_days(days, now=now)
        by_hour: Dict[int, List[HourlyAggregate]] = defaultdict(list)
        for row in rows:
            by_hour[to_local(row.hour_bucket).hour].append(row)
        return [
            {
                "hour": f"{hour:02d}",
                "avg_speed": _mean([row.avg_speed for row in members]),
                "max_speed": max(row.max_speed for row in members),
                "days_recorded": len(members),
            }
            for hour, members in sorted(by_hour.items())
        ]

    async def cleanup(self, days_to_keep: int, *, now: Optional[datetime] = None) -> int:
        cutoff = isoformat(ensure_utc(now) - timedelta(days=days_to_keep))

        def _delete(conn: sqlite3.Connection) -> int:
            return conn.execute("DELETE FROM hourly_archive WHERE hour_bucket < ?;", (cutoff,)).rowcount

        removed = await self._db.write(_delete)
        if removed:
            logger.info("Removed %d archived hour(s) older than %d days", removed, days_to_keep)
        return removed

    async def clear(self) -> None:
        await self._db.write(lambda conn: conn.execute("DELETE FROM hourly_archive;"))

    async def _select(self, query: str, params: tuple) -> List[HourlyAggregate]:
        def _run(conn: sqlite3.Connection) -> List[HourlyAggregate]:
            return [HourlyAggregate.from_row(row) for row in conn.execute(query, params)]

        return await self._db.read(_run)


archive_compactor = ArchiveCompactor(database, measurement_store)

__all__ = ["ArchiveCompactor", "HourlyAggregate", "archive_compactor", "hour_floor"]
