"""Forecast snapshots and the daily accuracy evaluation that tunes the correction factor."""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from config import settings
from .clock import ensure_utc, isoformat, parse_iso
from .correction import CorrectionFactor, CorrectionFactorRecord, correction_record
from .database import Database, database
from .forecast import ForecastEngine, forecast_engine
from .measurements import Measurement, MeasurementStore, measurement_store

logger = logging.getLogger("jollykite.hub.accuracy")

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS forecast_snapshots (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        captured_at TEXT NOT NULL,
        target_time TEXT NOT NULL,
        predicted_speed REAL NOT NULL,
        predicted_gust REAL,
        predicted_direction REAL,
        UNIQUE(captured_at, target_time)
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_forecast_snapshots_target ON forecast_snapshots(target_time);",
)


@dataclass(frozen=True, slots=True)
class ForecastSnapshot:
    captured_at: datetime
    target_time: datetime
    predicted_speed: float
    predicted_gust: Optional[float] = None
    predicted_direction: Optional[float] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "capturedAt": isoformat(self.captured_at),
            "targetTime": isoformat(self.target_time),
            "predictedSpeed": round(self.predicted_speed, 2),
            "predictedGust": round(self.predicted_gust, 2) if self.predicted_gust is not None else None,
            "predictedDirection": self.predicted_direction,
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ForecastSnapshot":
        return cls(
            captured_at=parse_iso(row["captured_at"]),
            target_time=parse_iso(row["target_time"]),
            predicted_speed=row["predicted_speed"],
            predicted_gust=row["predicted_gust"],
            predicted_direction=row["predicted_direction"],
        )


@dataclass(slots=True)
class EvaluationResult:
    evaluated_at: datetime
    usable: int = 0
    discarded: int = 0
    unmatched: int = 0
    previous_factor: float = 1.0
    factor: float = 1.0
    mean_abs_error: Optional[float] = None
    updated: bool = False
    ratios: List[float] = field(default_factory=list)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "evaluatedAt": isoformat(self.evaluated_at),
            "usable": self.usable,
            "discarded": self.discarded,
            "unmatched": self.unmatched,
            "previousFactor": round(self.previous_factor, 4),
            "factor": round(self.factor, 4),
            "meanAbsError": round(self.mean_abs_error, 2) if self.mean_abs_error is not None else None,
            "updated": self.updated,
        }


class AccuracyEvaluator:
    def __init__(
        self,
        db: Database,
        engine: ForecastEngine,
        measurements: MeasurementStore,
        correction: CorrectionFactorRecord,
    ) -> None:
        self._db = db
        self._engine = engine
        self._measurements = measurements
        self._correction = correction
        self._last_result: Optional[EvaluationResult] = None
        self._db.register_schema(*SCHEMA)

    async def capture_snapshots(self, now: Optional[datetime] = None) -> int:
        """Store the raw forecast for every target time that is still ahead of ``now``."""
        captured_at = ensure_utc(now)
        # A stale copy would be stored again under a new capture time
        entries = await self._engine.fetch_raw(allow_stale=False)
        rows = [
            (
                isoformat(captured_at),
                isoformat(entry.target_time),
                entry.speed,
                entry.gust,
                entry.direction,
            )
            for entry in entries
            if entry.target_time >= captured_at
        ]
        if not rows:
            logger.info("No future forecast entries to snapshot")
            return 0

        def _insert(conn: sqlite3.Connection) -> int:
            before = conn.total_changes
            conn.executemany(
                """
                INSERT OR IGNORE INTO forecast_snapshots (
                    captured_at, target_time, predicted_speed, predicted_gust, predicted_direction
                ) VALUES (?, ?, ?, ?, ?);
                """,
                rows,
            )
            return conn.total_changes - before

        saved = await self._db.write(_insert)
        logger.info("Captured %d forecast snapshot(s)", saved)
        return saved

    async def evaluate(self, now: Optional[datetime] = None) -> EvaluationResult:
        """Compare matured snapshots with observed wind and replace the factor when enough agree."""
        current = ensure_utc(now)
        previous = await self._correction.current()
        result = EvaluationResult(
            evaluated_at=current,
            previous_factor=previous.value,
            factor=previous.value,
        )

        window_start = current - timedelta(days=settings.snapshot_retention_days)
        snapshots = await self.snapshots_between(window_start, current)
        match = timedelta(minutes=settings.accuracy_match_minutes)
        observed = await self._measurements.between(window_start - match, current + match)

        weighted_sum = 0.0
        weight_total = 0
        abs_errors: List[float] = []
        for snapshot in snapshots:
            if snapshot.predicted_speed <= 0:
                result.discarded += 1
                continue
            matched = _within(observed, snapshot.target_time, match)
            if not matched:
                result.unmatched += 1
                continue
            actual = sum(m.wind_speed for m in matched) / len(matched)
            ratio = actual / snapshot.predicted_speed
            if not settings.accuracy_ratio_min <= ratio <= settings.accuracy_ratio_max:
                result.discarded += 1
                continue
            result.usable += 1
            result.ratios.append(ratio)
            weighted_sum += ratio * len(matched)
            weight_total += len(matched)
            abs_errors.append(abs(actual - snapshot.predicted_speed))

        if abs_errors:
            result.mean_abs_error = sum(abs_errors) / len(abs_errors)

        if result.usable == 0 or result.usable < settings.accuracy_min_samples:
            logger.info(
                "Keeping correction factor %.3f: %d usable comparison(s), %d unmatched, %d discarded",
                previous.value,
                result.usable,
                result.unmatched,
                result.discarded,
            )
            self._last_result = result
            return result

        factor = weighted_sum / weight_total
        await self._correction.replace(
            factor,
            result.usable,
            mean_abs_error=result.mean_abs_error,
            computed_at=current,
        )
        result.factor = factor
        result.updated = True
        self._last_result = result
        return result

    async def cleanup_snapshots(self, days_to_keep: Optional[int] = None, *, now: Optional[datetime] = None) -> int:
        days = days_to_keep if days_to_keep is not None else settings.snapshot_retention_days
        cutoff = isoformat(ensure_utc(now) - timedelta(days=days))

        def _delete(conn: sqlite3.Connection) -> int:
            return conn.execute("DELETE FROM forecast_snapshots WHERE target_time < ?;", (cutoff,)).rowcount

        removed = await self._db.write(_delete)
        if removed:
            logger.info("Removed %d forecast snapshot(s) older than %d days", removed, days)
        return removed

    async def snapshots_between(self, start: datetime, end: datetime) -> List[ForecastSnapshot]:
        def _select(conn: sqlite3.Connection) -> List[ForecastSnapshot]:
            rows = conn.execute(
                """
                SELECT * FROM forecast_snapshots
                WHERE target_time >= ? AND target_time <= ?
                ORDER BY target_time ASC, captured_at ASC;
                """,
                (isoformat(start), isoformat(end)),
            )
            return [ForecastSnapshot.from_row(row) for row in rows]

        return await self._db.read(_select)

    async def snapshot_count(self) -> int:
        def _count(conn: sqlite3.Connection) -> int:
            return conn.execute("SELECT COUNT(1) FROM forecast_snapshots;").fetchone()[0]

        return await self._db.read(_count)

    async def metrics(self) -> Dict[str, Any]:
        factor: CorrectionFactor = await self._correction.current()
        return {
            "correctionFactor": factor.to_payload(),
            "snapshotCount": await self.snapshot_count(),
            "lastEvaluation": self._last_result.to_payload() if self._last_result else None,
        }


def _within(samples: List[Measurement], target: datetime, tolerance: timedelta) -> List[Measurement]:
    return [m for m in samples if abs(m.timestamp - target) <= tolerance]


accuracy_evaluator = AccuracyEvaluator(database, forecast_engine, measurement_store, correction_record)

__all__ = ["AccuracyEvaluator", "EvaluationResult", "ForecastSnapshot", "accuracy_evaluator"]
