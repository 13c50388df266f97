"""The persisted forecast correction factor."""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from .clock import isoformat, parse_iso, utc_now
from .database import Database, database

logger = logging.getLogger("jollykite.hub.correction")

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS correction_factor (
        id INTEGER PRIMARY KEY CHECK (id = 1),
        value REAL NOT NULL,
        sample_count INTEGER NOT NULL,
        mean_abs_error REAL,
        computed_at TEXT NOT NULL,
        version INTEGER NOT NULL
    );
    """,
)

NEUTRAL_FACTOR = 1.0


@dataclass(frozen=True, slots=True)
class CorrectionFactor:
    value: float = NEUTRAL_FACTOR
    sample_count: int = 0
    computed_at: Optional[datetime] = None
    version: int = 0
    mean_abs_error: Optional[float] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "value": round(self.value, 4),
            "sampleCount": self.sample_count,
            "computedAt": isoformat(self.computed_at) if self.computed_at else None,
            "version": self.version,
            "meanAbsError": round(self.mean_abs_error, 2) if self.mean_abs_error is not None else None,
        }


class CorrectionFactorRecord:
    """Single-row table; reads fall back to the neutral factor until the first evaluation."""

    def __init__(self, db: Database) -> None:
        self._db = db
        self._db.register_schema(*SCHEMA)

    async def current(self) -> CorrectionFactor:
        def _select(conn: sqlite3.Connection) -> Optional[sqlite3.Row]:
            return conn.execute("SELECT * FROM correction_factor WHERE id = 1;").fetchone()

        row = await self._db.read(_select)
        if row is None:
            return CorrectionFactor()
        return CorrectionFactor(
            value=row["value"],
            sample_count=row["sample_count"],
            computed_at=parse_iso(row["computed_at"]),
            version=row["version"],
            mean_abs_error=row["mean_abs_error"],
        )

    async def replace(
        self,
        value: float,
        sample_count: int,
        *,
        mean_abs_error: Optional[float] = None,
        computed_at: Optional[datetime] = None,
    ) -> CorrectionFactor:
        stamp = computed_at or utc_now()

        def _upsert(conn: sqlite3.Connection) -> int:
            row = conn.execute("SELECT version FROM correction_factor WHERE id = 1;").fetchone()
            version = (row["version"] if row else 0) + 1
            conn.execute(
                """
                INSERT INTO correction_factor (id, value, sample_count, mean_abs_error, computed_at, version)
                VALUES (1, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    value=excluded.value,
                    sample_count=excluded.sample_count,
                    mean_abs_error=excluded.mean_abs_error,
                    computed_at=excluded.computed_at,
                    version=excluded.version;
                """,
                (value, sample_count, mean_abs_error, isoformat(stamp), version),
            )
            return version

        version = await self._db.write(_upsert)
        logger.info("Correction factor v%d = %.3f from %d sample(s)", version, value, sample_count)
        return CorrectionFactor(
            value=value,
            sample_count=sample_count,
            computed_at=stamp,
            version=version,
            mean_abs_error=mean_abs_error,
        )

    async def clear(self) -> None:
        await self._db.write(lambda conn: conn.execute("DELETE FROM correction_factor;"))


correction_record = CorrectionFactorRecord(database)

__all__ = ["CorrectionFactor", "CorrectionFactorRecord", "NEUTRAL_FACTOR", "correction_record"]
