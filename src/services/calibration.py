from __future__ import annotations

import logging
import math
import sqlite3
from typing import Any, Optional

from .clock import isoformat, utc_now
from .database import Database, database
from .errors import ConfigError

logger = logging.getLogger("jollykite.hub.calibration")

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS hub_settings (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );
    """,
)

DIRECTION_OFFSET_KEY = "wind_dir_offset"
MIN_OFFSET = -180
MAX_OFFSET = 180


def apply_offset(direction: Optional[float], offset: float) -> Optional[float]:
    """Rotate a direction by ``offset`` degrees, normalized into [0, 360)."""
    if direction is None:
        return None
    if not offset:
        return direction % 360.0
    return ((direction + offset) % 360.0 + 360.0) % 360.0


def validate_offset(value: Any) -> int:
    if isinstance(value, bool):
        raise ConfigError("Direction offset must be a number")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError("Direction offset must be a number") from exc
    if math.isnan(number) or not MIN_OFFSET <= number <= MAX_OFFSET:
        raise ConfigError(f"Direction offset must be between {MIN_OFFSET} and {MAX_OFFSET} degrees")
    if not number.is_integer():
        raise ConfigError("Direction offset must be a whole number of degrees")
    return int(number)


class CalibrationStore:
    """Persisted wind-direction calibration kept in the key/value table."""

    def __init__(self, db: Database) -> None:
        self._db = db
        self._db.register_schema(*SCHEMA)

    async def get_offset(self) -> int:
        def _select(conn: sqlite3.Connection) -> Optional[str]:
            row = conn.execute("SELECT value FROM hub_settings WHERE key = ?;", (DIRECTION_OFFSET_KEY,)).fetchone()
            return row["value"] if row else None

        raw = await self._db.read(_select)
        if raw is None:
            return 0
        try:
            return int(raw)
        except ValueError:
            logger.warning("Ignoring unreadable direction offset %r", raw)
            return 0

    async def set_offset(self, value: Any) -> int:
        offset = validate_offset(value)

        def _upsert(conn: sqlite3.Connection) -> None:
            conn.execute(
                """
                INSERT INTO hub_settings (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at;
                """,
                (DIRECTION_OFFSET_KEY, str(offset), isoformat(utc_now())),
            )

        await self._db.write(_upsert)
        logger.info("Wind direction offset set to %d°", offset)
        return offset

    async def apply(self, direction: Optional[float]) -> Optional[float]:
        return apply_offset(direction, await self.get_offset())


calibration_store = CalibrationStore(database)

__all__ = ["CalibrationStore", "apply_offset", "calibration_store", "validate_offset"]
