from __future__ import annotations

from datetime import date, datetime, timezone, tzinfo
from typing import Optional
from zoneinfo import ZoneInfo

from config import settings


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(timestamp: Optional[datetime] = None) -> datetime:
    """Normalize timestamps so everything is stored in UTC."""
    if timestamp is None:
        return utc_now()
    if timestamp.tzinfo is None:
        return timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc)


def isoformat(timestamp: datetime) -> str:
    """Serialize timestamps with millisecond precision and trailing Z."""
    iso = ensure_utc(timestamp).isoformat(timespec="milliseconds")
    if iso.endswith("+00:00"):
        return iso[:-6] + "Z"
    return iso


def parse_iso(value: str) -> datetime:
    return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))


def spot_tz() -> tzinfo:
    return ZoneInfo(settings.timezone)


def to_local(timestamp: datetime) -> datetime:
    return ensure_utc(timestamp).astimezone(spot_tz())


def local_today(now: Optional[datetime] = None) -> date:
    return to_local(now or utc_now()).date()


def in_window(timestamp: datetime, start_hour: int, end_hour: int) -> bool:
    """True when the local hour of ``timestamp`` lies in ``[start_hour, end_hour)``."""
    hour = to_local(timestamp).hour
    return start_hour <= hour < end_hour


def in_operating_window(timestamp: Optional[datetime] = None) -> bool:
    return in_window(timestamp or utc_now(), settings.operating_start_hour, settings.operating_end_hour)


__all__ = [
    "ensure_utc",
    "in_operating_window",
    "in_window",
    "isoformat",
    "local_today",
    "parse_iso",
    "spot_tz",
    "to_local",
    "utc_now",
]
