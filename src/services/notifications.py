"""Push subscriptions and the once-a-day "wind is up" notification gate."""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Protocol, Sequence

import httpx

from config import settings
from .clock import ensure_utc, isoformat, local_today, parse_iso, utc_now
from .database import Database, database
from .errors import ConfigError, DeliveryError
from .measurements import Measurement
from .safety import wind_type

logger = logging.getLogger("jollykite.hub.notifications")

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS push_subscriptions (
        endpoint TEXT PRIMARY KEY,
        keys TEXT NOT NULL,
        registered_at TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS notification_log (
        date TEXT PRIMARY KEY,
        sent_count INTEGER NOT NULL,
        sent_at TEXT NOT NULL
    );
    """,
)


@dataclass(slots=True)
class Subscription:
    endpoint: str
    keys: Dict[str, str] = field(default_factory=dict)
    registered_at: datetime = field(default_factory=utc_now)

    def to_payload(self) -> Dict[str, Any]:
        return {"endpoint": self.endpoint, "keys": dict(self.keys), "registeredAt": isoformat(self.registered_at)}


@dataclass(slots=True)
class GateOutcome:
    sent: bool
    reason: str
    delivered: int = 0
    failed: int = 0
    expired: int = 0

    def to_payload(self) -> Dict[str, Any]:
        return {
            "sent": self.sent,
            "reason": self.reason,
            "delivered": self.delivered,
            "failed": self.failed,
            "expired": self.expired,
        }


class PushSender(Protocol):
    async def send(self, subscription: Subscription, payload: Dict[str, Any]) -> None:
        """Deliver ``payload`` or raise :class:`DeliveryError`."""

    async def close(self) -> None:
        ...


class HttpPushSender:
    """Posts the notification JSON straight to the subscription endpoint."""

    def __init__(self, client: Optional[httpx.AsyncClient] = None) -> None:
        self._client = client

    async def _get_http_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=settings.push_request_timeout)
        return self._client

    async def send(self, subscription: Subscription, payload: Dict[str, Any]) -> None:
        client = await self._get_http_client()
        try:
            response = await client.post(
                subscription.endpoint,
                json=payload,
                headers={"TTL": str(settings.push_ttl_seconds)},
            )
        except httpx.HTTPError as exc:
            raise DeliveryError(subscription.endpoint, str(exc) or exc.__class__.__name__) from exc
        if response.status_code >= 400:
            raise DeliveryError(
                subscription.endpoint,
                f"push service answered HTTP {response.status_code}",
                status_code=response.status_code,
            )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def build_payload(latest: Measurement) -> Dict[str, Any]:
    kind = wind_type(latest.wind_direction)
    return {
        "title": "JollyKite: the wind is up!",
        "body": f"{latest.wind_speed:.0f} kn {kind}, gusts {latest.wind_gust or latest.wind_speed:.0f} kn",
        "tag": "wind-alert",
        "data": latest.to_payload(),
    }


class NotificationGate:
    def __init__(self, db: Database, sender: PushSender) -> None:
        self._db = db
        self._sender = sender
        self._lock: Optional[asyncio.Lock] = None
        self._db.register_schema(*SCHEMA)

    @property
    def sender(self) -> PushSender:
        return self._sender

    def use_sender(self, sender: PushSender) -> None:
        self._sender = sender

    @staticmethod
    def conditions_met(recent: Sequence[Measurement]) -> bool:
        """True when the last readings are all rideable and close enough together."""
        count = settings.notify_sample_count
        if len(recent) < count:
            return False
        window = sorted(recent, key=lambda m: m.timestamp)[-count:]
        span = window[-1].timestamp - window[0].timestamp
        if span > timedelta(minutes=settings.notify_window_minutes):
            return False
        return all(m.wind_speed >= settings.notify_min_speed for m in window)

    async def evaluate(self, recent: Sequence[Measurement], *, now: Optional[datetime] = None) -> GateOutcome:
        if not self.conditions_met(recent):
            return GateOutcome(sent=False, reason="conditions_not_met")

        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            today = local_today(now)
            if await self.notified_on(today):
                return GateOutcome(sent=False, reason="already_notified")

            subscriptions = await self.list_subscriptions()
            if not subscriptions:
                logger.info("Wind is up but nobody is subscribed")
                return GateOutcome(sent=False, reason="no_subscribers")

            latest = max(recent, key=lambda m: m.timestamp)
            payload = build_payload(latest)
            results = await asyncio.gather(
                *(self._sender.send(sub, payload) for sub in subscriptions),
                return_exceptions=True,
            )

            outcome = GateOutcome(sent=False, reason="delivery_failed")
            for sub, result in zip(subscriptions, results):
                if result is None:
                    outcome.delivered += 1
                elif isinstance(result, DeliveryError) and result.expired:
                    outcome.expired += 1
                    await self.unsubscribe(sub.endpoint)
                    logger.info("Removed expired push endpoint %s", sub.endpoint)
                elif isinstance(result, Exception):
                    outcome.failed += 1
                    logger.warning("Push delivery to %s failed: %s", sub.endpoint, result)
                else:
                    raise result

            if outcome.delivered:
                await self._record_day(today, outcome.delivered, now)
                outcome.sent = True
                outcome.reason = "sent"
            logger.info(
                "Wind notification: %d delivered, %d failed, %d expired",
                outcome.delivered,
                outcome.failed,
                outcome.expired,
            )
            return outcome

    async def notified_on(self, day: date) -> bool:
        def _select(conn: sqlite3.Connection) -> Optional[int]:
            row = conn.execute("SELECT sent_count FROM notification_log WHERE date = ?;", (day.isoformat(),)).fetchone()
            return row["sent_count"] if row else None

        sent_count = await self._db.read(_select)
        return bool(sent_count)

    async def _record_day(self, day: date, sent_count: int, now: Optional[datetime]) -> None:
        def _upsert(conn: sqlite3.Connection) -> None:
            conn.execute(
                """
                INSERT INTO notification_log (date, sent_count, sent_at) VALUES (?, ?, ?)
                ON CONFLICT(date) DO UPDATE SET sent_count = excluded.sent_count, sent_at = excluded.sent_at;
                """,
                (day.isoformat(), sent_count, isoformat(ensure_utc(now))),
            )

        await self._db.write(_upsert)

    async def reset_daily_log(self, today: Optional[date] = None) -> int:
        """Forget every day except ``today`` so the next rideable day notifies again."""
        keep = (today or local_today()).isoformat()

        def _delete(conn: sqlite3.Connection) -> int:
            return conn.execute("DELETE FROM notification_log WHERE date != ?;", (keep,)).rowcount

        removed = await self._db.write(_delete)
        logger.debug("Notification log reset, %d day(s) removed", removed)
        return removed

    async def subscribe(self, endpoint: str, keys: Optional[Dict[str, str]] = None) -> Subscription:
        endpoint = (endpoint or "").strip()
        if not endpoint:
            raise ConfigError("Subscription endpoint is required")
        subscription = Subscription(endpoint=endpoint, keys=dict(keys or {}))

        def _upsert(conn: sqlite3.Connection) -> None:
            conn.execute(
                """
                INSERT INTO push_subscriptions (endpoint, keys, registered_at) VALUES (?, ?, ?)
                ON CONFLICT(endpoint) DO UPDATE SET keys = excluded.keys;
                """,
                (subscription.endpoint, json.dumps(subscription.keys), isoformat(subscription.registered_at)),
            )

        await self._db.write(_upsert)
        logger.info("Push subscription registered")
        return subscription

    async def unsubscribe(self, endpoint: str) -> bool:
        def _delete(conn: sqlite3.Connection) -> int:
            return conn.execute("DELETE FROM push_subscriptions WHERE endpoint = ?;", (endpoint,)).rowcount

        return bool(await self._db.write(_delete))

    async def list_subscriptions(self) -> List[Subscription]:
        def _select(conn: sqlite3.Connection) -> List[Subscription]:
            rows = conn.execute("SELECT * FROM push_subscriptions ORDER BY registered_at ASC, rowid ASC;")
            return [
                Subscription(
                    endpoint=row["endpoint"],
                    keys=json.loads(row["keys"]),
                    registered_at=parse_iso(row["registered_at"]),
                )
                for row in rows
            ]

        return await self._db.read(_select)

    async def stats(self, *, now: Optional[datetime] = None) -> Dict[str, Any]:
        def _counts(conn: sqlite3.Connection) -> tuple[int, Optional[sqlite3.Row]]:
            total = conn.execute("SELECT COUNT(1) FROM push_subscriptions;").fetchone()[0]
            row = conn.execute(
                "SELECT sent_count, sent_at FROM notification_log WHERE date = ?;",
                (local_today(now).isoformat(),),
            ).fetchone()
            return total, row

        total, today_row = await self._db.read(_counts)
        return {
            "totalSubscriptions": total,
            "notifiedToday": bool(today_row and today_row["sent_count"]),
            "sentToday": today_row["sent_count"] if today_row else 0,
            "lastSentAt": today_row["sent_at"] if today_row else None,
        }

    async def close(self) -> None:
        await self._sender.close()
        self._lock = None


notification_gate = NotificationGate(database, HttpPushSender())

__all__ = [
    "GateOutcome",
    "HttpPushSender",
    "NotificationGate",
    "PushSender",
    "Subscription",
    "build_payload",
    "notification_gate",
]
