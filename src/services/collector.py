"""One collection cycle: stations -> store -> live stream -> notification gate."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from config import settings
from .errors import HubError
from .event_bus import LiveBroadcastHub, live_hub
from .measurements import Measurement, MeasurementStore, measurement_store
from .notifications import GateOutcome, NotificationGate, notification_gate
from .stations import StationAggregator, StationFailure, station_aggregator

logger = logging.getLogger("jollykite.hub.collector")


@dataclass(slots=True)
class CycleOutcome:
    measurement: Optional[Measurement] = None
    station_id: Optional[str] = None
    written: bool = False
    broadcast_to: int = 0
    notification: Optional[GateOutcome] = None
    failures: List[StationFailure] = field(default_factory=list)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "success": self.written,
            "stationId": self.station_id,
            "data": self.measurement.to_payload() if self.measurement else None,
            "written": self.written,
            "broadcastTo": self.broadcast_to,
            "notification": self.notification.to_payload() if self.notification else None,
            "failures": [failure.to_payload() for failure in self.failures],
        }


class CollectionCycle:
    def __init__(
        self,
        aggregator: StationAggregator,
        store: MeasurementStore,
        hub: LiveBroadcastHub,
        gate: NotificationGate,
    ) -> None:
        self._aggregator = aggregator
        self._store = store
        self._hub = hub
        self._gate = gate

    async def run(self, *, now: Optional[datetime] = None) -> CycleOutcome:
        result = await self._aggregator.collect()
        outcome = CycleOutcome(
            measurement=result.measurement,
            station_id=result.station_id,
            failures=list(result.failures),
        )
        if result.measurement is None:
            return outcome

        outcome.written = await self._store.append(result.measurement)
        if not outcome.written:
            logger.info(
                "Reading from %s at %s already stored; skipping broadcast",
                result.station_id,
                result.measurement.timestamp.isoformat(),
            )
            return outcome

        trend = await self._store.trend(now=now)
        outcome.broadcast_to = await self._hub.broadcast_wind_update(
            result.measurement.to_payload(),
            trend.to_payload(),
        )

        try:
            recent = await self._store.last_measurements(settings.notify_sample_count)
            outcome.notification = await self._gate.evaluate(recent, now=now)
        except HubError as exc:
            logger.warning("Notification check failed: %s", exc)

        logger.info(
            "Collected %.1f kn @ %.0f° from %s (%d live subscriber(s))",
            result.measurement.wind_speed,
            result.measurement.wind_direction,
            result.station_id,
            outcome.broadcast_to,
        )
        return outcome


collection_cycle = CollectionCycle(station_aggregator, measurement_store, live_hub, notification_gate)

__all__ = ["CollectionCycle", "CycleOutcome", "collection_cycle"]
