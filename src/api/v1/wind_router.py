from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator

from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import StreamingResponse

from config import settings
from services.collector import collection_cycle
from services.errors import HubError
from services.event_bus import EventMessage, live_hub, wind_update_payload
from services.forecast import forecast_engine
from services.measurements import measurement_store
from .dependencies import http_error

logger = logging.getLogger("jollykite.hub.api.wind")

router = APIRouter(prefix="/wind", tags=["wind"])


@router.get("/current")
async def get_current():
    try:
        latest = await measurement_store.latest()
        trend = await measurement_store.trend()
    except HubError as exc:
        raise http_error(exc) from exc
    if latest is None:
        raise HTTPException(status_code=404, detail="No wind data yet")
    return {"data": latest.to_payload(), "trend": trend.to_payload()}


@router.get("/trend")
async def get_trend():
    try:
        trend = await measurement_store.trend()
    except HubError as exc:
        raise http_error(exc) from exc
    return trend.to_payload()


@router.get("/history")
async def get_history(
    hours: float = Query(default=24.0, ge=1.0, le=168.0, description="Lookback window in hours"),
):
    try:
        samples = await measurement_store.list_hours(hours)
    except HubError as exc:
        raise http_error(exc) from exc
    return {
        "requested_hours": hours,
        "count": len(samples),
        "data": [sample.to_payload() for sample in samples],
    }


@router.get("/history/week")
async def get_week_history(days: int = Query(default=7, ge=1, le=14)):
    try:
        grouped = await measurement_store.week_history(days)
    except HubError as exc:
        raise http_error(exc) from exc
    return {"days": days, "data": grouped}


@router.get("/statistics")
async def get_statistics(hours: float = Query(default=24.0, ge=1.0, le=168.0)):
    try:
        return await measurement_store.statistics(hours)
    except HubError as exc:
        raise http_error(exc) from exc


@router.get("/today/gradient")
async def get_today_gradient(
    start: int = Query(default=6, ge=0, le=23),
    end: int = Query(default=20, ge=0, le=23),
    interval: int = Query(default=5, ge=1, le=60, description="Bucket width in minutes"),
):
    if end < start:
        raise HTTPException(status_code=422, detail="end must not be before start")
    try:
        buckets = await measurement_store.today_intervals(start, end, interval)
    except HubError as exc:
        raise http_error(exc) from exc
    return {"start": start, "end": end, "interval": interval, "data": buckets}


@router.get("/today/full")
async def get_today_full():
    try:
        return await forecast_engine.today_timeline()
    except HubError as exc:
        raise http_error(exc) from exc


@router.get("/stations")
async def get_stations():
    try:
        latest = {m.station_id: m for m in await measurement_store.latest_per_station()}
    except HubError as exc:
        raise http_error(exc) from exc
    return {
        "stations": [
            {
                "id": station.id,
                "name": station.name,
                "kind": station.kind,
                "lat": station.lat,
                "lon": station.lon,
                "primary": station.primary,
                "latest": latest[station.id].to_payload() if station.id in latest else None,
            }
            for station in settings.stations
        ]
    }


@router.post("/collect")
async def collect_now():
    try:
        outcome = await collection_cycle.run()
    except HubError as exc:
        raise http_error(exc) from exc
    if outcome.measurement is None:
        raise HTTPException(status_code=503, detail="No station returned data")
    return outcome.to_payload()


@router.get(
    "/stream",
    response_class=StreamingResponse,
    summary="Server-sent events stream of wind updates",
)
async def stream_wind() -> StreamingResponse:
    async def _event_source() -> AsyncIterator[bytes]:
        subscription = await live_hub.subscribe()
        try:
            yield (await _initial_message()).to_sse()
            while not subscription.closed:
                try:
                    message = await asyncio.wait_for(
                        subscription.get(),
                        timeout=settings.stream_keepalive_seconds,
                    )
                    yield message.to_sse()
                except asyncio.TimeoutError:
                    yield b": keep-alive\n\n"
        except asyncio.CancelledError:  # pragma: no cover - client went away or server shutdown
            raise
        finally:
            await subscription.close()

    headers = {
        "Cache-Control": "no-cache",
        "X-Accel-Buffering": "no",
    }
    return StreamingResponse(_event_source(), media_type="text/event-stream", headers=headers)


async def _initial_message() -> EventMessage:
    try:
        latest = await measurement_store.latest()
        trend = await measurement_store.trend()
    except HubError as exc:
        logger.warning("Stream opened without initial data: %s", exc)
        return EventMessage(type="wind_update", data=wind_update_payload(None, None), id="0")
    return EventMessage(
        type="wind_update",
        data=wind_update_payload(latest.to_payload() if latest else None, trend.to_payload()),
        id="0",
    )


__all__ = ["router"]
