from __future__ import annotations

from fastapi import APIRouter, Query

from services.accuracy import accuracy_evaluator
from services.errors import HubError
from services.forecast import forecast_engine
from .dependencies import http_error

router = APIRouter(prefix="/forecast", tags=["forecast"])


@router.get("")
async def get_forecast(raw: bool = Query(default=False, description="Skip the correction factor")):
    try:
        entries = await (forecast_engine.fetch_raw() if raw else forecast_engine.fetch())
    except HubError as exc:
        raise http_error(exc) from exc
    return {
        "count": len(entries),
        "corrected": not raw,
        "data": [entry.to_payload() for entry in entries],
    }


@router.get("/accuracy")
async def get_accuracy():
    try:
        return await accuracy_evaluator.metrics()
    except HubError as exc:
        raise http_error(exc) from exc


@router.post("/snapshots")
async def capture_snapshots():
    try:
        saved = await accuracy_evaluator.capture_snapshots()
    except HubError as exc:
        raise http_error(exc) from exc
    return {"saved": saved}


@router.post("/evaluate")
async def evaluate_accuracy():
    try:
        result = await accuracy_evaluator.evaluate()
    except HubError as exc:
        raise http_error(exc) from exc
    return result.to_payload()
