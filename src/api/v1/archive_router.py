from __future__ import annotations

from datetime import date

from fastapi import APIRouter, HTTPException, Query

from services.archive import archive_compactor
from services.errors import HubError
from .dependencies import http_error

router = APIRouter(prefix="/archive", tags=["archive"])


@router.get("/days")
async def get_archived_days(days: int = Query(default=30, ge=1, le=365)):
    try:
        rows = await archive_compactor.archived_days(days)
    except HubError as exc:
        raise http_error(exc) from exc
    return {"days": days, "count": len(rows), "data": [row.to_payload() for row in rows]}


@router.get("/day/{day}")
async def get_archived_day(
    day: str,
    start: int = Query(default=6, ge=0, le=23),
    end: int = Query(default=19, ge=0, le=23),
):
    try:
        parsed = date.fromisoformat(day)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail="day must be YYYY-MM-DD") from exc
    try:
        rows = await archive_compactor.archived_day(parsed, start, end)
    except HubError as exc:
        raise http_error(exc) from exc
    return {"date": parsed.isoformat(), "count": len(rows), "data": [row.to_payload() for row in rows]}


@router.get("/statistics")
async def get_archive_statistics(days: int = Query(default=30, ge=1, le=365)):
    try:
        return await archive_compactor.statistics(days)
    except HubError as exc:
        raise http_error(exc) from exc


@router.get("/patterns")
async def get_hourly_patterns(days: int = Query(default=30, ge=1, le=365)):
    try:
        pattern = await archive_compactor.hourly_pattern(days)
    except HubError as exc:
        raise http_error(exc) from exc
    return {"days": days, "data": pattern}


@router.post("/hourly")
async def run_hourly_rollup():
    try:
        rows = await archive_compactor.run_hourly()
    except HubError as exc:
        raise http_error(exc) from exc
    return {"archived": len(rows), "data": [row.to_payload() for row in rows]}
