from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter
from pydantic import BaseModel

from services.calibration import MAX_OFFSET, MIN_OFFSET, calibration_store
from services.errors import HubError
from .dependencies import http_error

logger = logging.getLogger("jollykite.hub.api.calibration")

router = APIRouter(prefix="/calibration", tags=["calibration"])


class CalibrationPayload(BaseModel):
    # Validated by the store so out-of-range values answer 400 rather than 422
    windDirOffset: Any


@router.get("")
async def get_calibration():
    try:
        offset = await calibration_store.get_offset()
    except HubError as exc:
        raise http_error(exc) from exc
    return {"windDirOffset": offset, "min": MIN_OFFSET, "max": MAX_OFFSET}


@router.put("")
async def set_calibration(payload: CalibrationPayload):
    try:
        offset = await calibration_store.set_offset(payload.windDirOffset)
    except HubError as exc:
        logger.info("Rejected direction offset %r: %s", payload.windDirOffset, exc)
        raise http_error(exc) from exc
    return {"success": True, "windDirOffset": offset}
