from __future__ import annotations

from typing import Dict

from fastapi import APIRouter
from pydantic import BaseModel, Field

from services.errors import HubError
from services.notifications import notification_gate
from .dependencies import http_error

router = APIRouter(prefix="/notifications", tags=["notifications"])


class SubscriptionPayload(BaseModel):
    endpoint: str = Field(min_length=1)
    keys: Dict[str, str] = Field(default_factory=dict)


class UnsubscribePayload(BaseModel):
    endpoint: str = Field(min_length=1)


@router.post("/subscribe", status_code=201)
async def subscribe(payload: SubscriptionPayload):
    try:
        subscription = await notification_gate.subscribe(payload.endpoint, payload.keys)
    except HubError as exc:
        raise http_error(exc) from exc
    return {"success": True, "subscription": subscription.to_payload()}


@router.post("/unsubscribe")
async def unsubscribe(payload: UnsubscribePayload):
    try:
        removed = await notification_gate.unsubscribe(payload.endpoint)
    except HubError as exc:
        raise http_error(exc) from exc
    return {"success": True, "removed": removed}


@router.get("/stats")
async def get_stats():
    try:
        return await notification_gate.stats()
    except HubError as exc:
        raise http_error(exc) from exc
