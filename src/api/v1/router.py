from fastapi import APIRouter

from config import settings
from .archive_router import router as archive_router
from .calibration_router import router as calibration_router
from .forecast_router import router as forecast_router
from .jobs_router import router as jobs_router
from .notifications_router import router as notifications_router
from .wind_router import router as wind_router

router = APIRouter(prefix="/api/v1", tags=["v1"])
router.include_router(wind_router)
router.include_router(forecast_router)
router.include_router(archive_router)
router.include_router(notifications_router)
router.include_router(calibration_router)
router.include_router(jobs_router)


@router.get("/health")
async def health():
    return {"status": "ok", "version": settings.app_version}


@router.get("/info")
async def info():
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "debug": settings.debug,
        "cors_origins": settings.cors_origins,
        "timezone": settings.timezone,
        "scheduler_enabled": settings.scheduler_enabled,
        "primary_station": settings.primary_station_id,
        "stations": [station.id for station in settings.stations],
    }
