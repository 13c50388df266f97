from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
import logging, time

from config import settings
from api.v1.dependencies import http_error
from api.v1.router import router as v1_router
from services.errors import HubError
from services.event_bus import live_hub
from services.forecast import forecast_engine
from services.notifications import notification_gate
from services.scheduler import build_default_jobs, scheduler
from services.stations import station_aggregator

logger = logging.getLogger("jollykite.hub")
access_logger = logging.getLogger("jollykite.hub.http")
if not logger.handlers:
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Wind telemetry, forecast and alert hub for the spot.",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def time_requests(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000.0
        # The SSE stream stays open; its line is written when the response starts
        access_logger.info(
            "%s %s -> %s (%.1f ms)", request.method, request.url.path, response.status_code, elapsed_ms
        )
        return response

    @app.exception_handler(HubError)
    async def hub_error_handler(request: Request, exc: HubError):
        mapped = http_error(exc)
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse({"detail": mapped.detail}, status_code=mapped.status_code)

    @app.get("/", tags=["meta"])
    async def root():
        return {
            "name": settings.app_name,
            "version": settings.app_version,
            "api": "/api/v1",
            "stream": "/api/v1/wind/stream",
        }

    @app.get("/health", tags=["meta"])
    async def health():
        return JSONResponse(
            {
                "status": "ok",
                "version": settings.app_version,
                "scheduler": scheduler.running,
                "streamSubscribers": live_hub.subscriber_count,
            }
        )

    app.include_router(v1_router)

    @app.on_event("startup")
    async def start_jobs():
        for job in build_default_jobs():
            scheduler.add(job)
        if not settings.scheduler_enabled:
            logger.info("Scheduler disabled (set SCHEDULER_ENABLED=true to collect automatically).")
            return
        await scheduler.start()

    @app.on_event("shutdown")
    async def stop_jobs():
        await scheduler.stop()
        for service in (station_aggregator, forecast_engine, notification_gate):
            await service.close()

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=settings.port, log_level="debug" if settings.debug else "info")
