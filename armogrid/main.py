# backend/armogrid/main.py

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from armogrid.core.config import settings

# DB lifecycle
from armogrid.core.database import db, connect_to_mongo, close_mongo_connection

# API routers
from armogrid.api import analytics, auth, meters, power_readings, webhooks

from armogrid.services.iot_client import IotClient, IotClientError
from armogrid.services.meter_monitor import get_monitor_status, start_meter_scheduler
from armogrid.services.notifications import NotificationDispatcher
from armogrid.services.token_cache import AdminTokenCache

logger = logging.getLogger(__name__)

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

app = FastAPI(
    title="Armogrid Meter API",
    version="1.0.0",
    description="Prepaid meter sync, analytics and payment crediting",
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
)

# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning(f"[422] {request.method} {request.url.path}: {exc.errors()}")
    return JSONResponse(status_code=422, content={"detail": exc.errors(), "path": str(request.url.path)})


@app.exception_handler(IotClientError)
async def iot_exception_handler(request: Request, exc: IotClientError):
    # upstream platform failures that no route translated itself
    logger.error(f"[502] {request.method} {request.url.path}: {exc}")
    return JSONResponse(status_code=502, content={"detail": "Meter platform unavailable", "path": str(request.url.path)})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled exception on {request.method} {request.url}")
    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error",
            "path": str(request.url.path),
            "method": request.method,
            "error": str(exc) if settings.DEBUG else None,
        },
    )

# ---------------------------------------------------------------------------
# CORS
# ---------------------------------------------------------------------------
def _build_cors_origins() -> List[str]:
    merged: List[str] = []
    for o in settings.get_cors_origins():
        o = (o or "").strip().rstrip("/")
        if not o:
            continue
        if o == "*":
            logger.warning("CORS_ORIGINS contains '*'. Ignoring '*' and using explicit allow-list.")
            continue
        if o not in merged:
            merged.append(o)
    return merged


cors_origins = _build_cors_origins()
logger.info(f"CORS origins configured: {cors_origins}")

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,     # Authorization Bearer token, not cookies
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.options("/{full_path:path}")
async def preflight(full_path: str, request: Request):
    return Response(status_code=204)

# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------
app.include_router(auth.router, prefix="/api/auth", tags=["auth"])
app.include_router(analytics.router, prefix="/api/admin", tags=["analytics"])
app.include_router(power_readings.router, prefix="/api/admin", tags=["power-readings"])
app.include_router(meters.router, prefix="/api/admin/meters", tags=["meters"])
app.include_router(webhooks.router, prefix="/api/webhook", tags=["webhooks"])

# ---------------------------------------------------------------------------
# Startup / Shutdown
# ---------------------------------------------------------------------------
scheduler = None

@app.on_event("startup")
async def on_startup():
    global scheduler
    logger.info("Starting Armogrid Meter API...")

    app.state.iot_client = IotClient()
    app.state.admin_tokens = AdminTokenCache(
        static_token=settings.IOT_ADMIN_TOKEN,
        username=settings.IOT_ADMIN_USERNAME,
        password=settings.IOT_ADMIN_PASSWORD,
        ttl_hours=settings.IOT_TOKEN_TTL_HOURS,
    )
    app.state.dispatcher = NotificationDispatcher(settings)

    try:
        await connect_to_mongo()
        logger.info("MongoDB connected")
    except Exception as e:
        logger.exception(f"MongoDB connection failed: {e}")
        return

    try:
        scheduler = start_meter_scheduler(db, app.state.iot_client, app.state.dispatcher, settings)
    except Exception as e:
        logger.warning(f"Meter scheduler not started: {e}")

    logger.info(f"Startup complete. ENV={settings.ENVIRONMENT}")

@app.on_event("shutdown")
async def on_shutdown():
    global scheduler

    try:
        if scheduler:
            scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
    except Exception as e:
        logger.warning(f"Error stopping scheduler: {e}")

    dispatcher = getattr(app.state, "dispatcher", None)
    if dispatcher is not None:
        await dispatcher.drain()

    client = getattr(app.state, "iot_client", None)
    if client is not None:
        await client.close()

    try:
        await close_mongo_connection()
        logger.info("MongoDB closed")
    except Exception as e:
        logger.warning(f"Mongo close failed: {e}")

    logger.info("Shutdown complete")

# ---------------------------------------------------------------------------
# Root / Health
# ---------------------------------------------------------------------------
@app.get("/")
async def root():
    return {
        "message": "Armogrid Meter API is running",
        "version": "1.0.0",
        "environment": settings.ENVIRONMENT,
        "docs": "/docs" if settings.DEBUG else None,
    }

@app.get("/health")
async def health_check():
    db_status = "unknown"
    try:
        await db.command("ping")
        db_status = "healthy"
    except Exception as e:
        db_status = f"error: {str(e)}"
        logger.error(f"DB health check failed: {e}")

    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "environment": settings.ENVIRONMENT,
        "services": {
            "database": db_status,
            "scheduler": get_monitor_status(scheduler),
        },
    }
