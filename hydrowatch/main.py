from __future__ import annotations

import functools
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import httpx
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from hydrowatch import settings_store, thresholds
from hydrowatch.config import (
    APP_VERSION,
    FEED_A,
    FEED_B,
    SETTINGS_FILE,
    THRESHOLDS_FILE,
    VISIBILITY_FILE,
)
from hydrowatch.coordinates import CoordinateCache
from hydrowatch.exceptions import VisibilityStoreError
from hydrowatch.fetchers.imgw import fetch_feed
from hydrowatch.reconciler import StationReconciler
from hydrowatch.service import StationService
from hydrowatch.ttl_cache import TTLCache
from hydrowatch.visibility import VisibilityFilter, VisibilityStore

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def _now_str() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def build_service(client: httpx.AsyncClient) -> StationService:
    """Wire the production pipeline: live feeds, file-backed stores."""
    settings = settings_store.load(SETTINGS_FILE)
    reconciler = StationReconciler(
        coordinates=CoordinateCache(FEED_B.mapping),
        thresholds=thresholds.load(THRESHOLDS_FILE),
        stale_after_hours=settings.stale_after_hours,
        source_b_bias_hours=settings.source_b_bias_hours,
    )
    return StationService(
        fetch_a=functools.partial(fetch_feed, client, FEED_A),
        fetch_b=functools.partial(fetch_feed, client, FEED_B),
        reconciler=reconciler,
        visibility=VisibilityFilter(VisibilityStore(VISIBILITY_FILE)),
        cache=TTLCache(),
        settings=settings,
    )


class VisibilityUpdate(BaseModel):
    station_id: str = Field(min_length=1)
    is_visible: bool
    reason: Optional[str] = None


class ToggleRequest(BaseModel):
    reason: Optional[str] = None


class SettingsUpdate(BaseModel):
    stations_ttl_seconds: int
    stale_after_hours: float
    source_b_bias_hours: float


def get_service(request: Request) -> StationService:
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Server not ready")
    return service


def create_app(service: StationService | None = None) -> FastAPI:
    """Build the application. A prebuilt service skips live feed wiring."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.start_time = time.monotonic()
        if service is not None:
            app.state.service = service
            service.visibility.initialize()
            yield
            return

        async with httpx.AsyncClient() as client:
            svc = build_service(client)
            svc.visibility.initialize()
            n = await svc.initialize_coordinates()
            logger.info("Startup complete: %d coordinates cached", n)
            app.state.service = svc
            try:
                yield
            finally:
                app.state.service = None

    app = FastAPI(title="Hydrological Station Service", version=APP_VERSION, lifespan=lifespan)
    app.state.start_time = time.monotonic()
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    @app.exception_handler(VisibilityStoreError)
    async def _visibility_store_error(request: Request, exc: VisibilityStoreError):
        logger.error("Visibility store error on %s: %s", request.url.path, exc)
        return JSONResponse(
            status_code=500,
            content={"status": "error", "error": "Visibility store unavailable", "details": str(exc)},
        )

    @app.get("/api/v1/stations")
    async def get_stations(svc: StationService = Depends(get_service)):
        stations = await svc.get_all()
        return {
            "generated": _now_str(),
            "count": len(stations),
            "stations": [s.to_api_dict() for s in stations],
        }

    @app.get("/api/v1/stations/map")
    async def get_stations_for_map(svc: StationService = Depends(get_service)):
        stations = await svc.get_for_map()
        return {
            "generated": _now_str(),
            "count": len(stations),
            "stations": [s.to_api_dict() for s in stations],
        }

    @app.get("/api/v1/stations/{station_id}")
    async def get_station(station_id: str, svc: StationService = Depends(get_service)):
        station = await svc.get_by_id(station_id)
        if station is None:
            raise HTTPException(status_code=404, detail=f"Station {station_id} not found")
        return station.to_api_dict()

    @app.get("/api/v1/stats")
    async def get_stats(svc: StationService = Depends(get_service)):
        return {"generated": _now_str(), "stats": await svc.get_stats()}

    @app.api_route("/api/v1/status", methods=["GET", "HEAD"])
    async def get_status(request: Request, svc: StationService = Depends(get_service)):
        elapsed = time.monotonic() - request.app.state.start_time
        days = int(elapsed // 86400)
        hours = int((elapsed % 86400) // 3600)
        if days > 0:
            uptime_str = f"{days}d {hours}h"
        else:
            minutes = int((elapsed % 3600) // 60)
            uptime_str = f"{hours}h {minutes}m"
        return {
            "uptime": uptime_str,
            "version": APP_VERSION,
            "sources": svc.source_status,
            "coordinates": svc.coordinates.stats(),
            "cache": svc.cache.stats(),
        }

    # Visibility

    @app.get("/api/v1/visibility")
    async def get_visibility(svc: StationService = Depends(get_service)):
        return {
            **svc.visibility.stats(),
            "hidden_stations": [r.to_dict() for r in svc.visibility.list_hidden()],
        }

    @app.post("/api/v1/visibility")
    async def set_visibility(body: VisibilityUpdate, svc: StationService = Depends(get_service)):
        svc.set_visibility(body.station_id, body.is_visible, reason=body.reason, actor="api")
        return {"station_id": body.station_id, "is_visible": body.is_visible, "reason": body.reason}

    @app.post("/api/v1/visibility/restore")
    async def restore_visibility(svc: StationService = Depends(get_service)):
        svc.restore_visibility()
        return svc.visibility.stats()

    @app.post("/api/v1/visibility/{station_id}/toggle")
    async def toggle_visibility(
        station_id: str,
        body: Optional[ToggleRequest] = None,
        svc: StationService = Depends(get_service),
    ):
        visible = svc.toggle_visibility(station_id, reason=body.reason if body else None)
        return {"station_id": station_id, "is_visible": visible}

    # Cache

    @app.get("/api/v1/cache")
    async def cache_stats(svc: StationService = Depends(get_service)):
        return svc.cache.stats()

    @app.get("/api/v1/cache/expired")
    async def cache_expired(svc: StationService = Depends(get_service)):
        expired = svc.cache.expired_keys()
        return {"expired_entries": expired, "count": len(expired)}

    @app.post("/api/v1/cache/refresh")
    async def cache_refresh(key: str = Query(""), svc: StationService = Depends(get_service)):
        if key and key not in svc.cache.registered_keys:
            raise HTTPException(status_code=404, detail=f"Unknown cache key {key}")
        results = await svc.cache.refresh_all([key] if key else None)
        return {"results": results}

    @app.post("/api/v1/cache/clear")
    async def cache_clear(svc: StationService = Depends(get_service)):
        return {"cleared": svc.cache.clear()}

    @app.post("/api/v1/cache/cleanup")
    async def cache_cleanup(svc: StationService = Depends(get_service)):
        return await svc.run_maintenance()

    # Coordinates

    @app.get("/api/v1/coordinates/stats")
    async def coordinates_stats(svc: StationService = Depends(get_service)):
        return svc.coordinates.stats()

    @app.post("/api/v1/coordinates/refresh")
    async def coordinates_refresh(svc: StationService = Depends(get_service)):
        try:
            n = await svc.refresh_coordinates()
        except Exception as exc:
            logger.exception("Coordinate refresh failed")
            raise HTTPException(status_code=502, detail=f"Coordinate refresh failed: {exc}") from exc
        return {"total_stations": n}

    # Settings

    @app.get("/api/v1/settings")
    async def get_settings(svc: StationService = Depends(get_service)):
        return svc.settings

    @app.post("/api/v1/settings")
    async def save_settings(body: SettingsUpdate, svc: StationService = Depends(get_service)):
        settings = settings_store.Settings(**body.model_dump())
        settings.clamp()
        settings_store.save(SETTINGS_FILE, settings)
        svc.apply_settings(settings)
        return settings

    return app


app = create_app()
