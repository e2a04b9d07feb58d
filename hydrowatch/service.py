from __future__ import annotations

import asyncio
import logging
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from hydrowatch.config import FEED_A, FEED_B, STATIONS_CACHE_KEY, FeedConfig
from hydrowatch.coordinates import CoordinateCache
from hydrowatch.fetchers.imgw import parse_records
from hydrowatch.models import ALARM_STATUSES, FRESH, SOURCE_A, SOURCE_B, STALE, ReconciledStation
from hydrowatch.reconciler import StationReconciler
from hydrowatch.settings_store import Settings
from hydrowatch.ttl_cache import TTLCache
from hydrowatch.visibility import VisibilityFilter

logger = logging.getLogger(__name__)

RawFetch = Callable[[], Awaitable[list[dict]]]


class StationService:
    """Fetch → reconcile → filter pipeline behind a TTL cache.

    Owns no global state: every collaborator is passed in by the
    composition root.
    """

    def __init__(
        self,
        fetch_a: RawFetch,
        fetch_b: RawFetch,
        reconciler: StationReconciler,
        visibility: VisibilityFilter,
        cache: TTLCache,
        settings: Settings | None = None,
        feed_a: FeedConfig = FEED_A,
        feed_b: FeedConfig = FEED_B,
    ) -> None:
        self._fetch_a = fetch_a
        self._fetch_b = fetch_b
        self.reconciler = reconciler
        self.coordinates: CoordinateCache = reconciler.coordinates
        self.visibility = visibility
        self.cache = cache
        self.settings = settings or Settings()
        self._feeds = {SOURCE_A: feed_a, SOURCE_B: feed_b}
        self.source_status: dict[str, dict] = {
            SOURCE_A: {"last_fetch": None, "records": 0, "status": "pending", "error": ""},
            SOURCE_B: {"last_fetch": None, "records": 0, "status": "pending", "error": ""},
        }
        self.cache.register(STATIONS_CACHE_KEY, self.load_stations, self.settings.stations_ttl_seconds)

    def apply_settings(self, settings: Settings) -> None:
        self.settings = settings
        self.reconciler.stale_after_hours = settings.stale_after_hours
        self.reconciler.source_b_bias_hours = settings.source_b_bias_hours
        self.cache.register(STATIONS_CACHE_KEY, self.load_stations, settings.stations_ttl_seconds)

    def _record_status(self, source: str, result: Any) -> list[dict]:
        ts = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        if isinstance(result, BaseException):
            logger.warning("Feed %s fetch failed, treating as empty: %s", source, result)
            self.source_status[source] = {
                "last_fetch": ts, "records": 0, "status": "error", "error": str(result),
            }
            return []
        self.source_status[source] = {
            "last_fetch": ts, "records": len(result), "status": "ok", "error": "",
        }
        return result

    async def fetch_raw(self) -> tuple[list[dict], list[dict]]:
        """Fetch both feeds concurrently. A failed feed yields an empty batch."""
        raw_a, raw_b = await asyncio.gather(self._fetch_a(), self._fetch_b(), return_exceptions=True)
        return self._record_status(SOURCE_A, raw_a), self._record_status(SOURCE_B, raw_b)

    async def load_stations(self) -> list[ReconciledStation]:
        """One full pass: fetch both feeds, reconcile, drop hidden stations."""
        raw_a, raw_b = await self.fetch_raw()
        if raw_b and not self.coordinates.initialized:
            self.coordinates.initialize_from_feed_b(raw_b)
        stations = self.reconciler.reconcile(
            parse_records(raw_a, self._feeds[SOURCE_A]),
            parse_records(raw_b, self._feeds[SOURCE_B]),
        )
        visible = self.visibility.filter_visible(stations)
        logger.info("Visible stations: %d (hidden: %d)", len(visible), len(stations) - len(visible))
        return visible

    async def initialize_coordinates(self) -> int:
        """Populate the coordinate cache from a live Feed B fetch."""
        try:
            raw_b = await self._fetch_b()
        except Exception:
            logger.exception("Failed to fetch Feed B for coordinate initialization")
            return 0
        self.coordinates.initialize_from_feed_b(raw_b)
        return self.coordinates.count

    async def refresh_coordinates(self) -> int:
        """Rebuild the coordinate cache from a live Feed B fetch. Errors propagate."""
        raw_b = await self._fetch_b()
        self.coordinates.refresh_all(raw_b)
        return self.coordinates.count

    # Consumer queries

    async def get_all(self) -> list[ReconciledStation]:
        return await self.cache.get_or_fetch(
            STATIONS_CACHE_KEY, self.load_stations, self.settings.stations_ttl_seconds,
        )

    async def get_for_map(self) -> list[ReconciledStation]:
        return [s for s in await self.get_all() if s.has_coordinates]

    async def get_by_id(self, station_id: str) -> ReconciledStation | None:
        for s in await self.get_all():
            if s.id == station_id:
                return s
        return None

    async def get_stats(self) -> dict:
        stations = await self.get_all()
        freshness = Counter(s.data_freshness for s in stations)
        sources = Counter(s.primary_source for s in stations)
        alarms = Counter(s.alarm_status for s in stations)
        return {
            "total": len(stations),
            "fresh": freshness[FRESH],
            "stale": freshness[STALE],
            "per_source": {SOURCE_A: sources[SOURCE_A], SOURCE_B: sources[SOURCE_B]},
            "with_coordinates": sum(1 for s in stations if s.has_coordinates),
            "per_alarm_status": {status: alarms[status] for status in ALARM_STATUSES},
            "average_hours_old": round(sum(s.hours_old for s in stations) / len(stations)) if stations else 0,
        }

    # Admin operations

    def set_visibility(self, station_id: str, visible: bool, reason: str | None = None,
                       actor: str | None = None) -> None:
        self.visibility.set_visibility(station_id, visible, reason=reason, actor=actor)
        self.cache.invalidate(STATIONS_CACHE_KEY)

    def toggle_visibility(self, station_id: str, reason: str | None = None) -> bool:
        visible = self.visibility.toggle(station_id, reason=reason)
        self.cache.invalidate(STATIONS_CACHE_KEY)
        return visible

    def restore_visibility(self) -> None:
        self.visibility.restore_all()
        self.cache.invalidate(STATIONS_CACHE_KEY)

    async def run_maintenance(self) -> dict:
        """Scheduler hook: evict expired entries, then refresh every known key."""
        cleaned = self.cache.cleanup_expired()
        refreshed = await self.cache.refresh_all()
        return {"cleaned": cleaned, "refreshed": refreshed, "stats": self.cache.stats()}
