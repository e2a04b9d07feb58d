from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone

from hydrowatch.config import FEED_B, FieldMapping
from hydrowatch.fetchers.imgw import parse_float
from hydrowatch.models import SOURCE_B, StationCoordinate

logger = logging.getLogger(__name__)


class CoordinateCache:
    """Thread-safe station_id -> coordinates map, filled from raw Feed B records."""

    def __init__(self, mapping: FieldMapping = FEED_B.mapping) -> None:
        self._lock = threading.Lock()
        self._mapping = mapping
        self._coords: dict[str, StationCoordinate] = {}
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def count(self) -> int:
        with self._lock:
            return len(self._coords)

    def initialize_from_feed_b(self, records: list[dict]) -> None:
        """Store coordinates of every record with a finite longitude and latitude.

        Malformed records are skipped. Re-running with the same records leaves
        the cache unchanged apart from last_updated.
        """
        m = self._mapping
        now = datetime.now(timezone.utc)
        parsed: dict[str, StationCoordinate] = {}
        for record in records:
            if not isinstance(record, dict):
                continue
            station_id = str(record.get(m.station_id) or "").strip()
            lon = parse_float(record.get(m.longitude)) if m.longitude else None
            lat = parse_float(record.get(m.latitude)) if m.latitude else None
            if not station_id or lon is None or lat is None:
                continue
            parsed[station_id] = StationCoordinate(
                station_id=station_id,
                longitude=lon,
                latitude=lat,
                last_updated=now,
                source=SOURCE_B,
            )
        with self._lock:
            self._coords.update(parsed)
            self._initialized = True
        logger.info("Coordinate cache: %d of %d records usable, %d total",
                    len(parsed), len(records), self.count)

    def refresh_all(self, records: list[dict]) -> None:
        """Drop every cached coordinate and rebuild from records."""
        with self._lock:
            self._coords.clear()
        self.initialize_from_feed_b(records)

    def get(self, station_id: str) -> StationCoordinate | None:
        with self._lock:
            return self._coords.get(station_id)

    def all(self) -> list[StationCoordinate]:
        with self._lock:
            return list(self._coords.values())

    def stats(self) -> dict:
        with self._lock:
            last = max((c.last_updated for c in self._coords.values()), default=None)
            return {
                "total_stations": len(self._coords),
                "initialized": self._initialized,
                "last_updated": last.strftime("%Y-%m-%dT%H:%M:%SZ") if last else None,
            }
