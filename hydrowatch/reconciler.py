from __future__ import annotations

import logging
import math
from collections import Counter
from datetime import datetime, timezone
from typing import Optional

from hydrowatch.coordinates import CoordinateCache
from hydrowatch.models import (
    COORDS_CACHE,
    COORDS_EMBEDDED,
    COORDS_NONE,
    FRESH,
    SOURCE_A,
    SOURCE_B,
    STALE,
    RawObservation,
    ReconciledStation,
)
from hydrowatch.thresholds import ThresholdTable

logger = logging.getLogger(__name__)

# Age assigned to a record whose timestamp is missing or unparseable.
MAX_AGE_HOURS = 999

DEFAULT_STALE_AFTER_HOURS = 24.0
DEFAULT_SOURCE_B_BIAS_HOURS = 1.0


def age_hours(timestamp: Optional[datetime], now: datetime) -> float:
    """Age of a measurement in hours. Future timestamps count as age 0."""
    if timestamp is None:
        return float(MAX_AGE_HOURS)
    age = (now - timestamp).total_seconds() / 3600.0
    if not math.isfinite(age):
        return float(MAX_AGE_HOURS)
    return max(age, 0.0)


class StationReconciler:
    """Merges one batch from each feed into one ReconciledStation per station id.

    Selection between two records for the same station:
      * if exactly one of them is fresh, it wins;
      * otherwise the fresher one wins, Feed A keeping the station unless
        Feed B is more than `source_b_bias_hours` fresher (ties go to A).
    A station is fresh when its selected measurement is younger than
    `stale_after_hours`.
    """

    def __init__(
        self,
        coordinates: CoordinateCache,
        thresholds: ThresholdTable,
        stale_after_hours: float = DEFAULT_STALE_AFTER_HOURS,
        source_b_bias_hours: float = DEFAULT_SOURCE_B_BIAS_HOURS,
    ) -> None:
        self.coordinates = coordinates
        self.thresholds = thresholds
        self.stale_after_hours = stale_after_hours
        self.source_b_bias_hours = source_b_bias_hours

    def _select(self, a: RawObservation, b: RawObservation, now: datetime) -> tuple[RawObservation, float]:
        age_a = age_hours(a.timestamp, now)
        age_b = age_hours(b.timestamp, now)
        fresh_a = age_a < self.stale_after_hours
        fresh_b = age_b < self.stale_after_hours
        if fresh_a != fresh_b:
            return (a, age_a) if fresh_a else (b, age_b)
        if age_a - age_b > self.source_b_bias_hours:
            return b, age_b
        return a, age_a

    def reconcile(
        self,
        batch_a: list[RawObservation],
        batch_b: list[RawObservation],
        now: datetime | None = None,
    ) -> list[ReconciledStation]:
        """Produce one ReconciledStation for every id present in either batch."""
        now = now or datetime.now(timezone.utc)
        by_a = {r.station_id: r for r in batch_a}
        by_b = {r.station_id: r for r in batch_b}

        stations: list[ReconciledStation] = []
        for station_id in by_a.keys() | by_b.keys():
            a = by_a.get(station_id)
            b = by_b.get(station_id)
            if a is not None and b is not None:
                selected, age = self._select(a, b, now)
                other = b if selected is a else a
            else:
                selected = a if a is not None else b
                other = None
                age = age_hours(selected.timestamp, now)
            stations.append(self._build(selected, other, age))

        summary = Counter(s.data_freshness for s in stations)
        sources = Counter(s.primary_source for s in stations)
        logger.info(
            "Reconciled %d stations (A=%d, B=%d in): fresh=%d stale=%d from_A=%d from_B=%d",
            len(stations), len(by_a), len(by_b),
            summary[FRESH], summary[STALE], sources[SOURCE_A], sources[SOURCE_B],
        )
        return stations

    def _build(self, selected: RawObservation, other: RawObservation | None, age: float) -> ReconciledStation:
        station_id = selected.station_id
        hours_old = int(math.floor(age))
        freshness = FRESH if age < self.stale_after_hours else STALE

        if selected.has_coordinates:
            lon, lat, coord_source = selected.longitude, selected.latitude, COORDS_EMBEDDED
        else:
            cached = self.coordinates.get(station_id)
            if cached is not None:
                lon, lat, coord_source = cached.longitude, cached.latitude, COORDS_CACHE
            else:
                lon, lat, coord_source = None, None, COORDS_NONE

        c = self.thresholds.classify(station_id, selected.water_level)
        message = c.message
        if freshness == STALE:
            message = f"Data stale for {hours_old} hours"

        # Descriptive fields only; measurements always come from the selected record.
        def describe(field: str) -> Optional[str]:
            value = getattr(selected, field)
            if value is None and other is not None:
                value = getattr(other, field)
            return value

        return ReconciledStation(
            id=station_id,
            name=describe("name"),
            water_level=selected.water_level,
            water_level_timestamp=selected.timestamp,
            flow=selected.flow,
            flow_timestamp=selected.flow_timestamp,
            river=describe("river"),
            region=describe("region"),
            longitude=lon,
            latitude=lat,
            coordinate_source=coord_source,
            primary_source=selected.source,
            data_freshness=freshness,
            hours_old=hours_old,
            alarm_status=c.status,
            warning_level=c.warning_level,
            alarm_level=c.alarm_level,
            alarm_message=message,
        )
