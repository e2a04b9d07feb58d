from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Union

SOURCE_A = "A"
SOURCE_B = "B"

FRESH = "fresh"
STALE = "stale"

COORDS_EMBEDDED = "embedded"
COORDS_CACHE = "cache"
COORDS_NONE = "none"

STATUS_NORMAL = "normal"
STATUS_WARNING = "warning"
STATUS_ALARM = "alarm"
STATUS_UNKNOWN = "unknown"
ALARM_STATUSES = (STATUS_NORMAL, STATUS_WARNING, STATUS_ALARM, STATUS_UNKNOWN)


@dataclass(frozen=True, slots=True)
class Known:
    """A configured threshold value."""

    value: float


@dataclass(frozen=True, slots=True)
class Unset:
    """Marker for a threshold that is not configured."""


UNSET = Unset()
Level = Union[Known, Unset]


def level_to_api(level: Level) -> Union[float, str]:
    if isinstance(level, Known):
        return float(level.value)
    return "undefined"


def _fmt_time(value: Optional[datetime]) -> Optional[str]:
    return value.strftime("%Y-%m-%dT%H:%M:%SZ") if value is not None else None


@dataclass(slots=True)
class RawObservation:
    """One record from a single feed, after field mapping."""

    station_id: str
    source: str  # SOURCE_A or SOURCE_B
    name: Optional[str] = None
    timestamp: Optional[datetime] = None  # None when missing or unparseable
    water_level: Optional[float] = None
    flow: Optional[float] = None
    flow_timestamp: Optional[datetime] = None
    river: Optional[str] = None
    region: Optional[str] = None
    longitude: Optional[float] = None
    latitude: Optional[float] = None

    @property
    def has_coordinates(self) -> bool:
        return self.longitude is not None and self.latitude is not None


@dataclass(frozen=True, slots=True)
class StationCoordinate:
    station_id: str
    longitude: float
    latitude: float
    last_updated: datetime
    source: str = SOURCE_B


@dataclass(frozen=True, slots=True)
class ReconciledStation:
    """The merged record for one station produced by a reconciliation pass."""

    id: str
    name: Optional[str]
    water_level: Optional[float]
    water_level_timestamp: Optional[datetime]
    flow: Optional[float]
    flow_timestamp: Optional[datetime]
    river: Optional[str]
    region: Optional[str]
    longitude: Optional[float]
    latitude: Optional[float]
    coordinate_source: str
    primary_source: str
    data_freshness: str
    hours_old: int
    alarm_status: str
    warning_level: Level
    alarm_level: Level
    alarm_message: str

    @property
    def has_coordinates(self) -> bool:
        return self.longitude is not None and self.latitude is not None

    def to_api_dict(self) -> dict[str, Any]:
        """Serialize for the JSON API.

        Timestamps are ISO-8601 UTC, unconfigured thresholds are the string
        "undefined", missing measurements are null.
        """
        return {
            "id": self.id,
            "name": self.name,
            "water_level": self.water_level,
            "water_level_timestamp": _fmt_time(self.water_level_timestamp),
            "flow": self.flow,
            "flow_timestamp": _fmt_time(self.flow_timestamp),
            "river": self.river,
            "region": self.region,
            "longitude": self.longitude,
            "latitude": self.latitude,
            "coordinate_source": self.coordinate_source,
            "primary_source": self.primary_source,
            "data_freshness": self.data_freshness,
            "hours_old": self.hours_old,
            "alarm_status": self.alarm_status,
            "warning_level": level_to_api(self.warning_level),
            "alarm_level": level_to_api(self.alarm_level),
            "alarm_message": self.alarm_message,
        }


@dataclass(slots=True)
class VisibilityRecord:
    station_id: str
    is_visible: bool
    hidden_at: Optional[str] = None  # ISO-8601 UTC
    hidden_by: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "station_id": self.station_id,
            "is_visible": self.is_visible,
            "hidden_at": self.hidden_at,
            "hidden_by": self.hidden_by,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> VisibilityRecord:
        return cls(
            station_id=str(d["station_id"]),
            is_visible=bool(d.get("is_visible", True)),
            hidden_at=d.get("hidden_at"),
            hidden_by=d.get("hidden_by"),
            reason=d.get("reason"),
        )


@dataclass(slots=True)
class CacheEntry:
    key: str
    payload: Any
    fetched_at: float  # epoch seconds
    ttl: float  # seconds

    def age(self, now: float) -> float:
        return now - self.fetched_at

    def is_fresh(self, now: float) -> bool:
        return self.age(now) < self.ttl
