from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from hydrowatch.fetchers.imgw import parse_float
from hydrowatch.models import (
    STATUS_ALARM,
    STATUS_NORMAL,
    STATUS_UNKNOWN,
    STATUS_WARNING,
    UNSET,
    Known,
    Level,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Thresholds:
    warning: Level = UNSET
    alarm: Level = UNSET


@dataclass(frozen=True, slots=True)
class Classification:
    warning_level: Level
    alarm_level: Level
    status: str
    message: str


class ThresholdTable:
    """Static per-station warning/alarm levels (cm)."""

    def __init__(self, levels: Mapping[str, Thresholds] | None = None) -> None:
        self._levels: dict[str, Thresholds] = dict(levels or {})

    def __len__(self) -> int:
        return len(self._levels)

    def get(self, station_id: str) -> Thresholds | None:
        return self._levels.get(station_id)

    def classify(self, station_id: str, water_level: Optional[float]) -> Classification:
        """Classify a water level against the station's thresholds.

        alarm if level >= alarm level, else warning if level >= warning level,
        else normal. unknown when the level is missing or the station has no
        configured thresholds.
        """
        t = self._levels.get(station_id)
        if t is None:
            return Classification(UNSET, UNSET, STATUS_UNKNOWN, "No thresholds configured")
        if water_level is None:
            return Classification(t.warning, t.alarm, STATUS_UNKNOWN, "No water level reading")
        if not isinstance(t.warning, Known) and not isinstance(t.alarm, Known):
            return Classification(t.warning, t.alarm, STATUS_UNKNOWN, "No thresholds configured")

        if isinstance(t.alarm, Known) and water_level >= t.alarm.value:
            return Classification(
                t.warning, t.alarm, STATUS_ALARM,
                f"Alarm level exceeded by {water_level - t.alarm.value:g} cm",
            )
        if isinstance(t.warning, Known) and water_level >= t.warning.value:
            return Classification(
                t.warning, t.alarm, STATUS_WARNING,
                f"Warning level exceeded by {water_level - t.warning.value:g} cm",
            )
        return Classification(t.warning, t.alarm, STATUS_NORMAL, "Water level normal")


def _level(val) -> Level:
    num = parse_float(val)
    return Known(num) if num is not None else UNSET


def load(path: str) -> ThresholdTable:
    """Load the threshold table from JSON: {"<station id>": {"warning": .., "alarm": ..}}.

    A missing or unreadable file gives an empty table.
    """
    p = Path(path)
    if not p.exists():
        logger.info("No thresholds file at %s, every station classifies as unknown", path)
        return ThresholdTable()
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        logger.exception("Failed to load thresholds from %s, using an empty table", path)
        return ThresholdTable()

    levels: dict[str, Thresholds] = {}
    for station_id, entry in data.items() if isinstance(data, dict) else ():
        if not isinstance(entry, dict):
            continue
        levels[str(station_id)] = Thresholds(
            warning=_level(entry.get("warning")),
            alarm=_level(entry.get("alarm")),
        )
    logger.info("Loaded thresholds for %d stations from %s", len(levels), path)
    return ThresholdTable(levels)
