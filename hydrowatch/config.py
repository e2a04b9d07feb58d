from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True, slots=True)
class FieldMapping:
    """Raw field names of one upstream feed."""

    station_id: str
    name: str
    water_level: str
    water_level_date: str
    flow: Optional[str] = None
    flow_date: Optional[str] = None
    river: Optional[str] = None
    region: Optional[str] = None
    longitude: Optional[str] = None
    latitude: Optional[str] = None


@dataclass(frozen=True, slots=True)
class FeedConfig:
    source: str  # "A" or "B"
    url: str
    mapping: FieldMapping


FEED_A = FeedConfig(
    source="A",
    url=os.getenv("FEED_A_URL", "https://danepubliczne.imgw.pl/api/data/hydro"),
    mapping=FieldMapping(
        station_id="id_stacji",
        name="stacja",
        water_level="stan_wody",
        water_level_date="stan_wody_data_pomiaru",
        river="rzeka",
        region="województwo",
    ),
)

FEED_B = FeedConfig(
    source="B",
    url=os.getenv("FEED_B_URL", "https://danepubliczne.imgw.pl/api/data/hydro2"),
    mapping=FieldMapping(
        station_id="kod_stacji",
        name="nazwa_stacji",
        water_level="stan",
        water_level_date="stan_data",
        flow="przelyw",
        flow_date="przeplyw_data",
        river="rzeka",
        region="wojewodztwo",
        longitude="lon",
        latitude="lat",
    ),
)

HTTP_TIMEOUT_SECONDS = float(os.getenv("HTTP_TIMEOUT_SECONDS", "15"))
USER_AGENT = "hydrowatch/1.0"

# Feed timestamps carry no offset; they are local station time.
FEED_TIMEZONE = os.getenv("FEED_TIMEZONE", "Europe/Warsaw")

VISIBILITY_FILE = os.getenv("VISIBILITY_FILE", "/data/station-visibility.json")
THRESHOLDS_FILE = os.getenv("THRESHOLDS_FILE", "/data/thresholds.json")
SETTINGS_FILE = os.getenv("SETTINGS_FILE", "/data/settings.json")

STATIONS_CACHE_KEY = "stations"

SERVER_HOST = "0.0.0.0"
SERVER_PORT = int(os.getenv("PORT", "8080"))

APP_VERSION = "1.0.0"
