from datetime import datetime, timedelta, timezone

import pytest

from hydrowatch.coordinates import CoordinateCache
from hydrowatch.models import Known
from hydrowatch.reconciler import StationReconciler
from hydrowatch.service import StationService
from hydrowatch.thresholds import Thresholds, ThresholdTable
from hydrowatch.ttl_cache import TTLCache
from hydrowatch.visibility import VisibilityFilter, VisibilityStore


def iso_ago(**kwargs) -> str:
    return (datetime.now(timezone.utc) - timedelta(**kwargs)).strftime("%Y-%m-%dT%H:%M:%SZ")


class FakeFeed:
    """Stands in for a live feed: returns canned records or raises."""

    def __init__(self, records: list[dict]) -> None:
        self.records = records
        self.calls = 0
        self.error: Exception | None = None

    async def __call__(self) -> list[dict]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.records)


@pytest.fixture
def feed_a() -> FakeFeed:
    return FakeFeed([
        {"id_stacji": "150160180", "stacja": "Kraków-Bielany", "rzeka": "Wisła",
         "województwo": "małopolskie", "stan_wody": "550", "stan_wody_data_pomiaru": iso_ago(hours=1)},
        {"id_stacji": "152210170", "stacja": "Warszawa-Bulwary", "rzeka": "Wisła",
         "województwo": "mazowieckie", "stan_wody": "210", "stan_wody_data_pomiaru": iso_ago(hours=30)},
        {"id_stacji": "149180010", "stacja": "Nowy Targ", "rzeka": "Dunajec",
         "województwo": "małopolskie", "stan_wody": "90", "stan_wody_data_pomiaru": iso_ago(hours=2)},
    ])


@pytest.fixture
def feed_b() -> FakeFeed:
    return FakeFeed([
        {"kod_stacji": "150160180", "nazwa_stacji": "KRAKÓW-BIELANY", "stan": "540",
         "stan_data": iso_ago(hours=5), "lon": "19.8436", "lat": "50.0425"},
        {"kod_stacji": "152210170", "nazwa_stacji": "WARSZAWA-BULWARY", "stan": "215",
         "stan_data": iso_ago(hours=3), "przelyw": "410.2", "lon": "21.0333", "lat": "52.2447"},
        {"kod_stacji": "154180020", "nazwa_stacji": "GDAŃSK", "stan": "650",
         "stan_data": iso_ago(hours=50), "lon": "bad", "lat": "54.35"},
    ])


@pytest.fixture
def service(tmp_path, feed_a, feed_b) -> StationService:
    table = ThresholdTable({
        "150160180": Thresholds(warning=Known(500), alarm=Known(600)),
        "154180020": Thresholds(warning=Known(500), alarm=Known(600)),
    })
    return StationService(
        fetch_a=feed_a,
        fetch_b=feed_b,
        reconciler=StationReconciler(CoordinateCache(), table),
        visibility=VisibilityFilter(VisibilityStore(str(tmp_path / "station-visibility.json"))),
        cache=TTLCache(),
    )
