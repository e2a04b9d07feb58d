from datetime import datetime, timedelta, timezone

from hydrowatch.config import FieldMapping
from hydrowatch.coordinates import CoordinateCache
from hydrowatch.models import UNSET, Known, RawObservation
from hydrowatch.reconciler import MAX_AGE_HOURS, StationReconciler, age_hours
from hydrowatch.thresholds import Thresholds, ThresholdTable

NOW = datetime(2026, 2, 20, 12, 0, tzinfo=timezone.utc)


def _ago(**kwargs) -> datetime:
    return NOW - timedelta(**kwargs)


def _obs(
    sid: str = "S1",
    source: str = "A",
    time: datetime | None = None,
    level: float | None = 300.0,
    lon: float | None = None,
    lat: float | None = None,
    **kwargs,
) -> RawObservation:
    name = kwargs.pop("name", f"Station {sid}")
    return RawObservation(
        station_id=sid,
        source=source,
        name=name,
        timestamp=time,
        water_level=level,
        longitude=lon,
        latitude=lat,
        **kwargs,
    )


def _coords(*records: dict) -> CoordinateCache:
    cache = CoordinateCache(FieldMapping(
        station_id="id", name="name", water_level="level", water_level_date="date",
        longitude="lon", latitude="lat",
    ))
    cache.initialize_from_feed_b(list(records))
    return cache


def _reconciler(coords: CoordinateCache | None = None, table: ThresholdTable | None = None,
                **kwargs) -> StationReconciler:
    return StationReconciler(coords or _coords(), table or ThresholdTable(), **kwargs)


def _one(stations, sid="S1"):
    return [s for s in stations if s.id == sid][0]


def test_only_in_feed_a():
    stations = _reconciler().reconcile([_obs(time=_ago(hours=3))], [], now=NOW)
    s = _one(stations)
    assert s.primary_source == "A"
    assert s.coordinate_source == "none"
    assert s.longitude is None
    assert s.data_freshness == "fresh"
    assert s.hours_old == 3


def test_only_in_feed_b_stale():
    stations = _reconciler().reconcile([], [_obs(source="B", time=_ago(hours=26))], now=NOW)
    s = _one(stations)
    assert s.primary_source == "B"
    assert s.data_freshness == "stale"
    assert s.hours_old == 26
    assert s.alarm_message == "Data stale for 26 hours"


def test_both_feeds_fresh_beats_stale():
    a = _obs(source="A", time=_ago(hours=2), level=100)
    b = _obs(source="B", time=_ago(hours=30), level=200)
    s = _one(_reconciler().reconcile([a], [b], now=NOW))
    assert s.primary_source == "A"
    assert s.data_freshness == "fresh"
    assert s.hours_old == 2
    assert s.water_level == 100


def test_both_feeds_stale_picks_more_recent():
    a = _obs(source="A", time=_ago(hours=40))
    b = _obs(source="B", time=_ago(hours=30))
    s = _one(_reconciler().reconcile([a], [b], now=NOW))
    assert s.data_freshness == "stale"
    assert s.primary_source == "B"
    assert s.hours_old == 30

    a = _obs(source="A", time=_ago(hours=30))
    b = _obs(source="B", time=_ago(hours=40))
    s = _one(_reconciler().reconcile([a], [b], now=NOW))
    assert s.primary_source == "A"
    assert s.hours_old == 30


def test_long_silent_stations_keep_real_age():
    a = _obs(source="A", time=_ago(hours=2000))
    b = _obs(source="B", time=_ago(hours=1500))
    s = _one(_reconciler().reconcile([a], [b], now=NOW))
    assert s.primary_source == "B"
    assert s.hours_old == 1500
    assert s.alarm_message == "Data stale for 1500 hours"


def test_tie_goes_to_a():
    a = _obs(source="A", time=_ago(hours=5))
    b = _obs(source="B", time=_ago(hours=5))
    assert _one(_reconciler().reconcile([a], [b], now=NOW)).primary_source == "A"


def test_source_b_bias():
    a = _obs(source="A", time=_ago(hours=5))
    b = _obs(source="B", time=_ago(hours=4, minutes=30))
    # B only 30 minutes fresher: within the default 1h margin, A keeps it
    assert _one(_reconciler().reconcile([a], [b], now=NOW)).primary_source == "A"
    # with no bias plain min-age applies
    assert _one(_reconciler(source_b_bias_hours=0).reconcile([a], [b], now=NOW)).primary_source == "B"

    b = _obs(source="B", time=_ago(hours=3))
    assert _one(_reconciler().reconcile([a], [b], now=NOW)).primary_source == "B"


def test_bias_never_prefers_stale_over_fresh():
    a = _obs(source="A", time=_ago(hours=24, minutes=20))
    b = _obs(source="B", time=_ago(hours=23, minutes=50))
    s = _one(_reconciler().reconcile([a], [b], now=NOW))
    assert s.primary_source == "B"
    assert s.data_freshness == "fresh"


def test_union_of_ids():
    batch_a = [_obs(sid="A_ONLY", time=_ago(hours=1)), _obs(sid="BOTH", time=_ago(hours=1))]
    batch_b = [_obs(sid="B_ONLY", source="B", time=_ago(hours=1)),
               _obs(sid="BOTH", source="B", time=_ago(hours=1))]
    stations = _reconciler().reconcile(batch_a, batch_b, now=NOW)
    assert sorted(s.id for s in stations) == ["A_ONLY", "BOTH", "B_ONLY"]


def test_empty_batches():
    assert _reconciler().reconcile([], [], now=NOW) == []


def test_malformed_timestamp_is_maximal_age():
    s = _one(_reconciler().reconcile([_obs(time=None)], [], now=NOW))
    assert s.hours_old == MAX_AGE_HOURS
    assert s.data_freshness == "stale"

    a = _obs(source="A", time=None)
    b = _obs(source="B", time=_ago(hours=50))
    assert _one(_reconciler().reconcile([a], [b], now=NOW)).primary_source == "B"


def test_future_timestamp_counts_as_zero():
    assert age_hours(NOW + timedelta(hours=2), NOW) == 0.0


def test_embedded_coordinates():
    coords = _coords({"id": "S1", "lon": "1.0", "lat": "2.0"})
    b = _obs(source="B", time=_ago(hours=1), lon=19.8, lat=50.0)
    s = _one(_reconciler(coords).reconcile([], [b], now=NOW))
    assert s.coordinate_source == "embedded"
    assert (s.longitude, s.latitude) == (19.8, 50.0)


def test_cached_coordinates_for_feed_a():
    coords = _coords({"id": "S1", "lon": "19.1", "lat": "52.0"})
    a = _obs(source="A", time=_ago(hours=1))
    b = _obs(source="B", time=_ago(hours=10), lon=20.0, lat=51.0)
    s = _one(_reconciler(coords).reconcile([a], [b], now=NOW))
    assert s.primary_source == "A"
    assert s.coordinate_source == "cache"
    assert (s.longitude, s.latitude) == (19.1, 52.0)


def test_classification_and_stale_message():
    table = ThresholdTable({"S1": Thresholds(warning=Known(500), alarm=Known(600))})
    fresh = _one(_reconciler(table=table).reconcile([_obs(time=_ago(hours=1), level=550)], [], now=NOW))
    assert fresh.alarm_status == "warning"
    assert fresh.alarm_message.startswith("Warning level exceeded")

    stale = _one(_reconciler(table=table).reconcile([_obs(time=_ago(hours=48), level=650)], [], now=NOW))
    assert stale.alarm_status == "alarm"
    assert stale.warning_level == Known(500)
    assert stale.alarm_level == Known(600)
    assert stale.alarm_message == "Data stale for 48 hours"


def test_unset_levels_serialize_as_undefined():
    s = _one(_reconciler().reconcile([_obs(time=_ago(hours=1))], [], now=NOW))
    assert s.warning_level is UNSET
    d = s.to_api_dict()
    assert d["warning_level"] == "undefined"
    assert d["alarm_level"] == "undefined"
    assert d["alarm_status"] == "unknown"


def test_metadata_filled_from_other_feed():
    a = _obs(source="A", time=_ago(hours=1), river="Wisła", region="małopolskie")
    b = _obs(source="B", time=_ago(hours=10), name="KRAKÓW")
    a.name = None
    s = _one(_reconciler().reconcile([a], [b], now=NOW))
    assert s.primary_source == "A"
    assert s.name == "KRAKÓW"
    assert s.river == "Wisła"
