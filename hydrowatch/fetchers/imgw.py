from __future__ import annotations

import logging
import math
from datetime import datetime, timezone
from typing import Any
from zoneinfo import ZoneInfo

import httpx

from hydrowatch.config import FEED_TIMEZONE, HTTP_TIMEOUT_SECONDS, USER_AGENT, FeedConfig
from hydrowatch.exceptions import UpstreamFetchError
from hydrowatch.models import RawObservation

logger = logging.getLogger(__name__)


def parse_float(val: Any) -> float | None:
    """Parse a number from a feed field, returning None for empty/NaN/infinite values."""
    if val is None or isinstance(val, bool):
        return None
    if isinstance(val, (int, float)):
        num = float(val)
    else:
        text = str(val).strip().replace(",", ".")
        if not text:
            return None
        try:
            num = float(text)
        except ValueError:
            return None
    if not math.isfinite(num):
        return None
    return num


def parse_time(val: Any, tz: str = FEED_TIMEZONE) -> datetime | None:
    """Parse a feed timestamp into an aware UTC datetime.

    Timestamps without an offset ("2024-05-01 10:00:00") are local time in `tz`.
    """
    if not isinstance(val, str) or not val.strip():
        return None
    try:
        dt = datetime.fromisoformat(val.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=ZoneInfo(tz))
    return dt.astimezone(timezone.utc)


def _parse_str(val: Any) -> str | None:
    if val is None:
        return None
    text = str(val).strip()
    return text or None


def _field(record: dict, name: str | None) -> Any:
    return record.get(name) if name else None


def parse_records(records: list[dict], feed: FeedConfig) -> list[RawObservation]:
    """Map raw feed records through the feed's field table.

    Records without a station id are dropped; any other unparseable field
    becomes None.
    """
    m = feed.mapping
    observations: list[RawObservation] = []
    for record in records:
        if not isinstance(record, dict):
            continue
        station_id = _parse_str(record.get(m.station_id))
        if not station_id:
            continue
        observations.append(RawObservation(
            station_id=station_id,
            source=feed.source,
            name=_parse_str(record.get(m.name)),
            timestamp=parse_time(record.get(m.water_level_date)),
            water_level=parse_float(record.get(m.water_level)),
            flow=parse_float(_field(record, m.flow)),
            flow_timestamp=parse_time(_field(record, m.flow_date)),
            river=_parse_str(_field(record, m.river)),
            region=_parse_str(_field(record, m.region)),
            longitude=parse_float(_field(record, m.longitude)),
            latitude=parse_float(_field(record, m.latitude)),
        ))

    logger.info("Parsed %d records from feed %s", len(observations), feed.source)
    return observations


async def fetch_feed(client: httpx.AsyncClient, feed: FeedConfig) -> list[dict]:
    """Fetch the raw record array of one feed.

    Raises UpstreamFetchError on timeout, transport error, HTTP error status
    or a body that is not a JSON array.
    """
    logger.info("Fetching feed %s: %s", feed.source, feed.url)
    try:
        resp = await client.get(
            feed.url,
            timeout=HTTP_TIMEOUT_SECONDS,
            headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
        )
        resp.raise_for_status()
        data = resp.json()
    except httpx.TimeoutException as exc:
        raise UpstreamFetchError(feed.source, f"timed out after {HTTP_TIMEOUT_SECONDS}s") from exc
    except httpx.HTTPError as exc:
        raise UpstreamFetchError(feed.source, str(exc) or type(exc).__name__) from exc
    except ValueError as exc:
        raise UpstreamFetchError(feed.source, "response is not valid JSON") from exc

    if not isinstance(data, list):
        raise UpstreamFetchError(feed.source, f"expected a JSON array, got {type(data).__name__}")
    logger.info("Fetched %d records from feed %s", len(data), feed.source)
    return data
