from __future__ import annotations

import json
import logging
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Mapping, TypeVar

from hydrowatch.exceptions import VisibilityStoreError
from hydrowatch.models import VisibilityRecord

logger = logging.getLogger(__name__)

T = TypeVar("T")


class VisibilityStore:
    """Durable visibility records kept as a JSON array in a single file."""

    def __init__(self, path: str) -> None:
        self.path = Path(path)

    def ensure(self) -> None:
        """Create the directory and an empty record file if they don't exist."""
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            if not self.path.exists():
                self._write([])
                logger.info("Created empty visibility store at %s", self.path)
        except OSError as exc:
            raise VisibilityStoreError(f"cannot create {self.path}: {exc}") from exc

    def read_all(self) -> list[VisibilityRecord]:
        if not self.path.exists():
            return []
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            return [VisibilityRecord.from_dict(d) for d in data]
        except (OSError, ValueError, KeyError, TypeError) as exc:
            raise VisibilityStoreError(f"cannot read {self.path}: {exc}") from exc

    def upsert(self, record: VisibilityRecord) -> None:
        records = {r.station_id: r for r in self.read_all()}
        records[record.station_id] = record
        self._write(list(records.values()))

    def delete_all(self) -> None:
        self._write([])

    def _write(self, records: list[VisibilityRecord]) -> None:
        # Atomic replace through a sibling temp file.
        tmp = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps([r.to_dict() for r in records], indent=2), encoding="utf-8")
            os.replace(tmp, self.path)
        except OSError as exc:
            raise VisibilityStoreError(f"cannot write {self.path}: {exc}") from exc


def _station_id(station: Any) -> str:
    if isinstance(station, Mapping):
        return station["id"]
    return station.id


class VisibilityFilter:
    """Administrative hide list with an in-memory index over a VisibilityStore.

    Writes hit the store before the index; a failed write leaves the index
    untouched.
    """

    def __init__(self, store: VisibilityStore) -> None:
        self._store = store
        self._lock = threading.Lock()
        self._index: dict[str, VisibilityRecord] = {}
        self._loaded = False

    def initialize(self) -> None:
        """Startup step: create the backing file if needed and load the index."""
        try:
            self._store.ensure()
        except VisibilityStoreError:
            logger.exception("Visibility store unavailable, all stations visible")
        self._hydrate()

    def _hydrate(self) -> None:
        try:
            records = self._store.read_all()
        except VisibilityStoreError:
            logger.exception("Failed to load visibility records, all stations visible")
            records = []
        with self._lock:
            self._index = {r.station_id: r for r in records}
            self._loaded = True
        logger.info("Loaded visibility settings for %d stations", len(records))

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self._hydrate()

    def is_visible(self, station_id: str) -> bool:
        self._ensure_loaded()
        with self._lock:
            record = self._index.get(station_id)
        return record.is_visible if record is not None else True

    def set_visibility(
        self,
        station_id: str,
        visible: bool,
        reason: str | None = None,
        actor: str | None = None,
    ) -> VisibilityRecord:
        """Persist and index the station's visibility. Store errors propagate."""
        self._ensure_loaded()
        record = VisibilityRecord(
            station_id=station_id,
            is_visible=visible,
            hidden_at=None if visible else datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            hidden_by=actor,
            reason=reason,
        )
        with self._lock:
            self._store.upsert(record)
            self._index[station_id] = record
        logger.info("Station %s visibility set to %s", station_id, visible)
        return record

    def toggle(self, station_id: str, reason: str | None = None, actor: str | None = None) -> bool:
        new_visibility = not self.is_visible(station_id)
        self.set_visibility(station_id, new_visibility, reason=reason, actor=actor)
        return new_visibility

    def filter_visible(self, stations: Iterable[T]) -> list[T]:
        """Return stations in their original order, minus the hidden ones."""
        self._ensure_loaded()
        with self._lock:
            hidden = {sid for sid, r in self._index.items() if not r.is_visible}
        return [s for s in stations if _station_id(s) not in hidden]

    def restore_all(self) -> None:
        """Make every station visible again."""
        self._ensure_loaded()
        with self._lock:
            self._store.delete_all()
            self._index.clear()
        logger.info("All stations visibility restored")

    def list_hidden(self) -> list[VisibilityRecord]:
        self._ensure_loaded()
        with self._lock:
            return [r for r in self._index.values() if not r.is_visible]

    def stats(self) -> dict:
        self._ensure_loaded()
        with self._lock:
            total = len(self._index)
            hidden = sum(1 for r in self._index.values() if not r.is_visible)
        return {"total": total, "visible": total - hidden, "hidden": hidden}
