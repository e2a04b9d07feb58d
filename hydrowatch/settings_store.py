from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass
class Settings:
    stations_ttl_seconds: int = 3600   # seconds
    stale_after_hours: float = 24.0    # hours
    source_b_bias_hours: float = 1.0   # hours

    def clamp(self) -> None:
        self.stations_ttl_seconds = max(60, min(86400, int(self.stations_ttl_seconds)))
        self.stale_after_hours = max(1.0, min(168.0, float(self.stale_after_hours)))
        self.source_b_bias_hours = max(0.0, min(24.0, float(self.source_b_bias_hours)))


def load(path: str) -> Settings:
    """Read settings from a JSON file. Missing keys keep dataclass defaults."""
    settings = Settings()
    p = Path(path)
    if not p.exists():
        logger.info("No settings file at %s, using defaults", path)
        return settings
    try:
        data = json.loads(p.read_text())
        settings.stations_ttl_seconds = int(data.get("stations_ttl_seconds", settings.stations_ttl_seconds))
        settings.stale_after_hours = float(data.get("stale_after_hours", settings.stale_after_hours))
        settings.source_b_bias_hours = float(data.get("source_b_bias_hours", settings.source_b_bias_hours))
        settings.clamp()
        logger.info("Loaded settings from %s", path)
    except Exception:
        logger.exception("Failed to load settings from %s, using defaults", path)
        return Settings()
    return settings


def save(path: str, settings: Settings) -> None:
    """Write settings to a JSON file."""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(json.dumps(asdict(settings), indent=2))
    logger.info("Saved settings to %s", path)
