from __future__ import annotations


class HydroWatchError(Exception):
    """Base class for errors raised by hydrowatch."""


class UpstreamFetchError(HydroWatchError):
    """A feed could not be fetched (timeout, network error, bad payload)."""

    def __init__(self, source: str, message: str) -> None:
        super().__init__(f"Feed {source}: {message}")
        self.source = source


class VisibilityStoreError(HydroWatchError):
    """The durable visibility store could not be read or written."""
