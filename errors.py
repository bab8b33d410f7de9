"""Error taxonomy shared by the feed gateway, predictions and the client loop.

Call-level failures propagate to the caller; record-level failures
(``PartialRecordDropped``) are raised by per-record parsers and caught by the
loop that owns the record list.
"""

from __future__ import annotations

from typing import Optional


class TrackerError(Exception):
    """Base class for all tracker errors."""


class UpstreamUnavailable(TrackerError):
    """Transport or HTTP failure reaching an upstream feed."""

    def __init__(self, message: str, *, upstream: str = "", status_code: Optional[int] = None) -> None:
        self.upstream = upstream
        self.status_code = status_code
        super().__init__(message)


class PredictionsUnavailable(UpstreamUnavailable):
    """One of the two stop-monitoring calls failed; no partial result is returned."""


class SchemaNotLoaded(TrackerError):
    """The binary vehicle feed schema has not been initialized yet."""


class MalformedUpstreamPayload(TrackerError):
    """The upstream payload is missing its expected top-level structure."""


class PartialRecordDropped(TrackerError):
    """A single entity or visit lacked required fields and was skipped."""


class ValidationFailed(TrackerError):
    """A user-entered stop id does not exist in the route/stop cache."""

    def __init__(self, stop_id: str) -> None:
        self.stop_id = stop_id
        super().__init__(f"Invalid stop ID: {stop_id!r}")


__all__ = [
    "TrackerError",
    "UpstreamUnavailable",
    "PredictionsUnavailable",
    "SchemaNotLoaded",
    "MalformedUpstreamPayload",
    "PartialRecordDropped",
    "ValidationFailed",
]
