from __future__ import annotations

import dataclasses
import enum
import math
from dataclasses import dataclass, field
from typing import Optional, Union

from .util import epoch_ms


def _opt_float(value) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class Coordinate:
    """A single location fix.

    Latitude and longitude may be None when the provider could not determine a
    position; everything else is optional metadata. ``timestamp`` is in
    milliseconds since the epoch."""
    latitude: Optional[float]
    longitude: Optional[float]
    accuracy: Optional[float] = None
    altitude: Optional[float] = None
    heading: Optional[float] = None
    speed: Optional[float] = None
    speed_accuracy: Optional[float] = None
    timestamp: Optional[float] = None

    @property
    def has_position(self) -> bool:
        return (
            self.latitude is not None
            and self.longitude is not None
            and math.isfinite(self.latitude)
            and math.isfinite(self.longitude)
        )

    def to_record(self) -> dict:
        """Render the persisted home_location layout."""
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "timestamp": self.timestamp if self.timestamp is not None else epoch_ms(),
            "accuracy": self.accuracy,
            "altitude": self.altitude,
            "heading": self.heading,
            "speed": self.speed,
            "speedAccuracy": self.speed_accuracy,
        }

    @classmethod
    def from_record(cls, record) -> Optional["Coordinate"]:
        """Inverse of to_record(). Returns None unless lat/lon are finite numbers."""
        if not isinstance(record, dict):
            return None
        loc = cls(
            latitude=_opt_float(record.get("latitude")),
            longitude=_opt_float(record.get("longitude")),
            accuracy=_opt_float(record.get("accuracy")),
            altitude=_opt_float(record.get("altitude")),
            heading=_opt_float(record.get("heading")),
            speed=_opt_float(record.get("speed")),
            speed_accuracy=_opt_float(record.get("speedAccuracy")),
            timestamp=_opt_float(record.get("timestamp")),
        )
        return loc if loc.has_position else None


class ProximityState(enum.Enum):
    NEAR_HOME = "near_home"
    AWAY = "away"


@dataclass(frozen=True)
class DetectionSuccess:
    stove_is_on: bool
    on_knob_count: int
    total_knob_count: int


@dataclass(frozen=True)
class DetectionFailure:
    message: str
    retryable: bool = False


DetectionOutcome = Union[DetectionSuccess, DetectionFailure]


@dataclass
class MonitorState:
    """Holds the monitoring session.

    Mutated only by the geofence monitor (sampling loop and user actions).
    External readers get a copy from snapshot(). The initial proximity is
    NEAR_HOME so no departure is synthesized before the first real sample."""
    enabled: bool = False
    home_location: Optional[Coordinate] = None
    proximity: ProximityState = ProximityState.NEAR_HOME
    has_checked_since_departure: bool = False
    running: bool = False

    last_distance_miles: Optional[float] = None
    last_sample_ts: float = 0.0
    last_outcome: Optional[DetectionOutcome] = field(default=None)
    detections_total: int = 0

    @property
    def is_near_home(self) -> bool:
        return self.proximity is ProximityState.NEAR_HOME

    def snapshot(self) -> "MonitorState":
        # Coordinate and outcomes are frozen, a shallow copy is independent.
        return dataclasses.replace(self)

    def as_dict(self) -> dict:
        outcome = None
        if self.last_outcome is not None:
            outcome = {"type": type(self.last_outcome).__name__, **dataclasses.asdict(self.last_outcome)}
        return {
            "enabled": self.enabled,
            "running": self.running,
            "home_location": self.home_location.to_record() if self.home_location else None,
            "proximity": self.proximity.value,
            "has_checked_since_departure": self.has_checked_since_departure,
            "last_distance_miles": self.last_distance_miles,
            "last_sample_ts": self.last_sample_ts,
            "last_outcome": outcome,
            "detections_total": self.detections_total,
        }
