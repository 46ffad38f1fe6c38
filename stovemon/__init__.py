"""stovemon package for stove-monitor."""

from .state import Coordinate, MonitorState, ProximityState
from .monitor import GeofenceMonitor

__all__ = ["Coordinate", "MonitorState", "ProximityState", "GeofenceMonitor"]
