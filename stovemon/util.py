from __future__ import annotations

import time


def now_s() -> float:
    """Monotonic clock in seconds."""
    return time.monotonic()


def epoch_ms() -> float:
    """Wall clock in milliseconds since the epoch (location timestamps)."""
    return time.time() * 1000.0


def parse_lat_lon(text: str):
    """Parse ``"LAT,LON"`` into a float pair. Raises ValueError on bad input."""
    parts = [p.strip() for p in str(text).split(",")]
    if len(parts) != 2:
        raise ValueError(f"expected LAT,LON but got {text!r}")
    lat, lon = float(parts[0]), float(parts[1])
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0):
        raise ValueError(f"coordinate out of range: {text!r}")
    return lat, lon
