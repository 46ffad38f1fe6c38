from __future__ import annotations

VERSION = "1.0.0"

# Geofence
METERS_PER_MILE = 1609.34
HOME_RADIUS_MILES = 0.2
HOME_RADIUS_METERS = HOME_RADIUS_MILES * METERS_PER_MILE
EARTH_RADIUS_M = 6371000.0

SAMPLE_INTERVAL_S = 30.0

# Detection retry policy. Signatures match as case-insensitive substrings of
# the failure message.
MAX_DETECTION_ATTEMPTS = 5
RETRY_BASE_DELAY_S = 2.0
RETRYABLE_SIGNATURES = (
    "empty response",
    "connection",
    "timeout",
    "unexpected end of input",
    "malformed response",
)

# Persisted settings keys (one JSON record each)
KEY_HOME_LOCATION = "home_location"
KEY_GEOFENCING_ENABLED = "geofencing_enabled"

DEFAULT_SOCKET = "/run/stovemon/stovemon.sock"


USAGE_EXAMPLES = """\
Usage examples:
  # Run with a serial GPS receiver and the detection service
  python stove-monitor.py --gps-port /dev/ttyUSB0 --api-url https://stove.example.com --api-key KEY

  # Save the current GPS fix as home and enable monitoring
  python stove-monitor.py --gps-port /dev/ttyUSB0 --set-home-here --enable

  # Fixed home point, JSON logs
  python stove-monitor.py --gps-port /dev/ttyUSB0 --home 37.0,-122.0 --json

  # One-off stove check (no geofencing)
  python stove-monitor.py --check-now --api-url https://stove.example.com

  # Host/service diagnostic
  python stove-monitor.py --doctor --gps-port /dev/ttyUSB0
"""
