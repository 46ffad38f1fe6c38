#!/usr/bin/env python3
#
# Stove monitor
#
# Tracks the distance between this device and a saved home location. When the
# device leaves home, the remote stove detection service is asked whether the
# stove was left on and the result is pushed as a notification.
#
# Location comes from an NMEA GPS receiver on a serial port (or a fixed
# position for testing). Settings persist under the app data directory.
#

from __future__ import annotations

from stovemon.cli import main

if __name__ == "__main__":
    raise SystemExit(main())
