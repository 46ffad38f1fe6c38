"""Location providers.

A provider answers get_current_location() with a Coordinate, or None when no
usable fix is available this cycle (no fix yet, stale fix, timeout). The
monitor treats None as "skip this sample", never as a transition."""

from __future__ import annotations

import dataclasses
import threading
from typing import Optional

from .logging import JsonLogger
from .serialio import SerialThread
from .state import Coordinate
from .util import epoch_ms, now_s

KNOTS_TO_MPS = 0.514444
# Rough horizontal error per unit of HDOP for consumer receivers.
HDOP_TO_METERS = 5.0


class StaticLocationProvider:
    """Reports a fixed (or externally updated) position."""
    def __init__(self, location: Optional[Coordinate] = None):
        self._location = location
        self._lock = threading.Lock()

    def set_location(self, location: Optional[Coordinate]):
        with self._lock:
            self._location = location

    def get_current_location(self) -> Optional[Coordinate]:
        with self._lock:
            return self._location

    def is_available(self) -> bool:
        return True


# ---------------- NMEA 0183 ----------------

def _checksum_ok(sentence: str) -> bool:
    if "*" not in sentence:
        # Checksum is optional in NMEA 0183.
        return True
    body, _, cs = sentence[1:].partition("*")
    try:
        expected = int(cs[:2], 16)
    except ValueError:
        return False
    calc = 0
    for ch in body:
        calc ^= ord(ch)
    return calc == expected


def _degrees(value: str, hemi: str) -> Optional[float]:
    """Convert NMEA ddmm.mmmm / dddmm.mmmm plus hemisphere to signed degrees."""
    if not value or not hemi:
        return None
    try:
        raw = float(value)
    except ValueError:
        return None
    deg = int(raw // 100)
    minutes = raw - deg * 100
    out = deg + minutes / 60.0
    if hemi in ("S", "W"):
        out = -out
    elif hemi not in ("N", "E"):
        return None
    return out


def _float(value: str) -> Optional[float]:
    try:
        return float(value) if value else None
    except ValueError:
        return None


def parse_nmea(line: str) -> Optional[Coordinate]:
    """Parse a GGA or RMC sentence into a Coordinate.

    Returns None for other sentence types, bad checksums and sentences that
    report no fix (GGA quality 0, RMC status V)."""
    line = (line or "").strip()
    if not line.startswith("$") or not _checksum_ok(line):
        return None
    fields = line[1:].split("*", 1)[0].split(",")
    kind = fields[0][-3:]

    if kind == "GGA" and len(fields) >= 10:
        if fields[6] in ("", "0"):
            return None
        lat = _degrees(fields[2], fields[3])
        lon = _degrees(fields[4], fields[5])
        if lat is None or lon is None:
            return None
        hdop = _float(fields[8])
        return Coordinate(
            latitude=lat,
            longitude=lon,
            accuracy=(hdop * HDOP_TO_METERS) if hdop is not None else None,
            altitude=_float(fields[9]),
            timestamp=epoch_ms(),
        )

    if kind == "RMC" and len(fields) >= 9:
        if fields[2] != "A":
            return None
        lat = _degrees(fields[3], fields[4])
        lon = _degrees(fields[5], fields[6])
        if lat is None or lon is None:
            return None
        knots = _float(fields[7])
        return Coordinate(
            latitude=lat,
            longitude=lon,
            speed=(knots * KNOTS_TO_MPS) if knots is not None else None,
            heading=_float(fields[8]),
            timestamp=epoch_ms(),
        )

    return None


def _merge(new: Coordinate, old: Optional[Coordinate]) -> Coordinate:
    """Fill metadata the new sentence lacks from the previous fix (GGA+RMC)."""
    if old is None:
        return new
    fill = {}
    for f in ("accuracy", "altitude", "heading", "speed", "speed_accuracy"):
        if getattr(new, f) is None and getattr(old, f) is not None:
            fill[f] = getattr(old, f)
    return dataclasses.replace(new, **fill) if fill else new


class NmeaSerialLocationProvider:
    """Location from a GPS receiver streaming NMEA sentences over serial.

    A SerialThread keeps the latest fix up to date; get_current_location()
    returns it if it is younger than max_age_s, otherwise waits up to
    fix_timeout_s for a fresh one and gives up with None."""
    def __init__(self, ser, logger: JsonLogger, max_age_s: float = 10.0, fix_timeout_s: float = 5.0,
                 verbose: bool = False):
        self._ser = ser
        self.logger = logger
        self.max_age_s = float(max_age_s)
        self.fix_timeout_s = float(fix_timeout_s)
        self.verbose = bool(verbose)
        self._cond = threading.Condition()
        self._fix: Optional[Coordinate] = None
        self._fix_ts = 0.0
        self._stop_evt = threading.Event()
        self._thread: Optional[SerialThread] = None

    def start(self):
        if self._thread is not None:
            return
        self._thread = SerialThread(self._ser, self.handle_line, self._stop_evt, self.logger, verbose=self.verbose)
        self._thread.start()

    def stop(self):
        self._stop_evt.set()
        if self._thread is not None:
            self._thread.join(timeout=2.0)
            self._thread = None

    def handle_line(self, line: str):
        loc = parse_nmea(line)
        if loc is None:
            return
        with self._cond:
            self._fix = _merge(loc, self._fix)
            self._fix_ts = now_s()
            self._cond.notify_all()

    def _fresh(self) -> Optional[Coordinate]:
        if self._fix is not None and (now_s() - self._fix_ts) <= self.max_age_s:
            return self._fix
        return None

    def get_current_location(self) -> Optional[Coordinate]:
        with self._cond:
            fix = self._fresh()
            if fix is not None:
                return fix
            self._cond.wait_for(lambda: self._fresh() is not None, timeout=self.fix_timeout_s)
            return self._fresh()

    def is_available(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
