"""Durable settings for the monitor.

Each key is stored as its own JSON record (``<root>/<key>.json``) so a bad
write to one never corrupts the other. Every operation is best-effort: I/O and
parse failures are logged and reported as a False/None result, never raised,
so losing settings only ever sends the monitor back to its defaults (disabled,
no home)."""

from __future__ import annotations

import json
import os
import sys
import tempfile
from pathlib import Path
from typing import Optional

from .constants import KEY_GEOFENCING_ENABLED, KEY_HOME_LOCATION
from .logging import JsonLogger
from .state import Coordinate

APP_DIR_NAME = "stovemon"


def resolve_storage_root() -> Path:
    """Resolve the app-private data directory.

    STOVEMON_DATA_DIR wins; otherwise %APPDATA% on Windows and the XDG data
    directory elsewhere. The directory is created lazily on first save."""
    override = os.environ.get("STOVEMON_DATA_DIR")
    if override:
        return Path(override).expanduser()
    if sys.platform == "win32":
        appdata = os.environ.get("APPDATA")
        if appdata:
            return Path(appdata) / APP_DIR_NAME
    xdg = os.environ.get("XDG_DATA_HOME")
    base = Path(xdg) if xdg else Path.home() / ".local" / "share"
    return base / APP_DIR_NAME


class SettingsStore:
    def __init__(self, root, logger: Optional[JsonLogger] = None):
        self.root = Path(root)
        self.logger = logger if logger is not None else JsonLogger(enable_json=False)

    def _path(self, key: str) -> Path:
        return self.root / f"{key}.json"

    def save(self, key: str, value) -> bool:
        """Write value as JSON, replacing the record atomically."""
        path = self._path(key)
        tmp_name = None
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{key}.", suffix=".tmp", dir=str(self.root))
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(value, f)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
            tmp_name = None
            return True
        except (OSError, TypeError, ValueError) as e:
            self.logger.emit("storage_error", op="save", key=key, error=str(e))
            return False
        finally:
            if tmp_name is not None:
                try:
                    os.remove(tmp_name)
                except OSError:
                    pass

    def load(self, key: str):
        """Return the stored value, or None if missing or unreadable."""
        path = self._path(key)
        if not path.exists():
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            self.logger.emit("storage_error", op="load", key=key, error=str(e))
            return None

    def clear(self, key: str) -> bool:
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            self.logger.emit("storage_error", op="clear", key=key, error=str(e))
            return False
        return True

    # ---------------- Typed records ----------------

    def save_home_location(self, location: Coordinate) -> bool:
        return self.save(KEY_HOME_LOCATION, location.to_record())

    def load_home_location(self) -> Optional[Coordinate]:
        record = self.load(KEY_HOME_LOCATION)
        if record is None:
            return None
        loc = Coordinate.from_record(record)
        if loc is None:
            self.logger.emit("storage_error", op="load", key=KEY_HOME_LOCATION, error="invalid home location record")
        return loc

    def clear_home_location(self) -> bool:
        return self.clear(KEY_HOME_LOCATION)

    def save_enabled(self, enabled: bool) -> bool:
        return self.save(KEY_GEOFENCING_ENABLED, {"enabled": bool(enabled)})

    def load_enabled(self) -> bool:
        record = self.load(KEY_GEOFENCING_ENABLED)
        if not isinstance(record, dict):
            return False
        return record.get("enabled") is True
