from __future__ import annotations

import argparse
import os
import tempfile
import time
from argparse import RawDescriptionHelpFormatter
from pathlib import Path

try:
    import tomllib  # py3.11+
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib

from .config import get_detection_config
from .constants import (
    HOME_RADIUS_MILES,
    MAX_DETECTION_ATTEMPTS,
    RETRY_BASE_DELAY_S,
    SAMPLE_INTERVAL_S,
    USAGE_EXAMPLES,
    VERSION,
    DEFAULT_SOCKET,
)
from .detect import DetectionClient
from .location import parse_nmea
from .serialio import open_serial
from .storage import SettingsStore, resolve_storage_root
from .logging import JsonLogger


def run_doctor(args) -> int:
    """Check storage, GPS and detection service access and print diagnostics."""
    print(f"stove-monitor {VERSION} doctor (safe, no settings are changed):")
    problems = 0

    # Storage
    root = Path(args.data_dir) if args.data_dir else resolve_storage_root()
    print(f"  storage root: {root}")
    try:
        root.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(dir=str(root), prefix=".doctor.", delete=True):
            pass
        print("  OK: storage root is writable")
    except OSError as e:
        problems += 1
        print(f"  FAIL: storage root not writable: {e}")
    store = SettingsStore(root, JsonLogger(enable_json=False))
    home = store.load_home_location()
    print(f"  saved home: {f'{home.latitude:.6f},{home.longitude:.6f}' if home else 'none'}")
    print(f"  saved enabled: {store.load_enabled()}")

    # GPS
    if args.gps_port:
        print(f"  GPS: {args.gps_port} @ {args.gps_baud} baud, waiting up to 10s for a fix...")
        try:
            ser = open_serial(args.gps_port, args.gps_baud, timeout=0.5)
        except Exception as e:
            problems += 1
            print(f"  FAIL: cannot open GPS port: {e}")
        else:
            sentences = 0
            fix = None
            deadline = time.monotonic() + 10.0
            try:
                while time.monotonic() < deadline and fix is None:
                    line = ser.readline().decode("ascii", errors="replace").strip()
                    if line.startswith("$"):
                        sentences += 1
                        fix = parse_nmea(line)
            finally:
                ser.close()
            if fix is not None:
                print(f"  OK: fix {fix.latitude:.6f},{fix.longitude:.6f} ({sentences} sentences)")
            elif sentences:
                problems += 1
                print(f"  WARN: {sentences} NMEA sentences but no fix yet (antenna/sky view?)")
            else:
                problems += 1
                print("  FAIL: no NMEA sentences received (check port/baud)")
    elif args.static_location:
        print(f"  location: static {args.static_location}")
    else:
        problems += 1
        print("  FAIL: no location source configured (--gps-port or --static-location)")

    # Detection service
    if args.api_url:
        client = DetectionClient(args.api_url, api_key=args.api_key, timeout_s=args.api_timeout)
        try:
            health = client.health_check_safe()
            if health.is_success:
                h = health.data
                print(f"  OK: service {h.service} status={h.status} auth_required={h.auth_required}")
                if h.auth_required and not args.api_key:
                    problems += 1
                    print("  WARN: service requires an API key but none is configured")
            else:
                problems += 1
                print(f"  FAIL: {health.error}")
            status = client.get_status_safe()
            if status.is_success:
                print(f"  OK: user_type={status.data.user_type} endpoints={sorted(status.data.endpoints)}")
            else:
                print(f"  WARN: {status.error}")
        finally:
            client.close()
    else:
        problems += 1
        print("  FAIL: no detection service configured (--api-url or STOVEMON_API_URL)")

    print()
    print("Doctor complete." if problems == 0 else f"Doctor found {problems} problem(s).")
    return 0 if problems == 0 else 1


def load_toml_config(path: str) -> dict:
    """Load TOML configuration from path."""
    with open(path, "rb") as f:
        return tomllib.load(f)


def _get_cfg(cfg: dict, section: str, key: str, default=None):
    sec = cfg.get(section, {})
    if not isinstance(sec, dict):
        return default
    return sec.get(key, default)


def config_defaults_from(cfg: dict) -> dict:
    """Map TOML config (and the environment) into argparse defaults."""
    env = get_detection_config()
    return {
        "api_url": _get_cfg(cfg, "detection", "api_url", env["api_url"]),
        "api_key": _get_cfg(cfg, "detection", "api_key", env["api_key"]),
        "api_timeout": _get_cfg(cfg, "detection", "timeout", 30.0),
        "tolerance": _get_cfg(cfg, "detection", "tolerance", None),
        "off_angle": _get_cfg(cfg, "detection", "off_angle", None),
        "retryable_signatures": _get_cfg(cfg, "detection", "retryable_signatures", None),
        "radius_miles": _get_cfg(cfg, "geofence", "radius_miles", HOME_RADIUS_MILES),
        "interval": _get_cfg(cfg, "geofence", "interval", SAMPLE_INTERVAL_S),
        "max_attempts": _get_cfg(cfg, "geofence", "max_attempts", MAX_DETECTION_ATTEMPTS),
        "retry_delay": _get_cfg(cfg, "geofence", "retry_delay", RETRY_BASE_DELAY_S),
        "gps_port": _get_cfg(cfg, "location", "gps_port", None),
        "gps_baud": _get_cfg(cfg, "location", "gps_baud", 9600),
        "gps_max_age": _get_cfg(cfg, "location", "max_age", 10.0),
        "static_location": _get_cfg(cfg, "location", "static", None),
        "data_dir": _get_cfg(cfg, "storage", "data_dir", os.environ.get("STOVEMON_DATA_DIR")),
        "verbose": _get_cfg(cfg, "logging", "verbose", False),
        "no_banner": _get_cfg(cfg, "logging", "no_banner", False),
        "json": _get_cfg(cfg, "logging", "json", False),
        "control_socket": _get_cfg(cfg, "control", "socket", os.environ.get("STOVEMON_SOCKET", DEFAULT_SOCKET)),
    }


def apply_config_defaults(args, cfg: dict):
    """Backfill values not given on the command line. CLI arguments take precedence."""
    for k, v in config_defaults_from(cfg).items():
        if getattr(args, k, None) is None:
            setattr(args, k, v)
    return args


def resolved_config_dict(args) -> dict:
    return {
        "detection": {
            "api_url": args.api_url,
            "api_key": "***" if args.api_key else None,
            "timeout": args.api_timeout,
            "tolerance": args.tolerance,
            "off_angle": args.off_angle,
            "retryable_signatures": args.retryable_signatures,
        },
        "geofence": {
            "radius_miles": args.radius_miles,
            "interval": args.interval,
            "max_attempts": args.max_attempts,
            "retry_delay": args.retry_delay,
        },
        "location": {
            "gps_port": args.gps_port,
            "gps_baud": args.gps_baud,
            "max_age": args.gps_max_age,
            "static": args.static_location,
        },
        "storage": {
            "data_dir": args.data_dir,
        },
        "logging": {
            "verbose": bool(args.verbose),
            "no_banner": bool(args.no_banner),
            "json": bool(args.json),
        },
        "control": {
            "socket": args.control_socket,
        },
    }


def build_arg_parser():
    """Construct the CLI argument parser for the daemon."""
    ap = argparse.ArgumentParser(epilog=USAGE_EXAMPLES, formatter_class=RawDescriptionHelpFormatter)
    # Everything defaults to None so TOML config / built-in defaults can be
    # backfilled after parsing (apply_config_defaults).
    ap.set_defaults(**{k: None for k in config_defaults_from({})})

    ap.add_argument("--api-url", help="Base URL of the stove detection service (env: STOVEMON_API_URL).")
    ap.add_argument("--api-key", help="API key sent as X-API-Key (env: STOVEMON_API_KEY).")
    ap.add_argument("--api-timeout", type=float, help="Per-request timeout in seconds (default: 30).")
    ap.add_argument("--tolerance", type=float, help="Detection sensitivity tolerance passed to the service.")
    ap.add_argument("--off-angle", type=float, help="Knob angle threshold passed to the service.")

    ap.add_argument("--radius-miles", type=float, help="Home radius in miles (default: 0.2).")
    ap.add_argument("--interval", type=float, help="Seconds between location samples (default: 30).")
    ap.add_argument("--max-attempts", type=int, help="Detection attempts per departure (default: 5).")
    ap.add_argument("--retry-delay", type=float, help="Base retry delay in seconds; attempt n waits n x this (default: 2).")

    ap.add_argument("--gps-port", help="Serial device of an NMEA GPS receiver (e.g., /dev/ttyUSB0).")
    ap.add_argument("--gps-baud", type=int, help="GPS serial baud rate (default: 9600).")
    ap.add_argument("--gps-max-age", type=float, help="Ignore GPS fixes older than this many seconds (default: 10).")
    ap.add_argument("--static-location", help="Use a fixed LAT,LON instead of a GPS receiver.")
    ap.add_argument("--data-dir", help="Settings directory (env: STOVEMON_DATA_DIR).")

    ap.add_argument("--home", help="Save LAT,LON as the home location.")
    ap.add_argument("--set-home-here", action="store_true", default=False,
                    help="Save the current location fix as home.")
    ap.add_argument("--clear-home", action="store_true", default=False, help="Forget the saved home location.")
    enable_group = ap.add_mutually_exclusive_group()
    enable_group.add_argument("--enable", dest="enable", action="store_const", const=True, default=None,
                              help="Enable geofence monitoring (persisted).")
    enable_group.add_argument("--disable", dest="enable", action="store_const", const=False,
                              help="Disable geofence monitoring (persisted).")

    ap.add_argument("--verbose", dest="verbose", action="store_true", help="Verbose logging (per-sample events).")
    ap.add_argument("--no-verbose", dest="verbose", action="store_false", help="Disable verbose logging.")
    json_group = ap.add_mutually_exclusive_group()
    json_group.add_argument("--json", dest="json", action="store_true", help="Emit JSON log events.")
    json_group.add_argument("--no-json", dest="json", action="store_false", help="Disable JSON log output.")
    ap.add_argument("--no-banner", dest="no_banner", action="store_true", help="Disable the startup banner.")
    ap.add_argument("--banner", dest="no_banner", action="store_false", help="Enable the startup banner.")

    sock_group = ap.add_mutually_exclusive_group()
    sock_group.add_argument("--control-socket", dest="control_socket",
                            help="Path to the local UNIX control socket (used by stovemonctl).")
    sock_group.add_argument("--no-control-socket", dest="control_socket", action="store_const", const="",
                            help="Disable the local control socket.")

    ap.add_argument("--doctor", action="store_true", default=False, help="Run storage/GPS/service diagnostics and exit.")
    ap.add_argument("--check-now", action="store_true", default=False, help="Run one stove check and exit.")
    ap.add_argument("--config", help="Path to a TOML config file. CLI args override config values.")
    ap.add_argument("--print-config", action="store_true", default=False, help="Print the resolved configuration and exit.")
    ap.add_argument("--version", action="store_true", default=False, help="Print version and exit.")
    return ap
