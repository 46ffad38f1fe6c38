from __future__ import annotations

import json
import signal
import sys
import threading
from pathlib import Path

from .config import get_notifier_config
from .constants import METERS_PER_MILE, RETRYABLE_SIGNATURES, VERSION
from .detect import DetectionClient
from .doctor import (
    apply_config_defaults,
    build_arg_parser,
    load_toml_config,
    resolved_config_dict,
    run_doctor,
)
from .keepalive import default_keep_alive
from .location import NmeaSerialLocationProvider, StaticLocationProvider
from .logging import JsonLogger
from .monitor import GeofenceMonitor
from .notify import Notifier
from .serialio import open_serial
from .state import Coordinate, DetectionSuccess, MonitorState
from .storage import SettingsStore, resolve_storage_root
from .util import parse_lat_lon


def build_location_provider(args, logger: JsonLogger):
    """Serial GPS when --gps-port is set, otherwise a static position (or none)."""
    if args.gps_port:
        ser = open_serial(args.gps_port, args.gps_baud)
        provider = NmeaSerialLocationProvider(ser, logger, max_age_s=args.gps_max_age, verbose=bool(args.verbose))
        provider.start()
        return provider
    loc = None
    if args.static_location:
        lat, lon = parse_lat_lon(args.static_location)
        loc = Coordinate(latitude=lat, longitude=lon)
    return StaticLocationProvider(loc)


def build_monitor(args, logger: JsonLogger, location_provider=None) -> GeofenceMonitor:
    """Wire the monitor and its collaborators from resolved args."""
    if location_provider is None:
        location_provider = build_location_provider(args, logger)
    store = SettingsStore(Path(args.data_dir) if args.data_dir else resolve_storage_root(), logger)
    client = DetectionClient(args.api_url or "", api_key=args.api_key, timeout_s=args.api_timeout)
    notifier = Notifier(logger=logger, **get_notifier_config())

    detect_options = {}
    if args.tolerance is not None:
        detect_options["tolerance"] = args.tolerance
    if args.off_angle is not None:
        detect_options["off_angle"] = args.off_angle

    return GeofenceMonitor(
        state=MonitorState(),
        logger=logger,
        store=store,
        location_provider=location_provider,
        detection_client=client,
        notifier=notifier,
        keep_alive=default_keep_alive(logger),
        radius_m=float(args.radius_miles) * METERS_PER_MILE,
        interval_s=args.interval,
        max_attempts=args.max_attempts,
        retry_base_delay_s=args.retry_delay,
        retryable_signatures=args.retryable_signatures or RETRYABLE_SIGNATURES,
        detect_options=detect_options,
        on_error=lambda msg: logger.emit("error", message=msg),
    )


def apply_settings_actions(args, mon: GeofenceMonitor) -> bool:
    """Apply --clear-home / --home / --set-home-here / --enable|--disable in that order."""
    if args.clear_home:
        mon.clear_home_location()
    if args.home:
        lat, lon = parse_lat_lon(args.home)
        if not mon.set_home_location(Coordinate(latitude=lat, longitude=lon)):
            return False
    if args.set_home_here and not mon.set_home_location_here():
        return False
    if args.enable is not None:
        mon.set_enabled(args.enable)
    return True


def main(argv=None):
    """CLI entry point. Parses args, configures the monitor, and runs the daemon."""
    ap = build_arg_parser()
    args = ap.parse_args(argv)

    cfg = load_toml_config(args.config) if args.config else {}
    apply_config_defaults(args, cfg)

    if args.version:
        print(VERSION)
        return 0

    # Print resolved configuration and exit (does not open the GPS port).
    if args.print_config:
        print(json.dumps(resolved_config_dict(args), indent=2, sort_keys=True))
        return 0

    if args.doctor:
        return run_doctor(args)

    logger = JsonLogger(enable_json=bool(args.json), verbose=bool(args.verbose))

    if args.check_now:
        if not args.api_url:
            print("ERROR: --check-now requires --api-url (or STOVEMON_API_URL)", file=sys.stderr)
            return 2
        try:
            mon = build_monitor(args, logger, location_provider=StaticLocationProvider())
        except (OSError, ValueError) as e:
            print(f"ERROR: {e}", file=sys.stderr)
            return 2
        outcome = mon.trigger_stove_check()
        mon.dispose()
        return 0 if isinstance(outcome, DetectionSuccess) else 1

    try:
        mon = build_monitor(args, logger)
    except (RuntimeError, OSError, ValueError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2

    if not args.no_banner:
        print(f"stove-monitor {VERSION}")
        logger.emit(
            "startup",
            version=VERSION,
            api_url=args.api_url,
            gps_port=args.gps_port,
            static_location=args.static_location,
            radius_miles=args.radius_miles,
            interval_s=args.interval,
            max_attempts=args.max_attempts,
            control_socket=args.control_socket,
        )

    try:
        if not apply_settings_actions(args, mon):
            print("ERROR: could not set home location", file=sys.stderr)
            mon.dispose()
            return 2
    except ValueError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        mon.dispose()
        return 2

    if not args.api_url:
        logger.emit("warning", message="no detection service configured; checks will fail")

    if not mon.initialize():
        mon.dispose()
        return 3

    if args.control_socket:
        mon.start_control_socket(args.control_socket)

    stop = threading.Event()
    signal.signal(signal.SIGINT, lambda *_: stop.set())
    signal.signal(signal.SIGTERM, lambda *_: stop.set())

    while not stop.is_set():
        stop.wait(0.5)

    mon.dispose()
    provider_stop = getattr(mon.location_provider, "stop", None)
    if provider_stop is not None:
        provider_stop()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
