#!/usr/bin/env python3
"""Local control client for stove-monitor.

The daemon owns the GPS receiver and the monitoring state. stovemonctl talks
to it over a local UNIX socket.

Commands:
  status | enable | disable | set-home LAT,LON | set-home-here | clear-home | check | locate

Socket path:
  - default: /run/stovemon/stovemon.sock
  - override: --socket PATH or STOVEMON_SOCKET env var
"""

from __future__ import annotations

import argparse
import json
import os
import socket
import sys

DEFAULT_SOCK = "/run/stovemon/stovemon.sock"
COMMANDS = ["status", "enable", "disable", "set-home", "set-home-here", "clear-home", "check", "locate"]


def _send(sock_path: str, cmd: str) -> dict:
    s = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    s.settimeout(10.0)
    try:
        s.connect(sock_path)
        s.sendall((cmd.strip() + "\n").encode("utf-8"))
        data = b""
        while b"\n" not in data and len(data) < 65536:
            chunk = s.recv(4096)
            if not chunk:
                break
            data += chunk
        line = data.decode("utf-8", errors="replace").strip()
        if not line:
            return {"ok": False, "error": "empty response"}
        try:
            return json.loads(line)
        except ValueError:
            return {"ok": False, "error": "non-json response", "raw": line}
    except OSError as e:
        return {"ok": False, "error": f"cannot reach daemon at {sock_path}: {e}"}
    finally:
        s.close()


def _format_status(resp: dict) -> str:
    state = resp.get("state", {})
    home = state.get("home_location")
    home_s = f"{home['latitude']:.6f},{home['longitude']:.6f}" if home else "none"
    dist = state.get("last_distance_miles")
    dist_s = f"{dist:.2f}mi" if dist is not None else "n/a"
    outcome = state.get("last_outcome") or {}
    if outcome.get("type") == "DetectionSuccess":
        last = "stove ON" if outcome.get("stove_is_on") else "stove OFF"
    elif outcome:
        last = f"failed ({outcome.get('message')})"
    else:
        last = "none"
    return (f"ok  version={resp.get('version', '')} enabled={state.get('enabled')} running={state.get('running')} "
            f"home={home_s} proximity={state.get('proximity')} distance={dist_s} last_check={last}")


def main() -> int:
    ap = argparse.ArgumentParser(description="Control stove-monitor via its local UNIX socket")
    ap.add_argument("command", choices=COMMANDS, help="Command to send to the daemon")
    ap.add_argument("location", nargs="?", help="LAT,LON for set-home")
    ap.add_argument("--socket", default=os.environ.get("STOVEMON_SOCKET", DEFAULT_SOCK),
                    help=f"Control socket path (default: {DEFAULT_SOCK})")
    ap.add_argument("--json", action="store_true", help="Print raw JSON response")
    args = ap.parse_args()

    cmd = args.command
    if cmd == "set-home":
        if not args.location:
            print("error: set-home needs LAT,LON", file=sys.stderr)
            return 2
        cmd = f"set-home {args.location}"

    resp = _send(args.socket, cmd)
    if args.json:
        print(json.dumps(resp, indent=2, sort_keys=True))
        return 0 if resp.get("ok") else 2

    if not resp.get("ok"):
        print(f"error: {resp.get('error', 'unknown error')}", file=sys.stderr)
        raw = resp.get("raw")
        if raw:
            print(raw, file=sys.stderr)
        return 2

    if args.command == "status":
        print(_format_status(resp))
    elif args.command == "locate":
        loc = resp.get("location", {})
        dist = resp.get("distance_miles")
        dist_s = f" distance={dist:.2f}mi" if dist is not None else ""
        print(f"ok  {loc.get('latitude'):.6f},{loc.get('longitude'):.6f}{dist_s}")
    elif args.command == "check":
        print("ok  check started; the result arrives as a notification")
    else:
        print("ok")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
