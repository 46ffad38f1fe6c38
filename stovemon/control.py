from __future__ import annotations

import json
import os
import socket
import threading
from typing import Optional

from .constants import VERSION
from .logging import JsonLogger
from .state import Coordinate
from .util import parse_lat_lon


class ControlServer:
    """Local UNIX control socket for a running monitor.

    The daemon owns the GPS port and the monitor; a local socket lets a
    separate client set home, toggle monitoring or ask for a check.

    Accepts single-line commands and answers with a single-line JSON response.
    Supported commands: status, enable, disable, set-home LAT,LON,
    set-home-here, clear-home, check, locate.
    """
    def __init__(self, monitor, logger: JsonLogger, sock_path: str):
        self.monitor = monitor
        self.logger = logger
        self.sock_path = sock_path
        self._stop_evt = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self):
        if not self.sock_path:
            return
        self._thread = threading.Thread(target=self._loop, daemon=True, name="control-socket")
        self._thread.start()
        self.logger.emit("control_socket_started", path=self.sock_path)

    def stop(self):
        self._stop_evt.set()
        if self._thread is not None:
            self._thread.join(timeout=2.0)
            self._thread = None

    def _loop(self):
        path = self.sock_path

        # Ensure parent directory exists (useful with RuntimeDirectory=/run/stovemon)
        parent = os.path.dirname(path)
        try:
            if parent:
                os.makedirs(parent, exist_ok=True)
            if os.path.exists(path):
                os.remove(path)
        except OSError as e:
            self.logger.emit("control_socket_error", error=str(e), path=path)
            return

        srv = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            srv.bind(path)
            os.chmod(path, 0o660)
            srv.listen(4)
            srv.settimeout(0.5)
        except OSError as e:
            self.logger.emit("control_socket_error", error=str(e), path=path)
            srv.close()
            return

        try:
            while not self._stop_evt.is_set():
                try:
                    conn, _ = srv.accept()
                except socket.timeout:
                    continue
                except OSError as e:
                    self.logger.emit("control_socket_error", error=str(e), path=path)
                    break
                self._serve(conn)
        finally:
            srv.close()
            try:
                if os.path.exists(path):
                    os.remove(path)
            except OSError:
                pass

    def _serve(self, conn):
        try:
            conn.settimeout(2.0)
            data = b""
            while b"\n" not in data and len(data) < 4096:
                chunk = conn.recv(4096)
                if not chunk:
                    break
                data += chunk
            cmd = data.decode("utf-8", errors="replace").strip()
            try:
                resp = self.handle_command(cmd)
            except Exception as e:
                resp = {"ok": False, "error": str(e)}
            conn.sendall((json.dumps(resp, sort_keys=True) + "\n").encode("utf-8"))
        except OSError as e:
            self.logger.emit("control_socket_error", error=str(e))
        finally:
            conn.close()

    def handle_command(self, cmd: str) -> dict:
        parts = (cmd or "").strip().split()
        if not parts:
            return {"ok": False, "error": "empty command"}
        name = parts[0].lower()
        args = parts[1:]
        mon = self.monitor

        if name in ("status", "state"):
            return {"ok": True, "state": mon.snapshot().as_dict(), "version": VERSION}

        if name == "enable":
            mon.set_enabled(True)
            return {"ok": True}
        if name == "disable":
            mon.set_enabled(False)
            return {"ok": True}

        if name == "set-home":
            if not args:
                return {"ok": False, "error": "usage: set-home LAT,LON"}
            try:
                lat, lon = parse_lat_lon("".join(args))
            except ValueError as e:
                return {"ok": False, "error": str(e)}
            return {"ok": mon.set_home_location(Coordinate(latitude=lat, longitude=lon))}
        if name == "set-home-here":
            ok = mon.set_home_location_here()
            return {"ok": ok} if ok else {"ok": False, "error": "no location fix"}
        if name == "clear-home":
            return {"ok": mon.clear_home_location()}

        if name == "check":
            # Detection can take tens of seconds with retries; answer immediately.
            threading.Thread(target=mon.trigger_stove_check, daemon=True, name="manual-check").start()
            return {"ok": True, "queued": True}

        if name == "locate":
            loc = mon.current_location()
            if loc is None or not loc.has_position:
                return {"ok": False, "error": "no location fix"}
            return {
                "ok": True,
                "location": loc.to_record(),
                "distance_miles": mon.distance_from_home_miles(),
            }

        return {"ok": False, "error": f"unknown command: {name}"}
