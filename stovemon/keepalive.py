"""Keep-alive capability.

The monitor asks the host to keep it running while it is sampling and releases
that request when it stops. On a systemd host (Type=notify unit) this is the
sd_notify protocol over $NOTIFY_SOCKET; elsewhere it is just a log line."""

from __future__ import annotations

import os
import socket
from typing import Optional

from .logging import JsonLogger


class NullKeepAlive:
    def __init__(self, logger: Optional[JsonLogger] = None):
        self.logger = logger
        self.active = False

    def request_keep_alive(self) -> bool:
        self.active = True
        if self.logger is not None:
            self.logger.emit("keepalive_requested", backend="none")
        return True

    def release_keep_alive(self) -> bool:
        self.active = False
        if self.logger is not None:
            self.logger.emit("keepalive_released", backend="none")
        return True


class SystemdKeepAlive:
    def __init__(self, logger: JsonLogger, notify_socket: Optional[str] = None):
        self.logger = logger
        self.notify_socket = notify_socket if notify_socket is not None else os.environ.get("NOTIFY_SOCKET", "")
        self.active = False

    def _notify(self, message: str) -> bool:
        path = self.notify_socket
        if not path:
            return False
        if path.startswith("@"):
            # Abstract namespace socket.
            path = "\0" + path[1:]
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM)
        try:
            sock.connect(path)
            sock.sendall(message.encode("utf-8"))
            return True
        except OSError as e:
            self.logger.emit("keepalive_error", error=str(e), message=message)
            return False
        finally:
            sock.close()

    def request_keep_alive(self) -> bool:
        self.active = True
        ok = self._notify("READY=1\nSTATUS=Monitoring location")
        self.logger.emit("keepalive_requested", backend="systemd", ok=ok)
        return ok

    def release_keep_alive(self) -> bool:
        self.active = False
        ok = self._notify("STOPPING=1\nSTATUS=Monitoring stopped")
        self.logger.emit("keepalive_released", backend="systemd", ok=ok)
        return ok


def default_keep_alive(logger: JsonLogger):
    """systemd when launched by a notify-type unit, otherwise a no-op."""
    if os.environ.get("NOTIFY_SOCKET"):
        return SystemdKeepAlive(logger)
    return NullKeepAlive(logger)
