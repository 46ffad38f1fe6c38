from __future__ import annotations

import json
import sys
import threading
import time


def _ts_iso(t: float) -> str:
    return time.strftime('%Y-%m-%d %H:%M:%S', time.localtime(t)) + f'.{int((t - int(t)) * 1000):03d}'


class JsonLogger:
    """Minimal structured logger.

    Emits single-line events for geofence transitions, detection attempts and
    storage faults so logs are easy to grep and machine-parse. Shared by the
    monitor thread, the control socket and the GPS reader, so writes are
    serialized."""
    def __init__(self, enable_json: bool, stream=None, verbose: bool = False):
        """Create a logger.

        Args:
            enable_json: Emit JSON objects instead of ``[ts] event k=v`` lines.
            stream: A file-like object (defaults to stdout) used for event output.
            verbose: Also emit events passed to debug().
        """
        self.enable_json = enable_json
        self.verbose = bool(verbose)
        self._stream = stream
        self._lock = threading.Lock()

    def emit(self, event: str, **fields):
        """Emit an event with a name and optional key/value fields."""
        t = time.time()
        if self.enable_json:
            payload = {"ts": t, "ts_iso": _ts_iso(t), "event": event, **fields}
            line = json.dumps(payload, sort_keys=True, default=str)
        else:
            line = f"[{_ts_iso(t)}] {event}"
            if fields:
                line += " " + " ".join(f"{k}={v}" for k, v in fields.items())
        stream = self._stream if self._stream is not None else sys.stdout
        with self._lock:
            print(line, file=stream, flush=True)

    def debug(self, event: str, **fields):
        """Emit only when verbose (per-sample chatter)."""
        if self.verbose:
            self.emit(event, **fields)
