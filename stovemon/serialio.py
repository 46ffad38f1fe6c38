from __future__ import annotations

import threading

try:
    import serial  # pyserial
except ImportError:  # pragma: no cover
    serial = None

from .logging import JsonLogger


def open_serial(port: str, baud: int, timeout: float = 1.0):
    """Open a pyserial port. Raises RuntimeError if pyserial is missing."""
    if serial is None:  # pragma: no cover
        raise RuntimeError("pyserial is not installed. Install it with: pip install pyserial")
    return serial.Serial(port, baud, timeout=timeout)


class SerialThread(threading.Thread):
    """Background serial reader.

    Continuously reads lines from the GPS receiver's serial port and hands each
    decoded sentence to a callback."""
    def __init__(self, ser, on_line, stop_evt, logger: JsonLogger, verbose: bool = False):
        """Create the serial reader thread.

        Args:
            ser: An open pyserial Serial instance.
            on_line: Callback invoked with each decoded line (str).
            stop_evt: threading.Event that ends the loop when set.
            logger: JsonLogger for emitting serial-related events.
        """
        super().__init__(daemon=True, name="gps-serial")
        self.ser = ser
        self.on_line = on_line
        self.stop_evt = stop_evt
        self.logger = logger
        self.verbose = bool(verbose)

    def run(self):
        """Thread entry point. Reads serial lines until stopped."""
        while not self.stop_evt.is_set():
            try:
                line = self.ser.readline()
            except Exception as e:
                self.logger.emit("serial_read_error", error=str(e))
                break
            if not line:
                continue
            text = line.decode("ascii", errors="replace").strip()
            if self.verbose:
                self.logger.emit("serial", line=text)
            try:
                self.on_line(text)
            except Exception as e:
                self.logger.emit("serial_line_error", error=str(e), line=text)
