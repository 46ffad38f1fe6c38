from __future__ import annotations
import threading
from typing import Optional
import requests

from .logging import JsonLogger

PUSHOVER_URL = "https://api.pushover.net/1/messages.json"

PRIORITY_NORMAL = 0
PRIORITY_HIGH = 1


class Notifier:
    """Pushes human-readable monitor events to the user's phone (Pushover).

    Every call is fire-and-forget: the HTTP post runs on a daemon thread and
    the return value only says whether a message was dispatched."""
    def __init__(self, enabled: bool, pushover_token: Optional[str], pushover_user: Optional[str],
                 timeout_s: float = 5.0, logger: Optional[JsonLogger] = None):
        self.enabled = enabled and bool(pushover_token and pushover_user)
        self._token = pushover_token
        self._user = pushover_user
        self._timeout = timeout_s
        self.logger = logger

    def send(self, title: str, message: str, priority: int = PRIORITY_NORMAL) -> bool:
        if self.logger is not None:
            self.logger.emit("notify", title=title, message=message, priority=priority, delivered=self.enabled)
        if not self.enabled:
            return False
        threading.Thread(target=self._send_sync, args=(title, message, priority), daemon=True).start()
        return True

    def _send_sync(self, title: str, message: str, priority: int) -> bool:
        try:
            resp = requests.post(
                PUSHOVER_URL,
                data={
                    "token": self._token,
                    "user": self._user,
                    "title": title,
                    "message": message,
                    "priority": priority,
                },
                timeout=self._timeout,
            )
            resp.raise_for_status()
            return True
        except Exception as e:
            if self.logger is not None:
                self.logger.emit("notify_error", title=title, error=str(e))
            return False

    # ---------------- Monitor events ----------------

    def monitoring_started(self) -> bool:
        return self.send("Background Monitoring Started", "Location monitoring is now active in the background.")

    def monitoring_stopped(self) -> bool:
        return self.send("Background Monitoring Stopped", "Location monitoring has been disabled.")

    def geofencing_enabled(self) -> bool:
        return self.send("Geofencing Enabled", "Stove monitoring is now active. We'll check your stove when you leave home.")

    def geofencing_disabled(self) -> bool:
        return self.send("Geofencing Disabled", "Stove monitoring has been disabled. You can enable it again at any time.")

    def home_location_set(self) -> bool:
        return self.send("Home Location Set", "Your home location has been saved. Geofencing is now ready to use.")

    def left_home(self) -> bool:
        return self.send("Left Home", "You've left home. Checking your stove status now...")

    def returned_home(self) -> bool:
        return self.send("Returned Home", "Welcome back! Background monitoring is active.")

    def detection_success(self, stove_is_on: bool, on_count: int, total_count: int) -> bool:
        if stove_is_on:
            return self.send(
                "Stove is ON",
                f"Your stove is ON! {on_count} out of {total_count} knobs are turned on.",
                priority=PRIORITY_HIGH,
            )
        return self.send("Stove is OFF", f"Your stove is OFF. All {total_count} knobs are turned off.")

    def detection_failure(self, message: str) -> bool:
        return self.send("Stove Detection Failed", f"Unable to check stove status: {message}")
