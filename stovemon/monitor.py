from __future__ import annotations

import dataclasses
import threading
from typing import Callable, Optional, Sequence

from .constants import (
    HOME_RADIUS_METERS,
    MAX_DETECTION_ATTEMPTS,
    RETRY_BASE_DELAY_S,
    RETRYABLE_SIGNATURES,
    SAMPLE_INTERVAL_S,
)
from .control import ControlServer
from .detect import is_retryable
from .geo import distance_miles, is_near_home
from .logging import JsonLogger
from .state import (
    Coordinate,
    DetectionFailure,
    DetectionOutcome,
    DetectionSuccess,
    MonitorState,
    ProximityState,
)
from .storage import SettingsStore
from .util import epoch_ms, now_s

LEFT_HOME = "left_home"
RETURNED_HOME = "returned_home"


class GeofenceMonitor:
    """Home/away geofence state machine.

    Samples location on a fixed interval, classifies it against the saved home
    point, and on a home -> away transition runs one stove check (with bounded
    retry) per excursion. Collaborators are injected:

        store              SettingsStore for the home point and enabled flag
        location_provider  get_current_location() -> Coordinate | None
        detection_client   detect_outcome(signatures, **options) -> DetectionOutcome
        notifier           semantic notification calls (left_home(), ...)
        keep_alive         request_keep_alive() / release_keep_alive()

    Sampling steps never overlap: one worker thread per run plus a step lock.
    Detection I/O runs outside the state lock so set_home_location(), stop()
    and snapshot() stay responsive."""
    def __init__(
        self,
        state: MonitorState,
        logger: JsonLogger,
        store: SettingsStore,
        location_provider,
        detection_client,
        notifier,
        keep_alive,
        radius_m: float = HOME_RADIUS_METERS,
        interval_s: float = SAMPLE_INTERVAL_S,
        max_attempts: int = MAX_DETECTION_ATTEMPTS,
        retry_base_delay_s: float = RETRY_BASE_DELAY_S,
        retryable_signatures: Sequence[str] = RETRYABLE_SIGNATURES,
        detect_options: Optional[dict] = None,
        join_timeout_s: float = 2.0,
        on_location_status_changed: Optional[Callable[[bool, float], None]] = None,
        on_detection_outcome: Optional[Callable[[DetectionOutcome], None]] = None,
        on_error: Optional[Callable[[str], None]] = None,
    ):
        """
        Initialize the monitor and reload persisted settings.

        No threads are started here; start() (or initialize()) does that.
        """
        self.state = state
        self.logger = logger
        self.store = store
        self.location_provider = location_provider
        self.detection_client = detection_client
        self.notifier = notifier
        self.keep_alive = keep_alive

        self.radius_m = float(radius_m)
        self.interval_s = float(interval_s)
        self.max_attempts = max(1, int(max_attempts))
        self.retry_base_delay_s = float(retry_base_delay_s)
        if isinstance(retryable_signatures, (str, bytes)) or not all(
            isinstance(s, str) for s in retryable_signatures
        ):
            raise ValueError("retryable_signatures must be a list of strings")
        self.retryable_signatures = tuple(retryable_signatures)
        self.detect_options = dict(detect_options or {})
        self.join_timeout_s = float(join_timeout_s)

        self.on_location_status_changed = on_location_status_changed
        self.on_detection_outcome = on_detection_outcome
        self.on_error = on_error

        self._state_lock = threading.RLock()
        self._step_lock = threading.Lock()
        self._stop_evt = threading.Event()
        self._thread: Optional[threading.Thread] = None
        # Bumped on every transition and home change; a detection started in an
        # older excursion must not mark the current one as checked.
        self._excursion = 0

        self._control: Optional[ControlServer] = None
        # Set by dispose(); cancels manual checks.
        self._closing_evt = threading.Event()

        self.load_settings()

    # ---------------- Settings ----------------

    def load_settings(self):
        """Reload home location and enabled flag from the store (defaults on failure)."""
        enabled = self.store.load_enabled()
        home = self.store.load_home_location()
        with self._state_lock:
            self.state.enabled = enabled
            self.state.home_location = home
        self.logger.emit(
            "settings_loaded",
            enabled=enabled,
            home=(f"{home.latitude:.6f},{home.longitude:.6f}" if home else None),
        )

    def initialize(self) -> bool:
        """Check the location source and resume monitoring if it was enabled.

        Returns False when location is unavailable (permission or device
        fault); the caller decides what to do, nothing is retried here."""
        is_available = getattr(self.location_provider, "is_available", None)
        available = True
        if is_available is not None:
            try:
                available = bool(is_available())
            except Exception as e:
                self.logger.emit("location_error", error=str(e))
                available = False
        if not available:
            self.logger.emit("initialize_failed", reason="location_unavailable")
            self._report_error("Location access is required for geofencing")
            return False

        with self._state_lock:
            resume = self.state.enabled and self.state.home_location is not None
        if resume:
            self.start()
        self.logger.emit("initialized", resumed=resume)
        return True

    def set_home_location(self, location: Coordinate) -> bool:
        """Save a new home point and reset excursion bookkeeping."""
        if location is None or not location.has_position:
            self.logger.emit("home_location_rejected", reason="missing coordinates")
            return False
        if location.timestamp is None:
            location = dataclasses.replace(location, timestamp=epoch_ms())

        with self._state_lock:
            self.state.home_location = location
            self.state.proximity = ProximityState.NEAR_HOME
            self.state.has_checked_since_departure = False
            self.state.last_distance_miles = None
            self._excursion += 1
            start_now = self.state.enabled and not self.state.running

        saved = self.store.save_home_location(location)
        self.logger.emit("home_location_set", lat=location.latitude, lon=location.longitude, saved=saved)
        self._call(self.notifier.home_location_set)
        if start_now:
            self.start()
        return True

    def set_home_location_here(self) -> bool:
        """Use the current fix as the home point."""
        loc = self._acquire_location()
        if loc is None or not loc.has_position:
            self._report_error("Could not determine current location")
            return False
        return self.set_home_location(loc)

    def clear_home_location(self) -> bool:
        """Forget the home point. Monitoring cannot run without one, so it stops."""
        with self._state_lock:
            had_home = self.state.home_location is not None
            running = self.state.running
        if running:
            self.stop()
        with self._state_lock:
            self.state.home_location = None
            self.state.proximity = ProximityState.NEAR_HOME
            self.state.has_checked_since_departure = False
            self.state.last_distance_miles = None
            self._excursion += 1
        cleared = self.store.clear_home_location()
        self.logger.emit("home_location_cleared", had_home=had_home, cleared=cleared)
        return True

    def set_enabled(self, enabled: bool) -> bool:
        """Persist the enabled flag and start or stop monitoring to match."""
        enabled = bool(enabled)
        with self._state_lock:
            self.state.enabled = enabled
            has_home = self.state.home_location is not None
        saved = self.store.save_enabled(enabled)
        self.logger.emit("geofencing_enabled" if enabled else "geofencing_disabled", saved=saved, has_home=has_home)

        if enabled and has_home:
            self.start()
            self._call(self.notifier.geofencing_enabled)
        else:
            self.stop()
            if not enabled:
                self._call(self.notifier.geofencing_disabled)
        return True

    # ---------------- Run control ----------------

    def start(self) -> bool:
        """Start the worker thread: one sample right away, then one every interval_s.

        Returns without waiting for the first sample. No-op (returns False)
        without a home location or when already running."""
        with self._state_lock:
            if self.state.home_location is None:
                self.logger.emit("start_skipped", reason="no_home_location")
                return False
            if self.state.running:
                self.logger.emit("start_skipped", reason="already_running")
                return False
            stop_evt = threading.Event()
            self._stop_evt = stop_evt
            self.state.running = True

            # stop() takes the state lock, so its release always follows this request.
            self._call(self.keep_alive.request_keep_alive)
            self._call(self.notifier.monitoring_started)
            self.logger.emit("monitoring_started", interval_s=self.interval_s, radius_m=round(self.radius_m, 3))

            t = threading.Thread(target=self._loop, args=(stop_evt,), daemon=True, name="geofence-monitor")
            self._thread = t
            t.start()
        return True

    def stop(self):
        """Stop sampling. Idempotent; always releases keep-alive and reports the stop."""
        with self._state_lock:
            stop_evt = self._stop_evt
            thread = self._thread
            self._thread = None
            was_running = self.state.running
            self.state.running = False
        stop_evt.set()
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self.join_timeout_s)

        self._call(self.keep_alive.release_keep_alive)
        self._call(self.notifier.monitoring_stopped)
        self.logger.emit("monitoring_stopped", was_running=was_running)

    def dispose(self):
        """Stop monitoring, cancel manual checks, and release the control socket and HTTP session."""
        self._closing_evt.set()
        self.stop()
        self.stop_control_socket()
        close = getattr(self.detection_client, "close", None)
        if close is not None:
            self._call(close)

    @property
    def is_running(self) -> bool:
        with self._state_lock:
            return self.state.running

    def snapshot(self) -> MonitorState:
        """Immutable copy of the session for presentation code."""
        with self._state_lock:
            return self.state.snapshot()

    # ---------------- Local control socket ----------------

    def start_control_socket(self, sock_path: str):
        if not sock_path or self._control is not None:
            return
        self._control = ControlServer(self, self.logger, sock_path)
        self._control.start()

    def stop_control_socket(self):
        if self._control is not None:
            self._control.stop()
            self._control = None

    # ---------------- Sampling ----------------

    def _loop(self, stop_evt: threading.Event):
        """Worker loop: sample immediately, then once per interval until stopped."""
        self._safe_step(stop_evt)
        while not stop_evt.wait(self.interval_s):
            self._safe_step(stop_evt)

    def _safe_step(self, stop_evt: threading.Event):
        with self._step_lock:
            if stop_evt.is_set():
                return None
            try:
                return self._sample_once(stop_evt)
            except Exception as e:
                # The periodic loop must survive any single bad step.
                self.logger.emit("sample_error", error=str(e))
                self._report_error(f"Error checking location: {e}")
                return None

    def _acquire_location(self) -> Optional[Coordinate]:
        try:
            return self.location_provider.get_current_location()
        except Exception as e:
            self.logger.emit("location_error", error=str(e))
            return None

    def _sample_once(self, stop_evt: Optional[threading.Event] = None) -> Optional[str]:
        """One sampling step. Returns "left_home", "returned_home" or None."""
        if stop_evt is None:
            stop_evt = self._stop_evt
        with self._state_lock:
            home = self.state.home_location
        if home is None:
            return None

        loc = self._acquire_location()
        if loc is None or not loc.has_position:
            # Transient; never a transition.
            self.logger.debug("sample_skipped", reason="no_fix")
            return None

        now_near = is_near_home(home, loc, self.radius_m)
        miles = distance_miles(home, loc) or 0.0

        transition = None
        with self._state_lock:
            if self.state.home_location is not home:
                self.logger.emit("sample_discarded", reason="home_location_changed")
                return None
            was_near = self.state.is_near_home
            self.state.proximity = ProximityState.NEAR_HOME if now_near else ProximityState.AWAY
            self.state.last_distance_miles = miles
            self.state.last_sample_ts = now_s()
            if was_near and not now_near:
                transition = LEFT_HOME
            elif not was_near and now_near:
                transition = RETURNED_HOME
            if transition is not None:
                self.state.has_checked_since_departure = False
                self._excursion += 1

        self.logger.debug("sample", near=int(now_near), distance_miles=round(miles, 4))
        self._callback(self.on_location_status_changed, now_near, miles)

        if transition == LEFT_HOME:
            self.logger.emit(LEFT_HOME, distance_miles=round(miles, 4))
            self._call(self.notifier.left_home)
            self._check_stove(stop_evt)
        elif transition == RETURNED_HOME:
            self.logger.emit(RETURNED_HOME, distance_miles=round(miles, 4))
            self._call(self.notifier.returned_home)
        return transition

    # ---------------- Detection ----------------

    def _wait(self, stop_evt: threading.Event, delay_s: float) -> bool:
        """Sleep between attempts; True if stop() interrupted the wait."""
        return stop_evt.wait(delay_s)

    def _detect_once(self) -> DetectionOutcome:
        try:
            return self.detection_client.detect_outcome(self.retryable_signatures, **self.detect_options)
        except Exception as e:
            msg = str(e) or type(e).__name__
            return DetectionFailure(message=msg, retryable=is_retryable(msg, self.retryable_signatures))

    def _run_detection(self, stop_evt: threading.Event) -> Optional[DetectionOutcome]:
        """Attempt loop with linear backoff. None if cancelled by stop()."""
        for attempt in range(1, self.max_attempts + 1):
            if stop_evt.is_set():
                self.logger.emit("detection_cancelled", attempt=attempt)
                return None
            self.logger.emit("detection_attempt", attempt=attempt, max_attempts=self.max_attempts)
            outcome = self._detect_once()

            if isinstance(outcome, DetectionSuccess):
                self.logger.emit(
                    "detection_success",
                    attempt=attempt,
                    stove_is_on=outcome.stove_is_on,
                    on_knobs=outcome.on_knob_count,
                    total_knobs=outcome.total_knob_count,
                )
                return outcome

            if outcome.retryable and attempt < self.max_attempts:
                delay = self.retry_base_delay_s * attempt
                self.logger.emit("detection_retry", attempt=attempt, delay_s=delay, error=outcome.message)
                if self._wait(stop_evt, delay):
                    self.logger.emit("detection_cancelled", attempt=attempt + 1)
                    return None
                continue

            self.logger.emit("detection_failed", attempts=attempt, retryable=outcome.retryable, error=outcome.message)
            return outcome
        return None  # pragma: no cover

    def _check_stove(self, stop_evt: threading.Event) -> Optional[DetectionOutcome]:
        """Run the excursion's stove check unless it already ran."""
        with self._state_lock:
            if self.state.has_checked_since_departure:
                self.logger.emit("detection_skipped", reason="already_checked")
                return None
            excursion = self._excursion

        outcome = self._run_detection(stop_evt)
        if outcome is None:
            return None

        with self._state_lock:
            if excursion == self._excursion:
                self.state.has_checked_since_departure = True
        self._report_outcome(outcome)
        return outcome

    def trigger_stove_check(self) -> Optional[DetectionOutcome]:
        """Manual check, independent of geofence transitions.

        Serialized with sampling steps, so it never overlaps a departure's
        check. dispose() cancels it."""
        with self._step_lock:
            outcome = self._run_detection(self._closing_evt)
            if outcome is not None:
                self._report_outcome(outcome)
        return outcome

    def _report_outcome(self, outcome: DetectionOutcome):
        with self._state_lock:
            self.state.last_outcome = outcome
            self.state.detections_total += 1
        if isinstance(outcome, DetectionSuccess):
            self._call(self.notifier.detection_success, outcome.stove_is_on, outcome.on_knob_count,
                       outcome.total_knob_count)
        else:
            self._call(self.notifier.detection_failure, outcome.message)
            self._report_error(f"Failed to check stove status: {outcome.message}")
        self._callback(self.on_detection_outcome, outcome)

    # ---------------- Queries ----------------

    def current_location(self) -> Optional[Coordinate]:
        return self._acquire_location()

    def distance_from_home_miles(self) -> Optional[float]:
        with self._state_lock:
            home = self.state.home_location
        if home is None:
            return None
        return distance_miles(home, self._acquire_location())

    # ---------------- Helpers ----------------

    def _call(self, fn, *args):
        """Invoke a collaborator; its failures are logged, never propagated."""
        try:
            return fn(*args)
        except Exception as e:
            self.logger.emit("collaborator_error", call=getattr(fn, "__name__", repr(fn)), error=str(e))
            return None

    def _callback(self, cb, *args):
        if cb is None:
            return
        try:
            cb(*args)
        except Exception as e:
            self.logger.emit("callback_error", callback=getattr(cb, "__name__", repr(cb)), error=str(e))

    def _report_error(self, message: str):
        self._callback(self.on_error, message)
