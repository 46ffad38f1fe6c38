import threading
import time

import pytest
from conftest import HOME, north_of

from stovemon.monitor import GeofenceMonitor
from stovemon.state import Coordinate, DetectionFailure, DetectionSuccess, MonitorState
from stovemon.storage import SettingsStore

AWAY = north_of(HOME, 1000.0)


def _wait_for(pred, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if pred():
            return True
        time.sleep(0.01)
    return pred()


def test_start_without_home_is_noop(make_monitor):
    mon, d = make_monitor(home=None)
    assert mon.start() is False
    assert mon.is_running is False
    assert d.keep_alive.requests == 0
    assert d.provider.calls == 0
    assert ("start_skipped", {"reason": "no_home_location"}) in d.logger.events


def test_start_samples_immediately_and_requests_keep_alive(make_monitor):
    mon, d = make_monitor(locations=[HOME])
    assert mon.start() is True
    assert mon.is_running is True
    # First sample runs on the worker right away, not after a full interval.
    assert _wait_for(lambda: d.provider.calls == 1)
    assert d.keep_alive.requests == 1
    assert d.notifier.names() == ["monitoring_started"]


def test_second_start_is_noop(make_monitor):
    mon, d = make_monitor(locations=[HOME])
    mon.start()
    assert mon.start() is False
    assert d.keep_alive.requests == 1
    assert _wait_for(lambda: d.provider.calls == 1)
    time.sleep(0.05)
    assert d.provider.calls == 1


def test_stop_is_idempotent_and_always_releases(make_monitor):
    mon, d = make_monitor(locations=[HOME])
    mon.start()
    mon.stop()
    mon.stop()
    assert mon.is_running is False
    assert d.keep_alive.releases == 2
    assert d.notifier.names().count("monitoring_stopped") == 2


def test_enable_and_disable_drive_monitoring(make_monitor):
    mon, d = make_monitor(locations=[HOME])

    mon.set_enabled(True)
    assert mon.is_running is True
    assert d.store.load_enabled() is True
    assert "geofencing_enabled" in d.notifier.names()

    mon.set_enabled(False)
    assert mon.is_running is False
    assert d.store.load_enabled() is False
    assert d.notifier.names()[-1] == "geofencing_disabled"


def test_enable_without_home_does_not_start(make_monitor):
    mon, d = make_monitor(home=None)
    mon.set_enabled(True)
    assert mon.is_running is False
    assert d.store.load_enabled() is True
    assert "geofencing_enabled" not in d.notifier.names()


def test_set_home_while_enabled_starts(make_monitor):
    mon, d = make_monitor(locations=[HOME], home=None, enabled=True)
    assert mon.is_running is False
    mon.set_home_location(HOME)
    assert mon.is_running is True


def test_clear_home_stops_and_forgets(make_monitor):
    mon, d = make_monitor(locations=[HOME], enabled=True)
    mon.start()
    assert mon.clear_home_location() is True
    assert mon.is_running is False
    assert mon.state.home_location is None
    assert d.store.load_home_location() is None
    assert mon.start() is False


def test_initialize_resumes_persisted_session(make_monitor):
    mon, d = make_monitor(locations=[HOME], enabled=True)
    assert mon.state.enabled is True
    assert mon.initialize() is True
    assert mon.is_running is True
    assert ("initialized", {"resumed": True}) in d.logger.events


def test_initialize_reports_unavailable_location(make_monitor):
    errors = []
    mon, d = make_monitor(enabled=True, on_error=errors.append)
    d.provider.available = False
    assert mon.initialize() is False
    assert mon.is_running is False
    assert errors == ["Location access is required for geofencing"]


def test_settings_survive_restart(make_monitor, tmp_path, logger):
    root = tmp_path / "persist"
    home = Coordinate(latitude=40.0, longitude=-75.0, accuracy=8.0)
    mon, d = make_monitor(locations=[home], home=None, store_root=root)
    mon.set_home_location(home)
    mon.set_enabled(True)
    mon.dispose()
    assert d.client.closed is True

    restarted = GeofenceMonitor(
        state=MonitorState(),
        logger=logger,
        store=SettingsStore(root, logger),
        location_provider=d.provider,
        detection_client=d.client,
        notifier=d.notifier,
        keep_alive=d.keep_alive,
    )
    try:
        assert restarted.state.enabled is True
        assert restarted.state.home_location.latitude == 40.0
        assert restarted.state.home_location.accuracy == 8.0
        assert restarted.state.is_near_home
        assert restarted.state.has_checked_since_departure is False
    finally:
        restarted.stop()


@pytest.mark.integration
def test_no_sampling_after_stop(make_monitor):
    mon, d = make_monitor(locations=[HOME], interval_s=0.01)
    mon.start()
    assert _wait_for(lambda: d.provider.calls >= 3)
    mon.stop()
    calls = d.provider.calls
    time.sleep(0.1)
    assert d.provider.calls == calls


@pytest.mark.integration
def test_loop_survives_a_failing_step(make_monitor):
    # A non-Coordinate fix blows up inside the step; the timer must keep going.
    mon, d = make_monitor(locations=[HOME, "garbage", "garbage", AWAY], interval_s=0.01)
    mon.start()
    assert _wait_for(lambda: "detection_success" in d.notifier.names())
    mon.stop()
    assert "sample_error" in d.logger.names()
    assert d.client.calls == 1


@pytest.mark.integration
def test_stop_from_observer_on_worker_thread(make_monitor):
    holder = {}

    def on_status(near, miles):
        if not near:
            holder["mon"].stop()

    mon, d = make_monitor(locations=[HOME, AWAY], interval_s=0.01, on_location_status_changed=on_status)
    holder["mon"] = mon
    mon.start()
    assert _wait_for(lambda: "detection_cancelled" in d.logger.names())
    assert mon.is_running is False
    # Stop landed before the check began; the cancelled sequence is silent.
    assert d.client.calls == 0
    assert "detection_cancelled" in d.logger.names()


def _gated_client(d):
    """Make the detection client block until the returned gate is set."""
    gate = threading.Event()
    entered = threading.Event()

    def slow_outcome(signatures, **options):
        entered.set()
        gate.wait(5.0)
        return DetectionSuccess(False, 0, 4)

    d.client.detect_outcome = slow_outcome
    return gate, entered


@pytest.mark.integration
def test_enable_returns_before_first_check_finishes(make_monitor):
    mon, d = make_monitor(locations=[AWAY])
    gate, entered = _gated_client(d)
    try:
        t0 = time.monotonic()
        mon.set_enabled(True)
        assert time.monotonic() - t0 < 0.5
        assert entered.wait(2.0)

        # The worker is inside the departure check; queries stay responsive.
        t0 = time.monotonic()
        assert mon.snapshot().running is True
        assert time.monotonic() - t0 < 0.5
    finally:
        gate.set()

    assert _wait_for(lambda: "detection_success" in d.notifier.names())
    names = d.notifier.names()
    assert names.index("monitoring_started") < names.index("left_home")
    assert names.index("geofencing_enabled") < names.index("detection_success")


@pytest.mark.integration
def test_concurrent_stop_releases_after_request(make_monitor):
    mon, d = make_monitor(locations=[HOME])
    order = []
    stopper = {}

    def request():
        # stop() races in from another thread while the request is in flight.
        t = threading.Thread(target=mon.stop)
        stopper["t"] = t
        t.start()
        time.sleep(0.05)
        order.append("request")
        return True

    def release():
        order.append("release")
        return True

    d.keep_alive.request_keep_alive = request
    d.keep_alive.release_keep_alive = release

    mon.start()
    stopper["t"].join(2.0)

    assert order == ["request", "release"]
    assert mon.is_running is False
    names = d.notifier.names()
    assert names.index("monitoring_started") < names.index("monitoring_stopped")


def test_dispose_cancels_manual_check(make_monitor):
    mon, d = make_monitor(outcomes=[DetectionFailure("timeout", retryable=True), DetectionSuccess(False, 0, 4)])

    def wait_then_dispose(stop_evt, delay_s):
        d.delays.append(delay_s)
        mon.dispose()
        return stop_evt.is_set()

    mon._wait = wait_then_dispose

    assert mon.trigger_stove_check() is None
    assert d.client.calls == 1
    assert "detection_success" not in d.notifier.names()
    assert "detection_failure" not in d.notifier.names()


@pytest.mark.integration
def test_manual_check_waits_for_running_step(make_monitor):
    mon, d = make_monitor()
    done = threading.Event()

    def check():
        mon.trigger_stove_check()
        done.set()

    with mon._step_lock:
        t = threading.Thread(target=check)
        t.start()
        time.sleep(0.1)
        assert d.client.calls == 0
    assert done.wait(2.0)
    assert d.client.calls == 1
    assert d.notifier.names() == ["detection_success"]
