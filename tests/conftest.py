import pytest

from stovemon.monitor import GeofenceMonitor
from stovemon.state import Coordinate, DetectionSuccess, MonitorState
from stovemon.storage import SettingsStore

HOME = Coordinate(latitude=37.0, longitude=-122.0)
METERS_PER_DEG_LAT = 111194.9266


def north_of(origin: Coordinate, meters: float) -> Coordinate:
    """A point `meters` due north of origin (great-circle distance along the meridian)."""
    return Coordinate(latitude=origin.latitude + meters / METERS_PER_DEG_LAT, longitude=origin.longitude)


class CapturingLogger:
    """Minimal logger that matches the .emit(event, **fields) contract."""
    def __init__(self):
        self.events = []

    def emit(self, event: str, **fields):
        self.events.append((event, fields))

    def debug(self, event: str, **fields):
        self.events.append((event, fields))

    def names(self):
        return [e for e, _ in self.events]


class DummyNotifier:
    def __init__(self):
        self.calls = []

    def _record(self, name, *args):
        self.calls.append((name, args))
        return True

    def monitoring_started(self):
        return self._record("monitoring_started")

    def monitoring_stopped(self):
        return self._record("monitoring_stopped")

    def geofencing_enabled(self):
        return self._record("geofencing_enabled")

    def geofencing_disabled(self):
        return self._record("geofencing_disabled")

    def home_location_set(self):
        return self._record("home_location_set")

    def left_home(self):
        return self._record("left_home")

    def returned_home(self):
        return self._record("returned_home")

    def detection_success(self, stove_is_on, on_count, total_count):
        return self._record("detection_success", stove_is_on, on_count, total_count)

    def detection_failure(self, message):
        return self._record("detection_failure", message)

    def names(self):
        return [n for n, _ in self.calls]


class ScriptedLocationProvider:
    """Returns queued fixes in order, then repeats the last one."""
    def __init__(self, *locations, available=True):
        self.locations = list(locations)
        self.last = None
        self.calls = 0
        self.available = available

    def push(self, *locations):
        self.locations.extend(locations)

    def get_current_location(self):
        self.calls += 1
        if self.locations:
            self.last = self.locations.pop(0)
        if isinstance(self.last, Exception):
            raise self.last
        return self.last

    def is_available(self):
        return self.available


class ScriptedDetectionClient:
    """Returns queued outcomes (or raises queued exceptions) per attempt."""
    def __init__(self, *outcomes):
        self.outcomes = list(outcomes) or [DetectionSuccess(False, 0, 4)]
        self.calls = 0
        self.closed = False

    def detect_outcome(self, signatures, **options):
        self.calls += 1
        item = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(item, Exception):
            raise item
        return item

    def close(self):
        self.closed = True


class DummyKeepAlive:
    def __init__(self):
        self.requests = 0
        self.releases = 0

    def request_keep_alive(self):
        self.requests += 1
        return True

    def release_keep_alive(self):
        self.releases += 1
        return True


@pytest.fixture
def logger():
    return CapturingLogger()


@pytest.fixture
def make_monitor(tmp_path, logger):
    """Build a monitor with test doubles. Returns (monitor, doubles namespace)."""
    created = []

    def _make(locations=(), outcomes=(), home=HOME, enabled=False, store_root=None, **kwargs):
        store = SettingsStore(store_root or (tmp_path / "settings"), logger)
        if home is not None:
            store.save_home_location(home)
        store.save_enabled(enabled)

        class Doubles:
            pass

        d = Doubles()
        d.logger = logger
        d.store = store
        d.provider = ScriptedLocationProvider(*locations)
        d.client = ScriptedDetectionClient(*outcomes)
        d.notifier = DummyNotifier()
        d.keep_alive = DummyKeepAlive()
        d.delays = []

        mon = GeofenceMonitor(
            state=MonitorState(),
            logger=logger,
            store=store,
            location_provider=d.provider,
            detection_client=d.client,
            notifier=d.notifier,
            keep_alive=d.keep_alive,
            **kwargs,
        )

        def fake_wait(stop_evt, delay_s):
            d.delays.append(delay_s)
            return stop_evt.is_set()

        mon._wait = fake_wait
        created.append(mon)
        return mon, d

    yield _make

    for mon in created:
        mon.stop()


