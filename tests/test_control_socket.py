import importlib.util
import json
import socket
import sys
import threading
import time
from pathlib import Path

import pytest
from conftest import HOME, north_of

from stovemon.control import ControlServer
from stovemon.constants import VERSION
from stovemon.state import DetectionSuccess


def load_ctl():
    script = Path(__file__).resolve().parents[1] / "stovemonctl.py"
    spec = importlib.util.spec_from_file_location("stovemonctl", script)
    mod = importlib.util.module_from_spec(spec)
    sys.modules["stovemonctl"] = mod
    assert spec.loader is not None
    spec.loader.exec_module(mod)
    return mod


def _server(mon, logger):
    return ControlServer(mon, logger, "")


def test_status_reports_session(make_monitor):
    mon, d = make_monitor()
    resp = _server(mon, d.logger).handle_command("status")
    assert resp["ok"] is True
    assert resp["version"] == VERSION
    state = resp["state"]
    assert state["enabled"] is False
    assert state["running"] is False
    assert state["proximity"] == "near_home"
    assert state["home_location"]["latitude"] == 37.0
    json.dumps(resp)


def test_enable_disable(make_monitor):
    mon, d = make_monitor(locations=[HOME])
    srv = _server(mon, d.logger)
    assert srv.handle_command("enable") == {"ok": True}
    assert mon.is_running is True
    assert srv.handle_command("DISABLE") == {"ok": True}
    assert mon.is_running is False
    assert d.store.load_enabled() is False


def test_set_home_parses_coordinates(make_monitor):
    mon, d = make_monitor()
    srv = _server(mon, d.logger)
    assert srv.handle_command("set-home 38.5,-121.25") == {"ok": True}
    assert (mon.state.home_location.latitude, mon.state.home_location.longitude) == (38.5, -121.25)
    assert srv.handle_command("set-home 38.5, -121.0")["ok"] is True
    assert mon.state.home_location.longitude == -121.0


@pytest.mark.parametrize("cmd", ["set-home", "set-home north", "set-home 91,0"])
def test_set_home_rejects_bad_input(make_monitor, cmd):
    mon, d = make_monitor()
    resp = _server(mon, d.logger).handle_command(cmd)
    assert resp["ok"] is False
    assert resp["error"]
    assert mon.state.home_location.latitude == 37.0


def test_set_home_here_needs_a_fix(make_monitor):
    mon, d = make_monitor(locations=[None])
    srv = _server(mon, d.logger)
    assert srv.handle_command("set-home-here") == {"ok": False, "error": "no location fix"}

    d.provider.push(north_of(HOME, 50.0))
    assert srv.handle_command("set-home-here") == {"ok": True}
    assert mon.state.home_location.latitude > 37.0


def test_clear_home(make_monitor):
    mon, d = make_monitor()
    assert _server(mon, d.logger).handle_command("clear-home") == {"ok": True}
    assert mon.state.home_location is None


def test_locate_reports_distance(make_monitor):
    mon, d = make_monitor(locations=[north_of(HOME, 400.0)])
    resp = _server(mon, d.logger).handle_command("locate")
    assert resp["ok"] is True
    assert resp["location"]["latitude"] > 37.0
    assert resp["distance_miles"] == pytest.approx(400.0 / 1609.34, rel=1e-3)


def test_check_runs_in_background(make_monitor):
    mon, d = make_monitor(outcomes=[DetectionSuccess(True, 1, 4)])
    resp = _server(mon, d.logger).handle_command("check")
    assert resp == {"ok": True, "queued": True}

    deadline = time.monotonic() + 2.0
    while time.monotonic() < deadline and "detection_success" not in d.notifier.names():
        time.sleep(0.01)
    assert d.notifier.calls == [("detection_success", (True, 1, 4))]


@pytest.mark.parametrize("cmd,error", [("", "empty command"), ("reboot", "unknown command: reboot")])
def test_bad_commands(make_monitor, cmd, error):
    mon, d = make_monitor()
    assert _server(mon, d.logger).handle_command(cmd) == {"ok": False, "error": error}


def _send_cmd(sock_path: str, cmd: str) -> dict:
    s = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    s.settimeout(2.0)
    s.connect(sock_path)
    s.sendall((cmd.strip() + "\n").encode())
    data = b""
    while b"\n" not in data:
        chunk = s.recv(4096)
        if not chunk:
            break
        data += chunk
    s.close()
    line = data.split(b"\n", 1)[0].decode(errors="replace").strip()
    return json.loads(line) if line else {}


@pytest.mark.integration
def test_control_socket_round_trip(make_monitor, tmp_path):
    mon, d = make_monitor(locations=[HOME])

    sock_path = tmp_path / "stovemon.sock"
    mon.start_control_socket(str(sock_path))

    # Wait briefly for server thread to bind.
    deadline = time.time() + 2.0
    while time.time() < deadline and not sock_path.exists():
        time.sleep(0.01)

    resp = _send_cmd(str(sock_path), "enable")
    assert resp.get("ok") is True
    assert mon.is_running is True

    status = _send_cmd(str(sock_path), "status")
    assert status["state"]["running"] is True

    ctl = load_ctl()
    assert ctl._send(str(sock_path), "disable") == {"ok": True}
    assert mon.is_running is False

    mon.dispose()
    assert not sock_path.exists()


def test_ctl_unreachable_daemon(tmp_path):
    ctl = load_ctl()
    resp = ctl._send(str(tmp_path / "missing.sock"), "status")
    assert resp["ok"] is False
    assert "cannot reach daemon" in resp["error"]


def test_ctl_status_line():
    ctl = load_ctl()
    line = ctl._format_status({
        "ok": True,
        "version": "1.0.0",
        "state": {
            "enabled": True,
            "running": True,
            "home_location": {"latitude": 37.0, "longitude": -122.0},
            "proximity": "away",
            "last_distance_miles": 1.234,
            "last_outcome": {"type": "DetectionSuccess", "stove_is_on": False, "on_knob_count": 0,
                             "total_knob_count": 4},
        },
    })
    assert "home=37.000000,-122.000000" in line
    assert "distance=1.23mi" in line
    assert "last_check=stove OFF" in line


@pytest.mark.integration
def test_enable_and_status_answer_during_departure_check(make_monitor):
    mon, d = make_monitor(locations=[north_of(HOME, 1000.0)])
    gate = threading.Event()
    entered = threading.Event()

    def slow_outcome(signatures, **options):
        entered.set()
        gate.wait(5.0)
        return DetectionSuccess(False, 0, 4)

    d.client.detect_outcome = slow_outcome
    srv = _server(mon, d.logger)
    try:
        t0 = time.monotonic()
        assert srv.handle_command("enable") == {"ok": True}
        assert entered.wait(2.0)
        assert srv.handle_command("status")["state"]["running"] is True
        assert time.monotonic() - t0 < 1.0
    finally:
        gate.set()
