import io
import json
import socket

from conftest import CapturingLogger

from stovemon.keepalive import NullKeepAlive, SystemdKeepAlive, default_keep_alive
from stovemon.logging import JsonLogger


def test_systemd_keep_alive_speaks_sd_notify(tmp_path):
    path = str(tmp_path / "notify.sock")
    srv = socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM)
    srv.bind(path)
    srv.settimeout(2.0)
    try:
        ka = SystemdKeepAlive(CapturingLogger(), notify_socket=path)
        assert ka.request_keep_alive() is True
        assert srv.recv(1024).decode().splitlines()[0] == "READY=1"
        assert ka.release_keep_alive() is True
        assert srv.recv(1024).decode().splitlines()[0] == "STOPPING=1"
        assert ka.active is False
    finally:
        srv.close()


def test_systemd_keep_alive_without_socket_is_harmless(tmp_path):
    logger = CapturingLogger()
    ka = SystemdKeepAlive(logger, notify_socket=str(tmp_path / "gone.sock"))
    assert ka.request_keep_alive() is False
    assert "keepalive_error" in logger.names()


def test_default_backend_follows_environment(monkeypatch, tmp_path):
    monkeypatch.delenv("NOTIFY_SOCKET", raising=False)
    assert isinstance(default_keep_alive(CapturingLogger()), NullKeepAlive)
    monkeypatch.setenv("NOTIFY_SOCKET", str(tmp_path / "n.sock"))
    assert isinstance(default_keep_alive(CapturingLogger()), SystemdKeepAlive)


def test_json_logger_emits_one_object_per_line():
    out = io.StringIO()
    JsonLogger(enable_json=True, stream=out).emit("left_home", distance_miles=0.31)
    payload = json.loads(out.getvalue())
    assert payload["event"] == "left_home"
    assert payload["distance_miles"] == 0.31
    assert "ts_iso" in payload


def test_text_logger_and_debug_gate():
    out = io.StringIO()
    logger = JsonLogger(enable_json=False, stream=out)
    logger.emit("detection_retry", attempt=1, delay_s=2.0)
    logger.debug("sample", near=1)
    lines = out.getvalue().splitlines()
    assert len(lines) == 1
    assert lines[0].endswith("detection_retry attempt=1 delay_s=2.0")

    JsonLogger(enable_json=False, stream=out, verbose=True).debug("sample", near=1)
    assert out.getvalue().splitlines()[-1].endswith("sample near=1")
