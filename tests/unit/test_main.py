from __future__ import annotations

import logging
import os
import socket
import threading
from unittest.mock import MagicMock

import pytest

import soqtt.main as m
from soqtt.broker import BrokerError
from soqtt.config import load_config


@pytest.fixture(autouse=True)
def no_signal_handlers(monkeypatch):
    installed = {}
    monkeypatch.setattr(m.signal, "signal", lambda signum, handler: installed.__setitem__(signum, handler))
    return installed


@pytest.fixture
def fake_broker(monkeypatch):
    fake = MagicMock()
    monkeypatch.setattr(m, "BrokerClient", lambda *a, **k: fake)
    return fake


@pytest.fixture
def unix_server(tmp_path):
    path = str(tmp_path / "app.sock")
    server = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    server.bind(path)
    server.listen(1)
    yield path, server
    server.close()


def _cfg(socket_path: str, **kwargs):
    return load_config(socket_path=socket_path, topic_prefix="dev", dotenv_enabled=False, **kwargs)


def _stopped() -> threading.Event:
    ev = threading.Event()
    ev.set()
    return ev


# -------------------------
# CLI
# -------------------------
def test_version_flag_exits(monkeypatch, capsys):
    monkeypatch.setattr(m, "get_version_string", lambda: "1.2.3")
    with pytest.raises(SystemExit) as exc:
        m.main(["-V"])
    assert exc.value.code == 0
    assert capsys.readouterr().out == "soqtt - version 1.2.3\n"


def test_missing_socket_prints_usage_and_exits_1(monkeypatch, tmp_path, capsys):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
    with pytest.raises(SystemExit) as exc:
        m.main([])
    assert exc.value.code == 1
    assert "links a unix socket" in capsys.readouterr().err


def test_invalid_config_exits_1(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(m, "run_bridge", lambda cfg: pytest.fail("should not run"))
    with pytest.raises(SystemExit) as exc:
        m.main(["-s", "/tmp/x.sock", "-b", "ws://nope"])
    assert exc.value.code == 1


def test_main_passes_flags_and_exits_with_run_bridge_code(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    seen = {}

    def fake_run(cfg):
        seen["cfg"] = cfg
        return 7

    monkeypatch.setattr(m, "run_bridge", fake_run)
    with pytest.raises(SystemExit) as exc:
        m.main(["-s", "/tmp/x.sock", "-b", "tcp://b:1999", "-t", "pfx", "--flush-trailing"])

    assert exc.value.code == 7
    cfg = seen["cfg"]
    assert cfg.socket_path == "/tmp/x.sock"
    assert cfg.broker.host == "b" and cfg.broker.port == 1999
    assert cfg.topics.inbound == "pfx/in"
    assert cfg.flush_trailing is True



def test_log_level_from_dotenv_file_applies(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    (tmp_path / ".env").write_text("SOQTT_LOG_LEVEL=DEBUG\n")
    monkeypatch.setattr(m, "run_bridge", lambda cfg: 0)

    root = logging.getLogger()
    previous = root.level
    try:
        with pytest.raises(SystemExit) as exc:
            m.main(["-s", "/tmp/x.sock"])
        assert exc.value.code == 0
        assert root.level == logging.DEBUG
    finally:
        root.setLevel(previous)
        os.environ.pop("SOQTT_LOG_LEVEL", None)


# -------------------------
# supervisor
# -------------------------
def test_broker_connect_failure_returns_1(fake_broker, tmp_path):
    fake_broker.connect.side_effect = BrokerError("refused")

    assert m.run_bridge(_cfg(str(tmp_path / "none.sock")), shutdown=_stopped()) == 1
    fake_broker.subscribe.assert_not_called()


def test_socket_failure_returns_1_and_disconnects(fake_broker, tmp_path):
    assert m.run_bridge(_cfg(str(tmp_path / "missing.sock")), shutdown=_stopped()) == 1

    fake_broker.connect.assert_called_once()
    fake_broker.subscribe.assert_not_called()
    fake_broker.disconnect.assert_called_once()


def test_subscribe_failure_returns_1(fake_broker, unix_server):
    path, _ = unix_server
    fake_broker.subscribe.side_effect = BrokerError("not authorized")

    assert m.run_bridge(_cfg(path), shutdown=_stopped()) == 1
    fake_broker.disconnect.assert_called_once()


def test_runs_until_shutdown_then_returns_0(fake_broker, unix_server):
    path, _ = unix_server

    assert m.run_bridge(_cfg(path), shutdown=_stopped()) == 0

    fake_broker.connect.assert_called_once()
    topic, handler = fake_broker.subscribe.call_args[0]
    assert topic == "dev/in"
    assert callable(handler)
    fake_broker.disconnect.assert_called_once()


def test_bridge_relays_both_directions(fake_broker, unix_server):
    path, server = unix_server
    shutdown = threading.Event()
    published = threading.Event()
    fake_broker.publish.side_effect = lambda topic, payload: published.set()

    result = {}
    t = threading.Thread(target=lambda: result.setdefault("code", m.run_bridge(_cfg(path), shutdown=shutdown)))
    t.start()
    try:
        server.settimeout(5.0)
        peer, _ = server.accept()
        peer.settimeout(5.0)
        with peer:
            peer.sendall(b"from socket\n")
            assert published.wait(5.0)
            fake_broker.publish.assert_called_with("dev/out", b"from socket")

            # subscribe happens before the outbound relay starts
            _, handler = fake_broker.subscribe.call_args[0]
            handler(b"from broker")
            assert peer.recv(64) == b"from broker\n"
    finally:
        shutdown.set()
        t.join(timeout=5.0)

    assert result["code"] == 0


def test_signal_handler_requests_shutdown(no_signal_handlers):
    rt = m.Runtime(shutdown=threading.Event())
    m._install_signal_handlers(rt)

    no_signal_handlers[m.signal.SIGTERM](m.signal.SIGTERM, None)

    assert rt.shutdown.is_set()
    assert m.signal.SIGINT in no_signal_handlers
