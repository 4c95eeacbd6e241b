from __future__ import annotations

import logging
import threading

import pytest

import mqtt_capture.session as session
from fakes import (
    LOSS,
    OK,
    FakeClock,
    ScriptedConnection,
    ack_connect,
    ack_subscribe,
    deliver,
    drop_connection,
    msg,
    scripted_loop,
)
from mqtt_capture.config import CaptureConfig, Endpoint, Topic, default_config
from mqtt_capture.mqtt_client import (
    CaptureError,
    ConnectError,
    Credentials,
    SubscribeError,
    TlsPolicy,
    connect,
)
from mqtt_capture.output import OutputWriteError, read_captured
from mqtt_capture.session import SessionController


def _payload(size: int) -> bytes:
    """A JSON object payload of exactly `size` bytes."""
    body = '{"v":"' + "x" * (size - 8) + '"}'
    assert len(body) == size
    return body.encode("utf-8")


def _config(**overrides) -> CaptureConfig:
    base = dict(
        hostname="mqtt://localhost:1883",
        client_id="capture-1",
        username="u",
        password="p",
        subscribed_topics=(Topic("t1", 0), Topic("t2", 1)),
        reconnect_delay_s=0.0,
    )
    base.update(overrides)
    return CaptureConfig(**base)


class RecordingConnector:
    def __init__(self, conn):
        self.conn = conn
        self.calls = []

    def __call__(self, *args, **kwargs):
        self.calls.append((args, kwargs))
        return self.conn


def _controller(conn, tmp_path, duration_s=2, **kwargs):
    kwargs.setdefault("clock", FakeClock(step=0.1))
    kwargs.setdefault("poll_timeout_s", 0.01)
    return SessionController(
        kwargs.pop("config", _config()),
        duration_s=duration_s,
        output_path=tmp_path / "out.json",
        connector=kwargs.pop("connector", RecordingConnector(conn)),
        **kwargs,
    )


def test_end_to_end_capture_writes_output(tmp_path):
    sizes = [10, 20, 10, 15, 25]
    conn = ScriptedConnection([msg(_payload(s), topic="t1" if i % 2 else "t2") for i, s in enumerate(sizes)])
    connector = RecordingConnector(conn)

    result = _controller(conn, tmp_path, connector=connector).run()

    assert conn.subscribed == (["t1", "t2"], [0, 1])
    assert result.capture.stats.message_count == 5
    assert result.capture.stats.total_bytes == 80
    assert result.topics == ["t1", "t2"]

    written = read_captured(tmp_path / "out.json")
    assert len(written) == 5
    assert [len(r["v"]) + 8 for r in written] == sizes
    assert conn.calls == ["subscribe", "disconnect"]

    args, kwargs = connector.calls[0]
    endpoint, client_id, creds, tls = args
    assert (endpoint.host, endpoint.port, endpoint.tls) == ("localhost", 1883, False)
    assert client_id == "capture-1"
    assert creds.username == "u"
    assert tls.insecure_skip_verify is True
    assert kwargs == {"keepalive": 30, "clean_session": True}


def test_throughput_derived_from_whole_seconds(tmp_path):
    conn = ScriptedConnection([msg("[{\"a\":1,\"b\":2}]") for _ in range(6)])

    result = _controller(conn, tmp_path, duration_s=2).run()

    assert result.capture.elapsed_whole_s == 2
    assert result.throughput.messages_per_second == 3
    assert result.throughput.tags_per_second == 6


def test_reconnect_during_session(tmp_path):
    conn = ScriptedConnection([msg("{}"), msg("{}"), LOSS, msg("{}")])

    result = _controller(conn, tmp_path).run()

    assert conn.reconnect_calls == 1
    assert result.capture.stats.message_count == 3


def test_connect_error_is_fatal_before_capture(tmp_path):
    def refuse(*a, **k):
        raise ConnectError("refused")

    with pytest.raises(ConnectError):
        _controller(None, tmp_path, connector=refuse).run()
    assert not (tmp_path / "out.json").exists()


def test_subscribe_error_still_disconnects(tmp_path):
    conn = ScriptedConnection()

    def fail(topics, qos):
        raise SubscribeError("rejected")

    conn.subscribe_many = fail

    with pytest.raises(SubscribeError):
        _controller(conn, tmp_path).run()
    assert conn.disconnect_calls == 1
    assert not (tmp_path / "out.json").exists()


def test_output_error_raised_after_disconnect(tmp_path):
    conn = ScriptedConnection([msg("{}")])

    def broken_writer(path, records):
        raise OutputWriteError("disk full")

    with pytest.raises(OutputWriteError):
        _controller(conn, tmp_path, writer=broken_writer).run()
    assert conn.disconnect_calls == 1


def test_worker_exception_propagates_and_disconnects(tmp_path):
    conn = ScriptedConnection()

    def boom(timeout_s=0.5):
        raise RuntimeError("transport exploded")

    conn.receive = boom

    with pytest.raises(RuntimeError, match="transport exploded"):
        _controller(conn, tmp_path).run()
    assert conn.disconnect_calls == 1


def test_stop_before_run_captures_nothing(tmp_path):
    conn = ScriptedConnection([msg("{}")])
    controller = _controller(conn, tmp_path)

    controller.stop()
    result = controller.run()

    assert result.capture.records == []
    assert read_captured(tmp_path / "out.json") == []


def test_outer_ceiling_cancels_worker(tmp_path, caplog):
    conn = ScriptedConnection([msg("{}")])
    # frozen clock: the loop's own deadline never fires
    controller = _controller(conn, tmp_path, duration_s=60, clock=lambda: 0.0, join_timeout_s=0.2)

    result = controller.run()

    assert result.capture.stats.message_count == 1
    assert controller.cancel.is_set()
    assert "shorter than the capture duration" in caplog.text
    assert "cancelling" in caplog.text


def test_default_join_timeout_covers_duration():
    controller = SessionController(_config(reconnect_delay_s=1.0), duration_s=10)
    assert controller.join_timeout_s >= 10


def test_default_output_name_uses_injected_rng():
    import random

    controller = SessionController(default_config(), duration_s=1, rng=random.Random(42))
    again = SessionController(default_config(), duration_s=1, rng=random.Random(42))

    assert controller.output_path.name.startswith("output-")
    assert controller.output_path == again.output_path


def test_explicit_logger_is_used(tmp_path, caplog):
    log = logging.getLogger("capture.test")
    conn = ScriptedConnection([msg("{}"), LOSS])
    conn.reconnect_failures = 1

    with caplog.at_level(logging.WARNING, logger="capture.test"):
        _controller(conn, tmp_path, log=log).run()

    assert any(r.name == "capture.test" and "ended early" in r.getMessage() for r in caplog.records)


def test_rejects_non_positive_duration():
    with pytest.raises(ValueError):
        SessionController(default_config(), duration_s=0)


def test_cancel_during_unanswered_reconnect_keeps_records(fake_paho_client, tmp_path):
    fake = fake_paho_client
    scripted_loop(fake, [ack_connect()])
    conn = connect(Endpoint(host="localhost", port=1883, tls=False), "capture-1", Credentials("u", "p"), TlsPolicy())
    # one message, then the broker goes away and never answers the reconnect
    scripted_loop(fake, [ack_subscribe(7, [OK, OK]), deliver("t1", b"{}"), drop_connection])

    controller = _controller(conn, tmp_path, duration_s=60, clock=lambda: 0.0, join_timeout_s=1)
    result = controller.run()

    assert result.capture.records == [{}]
    assert result.capture.aborted is None
    assert read_captured(tmp_path / "out.json") == [{}]
    assert fake.reconnect.call_count == 1
    fake.disconnect.assert_called_once()


def test_stuck_worker_keeps_connection_until_it_exits(tmp_path, monkeypatch):
    monkeypatch.setattr(session, "CANCEL_JOIN_S", 0.05)
    release = threading.Event()
    closed = threading.Event()
    conn = ScriptedConnection()

    def blocked_receive(timeout_s=0.5):
        release.wait(5)
        return None

    def close():
        conn.disconnect_calls += 1
        closed.set()

    conn.receive = blocked_receive
    conn.disconnect = close
    controller = _controller(conn, tmp_path, duration_s=60, clock=lambda: 0.0, join_timeout_s=0.05)

    with pytest.raises(CaptureError):
        controller.run()
    assert conn.disconnect_calls == 0

    release.set()
    assert closed.wait(5)
    assert conn.disconnect_calls == 1
    assert not (tmp_path / "out.json").exists()
