import threading

from flask import Flask

from app.portal.views.events import TIME_FORMAT, time_events
from app.portal.web.sse import ServerSentEvent, build_sse_handler, encode_message, event_stream


def test_plain_message_encoding():
    assert encode_message("hello") == "data: hello\n\n"


def test_multiline_data_gets_one_line_each():
    assert encode_message("a\nb") == "data: a\ndata: b\n\n"


def test_event_fields():
    msg = ServerSentEvent(data="x", event="tick", id="7", retry=1500)
    assert msg.encode() == "event: tick\nid: 7\nretry: 1500\ndata: x\n\n"


def test_empty_data_still_emits_a_data_line():
    assert encode_message("") == "data: \n\n"


def test_event_stream_signals_disconnect_on_close():
    seen = {}

    def producer(disconnected):
        seen["event"] = disconnected
        while True:
            yield "tick"

    disconnected = threading.Event()
    stream = event_stream(producer, disconnected)
    assert next(stream) == "data: tick\n\n"
    stream.close()
    assert seen["event"] is disconnected
    assert disconnected.is_set()


def test_handler_streams_finite_producer():
    app = Flask(__name__)
    app.add_url_rule("/events", "events", build_sse_handler(lambda disconnected: iter(["one", "two"])))

    r = app.test_client().get("/events")
    assert r.status_code == 200
    assert r.mimetype == "text/event-stream"
    assert r.headers["Cache-Control"] == "no-cache"
    assert r.headers["Connection"] == "keep-alive"
    assert r.headers["X-Accel-Buffering"] == "no"
    assert r.data == b"data: one\n\ndata: two\n\n"


def test_time_events_stop_when_disconnected():
    disconnected = threading.Event()
    events = time_events(disconnected, interval=0.01)
    first = next(events)
    assert len(first) == len("2024-01-01 00:00:00")
    disconnected.set()
    assert list(events) == []
    assert TIME_FORMAT == "%Y-%m-%d %H:%M:%S"


def test_time_endpoint_requires_login(client):
    r = client.get("/u/events/time")
    assert r.status_code == 307


def test_time_endpoint_streams_for_logged_in_user(logged_in):
    r = logged_in.get("/u/events/time", buffered=False)
    try:
        assert r.status_code == 200
        assert r.mimetype == "text/event-stream"
        assert r.headers["Cache-Control"] == "no-cache"
        first = next(iter(r.response))
        assert first.startswith(b"data: ")
        assert first.endswith(b"\n\n")
    finally:
        r.close()
