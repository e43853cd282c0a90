from livegate.processing.sse import EventStreamParser, ServerEvent


def test_named_event_dispatches_on_blank_line() -> None:
    parser = EventStreamParser()

    assert parser.feed_line("event: status") is None
    assert parser.feed_line('data: {"status":"pending"}') is None
    evt = parser.feed_line("")

    assert evt == ServerEvent(event="status", data='{"status":"pending"}')
    assert evt.json() == {"status": "pending"}


def test_multiple_data_lines_join_with_newline() -> None:
    parser = EventStreamParser()
    events = parser.feed(["data: one", "data: two", "data:three", ""])

    assert [e.data for e in events] == ["one\ntwo\nthree"]
    assert events[0].event == "message"


def test_comments_and_keepalives_are_ignored() -> None:
    parser = EventStreamParser()
    events = parser.feed([": keepalive", "", ": ping", "event: requests", "data: []", ""])

    assert len(events) == 1
    assert events[0].event == "requests"


def test_blank_line_without_data_dispatches_nothing() -> None:
    parser = EventStreamParser()
    events = parser.feed(["event: status", "", "data: x", ""])

    # The name set before the empty dispatch does not leak into the next event
    assert events == [ServerEvent(event="message", data="x")]


def test_pending_event_flushed_at_end_of_stream() -> None:
    parser = EventStreamParser()
    parser.feed(["event: ended", 'data: {"reason":"host"}'])

    evt = parser.finish()
    assert evt is not None
    assert evt.event == "ended"
    assert parser.finish() is None


def test_crlf_line_endings_and_unknown_fields() -> None:
    parser = EventStreamParser()
    events = parser.feed(["id: 7\r", "retry: 1000\r", "event: status\r", "data: ok\r", "\r"])

    assert events == [ServerEvent(event="status", data="ok")]


def test_invalid_json_reads_as_none() -> None:
    assert ServerEvent(event="status", data="{not json").json() is None
