import os
import sys

REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

from hlsrelay.ranges import parse_range_header, serve_range

PAYLOAD = bytes(range(100))


def test_bounded_range_returns_partial_content():
    r = serve_range(PAYLOAD, "bytes=10-19", "video/mp2t")
    assert r.status == 206
    assert r.body == PAYLOAD[10:20]
    assert r.headers["Content-Length"] == "10"
    assert r.headers["Content-Range"] == "bytes 10-19/100"
    assert r.headers["Accept-Ranges"] == "bytes"
    assert r.headers["Content-Type"] == "video/mp2t"


def test_open_ended_range_runs_to_last_byte():
    r = serve_range(PAYLOAD, "bytes=90-", "video/mp2t")
    assert r.status == 206
    assert r.body == PAYLOAD[90:]
    assert r.headers["Content-Range"] == "bytes 90-99/100"


def test_end_past_payload_is_clamped():
    assert parse_range_header("bytes=50-5000", 100) == (50, 99)
    r = serve_range(PAYLOAD, "bytes=50-5000", "video/mp2t")
    assert r.headers["Content-Length"] == "50"


def test_no_range_returns_full_body():
    r = serve_range(PAYLOAD, None, "video/mp2t")
    assert r.status == 200
    assert r.body == PAYLOAD
    assert r.headers["Content-Length"] == "100"
    assert "Content-Range" not in r.headers


def test_unsupported_or_malformed_ranges_fall_back_to_full_body():
    for value in ("bytes=-20", "bytes=0-1,5-9", "items=0-5", "bytes=abc", "bytes=20-10"):
        assert parse_range_header(value, 100) is None, value
        r = serve_range(PAYLOAD, value, "video/mp2t")
        assert r.status == 200, value
        assert r.body == PAYLOAD


def test_start_beyond_payload_is_not_satisfiable():
    r = serve_range(PAYLOAD, "bytes=100-", "video/mp2t")
    assert r.status == 416
    assert r.body == b""
    assert r.headers["Content-Range"] == "bytes */100"


def test_single_byte_range():
    r = serve_range(PAYLOAD, "bytes=0-0", "video/mp2t")
    assert r.status == 206
    assert r.body == b"\x00"
    assert r.headers["Content-Range"] == "bytes 0-0/100"
