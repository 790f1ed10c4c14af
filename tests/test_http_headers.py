import os
import sys

REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

from hlsrelay.config import DEFAULT_CONFIG, DEFAULT_USER_AGENT
from hlsrelay.http_headers import CORS_HEADERS, bypass_headers, url_origin


def test_default_config_spoofs_player_host():
    h = bypass_headers("https://cdn.example/hls/seg.jpg", DEFAULT_CONFIG)
    assert h["Referer"] == "https://kwik.si/"
    assert h["Origin"] == "https://kwik.si"
    assert h["User-Agent"] == DEFAULT_USER_AGENT
    assert h["Accept"] == "*/*"
    assert h["Accept-Encoding"] == "identity"
    assert "Range" not in h


def test_empty_referer_and_origin_fall_back_to_target():
    cfg = {"upstream_referer": "", "upstream_origin": ""}
    h = bypass_headers("https://cdn.example:8443/hls/seg.jpg", cfg)
    assert h["Origin"] == "https://cdn.example:8443"
    assert h["Referer"] == "https://cdn.example:8443/"


def test_client_user_agent_and_range_are_forwarded():
    h = bypass_headers("https://cdn.example/a.ts", {}, user_agent="VLC/3.0", range_header="bytes=0-99")
    assert h["User-Agent"] == "VLC/3.0"
    assert h["Range"] == "bytes=0-99"


def test_url_origin():
    assert url_origin("http://h:1/p?q") == "http://h:1"
    assert url_origin("/relative/only") == ""


def test_cors_headers():
    assert CORS_HEADERS["Access-Control-Allow-Origin"] == "*"
    assert "OPTIONS" in CORS_HEADERS["Access-Control-Allow-Methods"]
