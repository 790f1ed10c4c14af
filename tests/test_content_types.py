import os
import sys

REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

from hlsrelay.content_types import (
    MediaKind,
    classifier_from_config,
    classify_content_type,
    is_disguised_segment,
    url_filename,
)


def test_disguised_segment_is_served_as_transport_stream():
    kind = classify_content_type("https://cdn.example/stream/01/segment-12.jpg")
    assert kind is MediaKind.TRANSPORT_STREAM
    assert kind.content_type == "video/mp2t"


def test_plain_jpeg_stays_an_image():
    assert classify_content_type("https://cdn.example/poster.jpg") is MediaKind.JPEG
    assert classify_content_type("https://cdn.example/thumb.PNG") is MediaKind.PNG


def test_query_string_does_not_affect_classification():
    kind = classify_content_type("https://cdn.example/hls/uwu.m3u8?token=abc.jpg")
    assert kind is MediaKind.PLAYLIST
    assert kind.is_playlist
    assert kind.content_type == "application/vnd.apple.mpegurl"


def test_other_extensions():
    assert classify_content_type("https://x/a/seg1.ts") is MediaKind.TRANSPORT_STREAM
    assert classify_content_type("https://x/a/init.m4s").content_type == "video/iso.segment"
    key = classify_content_type("https://x/a/mon.key")
    assert key is MediaKind.KEY
    assert key.content_type == "application/octet-stream"
    assert classify_content_type("https://x/a/blob").content_type == "application/octet-stream"


def test_marker_must_be_in_file_name_not_directory():
    assert not is_disguised_segment("https://x/segment-files/cover.jpg")
    assert url_filename("https://x/segment-files/cover.jpg?a=1") == "cover.jpg"


def test_classifier_from_config_uses_configured_rules():
    classify = classifier_from_config({"disguise_extensions": [".png"], "segment_name_markers": ["chunk_"]})
    assert classify("https://x/chunk_4.png") is MediaKind.TRANSPORT_STREAM
    assert classify("https://x/segment-4.jpg") is MediaKind.JPEG
