"""Decide how an upstream object is served from its URL alone.

The upstream host disguises transport-stream segments as JPEG images
(``.../segment-12.jpg``) to trip up naive scrapers, so the file extension
cannot be trusted on its own. Keep the rules here, away from the fetch and
cache code, so a new disguise convention only touches this module.
"""

import enum
import posixpath
from typing import Iterable
from urllib.parse import urlparse

DISGUISE_EXTENSIONS = (".jpg",)
SEGMENT_NAME_MARKERS = ("segment-",)


class MediaKind(enum.Enum):
    PLAYLIST = "application/vnd.apple.mpegurl"
    TRANSPORT_STREAM = "video/mp2t"
    FMP4_SEGMENT = "video/iso.segment"
    KEY = "key"
    JPEG = "image/jpeg"
    PNG = "image/png"
    BINARY = "application/octet-stream"

    @property
    def content_type(self) -> str:
        if self is MediaKind.KEY:
            return MediaKind.BINARY.value
        return self.value

    @property
    def is_playlist(self) -> bool:
        return self is MediaKind.PLAYLIST


_BY_EXTENSION = {
    ".m3u8": MediaKind.PLAYLIST,
    ".ts": MediaKind.TRANSPORT_STREAM,
    ".m4s": MediaKind.FMP4_SEGMENT,
    ".key": MediaKind.KEY,
    ".jpg": MediaKind.JPEG,
    ".jpeg": MediaKind.JPEG,
    ".png": MediaKind.PNG,
}


def url_filename(url: str) -> str:
    """Last path component of ``url`` without query or fragment."""
    path = urlparse(url or "").path
    return posixpath.basename(path)


def url_extension(url: str) -> str:
    return posixpath.splitext(url_filename(url))[1].lower()


def is_disguised_segment(
    url: str,
    disguise_extensions: Iterable[str] = DISGUISE_EXTENSIONS,
    segment_markers: Iterable[str] = SEGMENT_NAME_MARKERS,
) -> bool:
    name = url_filename(url).lower()
    ext = posixpath.splitext(name)[1]
    if ext not in {e.lower() for e in disguise_extensions}:
        return False
    return any(m.lower() in name for m in segment_markers)


def classify_content_type(
    url: str,
    disguise_extensions: Iterable[str] = DISGUISE_EXTENSIONS,
    segment_markers: Iterable[str] = SEGMENT_NAME_MARKERS,
) -> MediaKind:
    if is_disguised_segment(url, disguise_extensions, segment_markers):
        return MediaKind.TRANSPORT_STREAM
    return _BY_EXTENSION.get(url_extension(url), MediaKind.BINARY)


def classifier_from_config(config: dict):
    """Bind the configured disguise rules into a one-argument classifier."""
    exts = tuple(config.get("disguise_extensions") or DISGUISE_EXTENSIONS)
    markers = tuple(config.get("segment_name_markers") or SEGMENT_NAME_MARKERS)

    def _classify(url: str) -> MediaKind:
        return classify_content_type(url, exts, markers)

    return _classify
