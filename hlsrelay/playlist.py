"""
HLS playlist parsing and same-origin rewriting.

Rewriting is a pure text transform: every URL a player would follow (variant
playlists, segments, key URIs and other ``URI="..."`` tag attributes) becomes
``<proxy_path>?url=<absolute target>``. Line order, blank lines and comments
are kept verbatim, and segment file names are left exactly as the origin
wrote them: the content classifier decides how the bytes are served.
"""

from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple, TypeVar
from urllib.parse import parse_qs, quote, urljoin, urlparse

from hlsrelay.errors import HLSRelayError, PlaylistError

LOG = logging.getLogger(__name__)

DEFAULT_PROXY_PATH = "/stream"

_URI_ATTR_RE = re.compile(r'URI="([^"]*)"')
_KEY_ATTR_RE = re.compile(r'([A-Z0-9-]+)=("[^"]*"|[^,]*)')


class PlaylistKind(enum.Enum):
    MASTER = "master"
    MEDIA = "media"


@dataclass(frozen=True)
class VariantRef:
    original_url: str
    rewritten_url: str


@dataclass(frozen=True)
class SegmentRef:
    sequence_index: int
    original_url: str
    rewritten_url: str


@dataclass(frozen=True)
class KeyRef:
    uri: str
    method: str = "AES-128"
    iv: Optional[bytes] = None
    rewritten_uri: str = ""


@dataclass
class ManifestDocument:
    kind: PlaylistKind
    text: str
    variants: List[VariantRef] = field(default_factory=list)
    segments: List[SegmentRef] = field(default_factory=list)
    key: Optional[KeyRef] = None
    media_sequence: Optional[int] = None

    @property
    def is_master(self) -> bool:
        return self.kind is PlaylistKind.MASTER


def proxy_url(target_url: str, proxy_path: str = DEFAULT_PROXY_PATH) -> str:
    return f"{proxy_path}?url={quote(target_url, safe='')}"


def unproxy_url(proxied: str) -> Optional[str]:
    """Inverse of proxy_url(); None when there is no ``url`` parameter."""
    q = parse_qs(urlparse(proxied).query)
    vals = q.get("url")
    return vals[0] if vals else None


def is_master_playlist(text: str) -> bool:
    return "#EXT-X-STREAM-INF" in (text or "")


def _is_http(url: str) -> bool:
    return urlparse(url).scheme in ("http", "https")


def parse_attributes(attr_list: str) -> Dict[str, str]:
    """Parse ``KEY=value,KEY="quoted"`` tag attributes (quotes stripped)."""
    out: Dict[str, str] = {}
    for m in _KEY_ATTR_RE.finditer(attr_list or ""):
        val = m.group(2)
        if len(val) >= 2 and val[0] == '"' and val[-1] == '"':
            val = val[1:-1]
        out[m.group(1)] = val
    return out


def parse_iv(value: Optional[str]) -> Optional[bytes]:
    if not value:
        return None
    hexstr = value[2:] if value[:2].lower() == "0x" else value
    try:
        raw = bytes.fromhex(hexstr)
    except ValueError:
        LOG.warning("Ignoring malformed IV attribute: %s", value)
        return None
    if len(raw) < 16:
        raw = (b"\x00" * (16 - len(raw))) + raw
    return raw[-16:]


def _split_eol(line: str) -> Tuple[str, str]:
    if line.endswith("\r"):
        return line[:-1], "\r"
    return line, ""


def _rewrite_tag_uris(line: str, base_url: str, proxy_path: str) -> str:
    def _sub(m: "re.Match[str]") -> str:
        target = urljoin(base_url, m.group(1))
        if not _is_http(target):
            return m.group(0)
        return f'URI="{proxy_url(target, proxy_path)}"'

    return _URI_ATTR_RE.sub(_sub, line)


def parse_playlist(
    text: str,
    base_url: str,
    proxy_path: str = DEFAULT_PROXY_PATH,
    force_master: bool = False,
) -> ManifestDocument:
    """Parse ``text`` fetched from ``base_url`` and build its rewritten form.

    ``force_master`` marks a playlist obtained through the preferred-variant
    probe as a master even if it does not look like one.
    """
    kind = PlaylistKind.MASTER if (force_master or is_master_playlist(text)) else PlaylistKind.MEDIA
    doc = ManifestDocument(kind=kind, text="")

    out_lines: List[str] = []
    for raw in (text or "").split("\n"):
        line, eol = _split_eol(raw)
        stripped = line.strip()

        if not stripped:
            out_lines.append(raw)
            continue

        if stripped.startswith("#"):
            if stripped.startswith("#EXT"):
                if kind is PlaylistKind.MEDIA and stripped.startswith("#EXT-X-KEY:") and doc.key is None:
                    attrs = parse_attributes(stripped.split(":", 1)[1])
                    method = attrs.get("METHOD", "NONE").upper()
                    uri = attrs.get("URI")
                    if method != "NONE" and uri:
                        abs_uri = urljoin(base_url, uri)
                        doc.key = KeyRef(
                            uri=abs_uri,
                            method=method,
                            iv=parse_iv(attrs.get("IV")),
                            rewritten_uri=proxy_url(abs_uri, proxy_path),
                        )
                elif stripped.startswith("#EXT-X-MEDIA-SEQUENCE:"):
                    try:
                        doc.media_sequence = int(stripped.split(":", 1)[1].strip())
                    except ValueError:
                        pass
                out_lines.append(_rewrite_tag_uris(line, base_url, proxy_path) + eol)
            else:
                out_lines.append(raw)
            continue

        target = urljoin(base_url, stripped)
        rewritten = proxy_url(target, proxy_path)
        if kind is PlaylistKind.MASTER:
            doc.variants.append(VariantRef(original_url=target, rewritten_url=rewritten))
        else:
            doc.segments.append(
                SegmentRef(
                    sequence_index=len(doc.segments),
                    original_url=target,
                    rewritten_url=rewritten,
                )
            )
        out_lines.append(rewritten + eol)

    doc.text = "\n".join(out_lines)
    if kind is PlaylistKind.MASTER:
        LOG.debug("Rewrote master playlist with %d variants", len(doc.variants))
    else:
        LOG.debug("Rewrote media playlist with %d segments", len(doc.segments))
    return doc


def rewrite_playlist(
    text: str,
    base_url: str,
    proxy_path: str = DEFAULT_PROXY_PATH,
    force_master: bool = False,
) -> str:
    return parse_playlist(text, base_url, proxy_path, force_master).text


def preferred_manifest_url(url: str, swaps: Optional[Dict[str, str]]) -> Optional[str]:
    """Return the canonical sibling to probe before ``url``, if a swap applies.

    Some origins hand out a decoy media playlist (``uwu.m3u8``) next to the
    real master (``master.m3u8``); the swap table maps one filename to the other.
    """
    if not url or not swaps:
        return None
    for decoy, canonical in swaps.items():
        if decoy and decoy in url:
            return url.replace(decoy, canonical, 1)
    return None


def select_media_playlist(doc: ManifestDocument) -> str:
    """Pick the media playlist a download should follow from a master."""
    if not doc.variants:
        raise PlaylistError("No media playlist found in master playlist")
    for v in doc.variants:
        if urlparse(v.original_url).path.lower().endswith(".m3u8"):
            return v.original_url
    return doc.variants[0].original_url


R = TypeVar("R")


def fetch_preferred_playlist(
    fetch: Callable[[str], R],
    url: str,
    swaps: Optional[Dict[str, str]],
) -> Tuple[R, bool]:
    """Fetch the preferred sibling of ``url`` if one exists, else ``url`` itself.

    Returns ``(response, forced_master)``; ``forced_master`` is True when the
    probe succeeded and the result must be treated as a master playlist.
    """
    preferred = preferred_manifest_url(url, swaps)
    if preferred and preferred != url:
        LOG.info("Attempting to fetch master playlist: %s", preferred.rsplit("/", 1)[-1])
        try:
            resp = fetch(preferred)
        except HLSRelayError as e:
            LOG.info("Master playlist not available (%s), falling back to %s", e, url.rsplit("/", 1)[-1])
        else:
            LOG.info("Master playlist found, using %s", preferred.rsplit("/", 1)[-1])
            return resp, True
    return fetch(url), False
