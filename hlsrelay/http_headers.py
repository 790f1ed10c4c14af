"""Shared helpers for building outbound header dictionaries for the origin."""

from typing import Dict, Optional
from urllib.parse import urlparse

from hlsrelay.config import DEFAULT_USER_AGENT


def url_origin(url: str) -> str:
    p = urlparse(url or "")
    if not p.scheme or not p.netloc:
        return ""
    return f"{p.scheme}://{p.netloc}"


def bypass_headers(
    target_url: str,
    config: Optional[Dict[str, object]] = None,
    user_agent: Optional[str] = None,
    range_header: Optional[str] = None,
) -> Dict[str, str]:
    """Headers that make a request look like it came from the embedding player page.

    The origin rejects requests whose Referer/Origin do not match the player
    host, so both are spoofed. An empty configured value falls back to the
    target's own origin.
    """
    cfg = config or {}
    origin = str(cfg.get("upstream_origin") or "") or url_origin(target_url)
    referer = str(cfg.get("upstream_referer") or "") or (origin + "/" if origin else "")

    headers: Dict[str, str] = {
        "User-Agent": user_agent or str(cfg.get("default_user_agent") or DEFAULT_USER_AGENT),
        "Accept": "*/*",
        # Ranged responses must map 1:1 to the original bytes.
        "Accept-Encoding": "identity",
    }
    if referer:
        headers["Referer"] = referer
    if origin:
        headers["Origin"] = origin
    if range_header:
        headers["Range"] = range_header
    return headers


CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "*",
    "Access-Control-Allow-Methods": "GET, OPTIONS",
}
