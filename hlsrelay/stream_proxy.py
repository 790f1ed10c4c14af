"""
Same-origin HLS proxy: ``GET /stream?url=<absolute upstream url>``.

Why this exists:
- The origin refuses requests that do not carry the player site's
  Referer/Origin, and browsers will not let a page forge those headers.
- Players on another origin also need permissive CORS on every response.
- Manifests are rewritten so every URL the player follows comes back here.

Playlists go through the rewriter and a short-lived cache; everything else
(segments, keys) goes through a long-lived cache and is sliced locally for
Range requests. Concurrent misses for the same URL share one upstream fetch.
"""

from __future__ import annotations

import http.client
import logging
import threading
import time
import traceback
from http.server import BaseHTTPRequestHandler, HTTPServer
from socketserver import ThreadingMixIn
from typing import Dict, Optional
from urllib.parse import urlparse

from hlsrelay.cache import CacheClass, CacheEntry, CacheSweeper, ObjectCache, RequestCoalescer
from hlsrelay.config import with_defaults
from hlsrelay.content_types import MediaKind
from hlsrelay.errors import BadRequest, HLSRelayError
from hlsrelay.http_headers import CORS_HEADERS
from hlsrelay.playlist import fetch_preferred_playlist, parse_playlist, proxy_url, unproxy_url
from hlsrelay.ranges import serve_range
from hlsrelay.upstream import UpstreamFetcher

LOG = logging.getLogger(__name__)

PLAYLIST_CONTENT_TYPE = MediaKind.PLAYLIST.content_type
PLAYLIST_KEY_PREFIX = "playlist_"


class _ThreadingHTTPServer(ThreadingMixIn, HTTPServer):
    daemon_threads = True
    allow_reuse_address = True
    request_queue_size = 256


class Reply:
    __slots__ = ("status", "body", "headers")

    def __init__(self, status: int, body: bytes = b"", headers: Optional[Dict[str, str]] = None):
        self.status = status
        self.body = body
        self.headers = headers or {}


class StreamProxy:
    """Request logic, independent of the HTTP server so it can be driven directly."""

    def __init__(
        self,
        config: Optional[dict] = None,
        cache: Optional[ObjectCache] = None,
        coalescer: Optional[RequestCoalescer] = None,
        fetcher: Optional[UpstreamFetcher] = None,
    ):
        self.config = with_defaults(config)
        self.cache = cache if cache is not None else ObjectCache.from_config(self.config)
        self.coalescer = coalescer if coalescer is not None else RequestCoalescer()
        self.fetcher = fetcher or UpstreamFetcher(self.config)
        self.proxy_path = str(self.config["proxy_path"])
        self.cache_enabled = bool(self.config["cache_enabled"])

    def _cache_control(self, cache_class: CacheClass) -> str:
        return f"public, max-age={int(self.cache.ttls[cache_class])}"

    def handle(self, target: str, headers) -> Reply:
        """Answer one proxy request for ``target`` (the request path plus query).

        ``headers`` is any mapping with ``get``.
        """
        url = unproxy_url(target)
        if not url:
            raise BadRequest("Missing URL")
        if urlparse(url).scheme not in ("http", "https"):
            raise BadRequest("url must be an absolute http(s) URL")

        user_agent = headers.get("User-Agent")
        if self.fetcher.classify(url).is_playlist:
            return self.handle_playlist(url, user_agent)
        return self.handle_segment(url, headers.get("Range"), user_agent)

    # --- playlists ------------------------------------------------------

    def _build_playlist(self, url: str, user_agent: Optional[str]) -> CacheEntry:
        swaps = self.config.get("preferred_manifest_swaps") or {}
        resp, forced = fetch_preferred_playlist(
            lambda u: self.fetcher.fetch(u, user_agent=user_agent),
            url,
            swaps,
        )
        doc = parse_playlist(resp.text, resp.url, self.proxy_path, force_master=forced)
        LOG.info(
            "Rewrote %s playlist %s (%d entries)",
            doc.kind.value,
            url.rsplit("/", 1)[-1],
            len(doc.variants) if doc.is_master else len(doc.segments),
        )
        body = doc.text.encode("utf-8")
        key = PLAYLIST_KEY_PREFIX + url
        if self.cache_enabled:
            return self.cache.set(key, body, PLAYLIST_CONTENT_TYPE, CacheClass.PLAYLIST)
        return CacheEntry(key, body, PLAYLIST_CONTENT_TYPE, time.monotonic(), CacheClass.PLAYLIST)

    def handle_playlist(self, url: str, user_agent: Optional[str] = None) -> Reply:
        key = PLAYLIST_KEY_PREFIX + url
        entry = self.cache.get(key) if self.cache_enabled else None
        if entry is not None:
            LOG.debug("Playlist cache HIT for %s", url.rsplit("/", 1)[-1])
        elif self.cache_enabled:
            entry = self.coalescer.run(key, lambda: self.cache.get(key) or self._build_playlist(url, user_agent))
        else:
            entry = self._build_playlist(url, user_agent)

        headers = {
            "Content-Type": PLAYLIST_CONTENT_TYPE,
            "Content-Length": str(len(entry.payload)),
            "Cache-Control": self._cache_control(CacheClass.PLAYLIST),
        }
        return Reply(200, entry.payload, headers)

    # --- segments and keys ---------------------------------------------

    def _fetch_segment(self, url: str, user_agent: Optional[str]) -> CacheEntry:
        name = url.rsplit("/", 1)[-1]
        LOG.debug("Fetching segment %s", name)
        resp = self.fetcher.fetch(url, user_agent=user_agent)
        entry = self.cache.set(url, resp.payload, resp.content_type, CacheClass.SEGMENT)
        LOG.debug("Cached segment %s (%d bytes)", name, len(resp.payload))
        return entry

    def handle_segment(self, url: str, range_value: Optional[str] = None, user_agent: Optional[str] = None) -> Reply:
        if not self.cache_enabled:
            return self._passthrough(url, range_value, user_agent)

        entry = self.cache.get(url)
        if entry is not None:
            LOG.debug("Cache HIT for %s", url.rsplit("/", 1)[-1])
        else:
            # A caller that missed may only reach the coalescer after an earlier
            # leader has already cached the entry and released the key.
            entry = self.coalescer.run(url, lambda: self.cache.get(url) or self._fetch_segment(url, user_agent))

        rr = serve_range(entry.payload, range_value, entry.content_type)
        rr.headers["Cache-Control"] = self._cache_control(CacheClass.SEGMENT)
        return Reply(rr.status, rr.body, rr.headers)

    def _passthrough(self, url: str, range_value: Optional[str], user_agent: Optional[str]) -> Reply:
        resp = self.fetcher.fetch(url, user_agent=user_agent, range_header=range_value)
        headers = {
            "Content-Type": resp.content_type,
            "Content-Length": str(len(resp.payload)),
            "Accept-Ranges": "bytes",
        }
        if resp.status == 206:
            cr = resp.headers.get("Content-Range")
            if cr:
                headers["Content-Range"] = cr
            return Reply(206, resp.payload, headers)
        # Origin ignored the Range header; slice locally.
        rr = serve_range(resp.payload, range_value, resp.content_type)
        return Reply(rr.status, rr.body, rr.headers)


class StreamProxyServer:
    def __init__(self, config: Optional[dict] = None, proxy: Optional[StreamProxy] = None):
        self.config = with_defaults(config)
        self.proxy = proxy or StreamProxy(self.config)
        self.sweeper = CacheSweeper(self.proxy.cache, self.config["cache_sweep_interval_seconds"])

        self._server: Optional[_ThreadingHTTPServer] = None
        self._thread: Optional[threading.Thread] = None
        self._host = str(self.config["listen_host"])
        self._port: Optional[int] = None
        self._lock = threading.RLock()
        self._ready = threading.Event()

    def _make_handler(self):
        server = self
        proxy = self.proxy

        class Handler(BaseHTTPRequestHandler):
            protocol_version = "HTTP/1.1"

            def log_message(self, fmt: str, *args) -> None:
                LOG.debug("StreamProxy: " + fmt, *args)

            def _send(self, reply: Reply) -> None:
                self.send_response(reply.status)
                headers = dict(CORS_HEADERS)
                headers.setdefault("Accept-Ranges", "bytes")
                headers.update(reply.headers)
                if reply.status == 204:
                    headers.pop("Content-Length", None)
                else:
                    headers["Content-Length"] = str(len(reply.body))
                for k, v in headers.items():
                    self.send_header(k, v)
                self.end_headers()
                if reply.body:
                    try:
                        self.wfile.write(reply.body)
                    except (BrokenPipeError, ConnectionResetError, ConnectionAbortedError):
                        pass

            def _send_text(self, status: int, message: str) -> None:
                self._send(Reply(status, message.encode("utf-8"), {"Content-Type": "text/plain; charset=utf-8"}))

            def do_OPTIONS(self) -> None:
                self._send(Reply(204))

            def do_GET(self) -> None:
                parsed = urlparse(self.path)
                if parsed.path == "/health":
                    server._ready.set()
                    self._send_text(200, "ok")
                    return
                if parsed.path != proxy.proxy_path:
                    self._send_text(404, "Not Found")
                    return
                try:
                    reply = proxy.handle(self.path, self.headers)
                except HLSRelayError as e:
                    LOG.warning("Proxy request failed (%s): %s", e.status_code, e)
                    self._send_text(e.status_code, e.message or "Proxy error")
                    return
                except Exception as e:
                    LOG.error("Proxy error: %s\n%s", e, traceback.format_exc())
                    self._send_text(500, "Internal server error")
                    return
                self._send(reply)

        return Handler

    def start(self) -> None:
        with self._lock:
            if self._server is not None and self._thread is not None and self._thread.is_alive():
                return
            self._ready.clear()
            self._server = _ThreadingHTTPServer((self._host, int(self.config["listen_port"])), self._make_handler())
            self._port = self._server.server_address[1]

            def run() -> None:
                try:
                    self._server.serve_forever(poll_interval=0.25)
                except Exception as e:
                    LOG.warning("StreamProxy server error: %s\n%s", e, traceback.format_exc())
                finally:
                    self._ready.clear()

            self._thread = threading.Thread(target=run, name="StreamProxy", daemon=True)
            self._thread.start()
            self.sweeper.start()

        self._wait_ready(timeout=2.0)
        LOG.info("Stream proxy started at %s%s", self.base_url, self.proxy.proxy_path)

    def stop(self) -> None:
        self.sweeper.stop()
        with self._lock:
            if self._server is None:
                return
            self._server.shutdown()
            self._server.server_close()
            self._server = None
            self._thread = None
            self._port = None
            self._ready.clear()

    def _wait_ready(self, timeout: float = 2.0) -> bool:
        deadline = time.time() + max(0.1, float(timeout))
        while time.time() < deadline:
            with self._lock:
                port = self._port
            if port is None:
                return False
            conn = http.client.HTTPConnection(self._host, port, timeout=0.5)
            try:
                conn.request("GET", "/health")
                resp = conn.getresponse()
                resp.read()
                if resp.status == 200:
                    self._ready.set()
                    return True
            except OSError:
                pass
            finally:
                conn.close()
            time.sleep(0.05)
        return False

    @property
    def port(self) -> Optional[int]:
        return self._port

    @property
    def base_url(self) -> str:
        with self._lock:
            if self._port is None:
                raise RuntimeError("StreamProxy not started")
            return f"http://{self._host}:{self._port}"

    def proxify(self, url: str) -> str:
        """Absolute proxy URL for an upstream URL (what a player should open)."""
        return self.base_url + proxy_url(url, self.proxy.proxy_path)

    def serve_forever(self) -> None:
        self.start()
        try:
            while self._thread is not None and self._thread.is_alive():
                self._thread.join(timeout=0.5)
        except KeyboardInterrupt:
            LOG.info("Stopping stream proxy")
        finally:
            self.stop()
