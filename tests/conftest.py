import os
import sys
import threading
import time
from collections import Counter
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest
from Crypto.Cipher import AES
from Crypto.Util.Padding import pad

# Ensure repo root on path
REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)


def encrypt_segment(plaintext: bytes, key: bytes, iv: bytes) -> bytes:
    return AES.new(key, AES.MODE_CBC, iv).encrypt(pad(plaintext, AES.block_size))


class Route:
    def __init__(self, body=b"", status=200, content_type="application/octet-stream",
                 delay=0.0, fail_times=0, fail_status=500, honor_range=False, trickle=0.0):
        self.body = body if isinstance(body, bytes) else body.encode("utf-8")
        self.status = status
        self.content_type = content_type
        self.delay = delay
        self.fail_times = fail_times
        self.fail_status = fail_status
        self.honor_range = honor_range
        self.trickle = trickle


class Origin:
    """Tiny CDN stand-in: fixed routes, per-path hit counts, recorded headers."""

    def __init__(self):
        self.routes = {}
        self.hits = Counter()
        self.request_headers = {}
        self._lock = threading.Lock()
        self._server = None
        self._thread = None

    def add(self, path, body=b"", **kw):
        self.routes[path] = Route(body, **kw)
        return self.url(path)

    def url(self, path):
        host, port = self._server.server_address[:2]
        return f"http://{host}:{port}{path}"

    def _handler(self):
        origin = self

        class Handler(BaseHTTPRequestHandler):
            protocol_version = "HTTP/1.1"

            def log_message(self, fmt, *args):
                return

            def do_GET(self):
                path = self.path.split("?", 1)[0]
                with origin._lock:
                    origin.hits[path] += 1
                    n = origin.hits[path]
                    origin.request_headers[path] = dict(self.headers.items())
                route = origin.routes.get(path)
                if route is None:
                    self._reply(404, b"not found", "text/plain")
                    return
                if route.delay:
                    time.sleep(route.delay)
                if n <= route.fail_times or route.status >= 400:
                    status = route.fail_status if n <= route.fail_times else route.status
                    self._reply(status, b"error", "text/plain")
                    return

                rng = self.headers.get("Range")
                if route.honor_range and rng and rng.startswith("bytes="):
                    start_s, end_s = rng[6:].split("-", 1)
                    start = int(start_s)
                    end = int(end_s) if end_s else len(route.body) - 1
                    chunk = route.body[start:end + 1]
                    self._reply(206, chunk, route.content_type,
                                {"Content-Range": f"bytes {start}-{end}/{len(route.body)}"})
                    return
                self._reply(route.status, route.body, route.content_type, trickle=route.trickle)

            def _reply(self, status, body, ctype, extra=None, trickle=0.0):
                self.send_response(status)
                self.send_header("Content-Type", ctype)
                self.send_header("Content-Length", str(len(body)))
                for k, v in (extra or {}).items():
                    self.send_header(k, v)
                self.end_headers()
                if not trickle:
                    self.wfile.write(body)
                    return
                try:
                    for i in range(len(body)):
                        self.wfile.write(body[i:i + 1])
                        self.wfile.flush()
                        time.sleep(trickle)
                except (BrokenPipeError, ConnectionResetError):
                    pass

        return Handler

    def start(self):
        self._server = ThreadingHTTPServer(("127.0.0.1", 0), self._handler())
        self._server.daemon_threads = True
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)
        self._thread.start()
        return self

    def stop(self):
        if self._server is not None:
            self._server.shutdown()
            self._server.server_close()
            self._server = None


@pytest.fixture
def origin():
    srv = Origin().start()
    try:
        yield srv
    finally:
        srv.stop()
