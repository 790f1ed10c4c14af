"""Outbound requests to the origin host.

Uses one requests.Session so manifests, keys and segments reuse TCP/TLS
connections. Every call is bounded by a wall-clock deadline, not just a
socket read timeout, so a trickling origin cannot stall a caller forever:
the body is read with ``read1`` (whatever has arrived, at most one socket
read) and the deadline is checked after every read.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

import requests
import urllib3

from hlsrelay.content_types import MediaKind, classifier_from_config
from hlsrelay.errors import UpstreamError, UpstreamRejected, UpstreamTimeout
from hlsrelay.http_headers import bypass_headers

LOG = logging.getLogger(__name__)

_CHUNK_SIZE = 64 * 1024
_MAX_CONNECT_TIMEOUT = 10.0

ProgressCallback = Callable[[int, Optional[int]], None]


@dataclass
class UpstreamResponse:
    url: str
    status: int
    payload: bytes
    kind: MediaKind
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def content_type(self) -> str:
        return self.kind.content_type

    @property
    def text(self) -> str:
        return self.payload.decode("utf-8", errors="ignore")


class UpstreamFetcher:
    def __init__(
        self,
        config: Optional[dict] = None,
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or {}
        self.session = session or requests.Session()
        self.timeout = float(self.config.get("upstream_timeout_seconds", 30))
        self.classify = classifier_from_config(self.config)
        self._clock = clock

        if session is None:
            adapter = requests.adapters.HTTPAdapter(pool_connections=8, pool_maxsize=16)
            self.session.mount("http://", adapter)
            self.session.mount("https://", adapter)

    def close(self) -> None:
        self.session.close()

    def fetch(
        self,
        url: str,
        user_agent: Optional[str] = None,
        range_header: Optional[str] = None,
        timeout: Optional[float] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> UpstreamResponse:
        """GET ``url`` with bypass headers and return the whole body.

        Raises UpstreamTimeout when the deadline passes, UpstreamRejected on a
        non-2xx status and UpstreamError on connection-level failures.
        """
        limit = float(timeout if timeout is not None else self.timeout)
        deadline = self._clock() + limit
        headers = bypass_headers(url, self.config, user_agent=user_agent, range_header=range_header)

        try:
            r = self.session.get(
                url,
                headers=headers,
                stream=True,
                timeout=(min(_MAX_CONNECT_TIMEOUT, limit), limit),
                allow_redirects=True,
            )
        except requests.Timeout as e:
            raise UpstreamTimeout(f"Request timeout: {url}") from e
        except requests.RequestException as e:
            raise UpstreamError(f"Origin fetch failed: {e}") from e

        try:
            if not 200 <= r.status_code < 300:
                raise UpstreamRejected(f"HTTP {r.status_code} from origin", upstream_status=r.status_code)

            total = None
            try:
                cl = int(r.headers.get("Content-Length", ""))
                if cl > 0:
                    total = cl
            except ValueError:
                pass

            buf = bytearray()
            try:
                while True:
                    chunk = r.raw.read1(_CHUNK_SIZE, decode_content=True)
                    if self._clock() > deadline:
                        raise UpstreamTimeout(f"Request timeout: {url}")
                    if not chunk:
                        break
                    buf.extend(chunk)
                    if on_progress is not None:
                        on_progress(len(buf), total)
            except urllib3.exceptions.ReadTimeoutError as e:
                raise UpstreamTimeout(f"Request timeout: {url}") from e
            except (urllib3.exceptions.HTTPError, OSError) as e:
                raise UpstreamError(f"Origin read failed: {e}") from e

            final_url = r.url or url
            return UpstreamResponse(
                url=final_url,
                status=r.status_code,
                payload=bytes(buf),
                kind=self.classify(url),
                headers={k: v for k, v in r.headers.items()},
            )
        finally:
            r.close()
