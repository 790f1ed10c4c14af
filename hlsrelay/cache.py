"""
In-memory object cache and request coalescing for the stream proxy.

Two TTL classes: playlists expire quickly so live manifests stay fresh,
segments live for minutes so repeat playback and seeking are served locally.
Entries are immutable once stored; writers simply replace them.

The coalescer makes sure N concurrent requests for the same uncached key
produce exactly one upstream fetch. Both objects are plain instances owned by
whoever creates them (the proxy server, or a test), never module globals.
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Callable, Dict, Optional, TypeVar

LOG = logging.getLogger(__name__)

T = TypeVar("T")


class CacheClass(enum.Enum):
    SEGMENT = "segment"
    PLAYLIST = "playlist"


DEFAULT_TTLS = {
    CacheClass.SEGMENT: 5 * 60.0,
    CacheClass.PLAYLIST: 30.0,
}


@dataclass(frozen=True)
class CacheEntry:
    key: str
    payload: bytes
    content_type: str
    inserted_at: float
    cache_class: CacheClass = CacheClass.SEGMENT

    def age(self, now: float) -> float:
        return now - self.inserted_at


class ObjectCache:
    def __init__(
        self,
        segment_ttl: float = DEFAULT_TTLS[CacheClass.SEGMENT],
        playlist_ttl: float = DEFAULT_TTLS[CacheClass.PLAYLIST],
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttls = {
            CacheClass.SEGMENT: float(segment_ttl),
            CacheClass.PLAYLIST: float(playlist_ttl),
        }
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: dict, clock: Callable[[], float] = time.monotonic) -> "ObjectCache":
        return cls(
            segment_ttl=config.get("segment_cache_ttl_seconds", DEFAULT_TTLS[CacheClass.SEGMENT]),
            playlist_ttl=config.get("playlist_cache_ttl_seconds", DEFAULT_TTLS[CacheClass.PLAYLIST]),
            clock=clock,
        )

    def _expired(self, entry: CacheEntry, now: float) -> bool:
        return entry.age(now) >= self.ttls[entry.cache_class]

    def get(self, key: str) -> Optional[CacheEntry]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._expired(entry, now):
                # Lazy eviction; the sweeper catches keys nobody asks for again.
                del self._entries[key]
                return None
            return entry

    def set(
        self,
        key: str,
        payload: bytes,
        content_type: str,
        cache_class: CacheClass = CacheClass.SEGMENT,
    ) -> CacheEntry:
        entry = CacheEntry(
            key=key,
            payload=bytes(payload),
            content_type=content_type,
            inserted_at=self._clock(),
            cache_class=cache_class,
        )
        with self._lock:
            self._entries[key] = entry
        return entry

    def sweep(self) -> int:
        """Drop every expired entry; return how many were removed."""
        now = self._clock()
        with self._lock:
            dead = [k for k, e in self._entries.items() if self._expired(e, now)]
            for k in dead:
                del self._entries[k]
        if dead:
            LOG.info("Cleaned %d expired cache entries", len(dead))
        return len(dead)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None


class RequestCoalescer:
    """Collapse concurrent producers for the same key into one call."""

    def __init__(self):
        self._pending: Dict[str, Future] = {}
        self._lock = threading.Lock()

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def is_pending(self, key: str) -> bool:
        with self._lock:
            return key in self._pending

    def run(self, key: str, produce: Callable[[], T]) -> T:
        with self._lock:
            fut = self._pending.get(key)
            leader = fut is None
            if leader:
                fut = Future()
                self._pending[key] = fut

        if not leader:
            LOG.debug("Deduplicating request for %s", key)
            return fut.result()

        try:
            result = produce()
        except BaseException as e:
            self._release(key)
            fut.set_exception(e)
            raise
        self._release(key)
        fut.set_result(result)
        return result

    def _release(self, key: str) -> None:
        with self._lock:
            self._pending.pop(key, None)


class CacheSweeper:
    """Background thread that sweeps an ObjectCache on a fixed interval."""

    def __init__(self, cache: ObjectCache, interval: float = 60.0):
        self.cache = cache
        self.interval = max(0.05, float(interval))
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="CacheSweeper", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=2.0)
            self._thread = None

    def _loop(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.cache.sweep()
            except Exception as e:
                LOG.warning("Cache sweep failed: %s", e)
