import os
import sys
import threading
import time

REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

from hlsrelay.cache import CacheClass, CacheSweeper, ObjectCache, RequestCoalescer
from hlsrelay.errors import UpstreamTimeout


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def test_entry_expires_exactly_at_ttl():
    clock = FakeClock()
    cache = ObjectCache(segment_ttl=300, playlist_ttl=30, clock=clock)
    cache.set("https://h/seg-1.jpg", b"abc", "video/mp2t")

    clock.advance(299)
    entry = cache.get("https://h/seg-1.jpg")
    assert entry is not None
    assert entry.payload == b"abc"
    assert entry.content_type == "video/mp2t"

    clock.advance(1)
    assert cache.get("https://h/seg-1.jpg") is None
    # Lazy eviction removed it.
    assert len(cache) == 0


def test_playlist_class_uses_short_ttl():
    clock = FakeClock()
    cache = ObjectCache(segment_ttl=300, playlist_ttl=30, clock=clock)
    cache.set("playlist_https://h/a.m3u8", b"#EXTM3U", "application/vnd.apple.mpegurl", CacheClass.PLAYLIST)
    cache.set("https://h/s.ts", b"x", "video/mp2t", CacheClass.SEGMENT)
    clock.advance(30)
    assert "playlist_https://h/a.m3u8" not in cache
    assert "https://h/s.ts" in cache


def test_set_replaces_and_resets_age():
    clock = FakeClock()
    cache = ObjectCache(segment_ttl=10, clock=clock)
    cache.set("k", b"old", "video/mp2t")
    clock.advance(8)
    cache.set("k", b"new", "video/mp2t")
    clock.advance(8)
    assert cache.get("k").payload == b"new"


def test_sweep_removes_only_expired_entries():
    clock = FakeClock()
    cache = ObjectCache(segment_ttl=300, playlist_ttl=30, clock=clock)
    for i in range(3):
        cache.set(f"seg{i}", b"x", "video/mp2t")
    cache.set("playlist_p", b"#EXTM3U", "application/vnd.apple.mpegurl", CacheClass.PLAYLIST)
    clock.advance(60)
    assert cache.sweep() == 1
    assert len(cache) == 3
    clock.advance(300)
    assert cache.sweep() == 3
    assert len(cache) == 0
    assert cache.sweep() == 0


def test_from_config_reads_ttls():
    cache = ObjectCache.from_config({"segment_cache_ttl_seconds": 5, "playlist_cache_ttl_seconds": 1})
    assert cache.ttls[CacheClass.SEGMENT] == 5.0
    assert cache.ttls[CacheClass.PLAYLIST] == 1.0


def test_sweeper_thread_runs_and_stops():
    clock = FakeClock()
    cache = ObjectCache(segment_ttl=1, clock=clock)
    cache.set("k", b"x", "video/mp2t")
    clock.advance(5)
    sweeper = CacheSweeper(cache, interval=0.05)
    sweeper.start()
    try:
        deadline = time.time() + 2.0
        while time.time() < deadline and len(cache._entries):
            time.sleep(0.02)
        assert len(cache._entries) == 0
    finally:
        sweeper.stop()
    assert sweeper._thread is None


def _run_concurrently(coalescer, key, produce, followers=9):
    started = threading.Event()
    release = threading.Event()
    results = []
    errors = []
    lock = threading.Lock()

    def leader_produce():
        started.set()
        release.wait(2.0)
        return produce()

    def call(fn):
        try:
            r = coalescer.run(key, fn)
            with lock:
                results.append(r)
        except Exception as e:
            with lock:
                errors.append(e)

    leader = threading.Thread(target=call, args=(leader_produce,))
    leader.start()
    assert started.wait(2.0)
    others = [threading.Thread(target=call, args=(produce,)) for _ in range(followers)]
    for t in others:
        t.start()
    # Followers must be parked on the pending fetch before it resolves.
    time.sleep(0.2)
    assert coalescer.is_pending(key)
    release.set()
    for t in [leader] + others:
        t.join(5.0)
    return results, errors


def test_concurrent_requests_share_one_fetch():
    coalescer = RequestCoalescer()
    calls = []

    def produce():
        calls.append(1)
        return b"segment-bytes"

    results, errors = _run_concurrently(coalescer, "https://h/seg-7.jpg", produce)
    assert errors == []
    assert len(calls) == 1
    assert results == [b"segment-bytes"] * 10
    assert coalescer.pending_count() == 0


def test_failure_is_delivered_to_every_waiter_and_not_remembered():
    coalescer = RequestCoalescer()

    def boom():
        raise UpstreamTimeout("Request timeout")

    results, errors = _run_concurrently(coalescer, "k", boom, followers=4)
    assert results == []
    assert len(errors) == 5
    assert all(isinstance(e, UpstreamTimeout) for e in errors)
    assert not coalescer.is_pending("k")

    # Next request starts a fresh fetch.
    assert coalescer.run("k", lambda: 42) == 42


def test_sequential_calls_each_produce():
    coalescer = RequestCoalescer()
    calls = []
    for _ in range(3):
        coalescer.run("k", lambda: calls.append(1))
    assert len(calls) == 3


def test_distinct_keys_do_not_block_each_other():
    coalescer = RequestCoalescer()
    gate = threading.Event()
    t = threading.Thread(target=lambda: coalescer.run("slow", lambda: gate.wait(2.0)))
    t.start()
    try:
        assert coalescer.run("fast", lambda: "ok") == "ok"
    finally:
        gate.set()
        t.join(2.0)


def test_zero_ttl_never_serves():
    clock = FakeClock()
    cache = ObjectCache(segment_ttl=0, clock=clock)
    cache.set("k", b"x", "video/mp2t")
    assert cache.get("k") is None
