"""
Whole-episode download of an AES-128 encrypted HLS stream.

    Init -> FetchManifest -> (MasterDetected -> FetchMediaManifest)
         -> FetchKey -> DecryptSegments -> Remux -> Finalize

with Failed reachable from every state. Segments are fetched one at a time
by default (a small pool of up to 4 is allowed) with a pause between fetch
starts so the origin is not hammered. Decrypted segments are written to a
private work directory that is removed no matter how the session ends.
"""

from __future__ import annotations

import enum
import logging
import os
import re
import shutil
import tempfile
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, List, Optional

from hlsrelay.config import with_defaults
from hlsrelay.content_types import MediaKind
from hlsrelay.decryptor import (
    SegmentDecryptor,
    SegmentResult,
    SegmentStatus,
    build_iv_strategies,
    fetch_key,
)
from hlsrelay.errors import (
    DownloadAborted,
    HLSRelayError,
    PlaylistError,
    SegmentFetchHardFailure,
    UpstreamRejected,
)
from hlsrelay.playlist import (
    ManifestDocument,
    SegmentRef,
    fetch_preferred_playlist,
    parse_playlist,
    select_media_playlist,
)
from hlsrelay.remux import get_remuxer
from hlsrelay.resolver import ManifestSource, as_manifest_source
from hlsrelay.upstream import UpstreamFetcher

LOG = logging.getLogger(__name__)

MAX_CONCURRENCY = 4
_EXPIRED_STATUSES = (401, 403, 404, 410)
_UNSAFE_FILENAME_RE = re.compile(r'[<>:"/\\|?*]')

# (segment_index, segment_progress_percent, total_segments)
ProgressCallback = Callable[[int, int, int], None]


class DownloadState(enum.Enum):
    INIT = "init"
    FETCH_MANIFEST = "fetch_manifest"
    MASTER_DETECTED = "master_detected"
    FETCH_MEDIA_MANIFEST = "fetch_media_manifest"
    FETCH_KEY = "fetch_key"
    DECRYPT_SEGMENTS = "decrypt_segments"
    REMUX = "remux"
    FINALIZE = "finalize"
    FAILED = "failed"


@dataclass
class DownloadSession:
    manifest_url: str
    key: Optional[bytes] = None
    segments: List[SegmentRef] = field(default_factory=list)
    results: List[SegmentResult] = field(default_factory=list)
    state: DownloadState = DownloadState.INIT
    work_dir: Optional[str] = None
    segment_files: Dict[int, str] = field(default_factory=dict)

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.results if r.ok)

    @property
    def failure_count(self) -> int:
        return sum(1 for r in self.results if not r.ok)

    @property
    def soft_failure_count(self) -> int:
        return sum(1 for r in self.results if r.soft_failure)


@dataclass
class DownloadReport:
    output_path: str
    total: int
    success_count: int
    failure_count: int
    soft_failure_count: int = 0
    incomplete: bool = False
    failures: Dict[int, str] = field(default_factory=dict)


def sanitize_filename(name: str) -> str:
    cleaned = _UNSAFE_FILENAME_RE.sub("_", (name or "").strip())
    return cleaned or "episode"


class Pacer:
    """Spacing between consecutive segment fetch starts.

    Uses an injected wait function rather than time.sleep so a cancel event
    can cut the pause short and tests can run on simulated time.
    """

    def __init__(self, delay: float, burst_every: int, burst_delay: float, wait: Callable[[float], object]):
        self.delay = max(0.0, float(delay))
        self.burst_every = max(0, int(burst_every))
        self.burst_delay = max(0.0, float(burst_delay))
        self._wait = wait

    def delay_after(self, index: int) -> float:
        if self.burst_every and index > 0 and index % self.burst_every == 0:
            return self.burst_delay
        return self.delay

    def before(self, index: int) -> None:
        if index <= 0:
            return
        d = self.delay_after(index - 1)
        if d > 0:
            self._wait(d)


class DownloadOrchestrator:
    def __init__(
        self,
        config: Optional[dict] = None,
        fetcher: Optional[UpstreamFetcher] = None,
        remuxer=None,
        sleep: Optional[Callable[[float], object]] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.config = with_defaults(config)
        self.fetcher = fetcher or UpstreamFetcher(self.config)
        self.remuxer = remuxer or get_remuxer(self.config)
        self.cancel_event = cancel_event or threading.Event()
        self._wait = sleep or self.cancel_event.wait

        c = self.config
        self.concurrency = min(MAX_CONCURRENCY, max(1, int(c["download_concurrency"])))
        self.threshold = float(c["download_success_threshold"])
        self.manifest_timeout = float(c["download_manifest_timeout_seconds"])
        self.pacer = Pacer(
            c["download_segment_delay_seconds"],
            c["download_burst_every"],
            c["download_burst_delay_seconds"],
            self._wait,
        )
        self._lock = threading.Lock()

    def cancel(self) -> None:
        """Stop issuing new segment fetches; an in-flight fetch finishes."""
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def _transition(self, session: DownloadSession, state: DownloadState) -> None:
        LOG.debug("Download state %s -> %s", session.state.value, state.value)
        session.state = state

    # --- manifest -------------------------------------------------------

    def _fetch_playlist(self, url: str) -> ManifestDocument:
        swaps = self.config.get("preferred_manifest_swaps") or {}
        resp, forced = fetch_preferred_playlist(
            lambda u: self.fetcher.fetch(u, timeout=self.manifest_timeout),
            url,
            swaps,
        )
        return parse_playlist(resp.text, resp.url, force_master=forced)

    def _fetch_manifest(self, session: DownloadSession, source: ManifestSource) -> ManifestDocument:
        self._transition(session, DownloadState.FETCH_MANIFEST)
        LOG.info("Fetching M3U8 playlist...")
        try:
            doc = self._fetch_playlist(session.manifest_url)
        except UpstreamRejected as e:
            if e.upstream_status not in _EXPIRED_STATUSES or not source.can_refresh():
                raise
            LOG.warning("Manifest rejected with HTTP %s, re-resolving", e.upstream_status)
            session.manifest_url = source.refresh()
            doc = self._fetch_playlist(session.manifest_url)

        if doc.is_master:
            self._transition(session, DownloadState.MASTER_DETECTED)
            media_url = select_media_playlist(doc)
            LOG.info("Detected master playlist, fetching media playlist: %s", media_url)
            self._transition(session, DownloadState.FETCH_MEDIA_MANIFEST)
            resp = self.fetcher.fetch(media_url, timeout=self.manifest_timeout)
            doc = parse_playlist(resp.text, resp.url)
            if doc.is_master:
                raise PlaylistError("Media playlist reference points at another master playlist")
        return doc

    # --- segments -------------------------------------------------------

    def _report(self, on_progress: Optional[ProgressCallback], index: int, pct: int, total: int) -> None:
        if on_progress is None:
            return
        try:
            on_progress(index, pct, total)
        except Exception as e:
            LOG.debug("Progress callback failed: %s", e)

    def _process_segment(
        self,
        session: DownloadSession,
        decryptor: SegmentDecryptor,
        seg: SegmentRef,
        index: int,
        total: int,
        on_progress: Optional[ProgressCallback],
    ) -> SegmentResult:
        self._report(on_progress, index, 0, total)

        def _bytes_progress(received: int, length: Optional[int]) -> None:
            if length:
                self._report(on_progress, index, min(99, int(received * 100 / length)), total)

        result = decryptor.fetch_and_decrypt(seg.original_url, index, on_progress=_bytes_progress)

        if result.ok and result.data:
            path = os.path.join(session.work_dir, f"seg{index:04d}.ts")
            try:
                with open(path, "wb") as f:
                    f.write(result.data)
                with self._lock:
                    session.segment_files[index] = path
            except OSError as e:
                LOG.error("Failed to write decrypted segment %d: %s", index + 1, e)
                detail = f"Failed to write decrypted segment: {e}"
                result = replace(
                    result,
                    status=SegmentStatus.FAILED,
                    detail=detail,
                    error=SegmentFetchHardFailure(detail, attempts=result.attempts),
                )
        elif result.ok:
            detail = "Decryption produced no data"
            result = replace(result, status=SegmentStatus.FAILED, detail=detail,
                             error=SegmentFetchHardFailure(detail, attempts=result.attempts))

        if not result.ok:
            LOG.error("Failed to decrypt segment %d: %s", index + 1, result.detail)

        self._report(on_progress, index, 100, total)
        # The bytes now live in the work dir.
        return replace(result, data=None)

    def _decrypt_all(
        self,
        session: DownloadSession,
        decryptor: SegmentDecryptor,
        on_progress: Optional[ProgressCallback],
    ) -> None:
        total = len(session.segments)
        slots = threading.BoundedSemaphore(self.concurrency)
        futures = []
        LOG.info("Processing all %d segments for complete episode...", total)

        with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="segment") as pool:
            for index, seg in enumerate(session.segments):
                slots.acquire()
                if not self.cancelled:
                    self.pacer.before(index)
                if self.cancelled:
                    slots.release()
                    LOG.info("Download cancelled; not starting segment %d", index + 1)
                    break
                fut = pool.submit(self._process_segment, session, decryptor, seg, index, total, on_progress)
                fut.add_done_callback(lambda _f: slots.release())
                futures.append(fut)

            done = 0
            for fut in futures:
                session.results.append(fut.result())
                done += 1
                if done % 10 == 0 or done == total:
                    LOG.info(
                        "Progress: %d/%d segments processed (%d successful, %d failed)",
                        done, total, session.success_count, session.failure_count,
                    )

        session.results.sort(key=lambda r: r.index)

    # --- entry point ----------------------------------------------------

    def download(
        self,
        source,
        output_name: str,
        output_dir: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> DownloadReport:
        source = as_manifest_source(source)
        session = DownloadSession(manifest_url=source.manifest_url())
        LOG.info("Starting AES-128 encrypted download for: %s", output_name)

        try:
            doc = self._fetch_manifest(session, source)

            self._transition(session, DownloadState.FETCH_KEY)
            session.key = fetch_key(self.fetcher, doc.key, timeout=self.manifest_timeout)

            kind_of = self.fetcher.classify
            session.segments = [s for s in doc.segments if kind_of(s.original_url) is not MediaKind.KEY]
            if not session.segments:
                raise PlaylistError("No video segments found in M3U8 playlist")
            LOG.info("Found %d encrypted video segments", len(session.segments))

            decryptor = SegmentDecryptor(
                self.fetcher,
                session.key,
                strategies=build_iv_strategies(doc.key, doc.media_sequence),
                max_attempts=self.config["download_retry_attempts"],
                backoff_seconds=self.config["download_retry_backoff_seconds"],
                timeout=self.config["download_segment_timeout_seconds"],
                sleep=self._wait,
            )

            self._transition(session, DownloadState.DECRYPT_SEGMENTS)
            session.work_dir = tempfile.mkdtemp(
                prefix="hlsrelay_", dir=self.config.get("download_work_dir") or None
            )
            self._decrypt_all(session, decryptor, on_progress)

            total = len(session.segments)
            ok = session.success_count
            LOG.info("Final decryption results: %d/%d segments successful, %d failed",
                     ok, total, total - ok)
            if self.cancelled:
                raise DownloadAborted("Download cancelled")
            if ok == 0:
                raise DownloadAborted(
                    "Failed to decrypt any video segments. The encryption key or IV calculation may be incorrect."
                )
            incomplete = ok < total * self.threshold
            if incomplete:
                LOG.warning("Only %d/%d segments downloaded successfully. Episode may be incomplete.", ok, total)

            self._transition(session, DownloadState.REMUX)
            ordered = [session.segment_files[r.index] for r in session.results if r.index in session.segment_files]
            ext = getattr(self.remuxer, "extension", ".mp4")
            produced = self.remuxer.remux(ordered, os.path.join(session.work_dir, "output" + ext))

            self._transition(session, DownloadState.FINALIZE)
            target_dir = output_dir or self.config.get("download_dir") or os.getcwd()
            os.makedirs(target_dir, exist_ok=True)
            final_path = os.path.join(target_dir, sanitize_filename(output_name) + ext)
            if os.path.exists(final_path):
                os.remove(final_path)
            shutil.move(produced, final_path)

            LOG.info("Complete episode download successful: %s", final_path)
            return DownloadReport(
                output_path=final_path,
                total=total,
                success_count=ok,
                failure_count=session.failure_count,
                soft_failure_count=session.soft_failure_count,
                incomplete=incomplete,
                failures={r.index: r.detail for r in session.results if not r.ok},
            )
        except HLSRelayError as e:
            self._transition(session, DownloadState.FAILED)
            LOG.error("Encrypted download failed: %s", e)
            raise
        except Exception:
            self._transition(session, DownloadState.FAILED)
            LOG.exception("Encrypted download failed")
            raise
        finally:
            self._cleanup(session)

    def _cleanup(self, session: DownloadSession) -> None:
        session.key = None
        if session.work_dir and os.path.exists(session.work_dir):
            LOG.debug("Cleaning up temporary files in %s", session.work_dir)
            try:
                shutil.rmtree(session.work_dir)
            except OSError as e:
                LOG.warning("Failed to cleanup temp dir %s: %s", session.work_dir, e)
        session.segment_files.clear()


def download_episode(
    manifest_url,
    output_name: str,
    on_progress: Optional[ProgressCallback] = None,
    config: Optional[dict] = None,
    output_dir: Optional[str] = None,
    **kwargs,
) -> DownloadReport:
    """Download one episode to ``<output_dir>/<output_name>.<ext>``.

    ``manifest_url`` may be a URL string or a ManifestSource that can
    re-resolve an expired URL. Extra keyword arguments go to
    DownloadOrchestrator (fetcher, remuxer, sleep, cancel_event).
    """
    orchestrator = DownloadOrchestrator(config=config, **kwargs)
    return orchestrator.download(manifest_url, output_name, output_dir=output_dir, on_progress=on_progress)
