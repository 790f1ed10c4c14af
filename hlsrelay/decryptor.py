"""
AES-128-CBC segment decryption for HLS downloads.

The origin's manifests declare ``#EXT-X-KEY:METHOD=AES-128,URI="..."`` with no
IV, so the IV has to be derived from the segment position. Observed behaviour
is that most segments use the 1-based sequence number, some the 0-based index.
Each convention is an IVStrategy; they are tried in order until the plaintext
starts with the MPEG-TS sync byte.

A segment that never yields the sync byte is still returned (with a
SegmentDecryptSoftFailure attached): a wrong IV only garbles the first block,
and some upstream segments are simply malformed.
"""

from __future__ import annotations

import enum
import logging
import struct
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from Crypto.Cipher import AES
from Crypto.Util.Padding import unpad

from hlsrelay.errors import (
    CiphertextError,
    DecryptionKeyMissing,
    HLSRelayError,
    SegmentDecryptSoftFailure,
    SegmentFetchHardFailure,
)
from hlsrelay.playlist import KeyRef
from hlsrelay.upstream import ProgressCallback, UpstreamFetcher

LOG = logging.getLogger(__name__)

TS_SYNC_BYTE = 0x47
KEY_LENGTH = 16
_HEX_DUMP_SEGMENTS = 5
_LOG_EVERY = 10


@dataclass(frozen=True)
class IVStrategy:
    name: str
    derive: Callable[[int], bytes]

    def __call__(self, index: int) -> bytes:
        return self.derive(index)


def counter_iv(value: int) -> bytes:
    """16-byte IV: zeros with ``value`` as a big-endian uint32 in the last 4 bytes."""
    return b"\x00" * 12 + struct.pack(">I", value & 0xFFFFFFFF)


SEQUENCE_IV = IVStrategy("sequence", lambda index: counter_iv(index + 1))
INDEX_IV = IVStrategy("index", lambda index: counter_iv(index))


def build_iv_strategies(key: Optional[KeyRef] = None, media_sequence: Optional[int] = None) -> List[IVStrategy]:
    strategies: List[IVStrategy] = []
    if key is not None and key.iv:
        explicit = key.iv
        strategies.append(IVStrategy("explicit", lambda index: explicit))
    strategies.extend([SEQUENCE_IV, INDEX_IV])
    if media_sequence is not None and media_sequence not in (0, 1):
        start = int(media_sequence)
        strategies.append(IVStrategy("media-sequence", lambda index: counter_iv(start + index)))
    return strategies


class SegmentStatus(enum.Enum):
    DECRYPTED = "decrypted"
    FAILED = "failed"


@dataclass(frozen=True)
class SegmentResult:
    index: int
    status: SegmentStatus
    data: Optional[bytes] = None
    detail: str = ""
    error: Optional[HLSRelayError] = None
    iv_strategy: Optional[str] = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.status is SegmentStatus.DECRYPTED

    @property
    def soft_failure(self) -> bool:
        return isinstance(self.error, SegmentDecryptSoftFailure)


def _aes_cbc_decrypt(ciphertext: bytes, key: bytes, iv: bytes) -> bytes:
    if not ciphertext or len(ciphertext) % AES.block_size:
        raise CiphertextError(f"Ciphertext length {len(ciphertext)} is not a multiple of 16")
    plain = AES.new(key, AES.MODE_CBC, iv).decrypt(ciphertext)
    try:
        return unpad(plain, AES.block_size)
    except ValueError as e:
        raise CiphertextError(f"Bad PKCS#7 padding: {e}") from e


def _hex(data: bytes, n: int = 16) -> str:
    return " ".join(f"{b:02x}" for b in data[:n])


def fetch_key(
    fetcher: UpstreamFetcher,
    key_ref: Optional[KeyRef],
    timeout: Optional[float] = None,
) -> bytes:
    """Download the raw content key; any problem is a DecryptionKeyMissing."""
    if key_ref is None:
        raise DecryptionKeyMissing(
            "No AES-128 encryption key found in playlist. This downloader only handles encrypted streams."
        )
    if key_ref.method != "AES-128":
        raise DecryptionKeyMissing(f"Unsupported encryption method: {key_ref.method}")

    LOG.info("Downloading encryption key: %s", key_ref.uri)
    try:
        resp = fetcher.fetch(key_ref.uri, timeout=timeout)
    except HLSRelayError as e:
        raise DecryptionKeyMissing(f"Failed to download encryption key: {e}") from e

    key = resp.payload
    if len(key) != KEY_LENGTH:
        raise DecryptionKeyMissing(f"Key length error: expected {KEY_LENGTH} bytes, got {len(key)}")
    LOG.debug("Key preview (first 8 bytes): %s...", _hex(key, 8))
    return key


class SegmentDecryptor:
    def __init__(
        self,
        fetcher: UpstreamFetcher,
        key: bytes,
        strategies: Optional[List[IVStrategy]] = None,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        timeout: Optional[float] = None,
        sleep: Callable[[float], object] = time.sleep,
    ):
        if len(key) != KEY_LENGTH:
            raise DecryptionKeyMissing(f"Key length error: expected {KEY_LENGTH} bytes, got {len(key)}")
        self.fetcher = fetcher
        self.key = bytes(key)
        self.strategies = list(strategies or [SEQUENCE_IV, INDEX_IV])
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_seconds = max(0.0, float(backoff_seconds))
        self.timeout = timeout
        self._sleep = sleep

    def decrypt(self, ciphertext: bytes, index: int) -> SegmentResult:
        """Decrypt one segment, walking the IV strategies until one passes."""
        first: Optional[bytes] = None
        first_name: Optional[str] = None
        padding_error: Optional[CiphertextError] = None
        for n, strategy in enumerate(self.strategies):
            try:
                plain = _aes_cbc_decrypt(ciphertext, self.key, strategy(index))
            except CiphertextError as e:
                # Single-block segments: the IV also decides the padding byte.
                padding_error = e
                LOG.debug("Segment %d did not decrypt with %s IV: %s", index + 1, strategy.name, e)
                continue
            if plain and plain[0] == TS_SYNC_BYTE:
                label = "" if n == 0 else f" with {strategy.name} IV"
                return SegmentResult(
                    index=index,
                    status=SegmentStatus.DECRYPTED,
                    data=plain,
                    detail=f"Decrypted TS segment{label} ({len(plain)} bytes)",
                    iv_strategy=strategy.name,
                )
            if first is None:
                first, first_name = plain, strategy.name
            LOG.debug("Invalid TS header for segment %d with %s IV", index + 1, strategy.name)

        if first is None and padding_error is not None:
            raise padding_error

        lead = first[0] if first else None
        if index < _HEX_DUMP_SEGMENTS:
            LOG.warning(
                "Decryption may have failed for segment %d. First 16 bytes: %s",
                index + 1,
                _hex(first or b""),
            )
        detail = (
            f"Decrypted but invalid header (first byte: 0x{lead:02x})"
            if lead is not None
            else "Decrypted but empty"
        )
        return SegmentResult(
            index=index,
            status=SegmentStatus.DECRYPTED,
            data=first,
            detail=detail,
            error=SegmentDecryptSoftFailure(detail, leading_byte=lead),
            iv_strategy=first_name,
        )

    def fetch_and_decrypt(
        self,
        url: str,
        index: int,
        on_progress: Optional[ProgressCallback] = None,
    ) -> SegmentResult:
        """Download and decrypt with bounded retries and linear backoff."""
        last_error: Optional[Exception] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                if index % _LOG_EVERY == 0:
                    LOG.info(
                        "Downloading encrypted segment %d (attempt %d/%d)",
                        index + 1, attempt, self.max_attempts,
                    )
                resp = self.fetcher.fetch(url, timeout=self.timeout, on_progress=on_progress)
                if not resp.payload:
                    raise CiphertextError("Empty encrypted segment")
                result = self.decrypt(resp.payload, index)
                return SegmentResult(
                    index=result.index,
                    status=result.status,
                    data=result.data,
                    detail=result.detail,
                    error=result.error,
                    iv_strategy=result.iv_strategy,
                    attempts=attempt,
                )
            except HLSRelayError as e:
                last_error = e
                LOG.warning("Attempt %d failed for segment %d: %s", attempt, index + 1, e)
                if attempt < self.max_attempts:
                    self._sleep(attempt * self.backoff_seconds)

        detail = f"Failed after {self.max_attempts} attempts: {last_error}"
        return SegmentResult(
            index=index,
            status=SegmentStatus.FAILED,
            detail=detail,
            error=SegmentFetchHardFailure(detail, attempts=self.max_attempts),
            attempts=self.max_attempts,
        )
