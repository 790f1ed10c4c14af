"""Exception taxonomy shared by the proxy and the download pipeline.

Every error carries the HTTP status the proxy should answer with, so request
handlers can map failures to responses in one place.
"""

from typing import Optional


class HLSRelayError(Exception):
    status_code = 500

    def __init__(self, message: str = "", status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class BadRequest(HLSRelayError):
    status_code = 400


class UpstreamError(HLSRelayError):
    """Origin could not be reached (DNS, refused, reset...)."""

    status_code = 502


class UpstreamTimeout(UpstreamError):
    status_code = 504


class UpstreamRejected(UpstreamError):
    """Origin answered with a non-2xx status."""

    status_code = 502

    def __init__(self, message: str = "", upstream_status: Optional[int] = None):
        super().__init__(message)
        self.upstream_status = upstream_status


class PlaylistError(HLSRelayError):
    status_code = 502


class DecryptionKeyMissing(HLSRelayError):
    pass


class SegmentDecryptSoftFailure(HLSRelayError):
    """Decryption ran but no IV produced a transport-stream sync byte."""

    def __init__(self, message: str = "", leading_byte: Optional[int] = None):
        super().__init__(message)
        self.leading_byte = leading_byte


class SegmentFetchHardFailure(HLSRelayError):
    def __init__(self, message: str = "", attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts


class RemuxFailure(HLSRelayError):
    pass


class DownloadAborted(HLSRelayError):
    pass


class CiphertextError(HLSRelayError):
    """Ciphertext is truncated or its padding does not check out."""
