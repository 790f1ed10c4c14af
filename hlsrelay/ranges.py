"""Serve byte ranges out of a fully buffered payload.

Players seek inside segments with ``Range: bytes=start-end``; the proxy
always holds the whole object (from cache or a fresh fetch), so a partial
response is just a slice of it.
"""

import re
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

_RANGE_RE = re.compile(r"^bytes=(\d+)-(\d*)$")


@dataclass
class RangeReply:
    status: int
    body: bytes
    headers: Dict[str, str] = field(default_factory=dict)


def parse_range_header(range_value: Optional[str], total_length: int) -> Optional[Tuple[int, int]]:
    # Supports: bytes=start-end, bytes=start-
    # Anything else (suffix ranges, multi-range, garbage) returns None.
    if not range_value:
        return None
    m = _RANGE_RE.match(range_value.strip())
    if not m:
        return None
    start = int(m.group(1))
    end_s = m.group(2)
    if end_s:
        end = int(end_s)
        if end < start:
            return None
        end = min(end, total_length - 1)
    else:
        end = total_length - 1
    return (start, end)


def serve_range(payload: bytes, range_value: Optional[str], content_type: str) -> RangeReply:
    total = len(payload)
    headers = {
        "Content-Type": content_type,
        "Accept-Ranges": "bytes",
    }

    parsed = parse_range_header(range_value, total)
    if parsed is None:
        headers["Content-Length"] = str(total)
        return RangeReply(200, payload, headers)

    start, end = parsed
    if start >= total:
        headers["Content-Range"] = f"bytes */{total}"
        headers["Content-Length"] = "0"
        return RangeReply(416, b"", headers)

    chunk = payload[start:end + 1]
    headers["Content-Range"] = f"bytes {start}-{end}/{total}"
    headers["Content-Length"] = str(len(chunk))
    return RangeReply(206, chunk, headers)
