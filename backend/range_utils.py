"""HTTP Range header parsing for byte-range media responses."""

import re
from typing import NamedTuple, Optional

_RANGE_RE = re.compile(r"^\s*bytes\s*=\s*(\d*)\s*-\s*(\d*)\s*$", re.IGNORECASE)


class ByteRange(NamedTuple):
    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    def content_range(self, size: int) -> str:
        return f"bytes {self.start}-{self.end}/{size}"


def parse_range_header(header: Optional[str], size: int) -> Optional[ByteRange]:
    """Resolve a Range header against a file of `size` bytes.

    Returns None when no header was sent. Supports "bytes=a-b", the open
    "bytes=a-" form and the suffix "bytes=-n" form; only the first range of
    a multi-range request is honored. Anything unparseable or unsatisfiable
    resolves to the whole file rather than an error, and the end is clamped
    to the last byte.
    """
    if header is None:
        return None

    last = max(size - 1, 0)
    whole = ByteRange(0, last)

    m = _RANGE_RE.match(header.split(",", 1)[0])
    if not m:
        return whole

    start_text, end_text = m.groups()
    if not start_text and not end_text:
        return whole

    if not start_text:
        # Suffix range: the last n bytes
        suffix = int(end_text)
        if suffix <= 0:
            return whole
        return ByteRange(max(size - suffix, 0), last)

    start = int(start_text)
    end = int(end_text) if end_text else last
    end = min(end, last)
    if start > end:
        return whole
    return ByteRange(start, end)
