"""Line framing and classification for child process output.

Child processes interleave newline-delimited JSON-RPC with free-text
diagnostics on the same stream, and a single JSON object may arrive split
across several reads. ``LineFramer`` reassembles complete lines;
``classify_line`` decides whether a line is protocol traffic or text.
"""

from __future__ import annotations

import codecs
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any

from loguru import logger

from mcpgate.proxy.protocol import is_well_formed

_ERROR_MARKERS = ("🚨",)
# A child that never writes a newline must not grow the carry-over forever.
DEFAULT_MAX_PENDING = 32 * 1024 * 1024


class LineKind(Enum):
    PROTOCOL = "protocol"
    TEXT = "text"


@dataclass(frozen=True)
class DecodedLine:
    kind: LineKind
    raw: str
    messages: tuple[dict[str, Any], ...] = ()
    looks_like_error: bool = False


class LineFramer:
    """Buffers partial output and yields complete, trimmed, non-empty lines."""

    def __init__(self, source: str = "stdout", max_pending: int = DEFAULT_MAX_PENDING):
        self.source = source
        self.max_pending = max_pending
        self.dropped = 0
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    @property
    def pending(self) -> str:
        """Carry-over text that has not been terminated by a newline yet."""
        return self._buffer

    def feed(self, chunk: bytes | str) -> list[str]:
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        self._buffer += chunk
        if "\n" in chunk:
            *candidates, self._buffer = self._buffer.split("\n")
        else:
            candidates = []
        if len(self._buffer) > self.max_pending:
            logger.warning(
                "Discarding {} chars of unterminated {} output (limit {})",
                len(self._buffer),
                self.source,
                self.max_pending,
            )
            self.dropped += len(self._buffer)
            self._buffer = ""
        return [line.strip() for line in candidates if line.strip()]

    def flush(self) -> str:
        """Drain the decoder and return whatever partial line is left."""
        self._buffer += self._decoder.decode(b"", final=True)
        rest, self._buffer = self._buffer, ""
        return rest


def looks_like_error(line: str) -> bool:
    """Severity heuristic for incidental output; no effect on correlation."""
    return any(marker in line for marker in _ERROR_MARKERS) or "error" in line.lower()


def classify_line(line: str) -> DecodedLine:
    """Decode one candidate line as JSON-RPC, falling back to incidental text."""
    try:
        value = json.loads(line)
    except ValueError:
        return DecodedLine(LineKind.TEXT, line, looks_like_error=looks_like_error(line))

    if isinstance(value, dict):
        messages: tuple[dict[str, Any], ...] = (value,)
    elif isinstance(value, list):
        messages = tuple(item for item in value if isinstance(item, dict))
    else:
        messages = ()

    messages = tuple(m for m in messages if is_well_formed(m))
    if not messages:
        return DecodedLine(LineKind.TEXT, line, looks_like_error=looks_like_error(line))
    return DecodedLine(LineKind.PROTOCOL, line, messages=messages)
