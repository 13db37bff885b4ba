"""Newline-delimited JSON framing over an arbitrarily chunked byte stream."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterable, AsyncIterator
from typing import Any

logger = logging.getLogger(__name__)


class LineFramer:
    """Reassembles JSON frames from byte chunks.

    The buffer holds bytes rather than text, so a chunk boundary that falls in
    the middle of a multi-byte character cannot corrupt a frame. Lines that
    are not valid JSON (log noise interleaved with the protocol) are dropped.
    """

    def __init__(self) -> None:
        self._buffer = bytearray()
        self.discarded = 0

    @property
    def pending_bytes(self) -> int:
        return len(self._buffer)

    def feed(self, chunk: bytes) -> list[Any]:
        """Add a chunk and return every frame completed by it, in order."""
        self._buffer.extend(chunk)
        frames: list[Any] = []
        while True:
            newline = self._buffer.find(b"\n")
            if newline < 0:
                break
            line = bytes(self._buffer[:newline])
            del self._buffer[: newline + 1]
            self._parse_into(line, frames)
        return frames

    def flush(self) -> list[Any]:
        """Parse whatever trails the last newline once the stream has ended."""
        line = bytes(self._buffer)
        self._buffer.clear()
        frames: list[Any] = []
        self._parse_into(line, frames)
        return frames

    def _parse_into(self, line: bytes, frames: list[Any]) -> None:
        if not line.strip():
            return
        try:
            frames.append(json.loads(line.decode("utf-8")))
        except (UnicodeDecodeError, json.JSONDecodeError):
            self.discarded += 1
            logger.debug("Discarding non-JSON line (%d bytes)", len(line))


async def iter_frames(chunks: AsyncIterable[bytes]) -> AsyncIterator[Any]:
    """Lazily yield frames from a byte-chunk stream, including a trailing unterminated line."""
    framer = LineFramer()
    async for chunk in chunks:
        for frame in framer.feed(chunk):
            yield frame
    for frame in framer.flush():
        yield frame
