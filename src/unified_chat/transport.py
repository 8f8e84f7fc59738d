"""Re-framing of raw response bytes into SSE / NDJSON payloads.

Lines are assembled from bytes before decoding, so a multi-byte character or
a ``data:`` line split across reads produces the same frames as a single read.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterable, AsyncIterator
from enum import Enum

_logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"


class StreamFormat(str, Enum):
    SSE = "sse"
    NDJSON = "ndjson"


def looks_like_complete_json(payload: str) -> bool:
    """Cheap structural check used to flush a buffered event early."""
    trimmed = payload.strip()
    if not trimmed:
        return False
    return (trimmed.startswith("{") and trimmed.endswith("}")) or (
        trimmed.startswith("[") and trimmed.endswith("]")
    )


def _is_valid_payload(payload: str) -> bool:
    if payload == DONE_SENTINEL:
        return True
    try:
        json.loads(payload)
    except json.JSONDecodeError:
        return False
    return True


class FrameDecoder:
    """Incremental line framer with buffered-with-compatibility-flush delivery."""

    def __init__(self, stream_format: StreamFormat = StreamFormat.SSE) -> None:
        self._format = stream_format
        self._pending = bytearray()
        self._data_lines: list[str] = []

    def feed(self, chunk: bytes) -> list[str]:
        """Append ``chunk`` and return every frame completed by it."""
        self._pending.extend(chunk)
        frames: list[str] = []
        while True:
            newline = self._pending.find(b"\n")
            if newline < 0:
                break
            raw = bytes(self._pending[:newline])
            del self._pending[: newline + 1]
            line = self._decode_line(raw)
            if line is not None:
                frames.extend(self._process_line(line))
        return frames

    def finish(self) -> list[str]:
        """Flush the trailing partial line and any buffered event at end of stream."""
        frames: list[str] = []
        if self._pending:
            raw = bytes(self._pending)
            self._pending.clear()
            line = self._decode_line(raw)
            if line is not None and self._format is StreamFormat.NDJSON:
                tail = line.strip()
                if tail and _is_valid_payload(tail):
                    frames.append(tail)
                elif tail:
                    _logger.debug("Discarding incomplete trailing line (%d chars)", len(tail))
            elif line is not None:
                frames.extend(self._process_line(line))

        payload = self._joined()
        self._data_lines.clear()
        if payload:
            if _is_valid_payload(payload):
                frames.append(payload)
            else:
                _logger.debug("Discarding incomplete trailing frame (%d chars)", len(payload))
        return frames

    @staticmethod
    def _decode_line(raw: bytes) -> str | None:
        if raw.endswith(b"\r"):
            raw = raw[:-1]
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError:
            _logger.warning("Skipping stream line that is not valid UTF-8 (%d bytes)", len(raw))
            return None

    def _joined(self) -> str:
        return "\n".join(self._data_lines).strip()

    def _flush(self) -> list[str]:
        payload = self._joined()
        self._data_lines.clear()
        return [payload] if payload else []

    def _process_line(self, line: str) -> list[str]:
        if self._format is StreamFormat.SSE:
            if not line:
                # blank line terminates an SSE event
                return self._flush()
            if line.startswith(":"):
                return []
            field, sep, value = line.partition(":")
            if sep and value.startswith(" "):
                value = value[1:]
            if field != "data":
                return []
            data_line = value
        else:
            # one JSON document per line, never joined with its neighbours
            stripped = line.strip()
            return [stripped] if stripped else []

        self._data_lines.append(data_line)
        candidate = self._joined()
        if candidate and (candidate == DONE_SENTINEL or looks_like_complete_json(candidate)):
            return self._flush()
        return []


async def iter_frames(
    byte_chunks: AsyncIterable[bytes],
    stream_format: StreamFormat = StreamFormat.SSE,
) -> AsyncIterator[str]:
    """Yield framed payloads in arrival order from an async byte stream."""
    decoder = FrameDecoder(stream_format)
    async for chunk in byte_chunks:
        for frame in decoder.feed(chunk):
            yield frame
    for frame in decoder.finish():
        yield frame
