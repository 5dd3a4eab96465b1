"""Incremental decoder for the chunked, blank-line framed reply stream.

Wire format (one frame)::

    data: {"response": "Hel"}\\n\\n
    data: {"choices": [{"delta": {"content": "lo"}}]}\\n\\n
    data: [DONE]\\n\\n

Frames are separated by a blank line. Only frames starting with ``data:`` are
considered; anything else (keep-alive comments, stray lines) is dropped.
Delivery chunks do not respect frame boundaries, so the unterminated tail of
every round is carried over and glued to the next chunk.
"""
from __future__ import annotations

import codecs
import json
import logging
from typing import AsyncIterable, AsyncIterator, List, Optional, Sequence, Type, Union

from pydantic import BaseModel, ValidationError

from .models import ChoiceChunk, ResponseChunk

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"
FRAME_SEPARATOR = "\n\n"

# Tried in order; the first shape yielding non-empty text wins.
PAYLOAD_SHAPES: Sequence[Type[BaseModel]] = (ResponseChunk, ChoiceChunk)


# -----------------------------
# Payload decode step
# -----------------------------
def extract_delta(payload: str, shapes: Sequence[Type[BaseModel]] = PAYLOAD_SHAPES) -> str:
    """Return the text delta carried by one frame payload, or "" to skip it."""
    try:
        obj = json.loads(payload)
    except json.JSONDecodeError as e:
        logger.warning("Skipping malformed frame payload %r: %s", payload[:80], e)
        return ""

    for shape in shapes:
        try:
            chunk = shape.model_validate(obj)
        except ValidationError:
            continue
        text = chunk.text()  # type: ignore[attr-defined]
        if text:
            return text
    return ""


# -----------------------------
# Frame decoder
# -----------------------------
class FrameDecoder:
    """Single-pass frame decoder scoped to one response body.

    ``feed`` accepts raw bytes (or already-decoded text) and returns the
    non-empty deltas of every frame completed by that chunk. Once the
    termination sentinel is seen ``done`` is set and further input is ignored.
    """

    def __init__(
        self,
        *,
        prefix: str = DATA_PREFIX,
        sentinel: str = DONE_SENTINEL,
        shapes: Sequence[Type[BaseModel]] = PAYLOAD_SHAPES,
    ) -> None:
        self.prefix = prefix
        self.sentinel = sentinel
        self.shapes = tuple(shapes)
        self.done = False
        self._buffer = ""
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def feed(self, chunk: Union[bytes, str]) -> List[str]:
        if self.done:
            return []
        text = self._utf8.decode(chunk) if isinstance(chunk, (bytes, bytearray)) else chunk
        # A lone "\r" stays at the end of the tail until its "\n" arrives.
        if self._buffer.endswith("\r") and text.startswith("\n"):
            self._buffer = self._buffer[:-1]
        text = text.replace("\r\n", "\n")
        # Only the new text (plus one carried "\n") can complete a separator.
        start = max(len(self._buffer) - 1, 0)
        self._buffer += text
        if self._buffer.find(FRAME_SEPARATOR, start) == -1:
            return []

        frames = self._buffer.split(FRAME_SEPARATOR)
        self._buffer = frames.pop()

        deltas: List[str] = []
        for frame in frames:
            if not frame.startswith(self.prefix):
                continue
            data = frame[len(self.prefix):].strip()
            if data == self.sentinel:
                self.done = True
                self._buffer = ""
                break
            delta = extract_delta(data, self.shapes)
            if delta:
                deltas.append(delta)
        return deltas

    def close(self) -> None:
        """Drop whatever partial frame is still buffered."""
        self._utf8.decode(b"", final=True)
        if self._buffer.strip():
            logger.debug("Discarding %d unterminated bytes at end of stream", len(self._buffer))
        self._buffer = ""


async def iter_deltas(
    chunks: AsyncIterable[bytes],
    decoder: Optional[FrameDecoder] = None,
) -> AsyncIterator[str]:
    """Yield text deltas from an async byte stream in arrival order.

    Stops on the termination sentinel or when ``chunks`` is exhausted.
    """
    decoder = decoder or FrameDecoder()
    try:
        async for chunk in chunks:
            for delta in decoder.feed(chunk):
                yield delta
            if decoder.done:
                return
    finally:
        decoder.close()
