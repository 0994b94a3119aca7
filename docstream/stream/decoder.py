"""Stream decoder: turns raw SSE text from the generation service into StreamEvents.

Frames are newline-delimited ``data:`` lines. Two payload shapes are accepted:

  {"content": "...", "reasoning": "...", "session_id": "..."}
  {"choices": [{"delta": {"content": "...", "reasoning_content": "..."}}], "session_id": "..."}

The decoder keeps only the unterminated tail of the last chunk between calls.
It does no I/O.
"""

from __future__ import annotations

import codecs
import json
import logging

from pydantic import BaseModel, ValidationError

from docstream.schemas import StreamEvent

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"


class _ServiceFrame(BaseModel):
    content: str | None = None
    reasoning: str | None = None
    session_id: str | None = None


class _ChunkDelta(BaseModel):
    content: str | None = None
    reasoning_content: str | None = None


class _ChunkChoice(BaseModel):
    delta: _ChunkDelta = _ChunkDelta()


class _ChatChunkFrame(BaseModel):
    choices: list[_ChunkChoice] = []
    session_id: str | None = None


def decode_frame(payload: str) -> StreamEvent | None:
    """Decode one ``data:`` payload. Returns None for sentinels and empty frames.

    Raises ValueError when the payload is not a recognised frame.
    """
    payload = payload.strip()
    if not payload or payload == DONE_SENTINEL:
        return None

    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        raise ValueError(f"Frame is not JSON: {e}") from e
    if not isinstance(data, dict):
        raise ValueError(f"Frame must be a JSON object, got {type(data).__name__}")

    try:
        if "choices" in data:
            chunk = _ChatChunkFrame.model_validate(data)
            delta = chunk.choices[0].delta if chunk.choices else _ChunkDelta()
            content, reasoning, session_id = (
                delta.content,
                delta.reasoning_content,
                chunk.session_id,
            )
        else:
            frame = _ServiceFrame.model_validate(data)
            content, reasoning, session_id = frame.content, frame.reasoning, frame.session_id
    except ValidationError as e:
        raise ValueError(f"Unexpected frame shape: {e.error_count()} validation error(s)") from e

    if not content and not reasoning and not session_id:
        return None
    return StreamEvent(
        content_delta=content or "",
        reasoning_delta=reasoning or None,
        session_id=session_id or None,
    )


class StreamDecoder:
    """Buffers transport chunks and yields events for every complete frame."""

    def __init__(self) -> None:
        self._buffer = ""
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self.skipped_frames = 0

    def feed(self, chunk: str | bytes) -> list[StreamEvent]:
        """Add a chunk and return events for the frames it completed."""
        if isinstance(chunk, bytes):
            chunk = self._utf8.decode(chunk)
        self._buffer += chunk

        *lines, self._buffer = self._buffer.split("\n")
        events: list[StreamEvent] = []
        for line in lines:
            event = self._decode_line(line.rstrip("\r"))
            if event is not None:
                events.append(event)
        return events

    def close(self) -> None:
        """End of input. A leftover partial frame is discarded."""
        tail = self._utf8.decode(b"", final=True)
        leftover = self._buffer + tail
        if leftover.strip():
            logger.debug(f"Discarding incomplete frame at end of stream: {leftover[:80]!r}")
        self._buffer = ""

    def _decode_line(self, line: str) -> StreamEvent | None:
        # Only `data:` carries payloads; comments, event:/id:/retry: and blanks are ignored
        if not line.startswith("data:"):
            return None
        payload = line[5:]
        if payload.startswith(" "):
            payload = payload[1:]
        try:
            return decode_frame(payload)
        except ValueError as e:
            self.skipped_frames += 1
            logger.warning(f"Skipping malformed frame: {e}")
            return None
