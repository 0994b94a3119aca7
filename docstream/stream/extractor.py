"""Payload extractor: splits accumulated stream text into thought and payload.

``decode`` is a pure function of the whole text so far and is re-run on every
delta. Boundary precedence, first match wins:

  1. a ```json fence at the start of a line
  2. the first unescaped ``{`` or ``[`` outside <think> regions
  3. nothing: the whole text is thought
"""

from __future__ import annotations

import re

from docstream.schemas import DecodedBuffer

THINK_OPEN = "<think>"
THINK_CLOSE = "</think>"

# Only line-start fences count: inside a JSON string newlines are escaped,
# so a fence quoted in a payload value never matches.
_JSON_FENCE = re.compile(r"(?:^|\n)[ \t]*```[ \t]*json[ \t]*\r?\n", re.IGNORECASE)
_CLOSING_FENCE = re.compile(r"\n[ \t]*```")


def think_regions(text: str) -> list[tuple[int, int]]:
    """Return (start, end) spans of <think> blocks; an unclosed block runs to the end."""
    regions: list[tuple[int, int]] = []
    pos = 0
    while True:
        start = text.find(THINK_OPEN, pos)
        if start == -1:
            return regions
        close = text.find(THINK_CLOSE, start + len(THINK_OPEN))
        if close == -1:
            regions.append((start, len(text)))
            return regions
        end = close + len(THINK_CLOSE)
        regions.append((start, end))
        pos = end


def _inside(index: int, regions: list[tuple[int, int]]) -> bool:
    return any(start <= index < end for start, end in regions)


def _clean_thought(text: str) -> str:
    return text.replace(THINK_OPEN, "").replace(THINK_CLOSE, "").strip()


def find_payload_start(text: str, regions: list[tuple[int, int]] | None = None) -> int:
    """Index of the first structural ``{`` or ``[``, or -1."""
    if regions is None:
        regions = think_regions(text)
    for i, ch in enumerate(text):
        if ch not in "{[":
            continue
        if i > 0 and text[i - 1] == "\\":
            continue
        if regions and _inside(i, regions):
            continue
        return i
    return -1


def decode(text: str) -> DecodedBuffer:
    """Split ``text`` into thought and payload fragment."""
    regions = think_regions(text)

    for match in _JSON_FENCE.finditer(text):
        if _inside(match.start(), regions):
            continue
        body_start = match.end()
        closing = _CLOSING_FENCE.search(text, max(body_start - 1, 0))
        body = text[body_start : closing.start()] if closing else text[body_start:]
        return DecodedBuffer(
            thought=_clean_thought(text[: match.start()]),
            payload_fragment=body.strip(),
            payload_started=True,
            fenced=True,
            fence_closed=closing is not None,
        )

    start = find_payload_start(text, regions)
    if start == -1:
        return DecodedBuffer(thought=_clean_thought(text))

    return DecodedBuffer(
        thought=_clean_thought(text[:start]),
        payload_fragment=text[start:],
        payload_started=True,
    )
