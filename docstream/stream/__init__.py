"""Streaming decode library: frames to events, text to thought/payload, payload to artifacts.

Everything here is synchronous and does no I/O, so it is safe to re-run on
every delta of a live stream.
"""

from docstream.stream.decoder import StreamDecoder, decode_frame
from docstream.stream.extractor import decode
from docstream.stream.parser import StructuredParser
from docstream.stream.raw import extract_raw

__all__ = [
    "StreamDecoder",
    "StructuredParser",
    "decode",
    "decode_frame",
    "extract_raw",
]
