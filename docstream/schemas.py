"""Stream and artifact models: the contract between the decoder, the parsers and clients."""

from __future__ import annotations

from typing import Any, Generic, TypeVar

from pydantic import BaseModel

T = TypeVar("T")


class StreamEvent(BaseModel):
    """One decoded frame from the generation service.

    content_delta    : new payload/thought text to append to the buffer
    reasoning_delta  : text from the service's separate reasoning channel
    session_id       : conversation id assigned by the service
    """

    content_delta: str = ""
    reasoning_delta: str | None = None
    session_id: str | None = None


class DecodedBuffer(BaseModel):
    """Thought/payload split of the text accumulated so far."""

    thought: str = ""
    payload_fragment: str = ""
    payload_started: bool = False
    fenced: bool = False
    fence_closed: bool = False


class ParsedArtifact(BaseModel, Generic[T]):
    """Result of a speculative parse. ``value`` is None on a miss."""

    value: T | None = None
    is_partial: bool = True
    tier: int | None = None


# ---------------------------------------------------------------------------
# Artifact shapes produced by the generation service
# ---------------------------------------------------------------------------


class OutlinePage(BaseModel):
    title: str = ""
    content: str = ""


class OutlineArtifact(BaseModel):
    """Document outline: a title plus one entry per section."""

    title: str = ""
    pages: list[OutlinePage] = []


class SectionArtifact(BaseModel):
    """Markdown body of one section."""

    title: str = ""
    content: str = ""


# ---------------------------------------------------------------------------
# Host API bodies
# ---------------------------------------------------------------------------


class CreatePipelineRequest(BaseModel):
    topic: str
    scenario: str | None = None
    autostart: bool = True


class ReviseRequest(BaseModel):
    instructions: str


class PipelineUpdate(BaseModel):
    """A single SSE event in a pipeline's update feed.

    Types:
        unit   : a unit's status or artifact changed
        idle   : nothing is generating; the feed ends here
    """

    type: str
    pipeline_id: str
    session_id: str | None = None
    unit: dict[str, Any] | None = None
