"""Test helpers: SSE frame builders, canned scripts and a scripted generation service."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Callable
from typing import Any

from docstream.service import GenerationRequest

HOLD = object()


def sse(
    content: str | None = None,
    reasoning: str | None = None,
    session_id: str | None = None,
) -> str:
    """Build one ``data:`` frame in the service's native shape."""
    frame: dict[str, Any] = {}
    if content is not None:
        frame["content"] = content
    if reasoning is not None:
        frame["reasoning"] = reasoning
    if session_id is not None:
        frame["session_id"] = session_id
    return f"data: {json.dumps(frame)}\n\n"


def chunked(payload: str, size: int = 7, session_id: str | None = None) -> list[str]:
    """Split ``payload`` into content frames of ``size`` characters."""
    frames = [sse(content=payload[i : i + size]) for i in range(0, len(payload), size)]
    if session_id is not None:
        frames.insert(0, sse(session_id=session_id))
    return frames


class ScriptedService:
    """Replays one script per request.

    A script is a list of chunks, or an exception to raise when the stream
    opens. Inside a script an exception is raised at that point, and ``HOLD``
    blocks until ``release()`` is called.
    """

    def __init__(self, *scripts: list[Any] | BaseException) -> None:
        self.scripts = list(scripts)
        self.requests: list[GenerationRequest] = []
        self.gate = asyncio.Event()

    def add(self, *scripts: list[Any] | BaseException) -> None:
        self.scripts.extend(scripts)

    def release(self) -> None:
        self.gate.set()

    async def stream(self, request: GenerationRequest) -> AsyncIterator[str | bytes]:
        self.requests.append(request)
        script = self.scripts.pop(0) if self.scripts else []
        if isinstance(script, BaseException):
            raise script
        for item in script:
            if item is HOLD:
                await self.gate.wait()
                continue
            if isinstance(item, BaseException):
                raise item
            yield item
            await asyncio.sleep(0)


async def settle(predicate: Callable[[], bool], attempts: int = 2000) -> None:
    """Yield to the event loop until ``predicate`` holds."""
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


OUTLINE_PAYLOAD = json.dumps(
    {
        "title": "Solar Power",
        "pages": [
            {"title": "Intro", "content": "Why solar matters"},
            {"title": "Costs", "content": "Capex and payback"},
        ],
    }
)


def outline_script(session_id: str | None = "sess-1") -> list[str]:
    return [sse(content="Planning the outline.\n```json\n")] + chunked(
        OUTLINE_PAYLOAD + "\n```", session_id=session_id
    )


def section_script(title: str, body: str) -> list[str]:
    return chunked(json.dumps({"title": title, "content": body}))


def layout_script(title: str) -> list[str]:
    return chunked(json.dumps({"html": f"<html><body><h1>{title}</h1></body></html>"}))
