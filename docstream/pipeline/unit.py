"""Generation unit: one request/stream/parse cycle with an explicit status.

Status transitions:

  pending    -> generating   (scheduler start)
  generating -> done         (stream ended with a recovered artifact)
  generating -> failed       (transport error, cancel, or nothing recovered)
  done       -> generating   (revision)
  failed     -> pending      (manual retry)

The artifact shown to the host never regresses: whatever was displayed before
a stream began stays until that stream recovers a replacement. A revision that
fails puts the unit back to ``done`` with its pre-revision artifact.
"""

from __future__ import annotations

import json
import logging
from enum import Enum
from typing import Any

from pydantic import BaseModel, PrivateAttr

from docstream.schemas import OutlineArtifact, ParsedArtifact, SectionArtifact
from docstream.stream.extractor import decode
from docstream.stream.parser import StructuredParser
from docstream.stream.raw import extract_raw

logger = logging.getLogger(__name__)


class UnitKind(str, Enum):
    OUTLINE = "outline"
    CONTENT = "content"
    LAYOUT = "layout"


class UnitStatus(str, Enum):
    PENDING = "pending"
    GENERATING = "generating"
    DONE = "done"
    FAILED = "failed"


ARTIFACT_MODELS: dict[UnitKind, type[BaseModel]] = {
    UnitKind.OUTLINE: OutlineArtifact,
    UnitKind.CONTENT: SectionArtifact,
}

NO_ARTIFACT_MESSAGE = "Stream ended without a usable artifact"


class GenerationUnit(BaseModel):
    """A unit of pipeline work. Serializable; live stream state is private."""

    index: int
    kind: UnitKind
    status: UnitStatus = UnitStatus.PENDING
    variables: dict[str, str] = {}
    artifact: dict[str, Any] | None = None
    artifact_partial: bool = True
    raw_artifact: str | None = None
    artifact_field: str = "html"
    thought: str = ""
    reasoning: str = ""
    error_message: str | None = None
    revision_count: int = 0

    _text: str = PrivateAttr(default="")
    _live: ParsedArtifact | None = PrivateAttr(default=None)
    _recovered: bool = PrivateAttr(default=False)
    _revising: bool = PrivateAttr(default=False)
    _snapshot: tuple[dict[str, Any] | None, bool, str | None] | None = PrivateAttr(default=None)

    @property
    def is_raw(self) -> bool:
        return self.kind == UnitKind.LAYOUT

    @property
    def revising(self) -> bool:
        return self._revising

    @property
    def stream_text(self) -> str:
        return self._text

    def has_artifact(self) -> bool:
        return bool(self.raw_artifact) if self.is_raw else self.artifact is not None

    def typed_artifact(self) -> BaseModel | None:
        """The artifact as its model instance (None for layout units)."""
        model = ARTIFACT_MODELS.get(self.kind)
        if model is None or self.artifact is None:
            return None
        return model.model_validate(self.artifact)

    def current_content(self) -> str:
        """The artifact as text, for revision prompts."""
        match self.kind:
            case UnitKind.LAYOUT:
                return self.raw_artifact or ""
            case _ if self.artifact is None:
                return ""
            case UnitKind.CONTENT:
                return self.artifact.get("content", "")
            case _:
                return json.dumps(self.artifact, ensure_ascii=False)

    # ------------------------------------------------------------------
    # Stream lifecycle
    # ------------------------------------------------------------------

    def begin(self, revision: bool = False) -> None:
        """Enter ``generating`` for a fresh stream."""
        self._snapshot = (self.artifact, self.artifact_partial, self.raw_artifact)
        self._text = ""
        self._live = None
        self._recovered = False
        self._revising = revision
        self.status = UnitStatus.GENERATING
        self.error_message = None
        self.thought = ""
        self.reasoning = ""
        if revision:
            self.revision_count += 1

    def absorb(self, text: str) -> bool:
        """Re-derive thought and artifact from the full stream text.

        Returns True when the displayed artifact changed.
        """
        self._text = text
        decoded = decode(text)
        self.thought = decoded.thought
        if not decoded.payload_started and not self.is_raw:
            return False

        if self.is_raw:
            raw = extract_raw(decoded.payload_fragment, self.artifact_field)
            if raw is None:
                raw = extract_raw(text, self.artifact_field)
            if raw is None or raw == self.raw_artifact:
                return False
            self.raw_artifact = raw
            self._recovered = True
            return True

        parser = StructuredParser(ARTIFACT_MODELS[self.kind])
        parsed = parser.parse(
            decoded.payload_fragment,
            previous=self._live,
            closed=decoded.fence_closed or not decoded.fenced,
        )
        if parsed.value is None:
            return False
        self._live = parsed
        self._recovered = True
        dumped = parsed.value.model_dump()
        changed = dumped != self.artifact or parsed.is_partial != self.artifact_partial
        self.artifact = dumped
        self.artifact_partial = parsed.is_partial
        return changed

    def absorb_reasoning(self, delta: str) -> None:
        self.reasoning += delta

    def complete(self) -> UnitStatus:
        """The stream ended normally."""
        if self._recovered:
            self.status = UnitStatus.DONE
            self.error_message = None
            self._revising = False
            return self.status
        return self.fail(NO_ARTIFACT_MESSAGE)

    def fail(self, message: str) -> UnitStatus:
        """The stream broke or produced nothing usable."""
        if self._revising:
            self._restore()
            self.status = UnitStatus.DONE
            self.error_message = f"Revision failed: {message}"
            self._revising = False
            logger.warning(f"Unit {self.index} ({self.kind.value}) revision failed, kept previous artifact: {message}")
            return self.status
        self.status = UnitStatus.FAILED
        self.error_message = message
        logger.warning(f"Unit {self.index} ({self.kind.value}) failed: {message}")
        return self.status

    def reset(self) -> None:
        """Manual retry: ``failed`` back to ``pending``. The artifact is kept."""
        self.status = UnitStatus.PENDING
        self.error_message = None

    def _restore(self) -> None:
        if self._snapshot is not None:
            self.artifact, self.artifact_partial, self.raw_artifact = self._snapshot
