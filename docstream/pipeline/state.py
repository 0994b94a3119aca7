"""Pipeline state: the ordered units plus the shared session.

The pipeline is owned by the host. The scheduler only mutates unit state;
unit creation policy (what to append when) stays with the caller.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field

from docstream.pipeline.unit import GenerationUnit, UnitKind, UnitStatus

logger = logging.getLogger(__name__)


class Session(BaseModel):
    """Conversation id shared by every request of one pipeline run.

    Write-once: the first id the service hands out sticks.
    """

    session_id: str | None = None

    def establish(self, session_id: str) -> bool:
        """Record ``session_id`` if none is set yet. Returns True when it was set."""
        if not session_id:
            return False
        if self.session_id is None:
            self.session_id = session_id
            logger.info(f"Session established: {session_id}")
            return True
        if session_id != self.session_id:
            logger.warning(
                f"Ignoring session id {session_id}: session already set to {self.session_id}"
            )
        return False


class Pipeline(BaseModel):
    id: str = Field(default_factory=lambda: uuid4().hex)
    topic: str = ""
    scenario: str | None = None
    units: list[GenerationUnit] = []
    session: Session = Field(default_factory=Session)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def append_unit(
        self,
        kind: UnitKind | str,
        variables: dict[str, str] | None = None,
        artifact_field: str = "html",
    ) -> GenerationUnit:
        """Add a ``pending`` unit at the end of the pipeline."""
        unit = GenerationUnit(
            index=len(self.units),
            kind=UnitKind(kind),
            variables=dict(variables or {}),
            artifact_field=artifact_field,
        )
        self.units.append(unit)
        return unit

    def unit(self, index: int) -> GenerationUnit:
        if not 0 <= index < len(self.units):
            raise IndexError(f"Pipeline {self.id} has no unit {index} (units={len(self.units)})")
        return self.units[index]

    def units_of(self, kind: UnitKind) -> list[GenerationUnit]:
        return [u for u in self.units if u.kind == kind]

    def in_status(self, status: UnitStatus) -> list[GenerationUnit]:
        return [u for u in self.units if u.status == status]

    @property
    def finished(self) -> bool:
        return bool(self.units) and all(u.status == UnitStatus.DONE for u in self.units)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def snapshot(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def restore(cls, data: str | bytes | dict[str, Any]) -> Pipeline:
        """Load a saved pipeline. Units saved mid-stream go back to ``pending``.

        A resumed run has no live stream, so nothing can still be generating.
        """
        if isinstance(data, dict):
            pipeline = cls.model_validate(data)
        else:
            pipeline = cls.model_validate_json(data)

        for unit in pipeline.units:
            if unit.status == UnitStatus.GENERATING:
                logger.info(f"Pipeline {pipeline.id}: unit {unit.index} was generating, reset to pending")
                unit.status = UnitStatus.PENDING
        return pipeline
