"""Pipeline scheduler: single-flight, in-order execution of generation units.

``tick()`` is the only thing that starts a pending unit. It runs when the host
calls ``start()``/``retry()`` and again after every unit reaches a terminal
status. At most one unit is ``generating`` at a time, and the pipeline halts
at the first ``failed`` unit until the host retries it.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING

from docstream.pipeline.unit import GenerationUnit, UnitStatus
from docstream.service import GenerationRequest
from docstream.stream.decoder import StreamDecoder

if TYPE_CHECKING:
    from docstream.pipeline.state import Pipeline
    from docstream.schemas import StreamEvent
    from docstream.service import GenerationService

logger = logging.getLogger(__name__)

UnitListener = Callable[[GenerationUnit], None]

CANCELLED_MESSAGE = "Generation cancelled"


class PipelineStateError(RuntimeError):
    """The requested action is not valid in the pipeline's current state."""


class PipelineScheduler:
    def __init__(
        self,
        pipeline: Pipeline,
        service: GenerationService,
        listeners: list[UnitListener] | None = None,
    ) -> None:
        self.pipeline = pipeline
        self.service = service
        self._listeners: list[UnitListener] = list(listeners or [])
        self._active: GenerationUnit | None = None
        self._task: asyncio.Task | None = None

    @property
    def active_unit(self) -> GenerationUnit | None:
        return self._active

    @property
    def halted(self) -> bool:
        return any(u.status == UnitStatus.FAILED for u in self.pipeline.units)

    def subscribe(self, listener: UnitListener) -> None:
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Host actions
    # ------------------------------------------------------------------

    def tick(self) -> GenerationUnit | None:
        """Start the first pending unit if nothing is running and nothing failed."""
        if self._active is not None:
            return None
        if self.halted:
            logger.debug(f"Pipeline {self.pipeline.id} halted at a failed unit")
            return None
        for unit in self.pipeline.units:
            if unit.status == UnitStatus.PENDING:
                self._launch(unit, self._request_for(unit))
                return unit
        return None

    def start(self) -> GenerationUnit | None:
        return self.tick()

    def retry(self, index: int) -> GenerationUnit | None:
        """Put a failed unit back to ``pending`` and resume the pipeline."""
        unit = self.pipeline.unit(index)
        if unit.status != UnitStatus.FAILED:
            raise PipelineStateError(
                f"Unit {index} is {unit.status.value}; only failed units can be retried"
            )
        unit.reset()
        logger.info(f"Pipeline {self.pipeline.id}: retrying unit {index}")
        self._notify(unit)
        return self.tick()

    def revise(self, index: int, instructions: str) -> GenerationUnit:
        """Regenerate a ``done`` unit with free-text revision instructions."""
        unit = self.pipeline.unit(index)
        if unit.status != UnitStatus.DONE:
            raise PipelineStateError(
                f"Unit {index} is {unit.status.value}; only done units can be revised"
            )
        if self._active is not None:
            raise PipelineStateError(
                f"Unit {self._active.index} is still generating; wait for it before revising"
            )
        if not instructions.strip():
            raise ValueError("Revision instructions must not be empty")

        variables = dict(unit.variables)
        variables["current_content"] = unit.current_content()
        variables["user_revision_request"] = instructions
        request = self._request_for(unit, variables=variables, revision=True)
        self._launch(unit, request, revision=True)
        return unit

    def cancel(self) -> bool:
        """Abort the active stream. Returns False when nothing is running."""
        if self._task is None or self._task.done():
            return False
        logger.info(f"Pipeline {self.pipeline.id}: cancelling unit {self._active.index}")
        self._task.cancel()
        return True

    async def wait_idle(self) -> None:
        """Wait until no unit is generating (auto-advance included)."""
        while self._task is not None:
            await asyncio.wait({self._task})
            # the finished task may have ticked a successor into place
            if self._task is not None and self._task.done():
                self._task = None

    # ------------------------------------------------------------------
    # Stream driving
    # ------------------------------------------------------------------

    def _request_for(
        self,
        unit: GenerationUnit,
        variables: dict[str, str] | None = None,
        revision: bool = False,
    ) -> GenerationRequest:
        return GenerationRequest(
            unit_kind=unit.kind.value,
            variables=variables if variables is not None else dict(unit.variables),
            session_id=self.pipeline.session.session_id,
            scenario=self.pipeline.scenario,
            revision=revision,
        )

    def _launch(self, unit: GenerationUnit, request: GenerationRequest, revision: bool = False) -> None:
        unit.begin(revision=revision)
        self._active = unit
        logger.info(
            f"Pipeline {self.pipeline.id}: unit {unit.index} ({unit.kind.value}) "
            f"{'revising' if revision else 'generating'}"
        )
        self._notify(unit)
        task = asyncio.get_running_loop().create_task(self._drive(unit, request))
        task.add_done_callback(lambda t: self._reap(t, unit))
        self._task = task

    async def _drive(self, unit: GenerationUnit, request: GenerationRequest) -> None:
        decoder = StreamDecoder()
        text = ""
        try:
            stream = self.service.stream(request)
            try:
                async for chunk in stream:
                    for event in decoder.feed(chunk):
                        text = self._apply(unit, event, text)
            finally:
                aclose = getattr(stream, "aclose", None)
                if aclose is not None:
                    await aclose()
            decoder.close()
        except asyncio.CancelledError:
            unit.fail(CANCELLED_MESSAGE)
            self._finish(unit, advance=False)
            raise
        except Exception as e:
            logger.error(f"Unit {unit.index} stream error: {e}", exc_info=True)
            unit.fail(f"Transport error: {e}")
            self._finish(unit)
            return

        status = unit.complete()
        logger.info(f"Pipeline {self.pipeline.id}: unit {unit.index} finished as {status.value}")
        self._finish(unit)

    def _apply(self, unit: GenerationUnit, event: StreamEvent, text: str) -> str:
        if event.session_id:
            self.pipeline.session.establish(event.session_id)
        changed = False
        if event.reasoning_delta:
            unit.absorb_reasoning(event.reasoning_delta)
            changed = True
        if event.content_delta:
            text += event.content_delta
            unit.absorb(text)
            changed = True
        if changed:
            self._notify(unit)
        return text

    def _reap(self, task: asyncio.Task, unit: GenerationUnit) -> None:
        # a task cancelled before its first step never reaches _drive's handler
        if task.cancelled() and self._active is unit:
            unit.fail(CANCELLED_MESSAGE)
            self._finish(unit, advance=False)

    def _finish(self, unit: GenerationUnit, advance: bool = True) -> None:
        self._active = None
        self._task = None
        self._notify(unit)
        if advance:
            self.tick()

    def _notify(self, unit: GenerationUnit) -> None:
        for listener in self._listeners:
            try:
                listener(unit)
            except Exception as e:
                logger.error(f"Unit listener failed: {e}", exc_info=True)
