"""Runtime: bridges host actions to pipeline schedulers.

Keeps the live pipelines, applies the outline -> content -> layout unit
creation policy as units finish, persists on status changes, and fans unit
updates out to SSE subscribers.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncGenerator
from dataclasses import dataclass, field

from docstream.config import HostConfig
from docstream.pipeline.scheduler import PipelineScheduler
from docstream.pipeline.state import Pipeline
from docstream.pipeline.store import PipelineStore
from docstream.pipeline.unit import GenerationUnit, UnitKind, UnitStatus
from docstream.schemas import PipelineUpdate
from docstream.service import GenerationService, HttpGenerationService

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Unit creation policy
# ---------------------------------------------------------------------------


def expand_pipeline(pipeline: Pipeline, layout_field: str = "html") -> list[GenerationUnit]:
    """Append the next stage's units once the current stage is complete.

    Outline done and no content units yet: one content unit per outline page.
    Every content unit done and no layout units yet: one layout unit per
    content unit. Returns the units that were added.
    """
    added: list[GenerationUnit] = []
    outlines = pipeline.units_of(UnitKind.OUTLINE)
    contents = pipeline.units_of(UnitKind.CONTENT)

    if not contents:
        outline = next((u for u in outlines if u.status == UnitStatus.DONE), None)
        if outline is None or outline.artifact is None:
            return added
        pages = outline.artifact.get("pages") or []
        outline_json = json.dumps(outline.artifact, ensure_ascii=False)
        for i, page in enumerate(pages):
            added.append(
                pipeline.append_unit(
                    UnitKind.CONTENT,
                    {
                        "outline": outline_json,
                        "page_index": str(i + 1),
                        "page_title": page.get("title", ""),
                        "page_summary": page.get("content", ""),
                    },
                )
            )
        if added:
            logger.info(f"Pipeline {pipeline.id}: outline done, added {len(added)} content units")
        return added

    if pipeline.units_of(UnitKind.LAYOUT):
        return added
    if not all(u.status == UnitStatus.DONE for u in contents):
        return added

    for unit in contents:
        section = unit.artifact or {}
        added.append(
            pipeline.append_unit(
                UnitKind.LAYOUT,
                {
                    "page_title": section.get("title") or unit.variables.get("page_title", ""),
                    "markdown_content": section.get("content", ""),
                },
                artifact_field=layout_field,
            )
        )
    logger.info(f"Pipeline {pipeline.id}: content done, added {len(added)} layout units")
    return added


# ---------------------------------------------------------------------------
# Live pipelines
# ---------------------------------------------------------------------------


@dataclass
class PipelineRun:
    pipeline: Pipeline
    scheduler: PipelineScheduler
    subscribers: set[asyncio.Queue] = field(default_factory=set)
    statuses: dict[int, UnitStatus] = field(default_factory=dict)


class PipelineRuntime:
    def __init__(
        self,
        config: HostConfig,
        service: GenerationService | None = None,
        store: PipelineStore | None = None,
    ) -> None:
        self.config = config
        self.service = service or HttpGenerationService(config)
        self._injected = service is not None
        if store is None and config.store_dir:
            store = PipelineStore(config.store_dir)
        self.store = store
        self._runs: dict[str, PipelineRun] = {}

    # -- registry -------------------------------------------------------

    def create(self, topic: str, scenario: str | None = None) -> PipelineRun:
        """New pipeline with a single pending outline unit."""
        if not topic.strip():
            raise ValueError("Topic must not be empty")
        pipeline = Pipeline(topic=topic, scenario=scenario)
        pipeline.append_unit(UnitKind.OUTLINE, {"user_input": topic})
        run = self._register(pipeline)
        logger.info(f"Created pipeline {pipeline.id} (scenario={scenario or 'default'})")
        return run

    def get(self, pipeline_id: str) -> PipelineRun:
        """Live run for ``pipeline_id``, loading it from the store if needed.

        Raises KeyError when the pipeline is unknown.
        """
        run = self._runs.get(pipeline_id)
        if run is not None:
            return run
        if self.store is None or not self.store.exists(pipeline_id):
            raise KeyError(f"Pipeline '{pipeline_id}' not found")
        return self._register(self.store.load(pipeline_id))

    @property
    def live(self) -> list[PipelineRun]:
        return list(self._runs.values())

    def find(self, pipeline_id: str) -> PipelineRun | None:
        """Live run for ``pipeline_id`` without touching the store."""
        return self._runs.get(pipeline_id)

    def pipelines(self) -> list[Pipeline]:
        """Every known pipeline, oldest first.

        Stored pipelines are read for display only: they are not registered
        and their files are not rewritten. Unreadable files are skipped.
        """
        found = {pid: run.pipeline for pid, run in self._runs.items()}
        if self.store is not None:
            for pid in self.store.list_ids():
                if pid in found:
                    continue
                try:
                    found[pid] = self.store.load(pid)
                except (KeyError, ValueError, OSError) as e:
                    logger.warning(f"Skipping unreadable pipeline {pid}: {e}")
        return sorted(found.values(), key=lambda p: p.created_at)

    def _register(self, pipeline: Pipeline) -> PipelineRun:
        scheduler = PipelineScheduler(pipeline, self.service)
        run = PipelineRun(pipeline=pipeline, scheduler=scheduler)
        scheduler.subscribe(lambda unit: self._on_unit(run, unit))
        self._runs[pipeline.id] = run
        # a run saved between stages resumes with its next stage in place
        expand_pipeline(pipeline, self.config.layout_field)
        self._persist(run)
        return run

    # -- host actions ---------------------------------------------------

    def start(self, pipeline_id: str) -> GenerationUnit | None:
        return self.get(pipeline_id).scheduler.start()

    def retry(self, pipeline_id: str, index: int) -> GenerationUnit | None:
        return self.get(pipeline_id).scheduler.retry(index)

    def revise(self, pipeline_id: str, index: int, instructions: str) -> GenerationUnit:
        return self.get(pipeline_id).scheduler.revise(index, instructions)

    def cancel(self, pipeline_id: str) -> bool:
        return self.get(pipeline_id).scheduler.cancel()

    def reconfigure(self, config: HostConfig, service: GenerationService | None = None) -> None:
        """Swap in new config. Streams already open keep their old client.

        An injected service survives unless the sections that build the
        client (service and prompts) changed.
        """
        client_changed = config.service != self.config.service or config.prompts != self.config.prompts
        if service is not None:
            self.service = service
            self._injected = True
        elif not self._injected or client_changed:
            self.service = HttpGenerationService(config)
            self._injected = False
        self.config = config
        if config.store_dir and (self.store is None or self.store.directory.as_posix() != config.store_dir):
            self.store = PipelineStore(config.store_dir)
        for run in self._runs.values():
            run.scheduler.service = self.service
        logger.info(f"Runtime reconfigured ({len(self._runs)} live pipelines)")

    async def shutdown(self) -> None:
        """Cancel every active stream and wait for the units to settle."""
        for run in self._runs.values():
            if run.scheduler.cancel():
                await run.scheduler.wait_idle()

    # -- updates --------------------------------------------------------

    async def events(self, pipeline_id: str) -> AsyncGenerator[PipelineUpdate, None]:
        """Snapshot of every unit, then live updates, then a final ``idle``."""
        run = self.get(pipeline_id)
        queue: asyncio.Queue[PipelineUpdate] = asyncio.Queue()
        run.subscribers.add(queue)
        try:
            for unit in list(run.pipeline.units):
                yield self._update(run, unit)
            while run.scheduler.active_unit is not None or not queue.empty():
                yield await queue.get()
            yield PipelineUpdate(
                type="idle",
                pipeline_id=run.pipeline.id,
                session_id=run.pipeline.session.session_id,
            )
        finally:
            run.subscribers.discard(queue)

    def _update(self, run: PipelineRun, unit: GenerationUnit) -> PipelineUpdate:
        return PipelineUpdate(
            type="unit",
            pipeline_id=run.pipeline.id,
            session_id=run.pipeline.session.session_id,
            unit=unit.model_dump(mode="json"),
        )

    def _on_unit(self, run: PipelineRun, unit: GenerationUnit) -> None:
        added = expand_pipeline(run.pipeline, self.config.layout_field)
        if added or run.statuses.get(unit.index) != unit.status:
            self._persist(run)

        update = self._update(run, unit)
        for queue in run.subscribers:
            queue.put_nowait(update)
        for new_unit in added:
            update = self._update(run, new_unit)
            for queue in run.subscribers:
                queue.put_nowait(update)

    def _persist(self, run: PipelineRun) -> None:
        run.statuses = {u.index: u.status for u in run.pipeline.units}
        if self.store is not None:
            self.store.save(run.pipeline)
