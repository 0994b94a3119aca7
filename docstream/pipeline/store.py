"""Pipeline store: one JSON file per pipeline under a directory."""

from __future__ import annotations

import logging
from pathlib import Path

from docstream.pipeline.state import Pipeline

logger = logging.getLogger(__name__)


class PipelineStore:
    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, pipeline_id: str) -> Path:
        # ids are uuid hex; reject anything that could escape the directory
        if not pipeline_id or not pipeline_id.isalnum():
            raise KeyError(f"Invalid pipeline id: {pipeline_id!r}")
        return self.directory / f"{pipeline_id}.json"

    def exists(self, pipeline_id: str) -> bool:
        try:
            return self._path(pipeline_id).exists()
        except KeyError:
            return False

    def save(self, pipeline: Pipeline) -> Path:
        path = self._path(pipeline.id)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(pipeline.model_dump_json(indent=2))
        tmp.replace(path)
        logger.debug(f"Saved pipeline {pipeline.id} to {path}")
        return path

    def load(self, pipeline_id: str) -> Pipeline:
        """Read a saved pipeline. Raises KeyError when it is not stored."""
        path = self._path(pipeline_id)
        if not path.exists():
            raise KeyError(f"Pipeline '{pipeline_id}' not found in {self.directory}")
        pipeline = Pipeline.restore(path.read_text())
        logger.info(f"Loaded pipeline {pipeline_id} ({len(pipeline.units)} units)")
        return pipeline

    def list_ids(self) -> list[str]:
        return sorted(p.stem for p in self.directory.glob("*.json"))
