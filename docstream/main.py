"""docstream host: FastAPI app driving document generation pipelines.

Loads config.yaml on startup. Exposes pipeline actions (create, start,
cancel, retry, revise), an SSE feed of unit updates per pipeline, and
operational endpoints for health, config viewing, and hot-reload.

Run with ``uvicorn --factory docstream.main:create_app`` or
``python -m docstream.main``.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse

from docstream.config import HostConfig, load_config, reload_config
from docstream.pipeline.scheduler import PipelineStateError
from docstream.pipeline.state import Pipeline
from docstream.pipeline.unit import UnitStatus
from docstream.runtime import PipelineRun, PipelineRuntime
from docstream.schemas import CreatePipelineRequest, ReviseRequest
from docstream.service import GenerationService

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _runtime(request: Request) -> PipelineRuntime:
    return request.app.state.runtime


def _action(fn: Callable[..., Any], *args: Any) -> Any:
    """Call a runtime action, mapping caller errors to HTTP statuses."""
    try:
        return fn(*args)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e.args[0]) if e.args else "Not found")
    except PipelineStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))


def _summary(pipeline: Pipeline, run: PipelineRun | None) -> dict:
    """Listing entry. Stored pipelines without a live run are never active."""
    counts: dict[str, int] = {}
    for unit in pipeline.units:
        counts[unit.status.value] = counts.get(unit.status.value, 0) + 1
    active = run.scheduler.active_unit if run is not None else None
    return {
        "id": pipeline.id,
        "topic": pipeline.topic,
        "scenario": pipeline.scenario,
        "created_at": pipeline.created_at.isoformat(),
        "units": counts,
        "active_unit": active.index if active is not None else None,
        "halted": bool(pipeline.in_status(UnitStatus.FAILED)),
        "finished": pipeline.finished,
    }


def _detail(run: PipelineRun) -> dict:
    data = run.pipeline.snapshot()
    active = run.scheduler.active_unit
    data["active_unit"] = active.index if active is not None else None
    data["halted"] = run.scheduler.halted
    data["finished"] = run.pipeline.finished
    return data


def _unit_response(run: PipelineRun, unit) -> dict:
    return {
        "pipeline_id": run.pipeline.id,
        "started": unit.model_dump(mode="json") if unit is not None else None,
    }


# ---------------------------------------------------------------------------
# Auth dependency
# ---------------------------------------------------------------------------


async def verify_api_key(request: Request) -> None:
    """Validate X-API-Key header against the configured key.
    If no api_key is set in config, auth is disabled (dev mode).
    """
    config = _runtime(request).config
    if not config.api_key:
        return

    key = request.headers.get("X-API-Key")
    if key != config.api_key:
        raise HTTPException(status_code=401, detail="Invalid or missing API key")


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------


def create_app(
    config: HostConfig | None = None,
    service: GenerationService | None = None,
) -> FastAPI:
    """Build the host app. Without ``config``, config.yaml is loaded from disk."""
    boot_config = config or load_config()
    runtime = PipelineRuntime(boot_config, service=service)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            f"docstream started (service={boot_config.service.base_url}, "
            f"origins={boot_config.allowed_origins}, "
            f"auth={'enabled' if boot_config.api_key else 'disabled'}, "
            f"store={boot_config.store_dir or 'disabled'})"
        )
        yield
        await app.state.runtime.shutdown()
        logger.info("docstream shutting down")

    app = FastAPI(title="docstream", version="0.1.0", lifespan=lifespan)
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=boot_config.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # -----------------------------------------------------------------------
    # Pipeline endpoints
    # -----------------------------------------------------------------------

    @app.post("/pipelines", status_code=201, dependencies=[Depends(verify_api_key)])
    async def create_pipeline(body: CreatePipelineRequest, request: Request):
        rt = _runtime(request)
        run = _action(rt.create, body.topic, body.scenario)
        if body.autostart:
            run.scheduler.start()
        return _detail(run)

    @app.get("/pipelines", dependencies=[Depends(verify_api_key)])
    async def list_pipelines(request: Request):
        rt = _runtime(request)
        return [_summary(pipeline, rt.find(pipeline.id)) for pipeline in rt.pipelines()]

    @app.get("/pipelines/{pipeline_id}", dependencies=[Depends(verify_api_key)])
    async def get_pipeline(pipeline_id: str, request: Request):
        return _detail(_action(_runtime(request).get, pipeline_id))

    @app.post("/pipelines/{pipeline_id}/start", dependencies=[Depends(verify_api_key)])
    async def start_pipeline(pipeline_id: str, request: Request):
        rt = _runtime(request)
        run = _action(rt.get, pipeline_id)
        return _unit_response(run, run.scheduler.start())

    @app.post("/pipelines/{pipeline_id}/cancel", dependencies=[Depends(verify_api_key)])
    async def cancel_pipeline(pipeline_id: str, request: Request):
        rt = _runtime(request)
        cancelled = _action(rt.cancel, pipeline_id)
        return {"pipeline_id": pipeline_id, "cancelled": cancelled}

    @app.post(
        "/pipelines/{pipeline_id}/units/{index}/retry",
        dependencies=[Depends(verify_api_key)],
    )
    async def retry_unit(pipeline_id: str, index: int, request: Request):
        rt = _runtime(request)
        run = _action(rt.get, pipeline_id)
        return _unit_response(run, _action(rt.retry, pipeline_id, index))

    @app.post(
        "/pipelines/{pipeline_id}/units/{index}/revise",
        dependencies=[Depends(verify_api_key)],
    )
    async def revise_unit(pipeline_id: str, index: int, body: ReviseRequest, request: Request):
        rt = _runtime(request)
        run = _action(rt.get, pipeline_id)
        return _unit_response(run, _action(rt.revise, pipeline_id, index, body.instructions))

    @app.get("/pipelines/{pipeline_id}/events", dependencies=[Depends(verify_api_key)])
    async def pipeline_events(pipeline_id: str, request: Request):
        """Stream unit updates as Server-Sent Events until the pipeline is idle."""
        rt = _runtime(request)
        _action(rt.get, pipeline_id)

        async def stream():
            async for update in rt.events(pipeline_id):
                data = json.dumps(update.model_dump())
                yield f"data: {data}\n\n"

        return StreamingResponse(stream(), media_type="text/event-stream", headers=SSE_HEADERS)

    # -----------------------------------------------------------------------
    # Operational endpoints
    # -----------------------------------------------------------------------

    @app.get("/health")
    async def health(request: Request):
        """Liveness check."""
        rt = _runtime(request)
        active = sum(1 for run in rt.live if run.scheduler.active_unit is not None)
        return {"status": "healthy", "pipelines": len(rt.live), "active": active}

    @app.get("/config")
    async def get_current_config(request: Request):
        """Return current config as JSON."""
        config = _runtime(request).config.model_dump()
        config["api_key"] = "***" if config["api_key"] else None
        config["service"]["api_key"] = "***" if config["service"]["api_key"] else None
        return config

    @app.post("/reload", dependencies=[Depends(verify_api_key)])
    async def reload(request: Request):
        """Hot-reload config.yaml without restart and rebuild the service client.

        Streams already open finish on the previous client.
        """
        try:
            new_config = reload_config()
            _runtime(request).reconfigure(new_config)
            return {
                "status": "reloaded",
                "service": new_config.service.base_url,
                "store": new_config.store_dir,
            }
        except Exception as e:
            logger.error(f"Reload failed: {e}", exc_info=True)
            raise HTTPException(status_code=500, detail=f"Reload failed: {e}")

    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("docstream.main:create_app", factory=True, host="0.0.0.0", port=8080)
