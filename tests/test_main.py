"""API tests for the FastAPI host."""

from __future__ import annotations

import json
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient

from docstream.config import HostConfig
from docstream.main import create_app
from tests.helpers import (
    HOLD,
    ScriptedService,
    layout_script,
    outline_script,
    section_script,
    sse,
)


def _parse_sse(raw: str) -> list[dict[str, Any]]:
    return [json.loads(line[6:]) for line in raw.split("\n") if line.startswith("data: ")]


def _client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver")


def _full_run_service() -> ScriptedService:
    return ScriptedService(
        outline_script(),
        section_script("Intro", "intro body"),
        section_script("Costs", "costs body"),
        layout_script("Intro"),
        layout_script("Costs"),
    )


@pytest.mark.asyncio
async def test_create_without_autostart(config: HostConfig, service: ScriptedService) -> None:
    app = create_app(config, service=service)
    async with _client(app) as client:
        response = await client.post("/pipelines", json={"topic": "Solar", "autostart": False})

    assert response.status_code == 201
    data = response.json()
    assert data["topic"] == "Solar"
    assert len(data["units"]) == 1
    assert data["units"][0]["kind"] == "outline"
    assert data["units"][0]["status"] == "pending"
    assert data["active_unit"] is None


@pytest.mark.asyncio
async def test_full_run_over_http() -> None:
    app = create_app(HostConfig(), service=_full_run_service())
    async with _client(app) as client:
        created = (await client.post("/pipelines", json={"topic": "Solar"})).json()
        assert created["active_unit"] == 0

        await app.state.runtime.get(created["id"]).scheduler.wait_idle()

        detail = (await client.get(f"/pipelines/{created['id']}")).json()
        listing = (await client.get("/pipelines")).json()
        events = await client.get(f"/pipelines/{created['id']}/events")

    assert detail["finished"] is True
    assert [u["status"] for u in detail["units"]] == ["done"] * 5
    assert detail["session"]["session_id"] == "sess-1"
    assert listing[0]["units"] == {"done": 5}

    assert events.headers["content-type"].startswith("text/event-stream")
    payloads = _parse_sse(events.text)
    assert [p["type"] for p in payloads] == ["unit"] * 5 + ["idle"]


@pytest.mark.asyncio
async def test_unknown_pipeline_is_404(config: HostConfig, service: ScriptedService) -> None:
    app = create_app(config, service=service)
    async with _client(app) as client:
        assert (await client.get("/pipelines/deadbeef")).status_code == 404
        assert (await client.post("/pipelines/deadbeef/start")).status_code == 404
        assert (await client.get("/pipelines/deadbeef/events")).status_code == 404


@pytest.mark.asyncio
async def test_state_errors_map_to_409_and_422() -> None:
    app = create_app(HostConfig(), service=ScriptedService(outline_script()))
    async with _client(app) as client:
        created = (await client.post("/pipelines", json={"topic": "Solar", "autostart": False})).json()
        pid = created["id"]

        retry = await client.post(f"/pipelines/{pid}/units/0/retry")
        assert retry.status_code == 409

        early = await client.post(f"/pipelines/{pid}/units/0/revise", json={"instructions": "x"})
        assert early.status_code == 409

        missing = await client.post(f"/pipelines/{pid}/units/9/retry")
        assert missing.status_code == 404

        await client.post(f"/pipelines/{pid}/start")
        run = app.state.runtime.get(pid)
        await run.scheduler.wait_idle()

        blank = await client.post(f"/pipelines/{pid}/units/0/revise", json={"instructions": " "})
        assert blank.status_code == 422

        empty_topic = await client.post("/pipelines", json={"topic": ""})
        assert empty_topic.status_code == 422


@pytest.mark.asyncio
async def test_cancel_then_retry() -> None:
    service = ScriptedService([sse(content='{"title": "Doc", "pages": ['), HOLD])
    app = create_app(HostConfig(), service=service)
    async with _client(app) as client:
        pid = (await client.post("/pipelines", json={"topic": "Solar"})).json()["id"]

        cancelled = await client.post(f"/pipelines/{pid}/cancel")
        assert cancelled.json() == {"pipeline_id": pid, "cancelled": True}
        await app.state.runtime.get(pid).scheduler.wait_idle()

        detail = (await client.get(f"/pipelines/{pid}")).json()
        assert detail["units"][0]["status"] == "failed"
        assert detail["halted"] is True

        service.add(outline_script())
        retried = await client.post(f"/pipelines/{pid}/units/0/retry")
        assert retried.status_code == 200
        assert retried.json()["started"]["status"] == "generating"
        app.state.runtime.cancel(pid)
        await app.state.runtime.get(pid).scheduler.wait_idle()


@pytest.mark.asyncio
async def test_api_key_required_when_configured() -> None:
    app = create_app(HostConfig(api_key="secret"), service=ScriptedService())
    async with _client(app) as client:
        denied = await client.get("/pipelines")
        allowed = await client.get("/pipelines", headers={"X-API-Key": "secret"})
        health = await client.get("/health")

    assert denied.status_code == 401
    assert allowed.status_code == 200
    assert allowed.json() == []
    assert health.status_code == 200


@pytest.mark.asyncio
async def test_health_and_config() -> None:
    config = HostConfig(api_key="secret")
    config.service.api_key = "service-token"
    app = create_app(config, service=ScriptedService())
    async with _client(app) as client:
        health = (await client.get("/health")).json()
        shown = (await client.get("/config")).json()

    assert health == {"status": "healthy", "pipelines": 0, "active": 0}
    assert shown["api_key"] == "***"
    assert shown["service"]["api_key"] == "***"
    assert shown["layout_field"] == "html"


@pytest.mark.asyncio
async def test_reload_reads_config_from_disk(tmp_path) -> None:
    from docstream.config import load_config

    path = tmp_path / "config.yaml"
    path.write_text("service:\n  base_url: http://one.test\n")
    app = create_app(load_config(str(path)), service=ScriptedService())

    path.write_text("service:\n  base_url: http://two.test\n")
    async with _client(app) as client:
        response = await client.post("/reload")

    assert response.status_code == 200
    assert response.json()["service"] == "http://two.test"
    assert app.state.runtime.config.service.base_url == "http://two.test"


@pytest.mark.asyncio
async def test_reload_keeps_injected_service(tmp_path, service: ScriptedService) -> None:
    from docstream.config import load_config

    path = tmp_path / "config.yaml"
    path.write_text("layout_field: html\n")
    app = create_app(load_config(str(path)), service=service)

    path.write_text("layout_field: markup\n")
    async with _client(app) as client:
        response = await client.post("/reload")

    assert response.status_code == 200
    assert app.state.runtime.config.layout_field == "markup"
    assert app.state.runtime.service is service


@pytest.mark.asyncio
async def test_listing_survives_unreadable_stored_pipeline(tmp_path, service: ScriptedService) -> None:
    app = create_app(HostConfig(store_dir=str(tmp_path)), service=service)
    async with _client(app) as client:
        created = (await client.post("/pipelines", json={"topic": "Solar", "autostart": False})).json()
        (tmp_path / "corrupt.json").write_text("{")
        response = await client.get("/pipelines")

    assert response.status_code == 200
    assert [entry["id"] for entry in response.json()] == [created["id"]]
