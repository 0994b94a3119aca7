"""Generation service client: opens one streaming request per generation unit.

The scheduler only depends on the ``GenerationService`` protocol, so tests and
alternative transports can supply raw chunks without HTTP.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING, Protocol

import httpx
from pydantic import BaseModel

if TYPE_CHECKING:
    from docstream.config import HostConfig

logger = logging.getLogger(__name__)


class GenerationRequest(BaseModel):
    """What the scheduler asks for: a unit kind, its variables, and the session."""

    unit_kind: str
    variables: dict[str, str] = {}
    session_id: str | None = None
    scenario: str | None = None  # None: use the configured scenario
    revision: bool = False


class GenerationServiceError(RuntimeError):
    """The service refused the request (non-2xx response)."""

    def __init__(self, status_code: int, body: str) -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(f"Generation service error ({status_code}): {body[:500]}")


class GenerationService(Protocol):
    def stream(self, request: GenerationRequest) -> AsyncIterator[str | bytes]:
        """Yield raw SSE text chunks until the service ends the stream."""
        ...


class HttpGenerationService:
    """Streams ``POST {base_url}/generate/stream`` responses with httpx."""

    def __init__(
        self,
        config: HostConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._service = config.service
        self._prompts = config.prompts
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        timeout = httpx.Timeout(
            self._service.read_timeout,
            connect=self._service.connect_timeout,
        )
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    def build_body(self, request: GenerationRequest) -> dict:
        return {
            "prompt_name": self._prompts.prompt_for(request.unit_kind, request.revision),
            "variables": request.variables,
            "scenario": request.scenario or self._service.scenario,
            "session_id": request.session_id,
        }

    async def stream(self, request: GenerationRequest) -> AsyncIterator[str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }
        if self._service.api_key:
            headers["Authorization"] = f"Bearer {self._service.api_key}"

        body = self.build_body(request)
        url = f"{self._service.base_url}/generate/stream"
        logger.info(
            f"Opening stream: prompt={body['prompt_name']}, "
            f"session={request.session_id or 'new'}"
        )

        async with self._client() as client:
            async with client.stream("POST", url, json=body, headers=headers) as resp:
                if resp.status_code >= 400:
                    error_text = (await resp.aread()).decode("utf-8", errors="replace")
                    raise GenerationServiceError(resp.status_code, error_text)
                async for chunk in resp.aiter_text():
                    yield chunk
