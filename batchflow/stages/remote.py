"""
Remote document extraction over HTTP.

Talks to a LlamaCloud-style extraction API:
    GET  /extraction/extraction-agents/by-name/{name}   shared agent lookup
    POST /extraction/extraction-agents                  agent creation (on 404)
    POST /files                                         upload
    POST /extraction/jobs                               start job
    GET  /extraction/jobs/{id}                          status
    GET  /extraction/jobs/{id}/result                   result
"""

from pathlib import Path
from typing import Optional, Dict, Any, Callable, Awaitable

import httpx
from pydantic import BaseModel, ConfigDict

from config.constants import (
    REMOTE_BASE_URL,
    REMOTE_AGENT_NAME,
    STAGE_HTTP_TIMEOUT_SECONDS,
    STAGE_POLL_INTERVAL_SECONDS,
    STAGE_POLL_MAX_ATTEMPTS,
)
from config.logging_config import get_logger
from batchflow.errors import UnitFailure, FatalBatchError

from .base import StageRequest
from .polling import PollingStage

logger = get_logger(__name__)


class ExtractionResult(BaseModel):
    """Minimum shape of an extraction result."""
    model_config = ConfigDict(extra="allow")

    data: Dict[str, Any]


class RemoteExtractionStage(PollingStage):
    """
    Extraction stage backed by a remote job API.

    ``open()`` resolves the extraction agent once per batch; if that fails
    the batch cannot run at all and FatalBatchError is raised.
    """

    name = "extract"
    result_model = ExtractionResult

    def __init__(
        self,
        api_key: str,
        base_url: str = REMOTE_BASE_URL,
        agent_name: str = REMOTE_AGENT_NAME,
        data_schema: Optional[Dict[str, Any]] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = STAGE_HTTP_TIMEOUT_SECONDS,
        poll_interval: float = STAGE_POLL_INTERVAL_SECONDS,
        max_polls: int = STAGE_POLL_MAX_ATTEMPTS,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ):
        super().__init__(poll_interval=poll_interval, max_polls=max_polls, sleep=sleep)
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.agent_name = agent_name
        self.data_schema = data_schema or {"type": "object", "properties": {}}
        self.timeout = timeout

        self._client = client
        self._owns_client = client is None
        self.agent_id: Optional[str] = None

    @classmethod
    def from_settings(cls, settings, data_schema: Optional[Dict[str, Any]] = None, **kwargs) -> "RemoteExtractionStage":
        """Build from ``config.settings.Settings``."""
        return cls(
            api_key=settings.remote_api_key,
            base_url=settings.remote_base_url,
            agent_name=settings.remote_agent_name,
            data_schema=data_schema,
            timeout=settings.remote_timeout,
            poll_interval=settings.poll_interval,
            max_polls=settings.poll_max_attempts,
            **kwargs,
        )

    @property
    def headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)
            self._owns_client = True
        return self._client

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    async def open(self) -> None:
        try:
            self.agent_id = await self._get_or_create_agent()
        except httpx.HTTPError as e:
            raise FatalBatchError(f"Extraction agent unavailable: {e}") from e
        logger.info(f"{self.name}: using agent {self.agent_id}")

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _get_or_create_agent(self) -> str:
        response = await self.client.get(
            self._url(f"/extraction/extraction-agents/by-name/{self.agent_name}"),
            headers=self.headers,
        )
        if response.status_code != 404:
            response.raise_for_status()
            return response.json()["id"]

        response = await self.client.post(
            self._url("/extraction/extraction-agents"),
            headers=self.headers,
            json={
                "name": self.agent_name,
                "data_schema": self.data_schema,
                "config": {"extraction_target": "PER_DOC", "extraction_mode": "BALANCED"},
            },
        )
        response.raise_for_status()
        return response.json()["id"]

    async def _call(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            response = await self.client.request(
                method, self._url(path), headers=self.headers, **kwargs
            )
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            raise UnitFailure(
                f"{self.name}: {method} {path} returned {e.response.status_code}",
                stage=self.name,
            ) from e
        except httpx.HTTPError as e:
            raise UnitFailure(f"{self.name}: {method} {path} failed: {e}", stage=self.name) from e

    async def submit(self, request: StageRequest) -> str:
        if self.agent_id is None:
            raise FatalBatchError(f"{self.name}: open() was not called")

        path = request.input.path
        if path is None:
            raise UnitFailure(f"{request.input.name}: no file to extract", stage=self.name)

        path = Path(path)
        try:
            content = path.read_bytes()
        except OSError as e:
            raise UnitFailure(f"{request.input.name}: cannot read {path}: {e}", stage=self.name) from e

        uploaded = await self._call(
            "POST", "/files", files={"upload_file": (path.name, content)}
        )
        job = await self._call(
            "POST",
            "/extraction/jobs",
            json={"extraction_agent_id": self.agent_id, "file_id": uploaded["id"]},
        )
        return job["id"]

    async def poll(self, job_id: str) -> str:
        data = await self._call("GET", f"/extraction/jobs/{job_id}")
        return data.get("status", "")

    async def fetch_result(self, job_id: str) -> Any:
        return await self._call("GET", f"/extraction/jobs/{job_id}/result")
