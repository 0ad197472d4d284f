"""HTTP and WebSocket client for the workflow executor.

The executor is the external service that actually runs workflows. This
tracker talks to it three ways:

- ``POST /api/agent-executions`` starts an execution and returns its id
- ``GET /api/hierarchy/config`` returns the agent directory, visibility
  rules and company details for a persona
- ``/api/agent-executions/ws`` streams execution events

Usage:
    >>> client = ExecutorClient()
    >>> execution_id = await client.start_execution("ops", "Run Diagnostics")
    >>> hierarchy = await client.fetch_hierarchy("ops")
    >>> connection = await client.connect(execution_id, "user_1")
    >>> await client.close()
"""

import asyncio
from typing import Any

import aiohttp
import structlog

from config import settings
from tracking.connection import (
    CLEAN_CLOSE_CODE,
    StreamClosedError,
    StreamConnectError,
)
from tracking.skeleton import HierarchyConfig

logger = structlog.get_logger(__name__)


class ExecutorError(Exception):
    """The executor rejected a request or returned an unusable response.

    Attributes:
        status: HTTP status code, if a response was received.
    """

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class AiohttpStreamConnection:
    """Executor event stream over an aiohttp WebSocket."""

    def __init__(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        self._ws = ws

    async def send_json(self, data: dict[str, Any]) -> None:
        try:
            await self._ws.send_json(data)
        except ConnectionResetError as exc:
            raise StreamClosedError(str(exc)) from exc

    async def receive(self) -> str:
        while True:
            msg = await self._ws.receive()
            if msg.type == aiohttp.WSMsgType.TEXT:
                return msg.data
            if msg.type == aiohttp.WSMsgType.BINARY:
                return msg.data.decode("utf-8", errors="replace")
            if msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSING, aiohttp.WSMsgType.CLOSED):
                code = self._ws.close_code
                if code is None and msg.type == aiohttp.WSMsgType.CLOSE:
                    code = msg.data
                raise StreamClosedError(
                    f"stream closed with code {code}",
                    clean=code == CLEAN_CLOSE_CODE,
                    code=code,
                )
            if msg.type == aiohttp.WSMsgType.ERROR:
                raise StreamClosedError(f"stream error: {self._ws.exception()}")
            # PING/PONG are handled by aiohttp (autoping)

    async def close(self) -> None:
        if not self._ws.closed:
            await self._ws.close()


class ExecutorClient:
    """Client for the workflow executor's HTTP API and event stream.

    Args:
        base_url: Executor HTTP base URL. Defaults to settings.
        ws_url: Executor WebSocket base URL. Defaults to settings.
        timeout: Per-request timeout in seconds.
        session: Optional shared aiohttp session; one is created lazily
            otherwise and closed by ``close()``.
    """

    def __init__(
        self,
        base_url: str | None = None,
        ws_url: str | None = None,
        timeout: float | None = None,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.base_url = (base_url or settings.executor_base_url).rstrip("/")
        self.ws_url = (ws_url or settings.stream_base_url).rstrip("/")
        self.timeout = aiohttp.ClientTimeout(
            total=timeout if timeout is not None else settings.executor_request_timeout_seconds
        )
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self._session

    async def start_execution(
        self,
        persona: str,
        command: str,
        orchestration_strategy: str | None = None,
    ) -> str:
        """Ask the executor to start a workflow.

        Returns:
            The new execution id.

        Raises:
            ExecutorError: On transport failure, a non-2xx response, or a
                response without an ``executionId``.
        """
        payload = {
            "persona": persona,
            "command": command,
            "orchestrationStrategy": orchestration_strategy or settings.default_orchestration_strategy,
        }
        url = f"{self.base_url}{settings.start_execution_path}"
        data = await self._request_json("POST", url, json=payload)

        execution_id = data.get("executionId") if isinstance(data, dict) else None
        if execution_id is None or str(execution_id) == "":
            raise ExecutorError("executor response has no executionId")

        logger.info("execution_started_on_executor", execution_id=str(execution_id), persona=persona)
        return str(execution_id)

    async def fetch_hierarchy(self, persona: str) -> HierarchyConfig:
        """Fetch the agent directory and visibility rules for a persona.

        Raises:
            ExecutorError: If the call fails.
        """
        url = f"{self.base_url}{settings.hierarchy_config_path}"
        data = await self._request_json("GET", url, params={"persona": persona})
        if not isinstance(data, dict):
            raise ExecutorError("hierarchy config is not an object")
        return HierarchyConfig.from_payload(data)

    async def connect(self, execution_id: str, user_id: str) -> AiohttpStreamConnection:
        """Open the event stream for an execution.

        Raises:
            StreamConnectError: If the WebSocket handshake fails.
        """
        url = f"{self.ws_url}{settings.stream_path}"
        try:
            ws = await self._get_session().ws_connect(
                url,
                params={"userId": user_id, "executionId": execution_id},
                heartbeat=30.0,
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise StreamConnectError(f"could not connect to {url}: {exc}") from exc
        logger.debug("stream_connected", execution_id=execution_id, url=url)
        return AiohttpStreamConnection(ws)

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()

    async def _request_json(self, method: str, url: str, **kwargs: Any) -> Any:
        try:
            async with self._get_session().request(method, url, **kwargs) as response:
                if response.status >= 400:
                    body = await response.text()
                    raise ExecutorError(
                        f"{method} {url} failed with {response.status}: {body[:200]}",
                        status=response.status,
                    )
                try:
                    return await response.json(content_type=None)
                except ValueError as exc:
                    raise ExecutorError(f"{method} {url} returned invalid JSON") from exc
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise ExecutorError(f"{method} {url} failed: {exc}") from exc
