"""Run client over HTTP REST + SSE.

Talks to a LangGraph-compatible agent server:
- POST   /assistants                         - Create assistant
- DELETE /assistants/{assistant_id}          - Delete assistant
- POST   /threads                            - Create thread
- DELETE /threads/{thread_id}                - Delete thread
- GET    /threads/{thread_id}/state          - Latest values + checkpoint
- POST   /threads/{thread_id}/runs/stream    - Start run (SSE response)
- POST   /threads/{thread_id}/runs/{run_id}/cancel?action=interrupt
- GET    /ok                                 - Health check

Wire format of the run stream (Server-Sent Events):
    event: messages/partial
    data: [{"type": "ai", "content": "Hel", "id": "run-1"}]
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any

import httpx

from ..config import ChatClientConfig
from ..errors import NetworkOrStreamError, RunClientError
from ..protocol.events import StreamPart
from .ports import RunRequest, ThreadState

logger = logging.getLogger(__name__)

# Marker understood by the server's message reducer: drop all prior messages
REMOVE_ALL_MESSAGES = "__remove_all__"


class HTTPRunClient:
    """RunClient implementation backed by httpx.

    Usage:
        async with HTTPRunClient(ChatClientConfig.from_env()) as client:
            assistant_id = await client.create_assistant("agent")
            thread_id = await client.create_thread()
            async for part in client.start_run(thread_id, assistant_id, request):
                print(part.event, part.data)
    """

    def __init__(
        self,
        config: ChatClientConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.config = config or ChatClientConfig()
        self._transport = transport
        self._http_client: httpx.AsyncClient | None = None

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            headers = {"X-Api-Key": self.config.api_key} if self.config.api_key else None
            self._http_client = httpx.AsyncClient(
                base_url=self.config.api_url,
                timeout=httpx.Timeout(self.config.timeout),
                headers=headers,
                transport=self._transport,
            )
        return self._http_client

    async def aclose(self) -> None:
        """Close the underlying HTTP connection pool."""
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def __aenter__(self) -> HTTPRunClient:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    # =========================================================================
    # Assistants and threads
    # =========================================================================

    async def create_assistant(self, graph_id: str, config: dict[str, Any] | None = None) -> str:
        data = await self._request(
            "POST",
            "/assistants",
            json={
                "graph_id": graph_id,
                "config": config if config is not None else {"configurable": {}},
                "if_exists": "raise",
            },
        )
        return _require_id(data, "assistant_id", "POST /assistants")

    async def create_thread(self) -> str:
        data = await self._request("POST", "/threads", json={})
        return _require_id(data, "thread_id", "POST /threads")

    async def delete_assistant(self, assistant_id: str) -> None:
        await self._request("DELETE", f"/assistants/{assistant_id}")

    async def delete_thread(self, thread_id: str) -> None:
        await self._request("DELETE", f"/threads/{thread_id}")

    async def get_thread_state(self, thread_id: str) -> ThreadState:
        data = await self._request("GET", f"/threads/{thread_id}/state")
        values = data.get("values") if isinstance(data, dict) else None
        return ThreadState(
            values=values if isinstance(values, dict) else {},
            checkpoint=data.get("checkpoint") if isinstance(data, dict) else None,
        )

    async def ping(self) -> bool:
        """Check if the server is reachable."""
        try:
            await self._request("GET", "/ok")
        except NetworkOrStreamError as e:
            logger.debug(f"Health check failed: {e}")
            return False
        return True

    # =========================================================================
    # Runs
    # =========================================================================

    async def interrupt_run(self, thread_id: str, run_id: str) -> None:
        await self._request(
            "POST",
            f"/threads/{thread_id}/runs/{run_id}/cancel",
            params={"action": "interrupt"},
        )

    async def start_run(
        self, thread_id: str, assistant_id: str, request: RunRequest
    ) -> AsyncIterator[StreamPart]:
        """Start a run and yield stream parts as they arrive."""
        payload = self._run_payload(assistant_id, request)
        endpoint = f"/threads/{thread_id}/runs/stream"

        try:
            async with self._client().stream(
                "POST",
                endpoint,
                json=payload,
                headers={"Accept": "text/event-stream"},
                timeout=httpx.Timeout(self.config.timeout, read=None),
            ) as response:
                if response.is_error:
                    await response.aread()
                    raise RunClientError(
                        f"POST {endpoint} returned {response.status_code}: "
                        f"{response.text[:200]}",
                        status_code=response.status_code,
                    )

                event_name: str | None = None
                data_lines: list[str] = []
                async for line in response.aiter_lines():
                    if not line:
                        part = _decode_sse(event_name, data_lines)
                        event_name, data_lines = None, []
                        if part is not None:
                            yield part
                        continue
                    if line.startswith(":"):
                        continue

                    field_name, _, value = line.partition(":")
                    if value.startswith(" "):
                        value = value[1:]
                    if field_name == "event":
                        event_name = value
                    elif field_name == "data":
                        data_lines.append(value)

                part = _decode_sse(event_name, data_lines)
                if part is not None:
                    yield part
        except httpx.HTTPError as e:
            raise NetworkOrStreamError(f"Run stream failed: {e}") from e

    def _run_payload(self, assistant_id: str, request: RunRequest) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "assistant_id": assistant_id,
            "input": {"messages": [message.to_wire() for message in request.messages]},
            "stream_mode": request.stream_mode,
        }
        if request.config is not None:
            payload["config"] = request.config
        if request.checkpoint is not None:
            payload["checkpoint"] = request.checkpoint
        if request.history_reset is not None:
            history = [message.to_wire() for message in request.history_reset.messages]
            payload["command"] = {
                "update": {"messages": [{"type": "remove", "id": REMOVE_ALL_MESSAGES}, *history]}
            }
        return payload

    async def _request(
        self,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        try:
            response = await self._client().request(method, path, json=json, params=params)
        except httpx.HTTPError as e:
            raise NetworkOrStreamError(f"{method} {path} failed: {e}") from e

        if response.is_error:
            raise RunClientError(
                f"{method} {path} returned {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return {}


def _require_id(data: Any, key: str, request: str) -> str:
    value = data.get(key) if isinstance(data, dict) else None
    if not value:
        raise RunClientError(f"{request} returned no {key}")
    return str(value)


def _decode_sse(event_name: str | None, data_lines: list[str]) -> StreamPart | None:
    """Build a stream part from one SSE frame."""
    if event_name is None and not data_lines:
        return None

    raw = "\n".join(data_lines)
    data: Any = None
    if raw:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(f"Failed to parse SSE data for {event_name}: {e}")
            data = raw

    return StreamPart(event=event_name or "message", data=data)
