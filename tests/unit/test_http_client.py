"""Tests for HTTPRunClient against an in-process httpx transport."""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

import httpx
import pytest

from graphchat.config import ChatClientConfig
from graphchat.errors import NetworkOrStreamError, RunClientError
from graphchat.protocol.events import HistoryReset, StreamPart
from graphchat.protocol.messages import Message, Role
from graphchat.sdk.http_client import REMOVE_ALL_MESSAGES, HTTPRunClient
from graphchat.sdk.ports import RunRequest

Handler = Callable[[httpx.Request], httpx.Response]


class Recorder:
    """Transport handler that records requests and replies from a route table."""

    def __init__(self, routes: dict[tuple[str, str], httpx.Response | Handler]):
        self.routes = routes
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, json={"detail": "Not Found"})
        return route(request) if callable(route) else route

    def body(self, index: int = -1) -> Any:
        return json.loads(self.requests[index].content)


def make_client(recorder: Recorder, **config: Any) -> HTTPRunClient:
    return HTTPRunClient(
        ChatClientConfig(api_url="http://agents.test", persist=False, **config),
        transport=httpx.MockTransport(recorder),
    )


def sse(body: str) -> httpx.Response:
    return httpx.Response(
        200, content=body.encode(), headers={"content-type": "text/event-stream"}
    )


async def collect(client: HTTPRunClient, request: RunRequest) -> list[StreamPart]:
    return [part async for part in client.start_run("thread_1", "asst_1", request)]


STREAM_PATH = ("POST", "/threads/thread_1/runs/stream")


# =============================================================================
# REST Operations
# =============================================================================


class TestResources:
    """Tests for assistant, thread and state endpoints."""

    @pytest.mark.asyncio
    async def test_create_assistant(self) -> None:
        recorder = Recorder(
            {("POST", "/assistants"): httpx.Response(200, json={"assistant_id": "asst_9"})}
        )
        async with make_client(recorder) as client:
            assistant_id = await client.create_assistant("agent", {"configurable": {"model": "x"}})

        assert assistant_id == "asst_9"
        assert recorder.body() == {
            "graph_id": "agent",
            "config": {"configurable": {"model": "x"}},
            "if_exists": "raise",
        }

    @pytest.mark.asyncio
    async def test_create_assistant_default_config(self) -> None:
        recorder = Recorder(
            {("POST", "/assistants"): httpx.Response(200, json={"assistant_id": "asst_9"})}
        )
        async with make_client(recorder) as client:
            await client.create_assistant("agent")

        assert recorder.body()["config"] == {"configurable": {}}

    @pytest.mark.asyncio
    async def test_create_thread(self) -> None:
        recorder = Recorder({("POST", "/threads"): httpx.Response(200, json={"thread_id": "thread_3"})})
        async with make_client(recorder) as client:
            assert await client.create_thread() == "thread_3"

        assert recorder.body() == {}

    @pytest.mark.asyncio
    async def test_create_without_id_raises(self) -> None:
        """An empty create response is a client error, not a KeyError."""
        recorder = Recorder(
            {
                ("POST", "/assistants"): httpx.Response(200),
                ("POST", "/threads"): httpx.Response(200, json={"metadata": {}}),
            }
        )
        async with make_client(recorder) as client:
            with pytest.raises(RunClientError, match="no assistant_id"):
                await client.create_assistant("agent")
            with pytest.raises(RunClientError, match="no thread_id"):
                await client.create_thread()

    @pytest.mark.asyncio
    async def test_api_key_header(self) -> None:
        """The configured key is sent as X-Api-Key."""
        recorder = Recorder({("POST", "/threads"): httpx.Response(200, json={"thread_id": "t"})})
        async with make_client(recorder, api_key="secret") as client:
            await client.create_thread()

        assert recorder.requests[0].headers["x-api-key"] == "secret"

    @pytest.mark.asyncio
    async def test_no_api_key_header_by_default(self) -> None:
        recorder = Recorder({("POST", "/threads"): httpx.Response(200, json={"thread_id": "t"})})
        async with make_client(recorder) as client:
            await client.create_thread()

        assert "x-api-key" not in recorder.requests[0].headers

    @pytest.mark.asyncio
    async def test_deletes(self) -> None:
        recorder = Recorder(
            {
                ("DELETE", "/assistants/asst_1"): httpx.Response(204),
                ("DELETE", "/threads/thread_1"): httpx.Response(204),
            }
        )
        async with make_client(recorder) as client:
            await client.delete_assistant("asst_1")
            await client.delete_thread("thread_1")

        assert [r.url.path for r in recorder.requests] == ["/assistants/asst_1", "/threads/thread_1"]

    @pytest.mark.asyncio
    async def test_get_thread_state(self) -> None:
        recorder = Recorder(
            {
                ("GET", "/threads/thread_1/state"): httpx.Response(
                    200,
                    json={
                        "values": {"messages": [{"type": "human", "content": "hi"}]},
                        "checkpoint": {"checkpoint_id": "ckpt_1", "thread_id": "thread_1"},
                    },
                )
            }
        )
        async with make_client(recorder) as client:
            state = await client.get_thread_state("thread_1")

        assert state.checkpoint == {"checkpoint_id": "ckpt_1", "thread_id": "thread_1"}
        assert [m.content for m in state.messages] == ["hi"]

    @pytest.mark.asyncio
    async def test_interrupt_run(self) -> None:
        """Interrupt uses the cancel endpoint with action=interrupt."""
        recorder = Recorder({("POST", "/threads/thread_1/runs/run_1/cancel"): httpx.Response(204)})
        async with make_client(recorder) as client:
            await client.interrupt_run("thread_1", "run_1")

        assert recorder.requests[0].url.params["action"] == "interrupt"

    @pytest.mark.asyncio
    async def test_error_status_raises(self) -> None:
        """Non-2xx responses raise RunClientError with the status code."""
        recorder = Recorder({("POST", "/assistants"): httpx.Response(422, text="graph not found")})
        async with make_client(recorder) as client:
            with pytest.raises(RunClientError) as exc_info:
                await client.create_assistant("missing")

        assert exc_info.value.status_code == 422
        assert "graph not found" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_transport_error_raises(self) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with HTTPRunClient(
            ChatClientConfig(persist=False), transport=httpx.MockTransport(refuse)
        ) as client:
            with pytest.raises(NetworkOrStreamError):
                await client.create_thread()

    @pytest.mark.asyncio
    async def test_ping(self) -> None:
        recorder = Recorder({("GET", "/ok"): httpx.Response(200, json={"ok": True})})
        async with make_client(recorder) as client:
            assert await client.ping() is True

        async with make_client(Recorder({})) as client:
            assert await client.ping() is False


# =============================================================================
# Run Streams
# =============================================================================


class TestStartRun:
    """Tests for the SSE run stream."""

    @pytest.mark.asyncio
    async def test_parses_frames(self) -> None:
        """Frames are split on blank lines and data is decoded as JSON."""
        body = (
            "event: metadata\n"
            'data: {"run_id": "run_1"}\n'
            "\n"
            ": heartbeat\n"
            "\n"
            "event: messages/partial\n"
            'data: [{"type": "ai", "content": "Hel"}]\n'
            "\n"
        )
        recorder = Recorder({STREAM_PATH: sse(body)})
        async with make_client(recorder) as client:
            parts = await collect(client, RunRequest(messages=[Message.human("hi")]))

        assert parts == [
            StreamPart(event="metadata", data={"run_id": "run_1"}),
            StreamPart(event="messages/partial", data=[{"type": "ai", "content": "Hel"}]),
        ]

    @pytest.mark.asyncio
    async def test_multiline_data_and_unterminated_final_frame(self) -> None:
        """Data lines are joined; a last frame without a blank line is still delivered."""
        body = "event: updates\ndata: {\"agent\":\ndata:  {}}\n\nevent: end\ndata: null"
        recorder = Recorder({STREAM_PATH: sse(body)})
        async with make_client(recorder) as client:
            parts = await collect(client, RunRequest(messages=[]))

        assert parts == [
            StreamPart(event="updates", data={"agent": {}}),
            StreamPart(event="end", data=None),
        ]

    @pytest.mark.asyncio
    async def test_invalid_json_is_kept_raw(self) -> None:
        recorder = Recorder({STREAM_PATH: sse("event: custom\ndata: not json\n\n")})
        async with make_client(recorder) as client:
            parts = await collect(client, RunRequest(messages=[]))

        assert parts == [StreamPart(event="custom", data="not json")]

    @pytest.mark.asyncio
    async def test_run_payload(self) -> None:
        """Input messages, stream mode, config and checkpoint are sent."""
        recorder = Recorder({STREAM_PATH: sse("")})
        request = RunRequest(
            messages=[Message.human("What time is it?")],
            config={"configurable": {"tz": "UTC"}},
            checkpoint={"checkpoint_id": "ckpt_1"},
        )
        async with make_client(recorder) as client:
            await collect(client, request)

        assert recorder.requests[0].headers["accept"] == "text/event-stream"
        assert recorder.body() == {
            "assistant_id": "asst_1",
            "input": {"messages": [{"type": "human", "content": "What time is it?"}]},
            "stream_mode": ["messages", "updates"],
            "config": {"configurable": {"tz": "UTC"}},
            "checkpoint": {"checkpoint_id": "ckpt_1"},
        }

    @pytest.mark.asyncio
    async def test_history_reset_command(self) -> None:
        """A fork replaces server history: remove-all marker, then the kept prefix."""
        recorder = Recorder({STREAM_PATH: sse("")})
        prefix = [
            Message.human("first"),
            Message(role=Role.ASSISTANT, content="answer", id="a1"),
        ]
        request = RunRequest(
            messages=[Message.human("edited")], history_reset=HistoryReset(messages=prefix)
        )
        async with make_client(recorder) as client:
            await collect(client, request)

        assert recorder.body()["command"] == {
            "update": {
                "messages": [
                    {"type": "remove", "id": REMOVE_ALL_MESSAGES},
                    {"type": "human", "content": "first"},
                    {"type": "ai", "content": "answer", "id": "a1"},
                ]
            }
        }

    @pytest.mark.asyncio
    async def test_error_status(self) -> None:
        recorder = Recorder({STREAM_PATH: httpx.Response(409, text="thread busy")})
        async with make_client(recorder) as client:
            with pytest.raises(RunClientError) as exc_info:
                await collect(client, RunRequest(messages=[]))

        assert exc_info.value.status_code == 409

    @pytest.mark.asyncio
    async def test_connection_failure(self) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with HTTPRunClient(
            ChatClientConfig(persist=False), transport=httpx.MockTransport(refuse)
        ) as client:
            with pytest.raises(NetworkOrStreamError):
                await collect(client, RunRequest(messages=[]))
