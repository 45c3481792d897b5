"""Mock run client for testing.

Allows scripting run streams and injecting failures. Records every call.
No actual I/O - everything is in-memory.

Usage:
    client = MockRunClient()
    client.queue_run([
        {"event": "metadata", "data": {"run_id": "run_1"}},
        {"event": "messages/partial", "data": [{"type": "ai", "content": "Hi"}]},
    ])

    registry = SessionRegistry(client)
    ...
    assert client.recorded_calls[0][0] == "create_assistant"
"""

from __future__ import annotations

import asyncio
import itertools
from collections.abc import AsyncIterator
from typing import Any

from ..protocol.events import StreamPart
from .ports import RunRequest, ThreadState

_END = object()


class ScriptedRun:
    """One scripted event stream.

    Parts are queued up front; with hold_open=True the stream stays open
    until finish() or fail() is called, so tests can interleave actions
    with delivery.
    """

    def __init__(self, parts: list[StreamPart | dict[str, Any]], hold_open: bool = False):
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self.started = asyncio.Event()
        for part in parts:
            self.push(part)
        if not hold_open:
            self.finish()

    def push(self, part: StreamPart | dict[str, Any]) -> None:
        """Deliver one more stream part."""
        self._queue.put_nowait(part if isinstance(part, StreamPart) else StreamPart(**part))

    def finish(self) -> None:
        """End the stream normally."""
        self._queue.put_nowait(_END)

    def fail(self, error: Exception) -> None:
        """End the stream with an error."""
        self._queue.put_nowait(error)

    async def parts(self) -> AsyncIterator[StreamPart]:
        self.started.set()
        while True:
            item = await self._queue.get()
            if item is _END:
                return
            if isinstance(item, Exception):
                raise item
            yield item


class MockRunClient:
    """RunClient implementation with scripted responses."""

    def __init__(self) -> None:
        self._runs: list[ScriptedRun] = []
        self._active: dict[str, ScriptedRun] = {}
        self._failures: dict[str, Exception] = {}
        self._ids = itertools.count(1)
        self.recorded_calls: list[tuple[str, tuple[Any, ...]]] = []
        self.run_requests: list[RunRequest] = []
        self.thread_states: dict[str, ThreadState] = {}
        self.deleted_assistants: list[str] = []
        self.deleted_threads: list[str] = []

    def queue_run(
        self, parts: list[StreamPart | dict[str, Any]], hold_open: bool = False
    ) -> ScriptedRun:
        """Script the stream returned by the next start_run() call."""
        run = ScriptedRun(parts, hold_open=hold_open)
        self._runs.append(run)
        return run

    def fail(self, operation: str, error: Exception) -> None:
        """Make the named operation (e.g. "create_thread") raise error."""
        self._failures[operation] = error

    def clear_failure(self, operation: str) -> None:
        self._failures.pop(operation, None)

    def _record(self, operation: str, *args: Any) -> None:
        self.recorded_calls.append((operation, args))
        error = self._failures.get(operation)
        if error is not None:
            raise error

    def calls_to(self, operation: str) -> list[tuple[Any, ...]]:
        """Arguments of every recorded call to an operation."""
        return [args for name, args in self.recorded_calls if name == operation]

    async def create_assistant(self, graph_id: str, config: dict[str, Any] | None = None) -> str:
        self._record("create_assistant", graph_id, config)
        return f"asst_{next(self._ids)}"

    async def create_thread(self) -> str:
        self._record("create_thread")
        return f"thread_{next(self._ids)}"

    async def start_run(
        self, thread_id: str, assistant_id: str, request: RunRequest
    ) -> AsyncIterator[StreamPart]:
        self._record("start_run", thread_id, assistant_id)
        self.run_requests.append(request)
        run = self._runs.pop(0) if self._runs else ScriptedRun([])
        self._active[thread_id] = run
        try:
            async for part in run.parts():
                yield part
        finally:
            if self._active.get(thread_id) is run:
                del self._active[thread_id]

    async def interrupt_run(self, thread_id: str, run_id: str) -> None:
        self._record("interrupt_run", thread_id, run_id)
        run = self._active.get(thread_id)
        if run is not None:
            run.finish()

    async def get_thread_state(self, thread_id: str) -> ThreadState:
        self._record("get_thread_state", thread_id)
        state = self.thread_states.get(thread_id)
        if state is None:
            state = ThreadState(checkpoint={"checkpoint_id": f"ckpt_{next(self._ids)}"})
        return state

    async def delete_assistant(self, assistant_id: str) -> None:
        self._record("delete_assistant", assistant_id)
        self.deleted_assistants.append(assistant_id)

    async def delete_thread(self, thread_id: str) -> None:
        self._record("delete_thread", thread_id)
        self.deleted_threads.append(thread_id)
