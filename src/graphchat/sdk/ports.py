"""Run client port.

The chat engine talks to the agent run service only through this
protocol. Implementations handle the wire format:
- HTTPRunClient: REST + SSE against a LangGraph-compatible server
- MockRunClient: scripted, in-memory (tests and demos)
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from ..protocol.events import DEFAULT_STREAM_MODE, HistoryReset, StreamPart
from ..protocol.messages import Message


@dataclass
class RunRequest:
    """Everything needed to open one run's event stream."""

    messages: list[Message]
    stream_mode: list[str] = field(default_factory=lambda: list(DEFAULT_STREAM_MODE))
    config: dict[str, Any] | None = None
    checkpoint: dict[str, Any] | None = None
    history_reset: HistoryReset | None = None


@dataclass
class ThreadState:
    """Snapshot of a thread: graph values plus the checkpoint they belong to."""

    values: dict[str, Any] = field(default_factory=dict)
    checkpoint: dict[str, Any] | None = None

    @property
    def messages(self) -> list[Message]:
        """Messages stored in the thread's graph state."""
        parsed = (
            Message.from_wire(item)
            for item in self.values.get("messages") or []
            if isinstance(item, dict)
        )
        return [message for message in parsed if message is not None]


@runtime_checkable
class RunClient(Protocol):
    """Protocol for agent run service clients.

    All methods raise NetworkOrStreamError (or a subclass) on failure.
    """

    async def create_assistant(self, graph_id: str, config: dict[str, Any] | None = None) -> str:
        """Create an assistant for a graph and return its id."""
        ...

    async def create_thread(self) -> str:
        """Create a thread and return its id."""
        ...

    def start_run(
        self, thread_id: str, assistant_id: str, request: RunRequest
    ) -> AsyncIterator[StreamPart]:
        """Start a run and yield its stream parts until the run ends."""
        ...

    async def interrupt_run(self, thread_id: str, run_id: str) -> None:
        """Interrupt a running run, keeping its checkpoint resumable."""
        ...

    async def get_thread_state(self, thread_id: str) -> ThreadState:
        """Fetch the latest thread state and checkpoint."""
        ...

    async def delete_assistant(self, assistant_id: str) -> None:
        """Delete an assistant."""
        ...

    async def delete_thread(self, thread_id: str) -> None:
        """Delete a thread."""
        ...
