"""Run client SDK - connecting to an agent run service.

Provides:
- RunClient: the protocol the chat engine depends on
- HTTPRunClient: REST + SSE client for LangGraph-compatible servers
- MockRunClient: scripted client for testing without real I/O
"""

from .http_client import HTTPRunClient
from .mock import MockRunClient, ScriptedRun
from .ports import DEFAULT_STREAM_MODE, RunClient, RunRequest, ThreadState

__all__ = [
    "RunClient",
    "RunRequest",
    "ThreadState",
    "DEFAULT_STREAM_MODE",
    "HTTPRunClient",
    "MockRunClient",
    "ScriptedRun",
]
