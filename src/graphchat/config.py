"""Client configuration.

Values come from keyword arguments, then environment variables, then
defaults:

    GRAPHCHAT_API_URL (or LANGGRAPH_URL)     server base URL
    GRAPHCHAT_GRAPH_ID (or GRAPH_ID)         graph to create assistants for
    GRAPHCHAT_API_KEY (or LANGGRAPH_API_KEY) sent as X-Api-Key
    GRAPHCHAT_STORAGE_DIR                    where session metadata is kept
    GRAPHCHAT_NO_PERSIST=1                   keep session metadata in memory
    GRAPHCHAT_KEEP_BACKGROUND_RUNS=1         switching sessions keeps runs alive
    GRAPHCHAT_TOOL_GATE=all|first            when text may follow tool calls
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .protocol.events import DEFAULT_STREAM_MODE
from .reconciler import ToolGate

_TRUTHY = {"1", "true", "yes", "on"}


def _env(*names: str) -> str | None:
    for name in names:
        value = os.environ.get(name)
        if value:
            return value
    return None


def _env_flag(name: str) -> bool:
    return (os.environ.get(name) or "").strip().lower() in _TRUTHY


@dataclass
class ChatClientConfig:
    """Configuration for the chat client and its run service connection."""

    # Run service
    api_url: str = "http://localhost:2024"
    graph_id: str = "agent"
    api_key: str | None = None
    timeout: float = 30.0

    # Run parameters
    assistant_config: dict[str, Any] = field(default_factory=lambda: {"configurable": {}})
    run_config: dict[str, Any] | None = None
    stream_mode: list[str] = field(default_factory=lambda: list(DEFAULT_STREAM_MODE))

    # Session metadata persistence
    storage_dir: Path = field(default_factory=lambda: Path.home() / ".graphchat")
    persist: bool = True

    # Engine policy
    cancel_on_switch: bool = True
    tool_gate: ToolGate = ToolGate.ALL

    @classmethod
    def from_env(cls, **overrides: Any) -> ChatClientConfig:
        """Build configuration from the environment.

        Args:
            **overrides: Explicit values that win over the environment
        """
        values: dict[str, Any] = {}

        api_url = _env("GRAPHCHAT_API_URL", "LANGGRAPH_URL")
        if api_url:
            values["api_url"] = api_url
        graph_id = _env("GRAPHCHAT_GRAPH_ID", "GRAPH_ID")
        if graph_id:
            values["graph_id"] = graph_id
        api_key = _env("GRAPHCHAT_API_KEY", "LANGGRAPH_API_KEY")
        if api_key:
            values["api_key"] = api_key
        storage_dir = _env("GRAPHCHAT_STORAGE_DIR")
        if storage_dir:
            values["storage_dir"] = Path(storage_dir).expanduser()
        if _env_flag("GRAPHCHAT_NO_PERSIST"):
            values["persist"] = False
        if _env_flag("GRAPHCHAT_KEEP_BACKGROUND_RUNS"):
            values["cancel_on_switch"] = False
        tool_gate = _env("GRAPHCHAT_TOOL_GATE")
        if tool_gate:
            values["tool_gate"] = ToolGate(tool_gate.strip().lower())

        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**values)

    @property
    def sessions_file(self) -> Path:
        """JSON file holding persisted session records."""
        return self.storage_dir / "sessions.json"
