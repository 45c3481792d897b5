"""Error taxonomy for the chat client.

Errors are contained to the owning session:
- NetworkOrStreamError / InitializationFailure end a run and land on
  session.last_error
- PauseBlocked turns a pause request into a logged no-op
- RemoteCleanupError is logged and swallowed by session deletion
"""

from __future__ import annotations


class GraphChatError(Exception):
    """Base class for all client errors."""


class NetworkOrStreamError(GraphChatError):
    """A request or event stream to the run service failed."""


class RunClientError(NetworkOrStreamError):
    """The run service answered with an error status."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class InitializationFailure(NetworkOrStreamError):
    """Creating the assistant or thread for a session failed."""


class PauseBlocked(GraphChatError):
    """Pause requested while tool calls are still in flight."""

    def __init__(self, pending_tool_call_ids: set[str]):
        ids = ", ".join(sorted(pending_tool_call_ids))
        super().__init__(f"Cannot pause while tool calls are pending: {ids}")
        self.pending_tool_call_ids = set(pending_tool_call_ids)


class RemoteCleanupError(GraphChatError):
    """Releasing a session's remote assistant or thread failed."""


class SessionNotFoundError(GraphChatError, KeyError):
    """No session with the given id is registered."""

    def __init__(self, session_id: str):
        super().__init__(f"Session '{session_id}' not found")
        self.session_id = session_id

    def __str__(self) -> str:
        return str(self.args[0])
