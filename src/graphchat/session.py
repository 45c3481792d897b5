"""Session management for the chat client.

A Session is one conversation: its transcript, the remote assistant and
thread backing it, and the bookkeeping of its current run. The
SessionRegistry owns all sessions, the active-session pointer and the
operations that span them (create, switch, delete, send, fork).
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .bus import Bus
from .config import ChatClientConfig
from .errors import NetworkOrStreamError, RemoteCleanupError, SessionNotFoundError
from .events import (
    SessionCreated,
    SessionCreatedProps,
    SessionDeleted,
    SessionDeletedProps,
    SessionSwitched,
    SessionSwitchedProps,
    SessionUpdated,
    SessionUpdatedProps,
    TranscriptUpdated,
    TranscriptUpdatedProps,
)
from .protocol.events import HistoryReset, RunMetadata
from .protocol.messages import Message, Role
from .reconciler import RunBookkeeping
from .run_controller import RunController, RunHandle, RunState
from .sdk.ports import RunClient
from .session_store import KeyValueStore, SessionIndex, open_store

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "New Chat"
TITLE_WORDS = 4
TITLE_MAX_CHARS = 30


def derive_title(first_message: str) -> str:
    """Build a session title from the first human message.

    Args:
        first_message: Content of the first message sent in the session

    Returns:
        The first few words, truncated with "..." when long; "New Chat" if empty
    """
    words = " ".join(first_message.split()[:TITLE_WORDS])
    if len(words) > TITLE_MAX_CHARS:
        return words[:TITLE_MAX_CHARS] + "..."
    return words or DEFAULT_TITLE


def _new_session_id() -> str:
    return f"chat_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


@dataclass
class Session:
    """One conversation and the state of its current run.

    The transcript is only changed through commit()/append() by the
    session's RunController and the registry; `transcript` hands out copies.
    """

    id: str = field(default_factory=_new_session_id)
    title: str = DEFAULT_TITLE
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    run_handle: RunHandle | None = None
    active_run_id: str | None = None
    paused_checkpoint: dict[str, Any] | None = None
    bookkeeping: RunBookkeeping = field(default_factory=RunBookkeeping)
    is_loading: bool = False
    last_error: Exception | None = None
    controller: RunController | None = field(default=None, repr=False, compare=False)
    _messages: list[Message] = field(default_factory=list, init=False, repr=False)

    @property
    def transcript(self) -> list[Message]:
        return list(self._messages)

    @property
    def message_count(self) -> int:
        return len(self._messages)

    def append(self, message: Message) -> None:
        self._messages.append(message)

    def commit(self, transcript: list[Message], bookkeeping: RunBookkeeping | None = None) -> None:
        """Replace the transcript (and optionally the run bookkeeping)."""
        self._messages = list(transcript)
        if bookkeeping is not None:
            self.bookkeeping = bookkeeping

    # Run bookkeeping, exposed for display and tests

    @property
    def tool_call_slot_index(self) -> int | None:
        return self.bookkeeping.tool_call_slot

    @property
    def streaming_slot_index(self) -> int | None:
        return self.bookkeeping.streaming_slot

    @property
    def tools_completed(self) -> bool:
        return self.bookkeeping.tools_completed

    @property
    def seen_tool_result_keys(self) -> frozenset[str]:
        return self.bookkeeping.seen_tool_result_keys

    @property
    def pending_tool_call_ids(self) -> frozenset[str]:
        return self.bookkeeping.pending_tool_call_ids

    @property
    def run_metadata(self) -> RunMetadata:
        return self.bookkeeping.metadata

    @property
    def run_state(self) -> RunState:
        return self.controller.state if self.controller else RunState.IDLE

    def snapshot(self) -> dict[str, Any]:
        """Plain-dict view of the session for display."""
        return {
            "id": self.id,
            "title": self.title,
            "created_at": self.created_at.isoformat(),
            "message_count": self.message_count,
            "is_loading": self.is_loading,
            "run_state": self.run_state.value,
            "last_error": str(self.last_error) if self.last_error else None,
            "thread_id": self.run_handle.thread_id if self.run_handle else None,
            "assistant_id": self.run_handle.assistant_id if self.run_handle else None,
            "active_run_id": self.active_run_id,
            "paused": self.paused_checkpoint is not None,
        }

    def to_record(self) -> dict[str, Any]:
        """Persisted form: identifiers and title only, never the transcript."""
        return {
            "id": self.id,
            "title": self.title,
            "createdAt": int(self.created_at.timestamp() * 1000),
            "threadId": self.run_handle.thread_id if self.run_handle else None,
            "assistantId": self.run_handle.assistant_id if self.run_handle else None,
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> Session:
        created_ms = record.get("createdAt")
        created_at = (
            datetime.fromtimestamp(created_ms / 1000, UTC)
            if isinstance(created_ms, int | float)
            else datetime.now(UTC)
        )
        thread_id = record.get("threadId")
        assistant_id = record.get("assistantId")
        run_handle = (
            RunHandle(thread_id=thread_id, assistant_id=assistant_id)
            if thread_id and assistant_id
            else None
        )
        return cls(
            id=record["id"],
            title=record.get("title") or DEFAULT_TITLE,
            created_at=created_at,
            run_handle=run_handle,
        )


class SessionRegistry:
    """Owns the sessions of one client.

    Sessions are kept newest first. Every structural change (create,
    delete, title update, remote resources bound) rewrites the persisted
    session index; those writes are best-effort.
    """

    def __init__(
        self,
        client: RunClient,
        config: ChatClientConfig | None = None,
        store: KeyValueStore | None = None,
        bus: Bus | None = None,
    ):
        """Initialize the registry.

        Args:
            client: Run service client shared by all sessions
            config: Client configuration; defaults to ChatClientConfig()
            store: Key-value store for session records; defaults to a JSON
                file under config.storage_dir, or memory when persistence is off
            bus: Bus for session and run events; a private one is created if omitted
        """
        self.client = client
        self.config = config or ChatClientConfig()
        self.index = SessionIndex(store if store is not None else open_store(self.config))
        self.bus = bus or Bus()
        self._sessions: list[Session] = []
        self._active_id: str | None = None

    # =========================================================================
    # Queries
    # =========================================================================

    @property
    def sessions(self) -> list[Session]:
        return list(self._sessions)

    @property
    def active_session_id(self) -> str | None:
        return self._active_id

    @property
    def active_session(self) -> Session | None:
        return self.get(self._active_id) if self._active_id else None

    def get(self, session_id: str) -> Session | None:
        for session in self._sessions:
            if session.id == session_id:
                return session
        return None

    def _require(self, session_id: str) -> Session:
        session = self.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def _controller(self, session: Session) -> RunController:
        if session.controller is None:
            session.controller = RunController(
                session,
                self.client,
                self.config,
                self.bus,
                on_run_handle=lambda _session: self._persist(),
            )
        return session.controller

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def create_session(self) -> str:
        """Create an empty session and make it active.

        Returns:
            The new session's id
        """
        session = Session()
        self._controller(session)
        self._sessions.insert(0, session)
        previous = self._active_id
        self._active_id = session.id
        self._persist()

        logger.info(f"Created session {session.id}")
        await self.bus.publish(
            SessionCreated, SessionCreatedProps(session_id=session.id, title=session.title)
        )
        await self.bus.publish(
            SessionSwitched,
            SessionSwitchedProps(session_id=session.id, previous_session_id=previous),
        )
        return session.id

    async def switch_active(self, session_id: str) -> None:
        """Make another session active.

        With config.cancel_on_switch the previous session's in-flight run is
        stopped; otherwise it keeps streaming in the background.
        """
        session = self._require(session_id)
        previous_id = self._active_id
        if previous_id == session.id:
            return

        previous = self.get(previous_id) if previous_id else None
        if previous is not None and self.config.cancel_on_switch:
            self._controller(previous).stop()

        self._active_id = session.id
        logger.info(f"Switched to session {session.id}")
        await self.bus.publish(
            SessionSwitched,
            SessionSwitchedProps(session_id=session.id, previous_session_id=previous_id),
        )

    async def delete_session(self, session_id: str) -> None:
        """Delete a session and release its remote assistant and thread.

        Remote cleanup is best-effort; local removal always happens. When the
        active session is deleted, the newest remaining session becomes
        active, or a fresh session is created if none remain.
        """
        session = self._require(session_id)
        self._controller(session).stop()

        try:
            await self._release_remote(session)
        except RemoteCleanupError as e:
            logger.warning(f"Cleanup error for session {session_id}: {e}")

        self._sessions.remove(session)
        self._persist()
        logger.info(f"Deleted session {session_id}")
        await self.bus.publish(SessionDeleted, SessionDeletedProps(session_id=session_id))

        if self._active_id == session_id:
            self._active_id = None
            if self._sessions:
                await self.switch_active(self._sessions[0].id)
            else:
                await self.create_session()

    async def _release_remote(self, session: Session) -> None:
        handle = session.run_handle
        if handle is None:
            return

        failures: list[str] = []
        try:
            await self.client.delete_assistant(handle.assistant_id)
        except Exception as e:
            failures.append(f"assistant {handle.assistant_id}: {e}")
        try:
            await self.client.delete_thread(handle.thread_id)
        except Exception as e:
            failures.append(f"thread {handle.thread_id}: {e}")

        if failures:
            raise RemoteCleanupError("; ".join(failures))

    # =========================================================================
    # Conversation
    # =========================================================================

    async def send_message(self, session_id: str, message: Message | str) -> RunState:
        """Append a human message and run the agent on it.

        The message is in the transcript before any network call is made.

        Args:
            session_id: Target session
            message: Human message (or its text)

        Returns:
            Terminal state of the run
        """
        session = self._require(session_id)
        if isinstance(message, str):
            message = Message.human(message)

        was_empty = session.message_count == 0
        session.append(message)
        await self.bus.publish(
            TranscriptUpdated,
            TranscriptUpdatedProps(session_id=session.id, message_count=session.message_count),
        )
        if was_empty:
            await self._set_title(session, derive_title(message.content))

        return await self._controller(session).start([message])

    async def edit_and_fork(self, session_id: str, index: int, new_content: str) -> RunState:
        """Rewrite history from a message onwards and continue from there.

        Keeps the transcript before `index` (minus tool results, which are
        meaningless without their tool-call slot), appends a new human
        message and starts a run whose server-side history is replaced by
        the kept prefix. The discarded suffix is gone.

        Args:
            session_id: Target session
            index: Transcript index of the message being edited
            new_content: Replacement text

        Returns:
            Terminal state of the forked run

        Raises:
            SessionNotFoundError: If the session does not exist
            IndexError: If index is outside the transcript
        """
        session = self._require(session_id)
        if not 0 <= index <= session.message_count:
            raise IndexError(f"Message index {index} out of range for session {session_id}")

        controller = self._controller(session)
        controller.stop()

        prefix = [m for m in session.transcript[:index] if m.role != Role.TOOL]
        edited = Message.human(new_content)
        session.commit([*prefix, edited], RunBookkeeping())
        # The checkpoint belongs to the discarded branch
        session.paused_checkpoint = None
        logger.info(f"Forked session {session_id} at message {index}")

        await self.bus.publish(
            TranscriptUpdated,
            TranscriptUpdatedProps(session_id=session.id, message_count=session.message_count),
        )
        if not any(m.role == Role.HUMAN for m in prefix):
            await self._set_title(session, derive_title(new_content))

        return await controller.start([edited], history_reset=HistoryReset(messages=prefix))

    def stop(self, session_id: str) -> None:
        """Stop the session's in-flight run, if any."""
        self._controller(self._require(session_id)).stop()

    async def pause(self, session_id: str) -> bool:
        """Pause the session's run at a resumable checkpoint.

        Returns:
            True if paused; False if tool calls are in flight or nothing runs
        """
        return await self._controller(self._require(session_id)).pause()

    async def _set_title(self, session: Session, title: str) -> None:
        if session.title == title:
            return
        session.title = title
        self._persist()
        await self.bus.publish(SessionUpdated, SessionUpdatedProps(session_id=session.id, title=title))

    # =========================================================================
    # Persistence
    # =========================================================================

    def _persist(self) -> None:
        self.index.save([session.to_record() for session in self._sessions])

    def load(self) -> list[Session]:
        """Restore sessions from the persisted index.

        Transcripts start empty; use hydrate() to fetch them from the server.

        Returns:
            Sessions that were added
        """
        added: list[Session] = []
        for record in self.index.load():
            if self.get(record["id"]) is not None:
                continue
            session = Session.from_record(record)
            self._controller(session)
            self._sessions.append(session)
            added.append(session)

        if self._active_id is None and self._sessions:
            self._active_id = self._sessions[0].id
        if added:
            logger.info(f"Restored {len(added)} sessions")
        return added

    async def hydrate(self, session_id: str) -> bool:
        """Rebuild a session's transcript from its server-side thread.

        Returns:
            True if the transcript was replaced
        """
        session = self._require(session_id)
        if session.run_handle is None:
            return False

        try:
            state = await self.client.get_thread_state(session.run_handle.thread_id)
        except NetworkOrStreamError as e:
            session.last_error = e
            logger.warning(f"Failed to hydrate session {session_id}: {e}")
            return False

        session.commit(state.messages, RunBookkeeping())
        logger.debug(f"Hydrated session {session_id} with {session.message_count} messages")
        await self.bus.publish(
            TranscriptUpdated,
            TranscriptUpdatedProps(session_id=session.id, message_count=session.message_count),
        )
        return True
