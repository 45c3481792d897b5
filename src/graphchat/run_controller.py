"""Run Controller - one session's run lifecycle.

Run state machine:
    IDLE -> STARTING -> STREAMING -> {COMPLETED, ERRORED, ABORTED, PAUSED}

PAUSED ends the run but not the session: the captured checkpoint is
consumed by the next start(), which resumes the server-side run from it.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from contextlib import aclosing
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from .bus import Bus
from .config import ChatClientConfig
from .errors import InitializationFailure, NetworkOrStreamError, PauseBlocked
from .events import (
    RunError,
    RunErrorProps,
    RunFinished,
    RunFinishedProps,
    RunMetadata,
    RunMetadataProps,
    RunPaused,
    RunPausedProps,
    RunStarted,
    RunStartedProps,
    TranscriptUpdated,
    TranscriptUpdatedProps,
)
from .protocol.events import (
    HistoryReset,
    MetadataEvent,
    StreamErrorPayload,
    StreamEvent,
    StreamEventType,
    parse_stream_part,
)
from .protocol.events import RunMetadata as RunMetadataModel
from .protocol.messages import Message
from .reconciler import RunBookkeeping, reconcile
from .sdk.ports import RunClient, RunRequest

if TYPE_CHECKING:
    from .session import Session

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    """Lifecycle states of a single run."""

    IDLE = "idle"
    STARTING = "starting"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ERRORED = "errored"
    ABORTED = "aborted"
    PAUSED = "paused"


@dataclass(frozen=True)
class RunHandle:
    """Remote resources backing a session."""

    thread_id: str
    assistant_id: str


class CancellationToken:
    """Cooperative cancellation flag for one run.

    The consuming loop checks it after every received stream part; parts
    that arrive after cancellation are discarded. While a pause round trip
    is in flight the end of the stream waits for it to settle, so a run
    interrupted by its own pause finishes as paused.
    """

    def __init__(self) -> None:
        self._reason: RunState | None = None
        self._pause_settled: asyncio.Event | None = None
        self.run_id: str | None = None

    def cancel(self, reason: RunState = RunState.ABORTED) -> None:
        # First reason wins: a paused run stays paused even if stopped later
        if self._reason is None:
            self._reason = reason

    @property
    def cancelled(self) -> bool:
        return self._reason is not None

    @property
    def reason(self) -> RunState | None:
        return self._reason

    def begin_pause(self) -> None:
        """Mark a pause round trip (interrupt + state fetch) as in progress."""
        self._pause_settled = asyncio.Event()

    def end_pause(self) -> None:
        if self._pause_settled is not None:
            self._pause_settled.set()

    async def wait_for_pause(self) -> None:
        """Wait until an in-progress pause has succeeded or failed.

        The server closes the stream when it interrupts a run, so the end of
        the stream during a pause says nothing about how the run ended.
        """
        if self._pause_settled is not None:
            await self._pause_settled.wait()


class RunController:
    """Owns the execution and cancellation of a session's runs.

    One controller per session. Each start() gets a fresh CancellationToken;
    starting a new run cancels the previous one, so at most one run per
    session applies events to the transcript.
    """

    def __init__(
        self,
        session: Session,
        client: RunClient,
        config: ChatClientConfig,
        bus: Bus,
        on_run_handle: Callable[[Session], None] | None = None,
    ):
        """Initialize the controller.

        Args:
            session: Session whose transcript and bookkeeping this controller drives
            client: Run service client
            config: Client configuration (graph id, stream mode, tool gate)
            bus: Bus for run and transcript events
            on_run_handle: Called after the session's assistant/thread are created
        """
        self.session = session
        self.client = client
        self.config = config
        self.bus = bus
        self.state = RunState.IDLE
        self._token: CancellationToken | None = None
        self._on_run_handle = on_run_handle

    @property
    def is_running(self) -> bool:
        return self._token is not None and not self._token.cancelled

    # =========================================================================
    # Start
    # =========================================================================

    async def start(
        self,
        user_messages: list[Message],
        history_reset: HistoryReset | None = None,
    ) -> RunState:
        """Run the session's agent on new input until the stream ends.

        Never raises for run failures: they are recorded on
        session.last_error and published as run.error.

        Args:
            user_messages: Input messages for this run
            history_reset: Replacement history for a forked run

        Returns:
            The run's terminal state
        """
        session = self.session
        if self._token is not None:
            logger.info(f"Superseding in-flight run for session {session.id}")
            self._token.cancel()

        token = CancellationToken()
        self._token = token
        self.state = RunState.STARTING
        session.is_loading = True
        session.last_error = None
        session.bookkeeping = RunBookkeeping()

        try:
            state = await self._run(token, user_messages, history_reset)
        except NetworkOrStreamError as e:
            state = await self._record_failure(token, e)
        except Exception as e:
            logger.exception(f"Unexpected failure in run for session {session.id}")
            state = await self._record_failure(token, e)
        finally:
            current = self._token is token
            if current:
                self._token = None
                session.is_loading = False
                session.active_run_id = None

        # Stopped, paused or superseded runs already handed the state on
        if current:
            self.state = state

        logger.info(f"Run for session {session.id} finished: {state.value}")
        await self.bus.publish(
            RunFinished,
            RunFinishedProps(
                session_id=session.id,
                state=state.value,
                run_id=token.run_id,
            ),
        )
        return state

    async def _run(
        self,
        token: CancellationToken,
        user_messages: list[Message],
        history_reset: HistoryReset | None,
    ) -> RunState:
        session = self.session
        handle = await self._ensure_run_handle()
        if token.cancelled:
            return self._finish_cancelled(token)

        checkpoint = session.paused_checkpoint
        session.paused_checkpoint = None
        request = RunRequest(
            messages=list(user_messages),
            stream_mode=list(self.config.stream_mode),
            config=self.config.run_config,
            checkpoint=checkpoint,
            history_reset=history_reset,
        )

        session.bookkeeping = RunBookkeeping(metadata=RunMetadataModel(thread_id=handle.thread_id))
        logger.info(
            f"Starting run for session {session.id} on thread {handle.thread_id}"
            + (" (resuming from checkpoint)" if checkpoint else "")
        )
        await self.bus.publish(
            RunStarted,
            RunStartedProps(
                session_id=session.id,
                thread_id=handle.thread_id,
                resumed=checkpoint is not None,
            ),
        )
        await self.bus.publish(
            RunMetadata,
            RunMetadataProps(session_id=session.id, thread_id=handle.thread_id),
        )

        return await self._consume(token, handle, request)

    async def _consume(
        self, token: CancellationToken, handle: RunHandle, request: RunRequest
    ) -> RunState:
        self.state = RunState.STREAMING
        stream = self.client.start_run(handle.thread_id, handle.assistant_id, request)

        async with aclosing(stream):
            async for part in stream:
                if token.cancelled:
                    logger.debug(f"Discarding {part.event} part after cancellation")
                    break
                logger.debug(f"Stream part for session {self.session.id}: {part.event}")

                if part.event == StreamEventType.ERROR.value:
                    payload = (
                        StreamErrorPayload.model_validate(part.data)
                        if isinstance(part.data, dict)
                        else StreamErrorPayload(error=str(part.data))
                    )
                    raise NetworkOrStreamError(payload.describe())

                for event in parse_stream_part(part):
                    await self._apply(token, event)

        if not token.cancelled:
            await token.wait_for_pause()
        if token.cancelled:
            return self._finish_cancelled(token)
        return RunState.COMPLETED

    async def _apply(self, token: CancellationToken, event: StreamEvent) -> None:
        if token.cancelled:
            return

        session = self.session
        result = reconcile(
            session.transcript, session.bookkeeping, event, self.config.tool_gate
        )
        session.commit(result.transcript, result.bookkeeping)

        if isinstance(event, MetadataEvent) and event.run_id:
            token.run_id = event.run_id
            session.active_run_id = event.run_id
            await self.bus.publish(
                RunMetadata,
                RunMetadataProps(
                    session_id=session.id,
                    thread_id=result.bookkeeping.metadata.thread_id,
                    run_id=event.run_id,
                ),
            )

        if result.changed:
            await self.bus.publish(
                TranscriptUpdated,
                TranscriptUpdatedProps(session_id=session.id, message_count=len(result.transcript)),
            )

    def _finish_cancelled(self, token: CancellationToken) -> RunState:
        return token.reason or RunState.ABORTED

    async def _record_failure(self, token: CancellationToken, error: Exception) -> RunState:
        # An interrupted run may drop the connection instead of ending the stream
        await token.wait_for_pause()
        if token.cancelled:
            # Failure of a stream nobody is listening to any more
            logger.debug(f"Ignoring failure of cancelled run: {error}")
            return self._finish_cancelled(token)

        session = self.session
        session.last_error = error
        logger.error(f"Run failed for session {session.id}: {error}")
        await self.bus.publish(
            RunError,
            RunErrorProps(session_id=session.id, error=str(error), error_type=type(error).__name__),
        )
        return RunState.ERRORED

    async def _ensure_run_handle(self) -> RunHandle:
        """Create the session's assistant and thread on first use."""
        session = self.session
        if session.run_handle is not None:
            return session.run_handle

        try:
            assistant_id = await self.client.create_assistant(
                self.config.graph_id, self.config.assistant_config
            )
        except NetworkOrStreamError as e:
            raise InitializationFailure(f"Failed to create assistant: {e}") from e

        try:
            thread_id = await self.client.create_thread()
        except NetworkOrStreamError as e:
            try:
                await self.client.delete_assistant(assistant_id)
            except NetworkOrStreamError as cleanup_error:
                logger.warning(f"Failed to delete orphaned assistant {assistant_id}: {cleanup_error}")
            raise InitializationFailure(f"Failed to create thread: {e}") from e

        # A concurrent start() may have won the race while we were awaiting
        if session.run_handle is None:
            session.run_handle = RunHandle(thread_id=thread_id, assistant_id=assistant_id)
            logger.info(
                f"Session {session.id} bound to assistant {assistant_id}, thread {thread_id}"
            )
            if self._on_run_handle is not None:
                self._on_run_handle(session)
        return session.run_handle

    # =========================================================================
    # Stop / Pause
    # =========================================================================

    def stop(self) -> None:
        """Cancel the in-flight run, if any.

        Cooperative: the stream loop exits at its next iteration and any
        data still arriving is discarded.
        """
        self._halt(RunState.ABORTED)

    def _halt(self, reason: RunState) -> None:
        token = self._token
        if token is None:
            return
        token.cancel(reason)
        self._token = None
        self.state = token.reason or reason
        self.session.is_loading = False
        self.session.active_run_id = None
        logger.info(f"Run for session {self.session.id} stopped ({self.state.value})")

    def _check_pausable(self) -> None:
        pending = self.session.bookkeeping.pending_tool_call_ids
        if pending:
            raise PauseBlocked(set(pending))

    async def pause(self) -> bool:
        """Interrupt the run and remember its checkpoint for resumption.

        Returns:
            True if the run was paused, False if pausing was not possible
            (tool calls in flight, nothing running, or the service failed)
        """
        session = self.session
        try:
            self._check_pausable()
        except PauseBlocked as e:
            logger.warning(f"Pause ignored for session {session.id}: {e}")
            return False

        token = self._token
        handle = session.run_handle
        run_id = session.active_run_id
        if token is None or token.cancelled or handle is None or run_id is None:
            logger.warning(f"Pause ignored for session {session.id}: no active run")
            return False

        # Until the pause settles, the end of the stream does not complete the run
        token.begin_pause()
        try:
            try:
                await self.client.interrupt_run(handle.thread_id, run_id)
                thread_state = await self.client.get_thread_state(handle.thread_id)
            except NetworkOrStreamError as e:
                session.last_error = e
                logger.error(f"Failed to pause run {run_id} for session {session.id}: {e}")
                await self.bus.publish(
                    RunError,
                    RunErrorProps(session_id=session.id, error=str(e), error_type=type(e).__name__),
                )
                return False

            if token.cancelled:
                logger.info(f"Run {run_id} for session {session.id} was stopped while pausing")
                return False

            session.paused_checkpoint = thread_state.checkpoint
            self._halt(RunState.PAUSED)

            checkpoint_id = (thread_state.checkpoint or {}).get("checkpoint_id")
            logger.info(
                f"Paused run {run_id} for session {session.id} at checkpoint {checkpoint_id}"
            )
            await self.bus.publish(
                RunPaused,
                RunPausedProps(session_id=session.id, run_id=run_id, checkpoint_id=checkpoint_id),
            )
            return True
        finally:
            token.end_pause()
