"""Transcript reconciliation for streamed agent runs.

Folds one stream event at a time into a session transcript. The stream is
noisy: the same logical message is delivered many times (cumulative partial
deltas, then a complete copy), tool results may be repeated, and text may
be produced while tools are still running. The reconciler keeps the
transcript stable under all of that:

- a message with a known id is updated in place, never duplicated
- an assistant message carrying tool calls opens the run's tool-call slot
- tool results are spliced in right after the tool-call message that owns
  them, before any later tool-call-free assistant text, in receipt order
- tool-call-free assistant text is held back (dropped; the next cumulative
  delta supersedes it) until the open tool-call slot has its results
- a tool result is applied at most once per (tool_call_id, name)

`reconcile()` is a pure function: it never mutates its inputs and returns
the new transcript together with the new run bookkeeping.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from enum import Enum

from .protocol.events import (
    MessageComplete,
    MessageDelta,
    MetadataEvent,
    RunMetadata,
    StreamEvent,
    UpdatesRaw,
)
from .protocol.messages import Message, Role, tool_result_key

logger = logging.getLogger(__name__)


class ToolGate(str, Enum):
    """When tool-call-free assistant text may follow an open tool-call slot."""

    ALL = "all"  # every pending tool call has a result
    FIRST = "first"  # at least one tool result was recorded


@dataclass(frozen=True)
class RunBookkeeping:
    """Slot and dedup state for one run.

    Indices point into the session transcript. A fresh value is used for
    every run; it is replaced, never mutated, by `reconcile()`.
    """

    tool_call_slot: int | None = None
    streaming_slot: int | None = None
    tools_completed: bool = False
    seen_tool_result_keys: frozenset[str] = field(default_factory=frozenset)
    pending_tool_call_ids: frozenset[str] = field(default_factory=frozenset)
    answered_tool_call_ids: frozenset[str] = field(default_factory=frozenset)
    slot_results: int = 0
    metadata: RunMetadata = field(default_factory=RunMetadata)

    @property
    def awaiting_tools(self) -> bool:
        """Check if a tool-call slot is open without its results."""
        return self.tool_call_slot is not None and not self.tools_completed


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of applying one stream event."""

    transcript: list[Message]
    bookkeeping: RunBookkeeping
    changed: bool = False


def reconcile(
    transcript: list[Message],
    bookkeeping: RunBookkeeping,
    event: StreamEvent,
    gate: ToolGate = ToolGate.ALL,
) -> ReconcileResult:
    """Apply one stream event to a transcript.

    Args:
        transcript: Current transcript (not modified)
        bookkeeping: Current run bookkeeping
        event: The stream event to apply
        gate: Rule deciding when text may follow a tool-call slot

    Returns:
        ReconcileResult with the new transcript and bookkeeping
    """
    messages = list(transcript)

    if isinstance(event, MetadataEvent):
        metadata = RunMetadata(
            thread_id=event.thread_id or bookkeeping.metadata.thread_id,
            run_id=event.run_id or bookkeeping.metadata.run_id,
        )
        return ReconcileResult(messages, replace(bookkeeping, metadata=metadata))

    if isinstance(event, UpdatesRaw):
        return ReconcileResult(messages, bookkeeping)

    if isinstance(event, MessageDelta | MessageComplete):
        return _apply_message(messages, bookkeeping, event.message, gate)

    logger.debug(f"Ignoring unsupported stream event: {type(event).__name__}")
    return ReconcileResult(messages, bookkeeping)


def replay(
    events: list[StreamEvent],
    transcript: list[Message] | None = None,
    gate: ToolGate = ToolGate.ALL,
) -> ReconcileResult:
    """Apply a sequence of events to a transcript, starting a fresh run."""
    result = ReconcileResult(list(transcript or []), RunBookkeeping())
    for event in events:
        step = reconcile(result.transcript, result.bookkeeping, event, gate)
        result = ReconcileResult(
            step.transcript, step.bookkeeping, changed=result.changed or step.changed
        )
    return result


# =============================================================================
# Message dispatch
# =============================================================================


def _apply_message(
    messages: list[Message],
    bk: RunBookkeeping,
    message: Message,
    gate: ToolGate,
) -> ReconcileResult:
    if message.role == Role.HUMAN:
        # Human turns are appended by the session before the run starts
        return ReconcileResult(messages, bk)

    if message.id:
        index = _find_by_id(messages, message.id)
        if index is not None:
            existing = messages[index]
            if existing.has_tool_calls and message.is_final_text:
                # Overwriting would hide the tool-call card
                return _apply_final_text(messages, bk, message, after_tool_call=index)
            messages[index] = message
            return ReconcileResult(messages, _after_overwrite(bk, index, message, gate), True)

    if message.has_tool_calls:
        return _apply_tool_call(messages, bk, message, gate)
    if message.role == Role.ASSISTANT:
        return _apply_final_text(messages, bk, message)
    return _apply_tool_result(messages, bk, message, gate)


def _apply_tool_call(
    messages: list[Message],
    bk: RunBookkeeping,
    message: Message,
    gate: ToolGate,
) -> ReconcileResult:
    slot = bk.tool_call_slot
    if slot is not None and _same_logical_message(messages[slot], message):
        # Progressive fill of tool-call arguments
        messages[slot] = message
        return ReconcileResult(messages, _register_tool_calls(bk, message, gate), True)

    messages.append(message)
    index = len(messages) - 1
    logger.debug(f"Opened tool-call slot at index {index}")
    return ReconcileResult(messages, _open_tool_call_slot(bk, index, message, gate), True)


def _apply_final_text(
    messages: list[Message],
    bk: RunBookkeeping,
    message: Message,
    after_tool_call: int | None = None,
) -> ReconcileResult:
    if not message.content.strip():
        return ReconcileResult(messages, bk)

    if bk.awaiting_tools:
        logger.debug("Holding back assistant text until tool results arrive")
        return ReconcileResult(messages, bk)

    slot = bk.streaming_slot
    if slot is not None and _same_logical_message(messages[slot], message):
        messages[slot] = message
        return ReconcileResult(messages, bk, True)

    if after_tool_call is not None:
        index = _end_of_tool_results(messages, after_tool_call)
    else:
        index = len(messages)
    messages.insert(index, message)
    bk = _shift_slots(bk, index)
    return ReconcileResult(messages, replace(bk, streaming_slot=index), True)


def _apply_tool_result(
    messages: list[Message],
    bk: RunBookkeeping,
    message: Message,
    gate: ToolGate,
) -> ReconcileResult:
    key = tool_result_key(message)
    if key in bk.seen_tool_result_keys:
        logger.debug(f"Skipping duplicate tool result: {key}")
        return ReconcileResult(messages, bk)

    index = _tool_result_insertion_index(messages, message.tool_call_id)
    messages.insert(index, message)
    bk = _shift_slots(bk, index)

    answered = bk.answered_tool_call_ids
    pending = bk.pending_tool_call_ids
    if message.tool_call_id:
        answered = answered | {message.tool_call_id}
        pending = pending - {message.tool_call_id}
    slot_results = bk.slot_results + 1

    return ReconcileResult(
        messages,
        replace(
            bk,
            seen_tool_result_keys=bk.seen_tool_result_keys | {key},
            answered_tool_call_ids=answered,
            pending_tool_call_ids=pending,
            slot_results=slot_results,
            tools_completed=_tools_completed(pending, slot_results, gate),
        ),
        True,
    )


# =============================================================================
# Bookkeeping transitions
# =============================================================================


def _open_tool_call_slot(
    bk: RunBookkeeping, index: int, message: Message, gate: ToolGate
) -> RunBookkeeping:
    call_ids = {call.id for call in message.tool_calls if call.id}
    already_answered = len(call_ids & bk.answered_tool_call_ids)
    bk = replace(
        bk,
        tool_call_slot=index,
        # Text produced before this slot is closed; the answer goes after the results
        streaming_slot=None,
        slot_results=already_answered,
    )
    return _register_tool_calls(bk, message, gate)


def _register_tool_calls(bk: RunBookkeeping, message: Message, gate: ToolGate) -> RunBookkeeping:
    new_ids = {call.id for call in message.tool_calls if call.id} - bk.answered_tool_call_ids
    pending = bk.pending_tool_call_ids | new_ids
    return replace(
        bk,
        pending_tool_call_ids=pending,
        tools_completed=_tools_completed(pending, bk.slot_results, gate),
    )


def _after_overwrite(
    bk: RunBookkeeping, index: int, message: Message, gate: ToolGate
) -> RunBookkeeping:
    if not message.has_tool_calls:
        return bk
    if bk.tool_call_slot == index:
        return _register_tool_calls(bk, message, gate)
    if bk.streaming_slot == index:
        # Streamed text turned into a tool-call message
        return _open_tool_call_slot(bk, index, message, gate)
    return bk


def _tools_completed(pending: frozenset[str], slot_results: int, gate: ToolGate) -> bool:
    if slot_results == 0:
        return False
    if gate == ToolGate.FIRST:
        return True
    return not pending


def _shift_slots(bk: RunBookkeeping, inserted_at: int) -> RunBookkeeping:
    """Move slot indices at or after an insertion point one step right."""
    tool_slot = bk.tool_call_slot
    streaming = bk.streaming_slot
    if tool_slot is not None and tool_slot >= inserted_at:
        tool_slot += 1
    if streaming is not None and streaming >= inserted_at:
        streaming += 1
    return replace(bk, tool_call_slot=tool_slot, streaming_slot=streaming)


# =============================================================================
# Transcript scanning
# =============================================================================


def _find_by_id(messages: list[Message], message_id: str) -> int | None:
    for index in range(len(messages) - 1, -1, -1):
        if messages[index].id == message_id:
            return index
    return None


def _same_logical_message(existing: Message, incoming: Message) -> bool:
    if existing.id and incoming.id:
        return existing.id == incoming.id
    return True


def _end_of_tool_results(messages: list[Message], tool_call_index: int) -> int:
    """Index just past the tool-result block following a tool-call message."""
    index = tool_call_index + 1
    while index < len(messages) and messages[index].role == Role.TOOL:
        index += 1
    return index


def _tool_result_insertion_index(messages: list[Message], tool_call_id: str | None) -> int:
    """Where a new tool result belongs.

    After the tool-call message that announced tool_call_id (behind results
    already received for it). Without a known owner: before the earliest
    tool-call-free assistant text of the current turn, else at the end.
    """
    if tool_call_id:
        for index in range(len(messages) - 1, -1, -1):
            candidate = messages[index]
            if candidate.has_tool_calls and any(
                call.id == tool_call_id for call in candidate.tool_calls
            ):
                return _end_of_tool_results(messages, index)

    insert_at = len(messages)
    for index in range(len(messages) - 1, -1, -1):
        candidate = messages[index]
        if candidate.is_final_text:
            insert_at = index
        elif candidate.has_tool_calls or candidate.role == Role.HUMAN:
            break
    return insert_at
