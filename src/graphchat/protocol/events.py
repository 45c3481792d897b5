"""Stream event definitions.

The run service streams parts of the shape {"event": ..., "data": ...}.
Each part is parsed into zero or more typed stream events:

- metadata            -> MetadataEvent (run id)
- messages/partial    -> MessageDelta, one per message
- messages            -> MessageDelta, one per message
- messages/complete   -> MessageComplete, one per message
- updates             -> UpdatesRaw (informational only)

Anything else (messages/metadata, custom events, heartbeats) is ignored.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field

from .messages import Message

logger = logging.getLogger(__name__)


class StreamEventType(str, Enum):
    """Wire event names produced by the run service."""

    METADATA = "metadata"
    MESSAGES = "messages"
    MESSAGES_PARTIAL = "messages/partial"
    MESSAGES_COMPLETE = "messages/complete"
    UPDATES = "updates"
    ERROR = "error"


DEFAULT_STREAM_MODE = ["messages", "updates"]


class StreamPart(BaseModel):
    """One raw item of an event stream."""

    event: str
    data: Any = None


class MetadataEvent(BaseModel):
    """Run metadata announced at the start of a stream."""

    kind: Literal["metadata"] = "metadata"
    run_id: str | None = None
    thread_id: str | None = None


class MessageDelta(BaseModel):
    """A partial (cumulative) delivery of one message."""

    kind: Literal["delta"] = "delta"
    message: Message


class MessageComplete(BaseModel):
    """The final delivery of one message."""

    kind: Literal["complete"] = "complete"
    message: Message


class UpdatesRaw(BaseModel):
    """Graph state updates; never applied to the transcript."""

    kind: Literal["updates"] = "updates"
    payload: Any = None


StreamEvent = MetadataEvent | MessageDelta | MessageComplete | UpdatesRaw


class RunMetadata(BaseModel):
    """Thread/run identifiers surfaced to callers for display and correlation."""

    thread_id: str | None = None
    run_id: str | None = None


class StreamErrorPayload(BaseModel):
    """Error reported in-band by the run service."""

    error: str = "Unknown error"
    message: str | None = None

    def describe(self) -> str:
        return f"{self.error}: {self.message}" if self.message else self.error


def parse_stream_part(part: StreamPart) -> list[StreamEvent]:
    """Convert a raw stream part into typed stream events.

    Args:
        part: Raw {"event", "data"} item from the event stream

    Returns:
        Stream events in delivery order (possibly empty)
    """
    event = part.event
    data = part.data

    if event == StreamEventType.METADATA.value:
        if isinstance(data, dict):
            return [MetadataEvent(run_id=data.get("run_id"), thread_id=data.get("thread_id"))]
        return []

    if event in (StreamEventType.MESSAGES.value, StreamEventType.MESSAGES_PARTIAL.value):
        return [MessageDelta(message=m) for m in _parse_messages(data)]

    if event == StreamEventType.MESSAGES_COMPLETE.value:
        return [MessageComplete(message=m) for m in _parse_messages(data)]

    if event == StreamEventType.UPDATES.value:
        return [UpdatesRaw(payload=data)]

    logger.debug(f"Ignoring stream event: {event}")
    return []


def _parse_messages(data: Any) -> list[Message]:
    """Extract messages from a message-kind event payload.

    The payload is normally a list of message dicts; the tuple form
    [message, metadata] is also accepted, its metadata entry is skipped.
    """
    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list):
        return []

    messages: list[Message] = []
    for item in data:
        if not isinstance(item, dict) or not ("type" in item or "role" in item):
            continue
        message = Message.from_wire(item)
        if message is not None:
            messages.append(message)
    return messages


class HistoryReset(BaseModel):
    """Authoritative replacement history sent with a forked run."""

    messages: list[Message] = Field(default_factory=list)
