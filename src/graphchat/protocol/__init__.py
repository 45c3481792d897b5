"""Wire protocol of the agent run service.

Defines the message and stream-event models the rest of the client
works with, independent of how the stream is transported.

Key concepts:
- Message: one transcript entry (human, assistant, tool)
- StreamPart: one raw {"event", "data"} item of a run's event stream
- StreamEvent: typed view of a stream part consumed by the reconciler
"""

from .events import (
    HistoryReset,
    MessageComplete,
    MessageDelta,
    MetadataEvent,
    RunMetadata,
    StreamErrorPayload,
    StreamEvent,
    StreamEventType,
    StreamPart,
    UpdatesRaw,
    parse_stream_part,
)
from .messages import (
    Message,
    Role,
    ToolCall,
    flatten_content,
    tool_result_key,
    tool_results_by_call_id,
)

__all__ = [
    "Message",
    "Role",
    "ToolCall",
    "flatten_content",
    "tool_result_key",
    "tool_results_by_call_id",
    "HistoryReset",
    "MessageComplete",
    "MessageDelta",
    "MetadataEvent",
    "RunMetadata",
    "StreamErrorPayload",
    "StreamEvent",
    "StreamEventType",
    "StreamPart",
    "UpdatesRaw",
    "parse_stream_part",
]
