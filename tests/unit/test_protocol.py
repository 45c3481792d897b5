"""Tests for wire message and stream event parsing."""

from __future__ import annotations

from graphchat.protocol.events import (
    MessageComplete,
    MessageDelta,
    MetadataEvent,
    StreamErrorPayload,
    StreamPart,
    UpdatesRaw,
    parse_stream_part,
)
from graphchat.protocol.messages import (
    Message,
    Role,
    ToolCall,
    flatten_content,
    tool_result_key,
    tool_results_by_call_id,
)

# =============================================================================
# Message Tests
# =============================================================================


class TestMessageFromWire:
    """Tests for Message.from_wire normalisation."""

    def test_langchain_ai_message(self) -> None:
        """type=ai maps to the assistant role."""
        message = Message.from_wire({"type": "ai", "content": "Hello", "id": "run-1"})

        assert message is not None
        assert message.role == Role.ASSISTANT
        assert message.content == "Hello"
        assert message.id == "run-1"

    def test_chunk_type_is_accepted(self) -> None:
        """Chunk class names map to their base role."""
        message = Message.from_wire({"type": "AIMessageChunk", "content": "Hel"})

        assert message is not None
        assert message.role == Role.ASSISTANT

    def test_role_form(self) -> None:
        """role=user maps to human."""
        message = Message.from_wire({"role": "user", "content": "Hi"})

        assert message is not None
        assert message.role == Role.HUMAN

    def test_tool_calls_are_parsed(self) -> None:
        """Tool calls keep id, name and args."""
        message = Message.from_wire(
            {
                "type": "ai",
                "content": "",
                "tool_calls": [{"id": "t1", "name": "clock", "args": {"tz": "UTC"}}],
            }
        )

        assert message is not None
        assert message.has_tool_calls
        assert message.tool_calls == [ToolCall(id="t1", name="clock", args={"tz": "UTC"})]

    def test_tool_message(self) -> None:
        """Tool results keep their call id and tool name."""
        message = Message.from_wire(
            {"type": "tool", "content": "14:02", "tool_call_id": "t1", "name": "clock"}
        )

        assert message is not None
        assert message.role == Role.TOOL
        assert tool_result_key(message) == "t1:clock"

    def test_unknown_role_returns_none(self) -> None:
        """Unrecognised message types are skipped."""
        assert Message.from_wire({"type": "system", "content": "be nice"}) is None

    def test_content_blocks_are_flattened(self) -> None:
        """List content is reduced to its text blocks."""
        message = Message.from_wire(
            {
                "type": "ai",
                "content": [
                    {"type": "text", "text": "Hello "},
                    {"type": "tool_use", "id": "x"},
                    {"type": "text", "text": "world"},
                ],
            }
        )

        assert message is not None
        assert message.content == "Hello world"


class TestMessageToWire:
    """Tests for Message.to_wire serialization."""

    def test_human_message(self) -> None:
        """Human messages use the LangChain type name."""
        assert Message.human("Hi").to_wire() == {"type": "human", "content": "Hi"}

    def test_assistant_with_tool_calls(self) -> None:
        """Tool calls and id are included when present."""
        message = Message(
            role=Role.ASSISTANT,
            tool_calls=[ToolCall(id="t1", name="clock")],
            id="a1",
        )

        assert message.to_wire() == {
            "type": "ai",
            "content": "",
            "id": "a1",
            "tool_calls": [{"id": "t1", "name": "clock", "args": {}}],
        }


class TestHelpers:
    """Tests for content and transcript helpers."""

    def test_flatten_none(self) -> None:
        assert flatten_content(None) == ""

    def test_flatten_plain_strings_in_list(self) -> None:
        assert flatten_content(["a", "b"]) == "ab"

    def test_tool_results_by_call_id(self) -> None:
        """Tool results are indexed by the call they answer."""
        result = Message(role=Role.TOOL, content="14:02", tool_call_id="t1", name="clock")
        transcript = [Message.human("time?"), result, Message(role=Role.ASSISTANT, content="14:02")]

        assert tool_results_by_call_id(transcript) == {"t1": result}


# =============================================================================
# Stream Part Tests
# =============================================================================


class TestParseStreamPart:
    """Tests for parse_stream_part."""

    def test_metadata(self) -> None:
        """metadata parts carry the run id."""
        events = parse_stream_part(StreamPart(event="metadata", data={"run_id": "run_1"}))

        assert events == [MetadataEvent(run_id="run_1")]

    def test_partial_messages_become_deltas(self) -> None:
        """Each message in a partial part becomes one delta."""
        part = StreamPart(
            event="messages/partial",
            data=[{"type": "ai", "content": "Hel", "id": "m1"}, {"type": "ai", "content": "x"}],
        )
        events = parse_stream_part(part)

        assert len(events) == 2
        assert all(isinstance(event, MessageDelta) for event in events)
        assert events[0].message.content == "Hel"

    def test_complete_messages(self) -> None:
        """messages/complete parts become MessageComplete events."""
        part = StreamPart(event="messages/complete", data=[{"type": "ai", "content": "Done"}])
        events = parse_stream_part(part)

        assert len(events) == 1
        assert isinstance(events[0], MessageComplete)

    def test_tuple_form_skips_metadata_entry(self) -> None:
        """[message, metadata] payloads yield only the message."""
        part = StreamPart(
            event="messages",
            data=[{"type": "AIMessageChunk", "content": "Hi"}, {"langgraph_node": "agent"}],
        )
        events = parse_stream_part(part)

        assert len(events) == 1
        assert events[0].message.content == "Hi"

    def test_updates_are_raw(self) -> None:
        """updates parts are passed through untouched."""
        events = parse_stream_part(StreamPart(event="updates", data={"agent": {}}))

        assert events == [UpdatesRaw(payload={"agent": {}})]

    def test_unknown_events_are_ignored(self) -> None:
        """messages/metadata and custom events produce nothing."""
        assert parse_stream_part(StreamPart(event="messages/metadata", data={})) == []
        assert parse_stream_part(StreamPart(event="custom", data=None)) == []


class TestStreamErrorPayload:
    """Tests for in-band error description."""

    def test_describe_with_message(self) -> None:
        assert StreamErrorPayload(error="ValueError", message="boom").describe() == "ValueError: boom"

    def test_describe_without_message(self) -> None:
        assert StreamErrorPayload(error="Timeout").describe() == "Timeout"
