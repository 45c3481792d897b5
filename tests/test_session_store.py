"""Tests for session metadata persistence."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import pytest

from graphchat.config import ChatClientConfig
from graphchat.session_store import (
    SESSIONS_KEY,
    InMemoryStore,
    JsonFileStore,
    KeyValueStore,
    SessionIndex,
    open_store,
)

RECORD = {
    "id": "chat_1714564800000_abc123def",
    "title": "What time is it",
    "createdAt": 1714564800000,
    "threadId": "thread_1",
    "assistantId": "asst_1",
}


class TestJsonFileStore:
    """Tests for JsonFileStore."""

    @pytest.fixture
    def store(self, tmp_path: Path) -> JsonFileStore:
        """Create a store in a temp directory that does not exist yet."""
        return JsonFileStore(tmp_path / "state" / "sessions.json")

    def test_missing_file_reads_as_empty(self, store: JsonFileStore) -> None:
        assert store.get(SESSIONS_KEY) is None

    def test_set_and_get(self, store: JsonFileStore) -> None:
        """Values survive a new store instance on the same file."""
        store.set(SESSIONS_KEY, [RECORD])

        reopened = JsonFileStore(store.path)
        assert reopened.get(SESSIONS_KEY) == [RECORD]
        assert json.loads(store.path.read_text()) == {SESSIONS_KEY: [RECORD]}

    def test_set_keeps_other_keys(self, store: JsonFileStore) -> None:
        store.set("other", {"a": 1})
        store.set(SESSIONS_KEY, [])

        assert store.get("other") == {"a": 1}
        assert store.get(SESSIONS_KEY) == []

    def test_no_temp_file_left_behind(self, store: JsonFileStore) -> None:
        store.set(SESSIONS_KEY, [RECORD])
        assert [p.name for p in store.path.parent.iterdir()] == ["sessions.json"]

    def test_invalid_json_reads_as_empty(
        self, store: JsonFileStore, caplog: pytest.LogCaptureFixture
    ) -> None:
        """A corrupt file is logged and ignored, not raised."""
        store.path.parent.mkdir(parents=True)
        store.path.write_text("{not json")

        with caplog.at_level(logging.WARNING, logger="graphchat.session_store"):
            assert store.get(SESSIONS_KEY) is None

        assert "Failed to read" in caplog.text

    def test_non_object_document_reads_as_empty(self, store: JsonFileStore) -> None:
        store.path.parent.mkdir(parents=True)
        store.path.write_text("[1, 2, 3]")

        assert store.get(SESSIONS_KEY) is None

    def test_satisfies_protocol(self, store: JsonFileStore) -> None:
        assert isinstance(store, KeyValueStore)


class TestInMemoryStore:
    """Tests for InMemoryStore."""

    def test_values_are_copied(self) -> None:
        """Mutating a read or written value does not leak into the store."""
        store = InMemoryStore()
        records = [dict(RECORD)]
        store.set(SESSIONS_KEY, records)
        records[0]["title"] = "changed"

        loaded = store.get(SESSIONS_KEY)
        loaded[0]["title"] = "changed again"

        assert store.get(SESSIONS_KEY)[0]["title"] == "What time is it"

    def test_initial_data(self) -> None:
        store = InMemoryStore({SESSIONS_KEY: [RECORD]})
        assert store.get(SESSIONS_KEY) == [RECORD]


class TestSessionIndex:
    """Tests for SessionIndex."""

    def test_round_trip(self) -> None:
        index = SessionIndex(InMemoryStore())

        assert index.save([RECORD]) is True
        assert index.load() == [RECORD]

    def test_empty_store(self) -> None:
        assert SessionIndex(InMemoryStore()).load() == []

    def test_malformed_records_are_skipped(self) -> None:
        """Entries without an id, or that are not objects, are dropped."""
        store = InMemoryStore({SESSIONS_KEY: [RECORD, {"title": "no id"}, "junk", None]})

        assert SessionIndex(store).load() == [RECORD]

    def test_non_list_value(self) -> None:
        store = InMemoryStore({SESSIONS_KEY: {"id": "x"}})
        assert SessionIndex(store).load() == []

    def test_store_failures_are_swallowed(self) -> None:
        """Load and save never raise."""

        class FailingStore:
            def get(self, key: str) -> Any | None:
                raise OSError("unreadable")

            def set(self, key: str, value: Any) -> None:
                raise OSError("read-only filesystem")

        index = SessionIndex(FailingStore())

        assert index.load() == []
        assert index.save([RECORD]) is False


class TestOpenStore:
    """Tests for open_store."""

    def test_persistent(self, tmp_path: Path) -> None:
        store = open_store(ChatClientConfig(storage_dir=tmp_path))

        assert isinstance(store, JsonFileStore)
        assert store.path == tmp_path / "sessions.json"

    def test_no_persist(self, tmp_path: Path) -> None:
        store = open_store(ChatClientConfig(storage_dir=tmp_path, persist=False))

        assert isinstance(store, InMemoryStore)
