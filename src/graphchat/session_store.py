"""Session metadata persistence.

Only session records are stored, never transcripts; transcripts live on
the server thread and can be rebuilt with SessionRegistry.hydrate().

Storage location: ~/.graphchat/sessions.json (see ChatClientConfig)
Record format: {"id", "title", "createdAt", "threadId", "assistantId"}
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .config import ChatClientConfig

logger = logging.getLogger(__name__)

SESSIONS_KEY = "sessions"


@runtime_checkable
class KeyValueStore(Protocol):
    """Minimal JSON key-value store."""

    def get(self, key: str) -> Any | None:
        """Return the JSON value stored under key, or None."""
        ...

    def set(self, key: str, value: Any) -> None:
        """Store a JSON-serializable value under key."""
        ...


class InMemoryStore:
    """KeyValueStore kept in a dict (tests, GRAPHCHAT_NO_PERSIST)."""

    def __init__(self, initial: dict[str, Any] | None = None):
        self.data: dict[str, Any] = dict(initial or {})

    def get(self, key: str) -> Any | None:
        value = self.data.get(key)
        # Round-trip through JSON so callers never share mutable state
        return None if value is None else json.loads(json.dumps(value))

    def set(self, key: str, value: Any) -> None:
        self.data[key] = json.loads(json.dumps(value))


class JsonFileStore:
    """
    KeyValueStore backed by one JSON document on disk.

    Contract:
    - Inputs: key (str), JSON-serializable value
    - Outputs: stored value or None
    - Side Effects: rewrites the whole file on every set()
    - Errors: OSError on write failure; unreadable files read as empty
    """

    def __init__(self, path: Path):
        """Initialize with the file that holds the document.

        Args:
            path: JSON file path; parent directories are created on write
        """
        self.path = path

    def _read(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Failed to read {self.path}: {e}")
            return {}
        if not isinstance(data, dict):
            logger.warning(f"Ignoring malformed store file {self.path}")
            return {}
        return data

    def get(self, key: str) -> Any | None:
        return self._read().get(key)

    def set(self, key: str, value: Any) -> None:
        data = self._read()
        data[key] = value
        self.path.parent.mkdir(parents=True, exist_ok=True)
        content = json.dumps(data, indent=2, ensure_ascii=False)

        # Write to a sibling temp file first so a crash never truncates the store
        tmp_path = self.path.with_suffix(".tmp")
        tmp_path.write_text(content, encoding="utf-8")
        tmp_path.replace(self.path)


class SessionIndex:
    """Reads and writes the list of session records.

    Writes are best-effort: failures are logged and swallowed, since losing
    a metadata write must never break a conversation.
    """

    def __init__(self, store: KeyValueStore):
        self.store = store

    def load(self) -> list[dict[str, Any]]:
        """Load persisted session records.

        Returns:
            Records in stored order; malformed entries are skipped
        """
        try:
            raw = self.store.get(SESSIONS_KEY)
        except Exception as e:
            logger.warning(f"Failed to load session records: {e}")
            return []

        if not isinstance(raw, list):
            return []
        return [record for record in raw if isinstance(record, dict) and record.get("id")]

    def save(self, records: list[dict[str, Any]]) -> bool:
        """Replace the stored records.

        Returns:
            True if the write succeeded
        """
        try:
            self.store.set(SESSIONS_KEY, records)
        except Exception as e:
            logger.warning(f"Failed to persist session records: {e}")
            return False
        logger.debug(f"Persisted {len(records)} session records")
        return True


def open_store(config: ChatClientConfig) -> KeyValueStore:
    """Store for session records as configured: a JSON file, or memory."""
    if config.persist:
        return JsonFileStore(config.sessions_file)
    return InMemoryStore()
