from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from ..logging_config import get_logger
from .kv import KeyValueStore

logger = get_logger(__name__)

SAVED_MESSAGES_KEY = "savedMessages"


@dataclass(frozen=True)
class SavedMessage:
    content: str
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return {"content": self.content, "timestamp": self.timestamp.isoformat()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SavedMessage":
        raw_ts = data.get("timestamp")
        try:
            # Older entries may carry a trailing "Z".
            ts = datetime.fromisoformat(str(raw_ts).replace("Z", "+00:00"))
        except ValueError:
            ts = datetime.fromtimestamp(0, tz=timezone.utc)
        return cls(content=str(data.get("content") or ""), timestamp=ts)


class MessageStore:
    """Retained assistant replies, deduplicated on exact content.

    Every operation reads and writes the whole list through the key-value
    port, so two stores over the same port always agree.
    """

    def __init__(self, kv: KeyValueStore):
        self.kv = kv

    def list(self) -> list[SavedMessage]:
        raw = self.kv.get(SAVED_MESSAGES_KEY)
        if not raw:
            return []
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(f"Saved messages are not valid JSON, treating as empty: {e}")
            return []
        if not isinstance(data, list):
            return []
        return [SavedMessage.from_dict(d) for d in data if isinstance(d, dict)]

    def __len__(self) -> int:
        return len(self.list())

    def get(self, index: int) -> SavedMessage:
        messages = self.list()
        if index < 0 or index >= len(messages):
            raise IndexError(f"No saved message at index {index}")
        return messages[index]

    def contains(self, content: str) -> bool:
        return any(m.content == content for m in self.list())

    def add(self, content: str) -> bool:
        """Append a reply unless identical content is already stored.

        Returns: True when added, False for a duplicate.
        """
        messages = self.list()
        if any(m.content == content for m in messages):
            return False
        messages.append(SavedMessage(content=content, timestamp=datetime.now(timezone.utc)))
        self._write(messages)
        return True

    def remove(self, index: int) -> SavedMessage:
        messages = self.list()
        if index < 0 or index >= len(messages):
            raise IndexError(f"No saved message at index {index}")
        removed = messages.pop(index)
        self._write(messages)
        return removed

    def _write(self, messages: list[SavedMessage]) -> None:
        self.kv.set(SAVED_MESSAGES_KEY, json.dumps([m.to_dict() for m in messages], ensure_ascii=False))
