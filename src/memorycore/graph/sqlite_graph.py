from __future__ import annotations

import json
import os
import sqlite3
from typing import Any

from ..store.kv import connect
from ..tools.registry import (
    CapabilityRegistry,
    ContentItem,
    FunctionCapability,
    FunctionPromptTemplate,
)


PREFERENCE_PROMPT_TEMPLATE = (
    "Read the user's message below and extract any stable personal preferences it reveals "
    "(for example language, tone, topics of interest, formats they like or dislike).\n"
    "Reply with only a JSON object mapping preference names to values. "
    "Reply with {{}} if the message reveals nothing.\n"
    "\n"
    "Message:\n{message}"
)


def init_graph(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS entities (
          entity_id INTEGER PRIMARY KEY,
          name TEXT NOT NULL UNIQUE,
          entity_type TEXT NOT NULL,
          observations_json TEXT NOT NULL
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS relations (
          relation_id INTEGER PRIMARY KEY,
          from_name TEXT NOT NULL,
          to_name TEXT NOT NULL,
          relation_type TEXT NOT NULL,
          UNIQUE (from_name, to_name, relation_type)
        );
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_relations_from ON relations(from_name);")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_relations_to ON relations(to_name);")

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS preferences (
          key TEXT PRIMARY KEY,
          value_json TEXT NOT NULL
        );
        """
    )
    conn.commit()


def insert_entities(conn: sqlite3.Connection, entities: list[dict[str, Any]]) -> int:
    """Insert entities by name; existing names are left untouched."""
    before = conn.total_changes
    conn.executemany(
        "INSERT OR IGNORE INTO entities(name, entity_type, observations_json) VALUES(?, ?, ?)",
        [
            (
                str(e["name"]),
                str(e.get("entityType") or ""),
                json.dumps([str(o) for o in (e.get("observations") or [])], ensure_ascii=False),
            )
            for e in entities
            if isinstance(e, dict) and e.get("name")
        ],
    )
    conn.commit()
    return conn.total_changes - before


def insert_relations(conn: sqlite3.Connection, relations: list[dict[str, Any]]) -> int:
    before = conn.total_changes
    conn.executemany(
        "INSERT OR IGNORE INTO relations(from_name, to_name, relation_type) VALUES(?, ?, ?)",
        [
            (str(r["from"]), str(r["to"]), str(r.get("relationType") or ""))
            for r in relations
            if isinstance(r, dict) and r.get("from") and r.get("to")
        ],
    )
    conn.commit()
    return conn.total_changes - before


def read_graph(conn: sqlite3.Connection) -> dict[str, list[dict[str, Any]]]:
    entities = [
        {
            "type": "entity",
            "name": str(r["name"]),
            "entityType": str(r["entity_type"]),
            "observations": json.loads(r["observations_json"]),
        }
        for r in conn.execute("SELECT name, entity_type, observations_json FROM entities ORDER BY entity_id")
    ]
    relations = [
        {
            "type": "relation",
            "from": str(r["from_name"]),
            "to": str(r["to_name"]),
            "relationType": str(r["relation_type"]),
        }
        for r in conn.execute("SELECT from_name, to_name, relation_type FROM relations ORDER BY relation_id")
    ]
    return {"entities": entities, "relations": relations}


def merge_preferences(conn: sqlite3.Connection, preferences: dict[str, Any]) -> None:
    conn.executemany(
        """
        INSERT INTO preferences(key, value_json) VALUES (?, ?)
        ON CONFLICT(key) DO UPDATE SET value_json = excluded.value_json
        """,
        [(str(k), json.dumps(v, ensure_ascii=False)) for k, v in preferences.items()],
    )
    conn.commit()


def get_preferences(conn: sqlite3.Connection) -> dict[str, Any]:
    return {str(r["key"]): json.loads(r["value_json"]) for r in conn.execute("SELECT key, value_json FROM preferences")}


def _text(payload: Any) -> list[ContentItem]:
    return [{"type": "text", "text": json.dumps(payload, ensure_ascii=False)}]


class LocalGraphStore:
    """SQLite graph store exposing the same capabilities as a remote memory server."""

    def __init__(self, db_path: str | os.PathLike[str]):
        self.db_path = str(db_path)
        self.conn = connect(db_path)
        init_graph(self.conn)

    def close(self) -> None:
        self.conn.close()

    async def _create_entities(self, args: dict[str, Any]) -> list[ContentItem]:
        n = insert_entities(self.conn, list(args.get("entities") or []))
        return _text({"created": n})

    async def _create_relations(self, args: dict[str, Any]) -> list[ContentItem]:
        n = insert_relations(self.conn, list(args.get("relations") or []))
        return _text({"created": n})

    async def _read_graph(self, args: dict[str, Any]) -> list[ContentItem]:
        return _text(read_graph(self.conn))

    async def _update_user_preference(self, args: dict[str, Any]) -> list[ContentItem]:
        prefs = args.get("preferences") or {}
        if isinstance(prefs, dict):
            merge_preferences(self.conn, prefs)
        return _text(get_preferences(self.conn))

    async def _render_preference_prompt(self, args: dict[str, Any]) -> dict[str, Any]:
        text = PREFERENCE_PROMPT_TEMPLATE.format(message=str(args.get("message") or ""))
        return {"messages": [{"role": "user", "content": {"type": "text", "text": text}}]}

    def registry(self) -> CapabilityRegistry:
        return CapabilityRegistry(
            tools=[
                FunctionCapability("create_entities", self._create_entities, "Create entities by name"),
                FunctionCapability("create_relations", self._create_relations, "Create directed relations"),
                FunctionCapability("read_graph", self._read_graph, "Read the whole graph"),
                FunctionCapability("update_user_preference", self._update_user_preference, "Merge user preferences"),
            ],
            prompts=[
                FunctionPromptTemplate(
                    "user_preference_extract_prompt",
                    self._render_preference_prompt,
                    "Prompt for extracting user preferences from a message",
                )
            ],
        )
