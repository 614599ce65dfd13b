from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Union

from ..chat.llm import ChatCompletionClient, ChatMessage, first_choice_message
from ..errors import ExtractionShapeError, ToolCallArgError
from ..json_utils import find_json_object, loads_lenient
from ..logging_config import get_logger
from ..tools.registry import CapabilityRegistry

logger = get_logger(__name__)


CREATE_ENTITIES = "create_entities"
CREATE_RELATIONS = "create_relations"

ENTITY_TYPES = ["person", "concept", "event", "location", "organization"]
RELATION_TYPES = ["knows", "related_to", "located_in", "works_for", "created"]

EXTRACTION_TEMPERATURE = 0.1

SYSTEM_PROMPT = (
    "You extract a knowledge graph from text.\n"
    "\n"
    "Rules:\n"
    f"- entityType must be one of: {', '.join(ENTITY_TYPES)}.\n"
    f"- relationType should be one of: {', '.join(RELATION_TYPES)}; use related_to when nothing else fits.\n"
    "- Entity names are their identity: reuse exactly the same name for the same thing.\n"
    "- observations are short factual statements about the entity taken from the text.\n"
    "- Relations must connect entity names you extracted.\n"
    "- Call the record_knowledge function with the result. "
    'If you cannot call functions, reply with only a JSON object {"entities": [...], "relations": [...]}.'
)

EXTRACTION_TOOL: dict[str, Any] = {
    "type": "function",
    "function": {
        "name": "record_knowledge",
        "description": "Record the entities and relations found in the text.",
        "parameters": {
            "type": "object",
            "properties": {
                "entities": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "name": {"type": "string"},
                            "entityType": {"type": "string", "enum": ENTITY_TYPES},
                            "observations": {"type": "array", "items": {"type": "string"}},
                        },
                        "required": ["name", "entityType", "observations"],
                    },
                },
                "relations": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "from": {"type": "string"},
                            "to": {"type": "string"},
                            "relationType": {"type": "string"},
                        },
                        "required": ["from", "to", "relationType"],
                    },
                },
            },
            "required": ["entities", "relations"],
        },
    },
}


@dataclass(frozen=True)
class ExtractedEntity:
    name: str
    entity_type: str
    observations: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "entityType": self.entity_type, "observations": list(self.observations)}


@dataclass(frozen=True)
class ExtractedRelation:
    from_: str
    to: str
    relation_type: str

    def to_dict(self) -> dict[str, str]:
        return {"from": self.from_, "to": self.to, "relationType": self.relation_type}


@dataclass(frozen=True)
class Extraction:
    entities: list[ExtractedEntity] = field(default_factory=list)
    relations: list[ExtractedRelation] = field(default_factory=list)


# Response shapes.
@dataclass(frozen=True)
class ToolCallResult:
    arguments: str


@dataclass(frozen=True)
class ContentResult:
    payload: str


@dataclass(frozen=True)
class Unparseable:
    reason: str


ResponseShape = Union[ToolCallResult, ContentResult, Unparseable]


def classify_response(data: dict[str, Any]) -> ResponseShape:
    """Decide once which of the three shapes a completion response has."""
    msg = first_choice_message(data)

    tool_calls = msg.get("tool_calls") or []
    if tool_calls and isinstance(tool_calls[0], dict):
        fn = tool_calls[0].get("function") or {}
        args = fn.get("arguments") if isinstance(fn, dict) else None
        if isinstance(args, dict):
            # Some gateways pre-decode the arguments.
            return ToolCallResult(arguments=json.dumps(args))
        if isinstance(args, str):
            return ToolCallResult(arguments=args)

    content = msg.get("content")
    if isinstance(content, str):
        payload = find_json_object(content)
        if payload is not None:
            return ContentResult(payload=payload)
        return Unparseable(reason="content has no JSON object")

    return Unparseable(reason="response has neither a tool call nor content")


def parse_tool_arguments(arguments: str) -> Any:
    try:
        return loads_lenient(arguments)
    except json.JSONDecodeError as e:
        raise ToolCallArgError(f"Tool-call arguments are not valid JSON: {e}") from e


def parse_content_payload(payload: str) -> Any:
    try:
        return loads_lenient(payload)
    except json.JSONDecodeError as e:
        raise ExtractionShapeError(f"Embedded JSON in model content is invalid: {e}") from e


def to_extraction(obj: Any) -> Extraction:
    """Validate the parsed object and convert its items.

    Both keys must be present and hold lists (possibly empty). Items that
    are not objects or lack a name/endpoint are dropped with a warning.
    """
    if not isinstance(obj, dict) or "entities" not in obj or "relations" not in obj:
        raise ExtractionShapeError("Extraction result must contain both 'entities' and 'relations'")
    raw_entities, raw_relations = obj["entities"], obj["relations"]
    if not isinstance(raw_entities, list) or not isinstance(raw_relations, list):
        raise ExtractionShapeError("'entities' and 'relations' must be lists")

    entities: list[ExtractedEntity] = []
    for e in raw_entities:
        if not isinstance(e, dict) or not str(e.get("name") or "").strip():
            logger.warning(f"Dropping malformed entity: {e!r}")
            continue
        obs = e.get("observations") or []
        if not isinstance(obs, list):
            obs = [obs]
        entities.append(
            ExtractedEntity(
                name=str(e["name"]).strip(),
                entity_type=str(e.get("entityType") or "").strip(),
                observations=[str(o) for o in obs],
            )
        )

    relations: list[ExtractedRelation] = []
    for r in raw_relations:
        if not isinstance(r, dict) or not str(r.get("from") or "").strip() or not str(r.get("to") or "").strip():
            logger.warning(f"Dropping malformed relation: {r!r}")
            continue
        relations.append(
            ExtractedRelation(
                from_=str(r["from"]).strip(),
                to=str(r["to"]).strip(),
                relation_type=str(r.get("relationType") or "").strip(),
            )
        )

    return Extraction(entities=entities, relations=relations)


class KnowledgeExtractor:
    """Turn a passage into graph mutations on the external store.

    After mutating, the graph is refreshed once immediately and once more
    after `refresh_delay_s`, since the store may index writes asynchronously.
    """

    def __init__(
        self,
        *,
        llm: ChatCompletionClient,
        registry: CapabilityRegistry,
        refresh: Callable[[], Awaitable[Any]] | None = None,
        refresh_delay_s: float = 0.5,
    ):
        self.llm = llm
        self.registry = registry
        self.refresh = refresh
        self.refresh_delay_s = float(refresh_delay_s)

    async def extract(self, text: str) -> Extraction:
        msgs = [
            ChatMessage(role="system", content=SYSTEM_PROMPT),
            ChatMessage(role="user", content=f"Extract entities and relations from this text:\n\n{text}"),
        ]
        data = await self.llm.complete(msgs, tools=[EXTRACTION_TOOL], temperature=EXTRACTION_TEMPERATURE)

        shape = classify_response(data)
        if isinstance(shape, ToolCallResult):
            obj = parse_tool_arguments(shape.arguments)
        elif isinstance(shape, ContentResult):
            obj = parse_content_payload(shape.payload)
        else:
            raise ExtractionShapeError(f"Unusable extraction response: {shape.reason}")

        return to_extraction(obj)

    async def run(self, text: str) -> Extraction:
        # Fail before any network call when the store cannot be written.
        create_entities, create_relations = self.registry.require(CREATE_ENTITIES, CREATE_RELATIONS)

        extraction = await self.extract(text)

        if extraction.entities:
            await create_entities.execute({"entities": [e.to_dict() for e in extraction.entities]})
        if extraction.relations:
            await create_relations.execute({"relations": [r.to_dict() for r in extraction.relations]})
        logger.info(
            f"Extracted {len(extraction.entities)} entities and {len(extraction.relations)} relations"
        )

        if self.refresh is not None:
            await self.refresh()
            await asyncio.sleep(self.refresh_delay_s)
            await self.refresh()

        return extraction
