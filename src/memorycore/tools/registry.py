"""Named capabilities (tools) and prompt templates, resolved by exact name."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Protocol

from ..errors import ToolUnavailable


# Tool results are lists of content items such as {"type": "text", "text": "..."}.
ContentItem = dict[str, Any]


class Capability(Protocol):
    name: str

    async def execute(self, arguments: dict[str, Any]) -> list[ContentItem]: ...


class PromptTemplate(Protocol):
    name: str

    async def execute(self, arguments: dict[str, Any]) -> dict[str, Any]: ...


@dataclass
class FunctionCapability:
    name: str
    fn: Callable[[dict[str, Any]], Awaitable[list[ContentItem]]]
    description: str = ""

    async def execute(self, arguments: dict[str, Any]) -> list[ContentItem]:
        return await self.fn(arguments)


@dataclass
class FunctionPromptTemplate:
    name: str
    fn: Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]
    description: str = ""

    async def execute(self, arguments: dict[str, Any]) -> dict[str, Any]:
        return await self.fn(arguments)


class CapabilityRegistry:
    def __init__(self, tools: Iterable[Capability] = (), prompts: Iterable[PromptTemplate] = ()):
        self._tools: dict[str, Capability] = {t.name: t for t in tools}
        self._prompts: dict[str, PromptTemplate] = {p.name: p for p in prompts}

    @property
    def tool_names(self) -> list[str]:
        return sorted(self._tools)

    @property
    def prompt_names(self) -> list[str]:
        return sorted(self._prompts)

    @property
    def is_connected(self) -> bool:
        return bool(self._tools)

    def tool(self, name: str) -> Capability | None:
        return self._tools.get(name)

    def prompt(self, name: str) -> PromptTemplate | None:
        return self._prompts.get(name)

    def require(self, *names: str) -> list[Capability]:
        """Resolve every name or raise ToolUnavailable listing all that are missing."""
        missing = [n for n in names if n not in self._tools]
        if missing:
            raise ToolUnavailable(missing)
        return [self._tools[n] for n in names]


def first_text(result: list[ContentItem]) -> str | None:
    """Text of the first content item, as tools like `read_graph` return it."""
    if not result:
        return None
    item = result[0]
    text = item.get("text") if isinstance(item, dict) else None
    return text if isinstance(text, str) else None
