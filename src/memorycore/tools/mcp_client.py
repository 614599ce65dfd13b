"""
MCP connection that exposes a server's tools and prompts as a CapabilityRegistry.
"""

from __future__ import annotations

from typing import Any

from fastmcp import Client

from ..logging_config import get_logger
from .registry import CapabilityRegistry, ContentItem

logger = get_logger(__name__)


def _content_to_dict(item: Any) -> ContentItem:
    if isinstance(item, dict):
        return dict(item)
    out: ContentItem = {"type": getattr(item, "type", "text")}
    text = getattr(item, "text", None)
    if text is not None:
        out["text"] = text
    return out


def normalize_tool_result(result: Any) -> list[ContentItem]:
    """Flatten a call_tool result (CallToolResult or bare content list) to dicts."""
    content = getattr(result, "content", result)
    if content is None:
        return []
    return [_content_to_dict(c) for c in content]


def normalize_prompt_result(result: Any) -> dict[str, Any]:
    messages = []
    for m in getattr(result, "messages", None) or []:
        messages.append({"role": getattr(m, "role", "user"), "content": _content_to_dict(getattr(m, "content", {}))})
    return {"messages": messages}


class MCPTool:
    def __init__(self, client: Client, name: str, description: str = ""):
        self._client = client
        self.name = name
        self.description = description

    async def execute(self, arguments: dict[str, Any]) -> list[ContentItem]:
        logger.debug(f"MCP call_tool {self.name}")
        result = await self._client.call_tool(self.name, arguments)
        return normalize_tool_result(result)


class MCPPrompt:
    def __init__(self, client: Client, name: str, description: str = ""):
        self._client = client
        self.name = name
        self.description = description

    async def execute(self, arguments: dict[str, Any]) -> dict[str, Any]:
        result = await self._client.get_prompt(self.name, arguments)
        return normalize_prompt_result(result)


class MCPConnection:
    """Connect to an MCP server and build a registry of its capabilities.

    Usage:
        async with MCPConnection(address) as registry:
            ...
    """

    def __init__(self, address: Any):
        # Passed to fastmcp.Client as-is (URL or in-process FastMCP server).
        self.address = address
        self._client: Client | None = None
        self.registry = CapabilityRegistry()

    async def connect(self) -> CapabilityRegistry:
        client = Client(self.address)
        await client.__aenter__()
        try:
            tools = await client.list_tools()
            try:
                prompts = await client.list_prompts()
            except Exception as e:
                # Servers without prompt support reject prompts/list.
                logger.warning(f"MCP server at {self.address} did not list prompts: {e}")
                prompts = []
        except BaseException:
            await client.__aexit__(None, None, None)
            raise
        self._client = client

        self.registry = CapabilityRegistry(
            tools=[MCPTool(client, t.name, t.description or "") for t in tools],
            prompts=[MCPPrompt(client, p.name, p.description or "") for p in prompts],
        )
        logger.info(
            f"Connected to MCP at {self.address}: {len(self.registry.tool_names)} tool(s), "
            f"{len(self.registry.prompt_names)} prompt(s)"
        )
        return self.registry

    async def close(self) -> None:
        if self._client is not None:
            await self._client.__aexit__(None, None, None)
            self._client = None
        self.registry = CapabilityRegistry()

    async def __aenter__(self) -> CapabilityRegistry:
        return await self.connect()

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()
