import json
import unittest
from types import SimpleNamespace
from unittest import mock

from fastmcp import Client, FastMCP

from memorycore.chat.preference import rendered_text
from memorycore.errors import ToolUnavailable
from memorycore.graph.service import GraphService
from memorycore.tools.mcp_client import MCPConnection, MCPTool, normalize_prompt_result, normalize_tool_result
from memorycore.tools.registry import CapabilityRegistry, FunctionCapability, first_text


class FakeClient:
    def __init__(self):
        self.calls = []

    async def call_tool(self, name, arguments):
        self.calls.append((name, arguments))
        return SimpleNamespace(content=[SimpleNamespace(type="text", text='{"entities": [], "relations": []}')])


class TestNormalize(unittest.TestCase):
    def test_tool_result_objects(self):
        result = SimpleNamespace(content=[SimpleNamespace(type="text", text="hello"), SimpleNamespace(type="image")])
        self.assertEqual(normalize_tool_result(result), [{"type": "text", "text": "hello"}, {"type": "image"}])

    def test_bare_content_list(self):
        self.assertEqual(normalize_tool_result([{"type": "text", "text": "x"}]), [{"type": "text", "text": "x"}])
        self.assertEqual(normalize_tool_result(None), [])

    def test_prompt_result(self):
        result = SimpleNamespace(messages=[SimpleNamespace(role="user", content=SimpleNamespace(type="text", text="Extract"))])
        self.assertEqual(
            normalize_prompt_result(result),
            {"messages": [{"role": "user", "content": {"type": "text", "text": "Extract"}}]},
        )


class TestMCPTool(unittest.IsolatedAsyncioTestCase):
    async def test_execute_forwards_to_client(self):
        client = FakeClient()
        tool = MCPTool(client, "read_graph")
        result = await tool.execute({})
        self.assertEqual(client.calls, [("read_graph", {})])
        self.assertEqual(first_text(result), '{"entities": [], "relations": []}')


class TestRegistry(unittest.TestCase):
    def test_require_lists_all_missing(self):
        async def noop(args):
            return []

        registry = CapabilityRegistry(tools=[FunctionCapability("read_graph", noop)])
        self.assertTrue(registry.is_connected)
        with self.assertRaises(ToolUnavailable) as ctx:
            registry.require("create_entities", "read_graph", "create_relations")
        self.assertEqual(ctx.exception.names, ["create_entities", "create_relations"])

    def test_empty_registry_is_not_connected(self):
        self.assertFalse(CapabilityRegistry().is_connected)
        self.assertIsNone(first_text([]))


def memory_server():
    """In-process MCP server with a tiny graph and the preference prompt."""
    mcp = FastMCP("memory")
    graph = {"entities": [], "relations": []}

    @mcp.tool
    def create_entities(entities: list[dict]) -> str:
        graph["entities"].extend(entities)
        return json.dumps({"created": len(entities)})

    @mcp.tool
    def read_graph() -> str:
        return json.dumps(graph)

    @mcp.prompt
    def user_preference_extract_prompt(message: str) -> str:
        return f"Extract preferences from: {message}"

    return mcp


class NoPromptsClient(Client):
    async def list_prompts(self):
        raise RuntimeError("Method not found: prompts/list")


class FailingToolsClient(Client):
    instances = []

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        FailingToolsClient.instances.append(self)

    async def list_tools(self):
        raise RuntimeError("tools/list failed")


class TestMCPConnection(unittest.IsolatedAsyncioTestCase):
    async def test_tools_prompts_and_graph_refresh(self):
        async with MCPConnection(memory_server()) as registry:
            self.assertEqual(registry.tool_names, ["create_entities", "read_graph"])
            self.assertEqual(registry.prompt_names, ["user_preference_extract_prompt"])

            await registry.tool("create_entities").execute(
                {"entities": [{"name": "Ada", "entityType": "person", "observations": []}]}
            )
            service = GraphService(registry)
            await service.refresh()
            self.assertIsNone(service.error)
            self.assertEqual([n.id for n in service.view.nodes], ["Ada"])

            rendered = await registry.prompt("user_preference_extract_prompt").execute({"message": "hi"})
            self.assertEqual(rendered_text(rendered), "Extract preferences from: hi")

    async def test_prompt_listing_failure_yields_no_prompts(self):
        with mock.patch("memorycore.tools.mcp_client.Client", NoPromptsClient):
            async with MCPConnection(memory_server()) as registry:
                self.assertEqual(registry.tool_names, ["create_entities", "read_graph"])
                self.assertEqual(registry.prompt_names, [])

    async def test_tool_listing_failure_closes_client(self):
        FailingToolsClient.instances.clear()
        conn = MCPConnection(memory_server())
        with mock.patch("memorycore.tools.mcp_client.Client", FailingToolsClient):
            with self.assertRaises(RuntimeError):
                await conn.connect()

        self.assertFalse(FailingToolsClient.instances[0].is_connected())
        self.assertFalse(conn.registry.is_connected)


if __name__ == "__main__":
    unittest.main()
