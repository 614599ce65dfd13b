import asyncio
import json
import unittest

import httpx

from memorycore.errors import ExtractionShapeError, ToolCallArgError, ToolUnavailable
from memorycore.graph.extract import (
    ContentResult,
    KnowledgeExtractor,
    ToolCallResult,
    Unparseable,
    classify_response,
    parse_tool_arguments,
    to_extraction,
)
from memorycore.graph.sqlite_graph import LocalGraphStore, read_graph
from memorycore.tools.registry import CapabilityRegistry, FunctionCapability

from support import FakeEndpoint, content_response, last_user_text, tool_call_response


ADA_ARGS = json.dumps(
    {
        "entities": [
            {"name": "Ada Lovelace", "entityType": "person", "observations": ["wrote the first program"]},
            {"name": "Analytical Engine", "entityType": "concept", "observations": []},
        ],
        "relations": [{"from": "Ada Lovelace", "to": "Analytical Engine", "relationType": "created"}],
    }
)


class TestClassifyResponse(unittest.TestCase):
    def test_tool_call(self):
        shape = classify_response(tool_call_response('{"entities": [], "relations": []}'))
        self.assertEqual(shape, ToolCallResult(arguments='{"entities": [], "relations": []}'))

    def test_predecoded_tool_arguments(self):
        shape = classify_response(tool_call_response({"entities": [], "relations": []}))
        self.assertIsInstance(shape, ToolCallResult)
        self.assertEqual(json.loads(shape.arguments), {"entities": [], "relations": []})

    def test_content_with_embedded_json(self):
        shape = classify_response(content_response('Sure! {"entities": [], "relations": []} Done.'))
        self.assertEqual(shape, ContentResult(payload='{"entities": [], "relations": []}'))

    def test_unparseable(self):
        self.assertIsInstance(classify_response(content_response("I could not find anything.")), Unparseable)
        self.assertIsInstance(classify_response({"choices": []}), Unparseable)


class TestParseAndValidate(unittest.TestCase):
    def test_trailing_comma_is_repaired(self):
        obj = parse_tool_arguments('{"entities": [], "relations": [],}')
        self.assertEqual(obj, {"entities": [], "relations": []})

    def test_unrepairable_arguments(self):
        with self.assertRaises(ToolCallArgError):
            parse_tool_arguments('{"entities": [, "relations": []}')

    def test_missing_key(self):
        with self.assertRaises(ExtractionShapeError):
            to_extraction({"entities": []})
        with self.assertRaises(ExtractionShapeError):
            to_extraction({"entities": {}, "relations": []})

    def test_empty_lists_are_valid(self):
        ex = to_extraction({"entities": [], "relations": []})
        self.assertEqual(ex.entities, [])
        self.assertEqual(ex.relations, [])

    def test_malformed_items_are_dropped(self):
        ex = to_extraction(
            {
                "entities": [{"name": "Ada", "entityType": "person"}, {"entityType": "person"}, "junk"],
                "relations": [{"from": "Ada", "to": "", "relationType": "knows"}],
            }
        )
        self.assertEqual([e.name for e in ex.entities], ["Ada"])
        self.assertEqual(ex.entities[0].observations, [])
        self.assertEqual(ex.relations, [])


class RecordingRegistry:
    """Registry with recording create_* tools and a counting refresh."""

    def __init__(self):
        self.calls = []
        self.refreshes = 0

        async def create_entities(args):
            self.calls.append(("create_entities", args))
            return []

        async def create_relations(args):
            self.calls.append(("create_relations", args))
            return []

        self.registry = CapabilityRegistry(
            tools=[
                FunctionCapability("create_entities", create_entities),
                FunctionCapability("create_relations", create_relations),
            ]
        )

    async def refresh(self):
        self.refreshes += 1


class TestKnowledgeExtractor(unittest.IsolatedAsyncioTestCase):
    async def test_mutates_in_batches_and_refreshes_twice(self):
        endpoint = FakeEndpoint(lambda body: httpx.Response(200, json=tool_call_response(ADA_ARGS)))
        rec = RecordingRegistry()
        extractor = KnowledgeExtractor(llm=endpoint.client(), registry=rec.registry, refresh=rec.refresh, refresh_delay_s=0)

        ex = await extractor.run("Ada Lovelace wrote programs for the Analytical Engine.")

        self.assertEqual(len(ex.entities), 2)
        self.assertEqual([c[0] for c in rec.calls], ["create_entities", "create_relations"])
        self.assertEqual(len(rec.calls[0][1]["entities"]), 2)
        self.assertEqual(rec.calls[1][1]["relations"][0], {"from": "Ada Lovelace", "to": "Analytical Engine", "relationType": "created"})
        self.assertEqual(rec.refreshes, 2)

        req = endpoint.requests[0]
        self.assertEqual(set(req), {"model", "messages", "tools", "temperature"})
        self.assertEqual(req["tools"][0]["function"]["name"], "record_knowledge")

    async def test_empty_extraction_skips_mutations(self):
        endpoint = FakeEndpoint(lambda body: httpx.Response(200, json=content_response('{"entities": [], "relations": []}')))
        rec = RecordingRegistry()
        extractor = KnowledgeExtractor(llm=endpoint.client(), registry=rec.registry, refresh=rec.refresh, refresh_delay_s=0)

        await extractor.run("Nothing to see.")
        self.assertEqual(rec.calls, [])
        self.assertEqual(rec.refreshes, 2)

    async def test_missing_capability_fails_before_network(self):
        endpoint = FakeEndpoint(lambda body: httpx.Response(200, json=tool_call_response(ADA_ARGS)))

        async def noop(args):
            return []

        registry = CapabilityRegistry(tools=[FunctionCapability("create_entities", noop)])
        extractor = KnowledgeExtractor(llm=endpoint.client(), registry=registry, refresh_delay_s=0)

        with self.assertRaises(ToolUnavailable) as ctx:
            await extractor.run("Ada")
        self.assertEqual(ctx.exception.names, ["create_relations"])
        self.assertEqual(endpoint.calls, 0)

    async def test_unparseable_response(self):
        endpoint = FakeEndpoint(lambda body: httpx.Response(200, json=content_response("no structure at all")))
        rec = RecordingRegistry()
        extractor = KnowledgeExtractor(llm=endpoint.client(), registry=rec.registry, refresh=rec.refresh, refresh_delay_s=0)

        with self.assertRaises(ExtractionShapeError):
            await extractor.run("Ada")
        self.assertEqual(rec.calls, [])
        self.assertEqual(rec.refreshes, 0)

    async def test_bad_tool_arguments(self):
        endpoint = FakeEndpoint(lambda body: httpx.Response(200, json=tool_call_response('{"entities": [,]')))
        rec = RecordingRegistry()
        extractor = KnowledgeExtractor(llm=endpoint.client(), registry=rec.registry, refresh_delay_s=0)

        with self.assertRaises(ToolCallArgError):
            await extractor.run("Ada")
        self.assertEqual(rec.calls, [])

    async def test_concurrent_extractions_union_in_store(self):
        def script(body):
            text = last_user_text(body)
            if "Turing" in text:
                args = {
                    "entities": [{"name": "Alan Turing", "entityType": "person", "observations": []}],
                    "relations": [{"from": "Alan Turing", "to": "Ada Lovelace", "relationType": "knows"}],
                }
            else:
                args = json.loads(ADA_ARGS)
            return httpx.Response(200, json=tool_call_response(json.dumps(args)))

        endpoint = FakeEndpoint(script)
        store = LocalGraphStore(":memory:")
        try:
            registry = store.registry()
            a = KnowledgeExtractor(llm=endpoint.client(), registry=registry, refresh_delay_s=0)
            b = KnowledgeExtractor(llm=endpoint.client(), registry=registry, refresh_delay_s=0)

            await asyncio.gather(a.run("About Ada Lovelace."), b.run("About Alan Turing."))

            graph = read_graph(store.conn)
            names = {e["name"] for e in graph["entities"]}
            self.assertEqual(names, {"Ada Lovelace", "Analytical Engine", "Alan Turing"})
            self.assertEqual(len(graph["relations"]), 2)
        finally:
            store.close()


if __name__ == "__main__":
    unittest.main()
