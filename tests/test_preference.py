import unittest

import httpx

from memorycore.chat.preference import PreferenceExtractor, rendered_text
from memorycore.errors import PreferenceParseError
from memorycore.graph.sqlite_graph import LocalGraphStore, get_preferences
from memorycore.tools.registry import CapabilityRegistry, FunctionCapability

from support import FakeEndpoint, content_response, last_user_text


class TestPreferenceExtractor(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.graph = LocalGraphStore(":memory:")

    def tearDown(self):
        self.graph.close()

    async def test_updates_preferences(self):
        endpoint = FakeEndpoint(lambda body: httpx.Response(200, json=content_response('```json\n{"language": "French"}\n```')))
        extractor = PreferenceExtractor(llm=endpoint.client(), registry=self.graph.registry())

        prefs = await extractor.run("Please answer in French from now on.")

        self.assertEqual(prefs, {"language": "French"})
        self.assertEqual(get_preferences(self.graph.conn), {"language": "French"})
        self.assertIn("Please answer in French from now on.", last_user_text(endpoint.requests[0]))

    async def test_later_values_overwrite(self):
        replies = ['{"tone": "formal", "language": "French"}', '{"tone": "casual"}']
        endpoint = FakeEndpoint(lambda body: httpx.Response(200, json=content_response(replies.pop(0))))
        extractor = PreferenceExtractor(llm=endpoint.client(), registry=self.graph.registry())

        await extractor.run("one")
        await extractor.run("two")
        self.assertEqual(get_preferences(self.graph.conn), {"tone": "casual", "language": "French"})

    async def test_non_object_reply(self):
        for reply in ["plain words", "[1, 2]"]:
            with self.subTest(reply=reply):
                endpoint = FakeEndpoint(lambda body, r=reply: httpx.Response(200, json=content_response(r)))
                extractor = PreferenceExtractor(llm=endpoint.client(), registry=self.graph.registry())
                with self.assertRaises(PreferenceParseError):
                    await extractor.run("hi")
        self.assertEqual(get_preferences(self.graph.conn), {})

    async def test_skipped_without_template(self):
        async def update(args):
            return []

        endpoint = FakeEndpoint(lambda body: httpx.Response(200, json=content_response("{}")))
        registry = CapabilityRegistry(tools=[FunctionCapability("update_user_preference", update)])
        extractor = PreferenceExtractor(llm=endpoint.client(), registry=registry)

        self.assertIsNone(await extractor.run("hi"))
        self.assertEqual(endpoint.calls, 0)


class TestRenderedText(unittest.TestCase):
    def test_shapes(self):
        self.assertEqual(rendered_text({"messages": [{"role": "user", "content": {"type": "text", "text": "hi"}}]}), "hi")
        self.assertEqual(rendered_text({"messages": [{"role": "user", "content": "plain"}]}), "plain")
        self.assertIsNone(rendered_text({"messages": []}))


if __name__ == "__main__":
    unittest.main()
