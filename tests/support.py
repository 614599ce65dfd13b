"""Shared fakes for the completion endpoint."""

import json

import httpx

from memorycore.chat.llm import ChatCompletionClient
from memorycore.config import SystemConfig, save_system_config
from memorycore.store.kv import MemoryKeyValueStore


API_URL = "https://llm.test/v1/chat/completions"


def sse_frames(fragments, done=True):
    lines = [f"data: {json.dumps({'choices': [{'delta': {'content': f}}]})}\n" for f in fragments]
    if done:
        lines.append("data: [DONE]\n")
    return "".join(lines)


def split_every(text, size):
    return [text[i : i + size] for i in range(0, len(text), size)]


def streaming_response(chunks, status_code=200):
    async def gen():
        for c in chunks:
            yield c.encode("utf-8") if isinstance(c, str) else c

    return httpx.Response(status_code, content=gen(), headers={"content-type": "text/event-stream"})


def tool_call_response(arguments):
    return {
        "choices": [
            {
                "message": {
                    "role": "assistant",
                    "content": None,
                    "tool_calls": [{"type": "function", "function": {"name": "record_knowledge", "arguments": arguments}}],
                }
            }
        ]
    }


def content_response(content):
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


class FakeEndpoint:
    """MockTransport handler that records requests and replays a script.

    `script` is a callable(request_json) -> httpx.Response, so one endpoint
    can answer chat, extraction and preference requests differently.
    """

    def __init__(self, script):
        self.script = script
        self.requests = []

    @property
    def calls(self):
        return len(self.requests)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content or b"{}")
        self.requests.append(body)
        return self.script(body)

    def transport(self):
        return httpx.MockTransport(self)

    def client(self):
        return ChatCompletionClient(api_url=API_URL, api_key="sk-test", model="test-model", transport=self.transport())


def configured_kv(**overrides):
    kv = MemoryKeyValueStore()
    fields = {"mcp_address": "", "api_url": API_URL, "api_key": "sk-test", "ai_model": "test-model"}
    fields.update(overrides)
    save_system_config(kv, SystemConfig(**fields))
    return kv


def last_user_text(body):
    return body["messages"][-1]["content"]
