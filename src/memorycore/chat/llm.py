from __future__ import annotations

from dataclasses import dataclass
from typing import Any, AsyncIterator

import httpx

from ..errors import TransportError
from ..logging_config import get_logger

logger = get_logger(__name__)


# Sampling parameters for conversational turns.
CHAT_MAX_TOKENS = 1000
CHAT_TEMPERATURE = 0.7
CHAT_TOP_P = 0.7


@dataclass(frozen=True)
class ChatMessage:
    role: str
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


class ChatCompletionClient:
    """Client for an OpenAI-compatible chat-completions endpoint.

    `api_url` is the full completions URL; it is posted to as-is.
    """

    def __init__(
        self,
        *,
        api_url: str,
        api_key: str,
        model: str,
        timeout_s: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_url = api_url
        self.api_key = api_key
        self.model = model
        self.timeout_s = timeout_s
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout_s, transport=self._transport)

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }

    async def complete(
        self,
        messages: list[ChatMessage],
        *,
        tools: list[dict[str, Any]] | None = None,
        temperature: float | None = None,
    ) -> dict[str, Any]:
        """Non-streaming request; returns the decoded response body."""
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [m.to_dict() for m in messages],
        }
        if tools:
            payload["tools"] = tools
        if temperature is not None:
            payload["temperature"] = temperature

        try:
            async with self._client() as client:
                r = await client.post(self.api_url, json=payload, headers=self._headers())
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise TransportError(f"Failed to reach completion endpoint {self.api_url} ({e})") from e

        if not r.is_success:
            raise TransportError(f"Completion request failed: {r.status_code} {r.text}", status=r.status_code)

        try:
            data = r.json()
        except ValueError as e:
            raise TransportError(f"Completion endpoint returned non-JSON body: {r.text[:200]}") from e
        if not isinstance(data, dict):
            raise TransportError(f"Unexpected completion response: {data}")
        return data

    async def stream_text(self, messages: list[ChatMessage]) -> AsyncIterator[str]:
        """Streaming request; yields decoded body text exactly as it arrives.

        Chunk boundaries are whatever the transport delivers; callers do
        their own line framing.
        """
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [m.to_dict() for m in messages],
            "stream": True,
            "max_tokens": CHAT_MAX_TOKENS,
            "temperature": CHAT_TEMPERATURE,
            "top_p": CHAT_TOP_P,
        }

        try:
            async with self._client() as client:
                async with client.stream("POST", self.api_url, json=payload, headers=self._headers()) as r:
                    if not r.is_success:
                        body = (await r.aread()).decode("utf-8", errors="replace")
                        raise TransportError(
                            f"Completion request failed: {r.status_code} {body[:200]}",
                            status=r.status_code,
                        )
                    logger.debug(f"Streaming response from {self.api_url} (model={self.model})")
                    async for text in r.aiter_text():
                        yield text
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise TransportError(f"Stream from {self.api_url} failed ({e})") from e


def first_choice_message(data: dict[str, Any]) -> dict[str, Any]:
    """`choices[0].message` of a non-streamed response, or {}."""
    choices = data.get("choices") or []
    if not choices or not isinstance(choices[0], dict):
        return {}
    msg = choices[0].get("message") or {}
    return msg if isinstance(msg, dict) else {}
