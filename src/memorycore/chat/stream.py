"""Line framing and decoding for `data:`-prefixed completion streams."""

from __future__ import annotations

import json
from dataclasses import dataclass

from ..errors import StreamFrameParseError


DONE_SENTINEL = "[DONE]"


@dataclass(frozen=True)
class Frame:
    done: bool = False
    content: str = ""


class FrameDecoder:
    """Split streamed text into complete lines.

    A trailing partial line is held back until the next chunk completes it,
    so a frame split across two reads is reassembled rather than dropped.
    """

    def __init__(self) -> None:
        self._buffer = ""

    def feed(self, chunk: str) -> list[str]:
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split("\n")
        return [ln.rstrip("\r") for ln in lines if ln.strip()]

    def flush(self) -> list[str]:
        rest, self._buffer = self._buffer.rstrip("\r"), ""
        return [rest] if rest.strip() else []


def parse_frame(line: str) -> Frame | None:
    """Decode one line. Returns None for lines that are not data frames.

    Raises StreamFrameParseError when the payload is not a JSON object.
    """
    if not line.startswith("data:"):
        # Comments / keepalives (":") and other SSE fields.
        return None
    data = line[5:].strip()
    if data == DONE_SENTINEL:
        return Frame(done=True)

    try:
        obj = json.loads(data)
    except json.JSONDecodeError as e:
        raise StreamFrameParseError(f"Bad stream frame {data[:80]!r}: {e}") from e
    if not isinstance(obj, dict):
        raise StreamFrameParseError(f"Stream frame is not an object: {data[:80]!r}")

    choices = obj.get("choices") or []
    if not choices or not isinstance(choices[0], dict):
        return Frame()
    choice = choices[0]
    delta = choice.get("delta") or {}
    message = choice.get("message") or {}
    content = (delta.get("content") if isinstance(delta, dict) else None) or (
        message.get("content") if isinstance(message, dict) else None
    )
    return Frame(content=content if isinstance(content, str) else "")
