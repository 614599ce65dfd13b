from __future__ import annotations

import uuid
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from ..errors import StreamFrameParseError, TransportError
from ..logging_config import get_logger
from .llm import ChatCompletionClient, ChatMessage
from .stream import FrameDecoder, parse_frame

logger = get_logger(__name__)


APOLOGY = "Sorry, the request failed. Please try again later."


def new_message_id() -> str:
    return uuid.uuid4().hex


@dataclass
class Message:
    role: str
    content: str
    id: str = field(default_factory=new_message_id)

    def to_chat(self) -> ChatMessage:
        return ChatMessage(role=self.role, content=self.content)


class SessionState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    RECEIVING = "receiving"
    COMPLETED = "completed"
    FAILED = "failed"


class StreamingChatSession:
    """One request/response turn against a streaming completion endpoint.

    The assistant reply is a single placeholder message whose content is
    replaced with the full accumulated text after every delta, so it only
    ever grows. `on_update` is called with that message each time.
    """

    def __init__(
        self,
        *,
        llm: ChatCompletionClient,
        transcript: list[Message],
        on_update: Callable[[Message], None] | None = None,
    ):
        self.llm = llm
        self.transcript = list(transcript)
        self.on_update = on_update
        self.state = SessionState.IDLE
        self.user_message: Message | None = None
        self.reply: Message | None = None
        self.error: TransportError | None = None
        self.skipped_frames = 0

    async def run(self, user_text: str) -> Message:
        if self.state is not SessionState.IDLE:
            raise RuntimeError("A chat session runs exactly one turn")

        self.user_message = Message(role="user", content=user_text)
        self.reply = Message(role="assistant", content="")
        self.state = SessionState.SENDING

        messages = [m.to_chat() for m in self.transcript] + [self.user_message.to_chat()]
        decoder = FrameDecoder()
        accumulated = ""

        try:
            async with aclosing(self.llm.stream_text(messages)) as chunks:
                async for chunk in chunks:
                    if self.state is SessionState.SENDING:
                        self.state = SessionState.RECEIVING
                    done = False
                    for line in decoder.feed(chunk):
                        done, accumulated = self._apply_line(line, accumulated)
                        if done:
                            break
                    if done:
                        break
                else:
                    for line in decoder.flush():
                        _, accumulated = self._apply_line(line, accumulated)
        except TransportError as e:
            logger.error(f"Chat request failed: {e}")
            self.error = e
            self.state = SessionState.FAILED
            self.reply.content = APOLOGY
            self._notify()
            return self.reply

        self.state = SessionState.COMPLETED
        logger.debug(f"Chat turn completed ({len(accumulated)} chars, {self.skipped_frames} bad frames)")
        return self.reply

    def _apply_line(self, line: str, accumulated: str) -> tuple[bool, str]:
        try:
            frame = parse_frame(line)
        except StreamFrameParseError as e:
            self.skipped_frames += 1
            logger.warning(str(e))
            return False, accumulated
        if frame is None:
            return False, accumulated
        if frame.done:
            return True, accumulated
        if frame.content:
            accumulated += frame.content
            assert self.reply is not None
            self.reply.content = accumulated
            self._notify()
        return False, accumulated

    def _notify(self) -> None:
        if self.on_update is not None and self.reply is not None:
            self.on_update(self.reply)
