from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable

import httpx

from .chat.llm import ChatCompletionClient
from .chat.preference import PreferenceExtractor
from .chat.session import Message, SessionState, StreamingChatSession
from .config import Settings, SystemConfig, load_system_config
from .graph.extract import Extraction, KnowledgeExtractor
from .graph.service import GraphService
from .graph.sqlite_graph import LocalGraphStore
from .logging_config import get_logger
from .store.kv import KeyValueStore
from .store.messages import MessageStore
from .tasks import Notifier, TaskTracker
from .tools.mcp_client import MCPConnection
from .tools.registry import CapabilityRegistry

logger = get_logger(__name__)


@asynccontextmanager
async def open_capabilities(settings: Settings, mcp_address: str | None) -> AsyncIterator[CapabilityRegistry]:
    """Yield a registry from the MCP server, or from the local graph store when no address is set."""
    if mcp_address:
        async with MCPConnection(mcp_address) as registry:
            yield registry
        return

    logger.info(f"No MCP address configured; using local graph store at {settings.graph_db_path}")
    store = LocalGraphStore(settings.graph_db_path)
    try:
        yield store.registry()
    finally:
        store.close()


class Assistant:
    """One conversation plus the side operations hanging off it.

    Chat turns run inline. Knowledge and preference extraction run as
    tracked tasks, so their failures are reported but never reach the
    chat flow.
    """

    def __init__(
        self,
        *,
        kv: KeyValueStore,
        registry: CapabilityRegistry | None = None,
        settings: Settings | None = None,
        notify: Notifier | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings or Settings()
        self.kv = kv
        self.registry = registry or CapabilityRegistry()
        self.store = MessageStore(kv)
        self.graph = GraphService(self.registry)
        self.tasks = TaskTracker(notify)
        self.messages: list[Message] = []
        # Reply contents with an extraction in flight.
        self.processing: set[str] = set()
        self._transport = transport

    @property
    def notify(self) -> Notifier:
        return self.tasks.notify

    def llm(self, cfg: SystemConfig | None = None) -> ChatCompletionClient:
        cfg = cfg or load_system_config(self.kv)
        return ChatCompletionClient(
            api_url=cfg.api_url,
            api_key=cfg.api_key,
            model=cfg.ai_model,
            timeout_s=self.settings.http_timeout_s,
            transport=self._transport,
        )

    def find(self, message_id: str) -> Message | None:
        for m in self.messages:
            if m.id == message_id:
                return m
        return None

    def last_reply(self) -> Message | None:
        for m in reversed(self.messages):
            if m.role == "assistant":
                return m
        return None

    async def send_message(self, text: str, on_update: Callable[[Message], None] | None = None) -> Message:
        """Run one chat turn and return the assistant reply."""
        session = await self.chat_turn(text, on_update)
        assert session.reply is not None
        return session.reply

    async def chat_turn(
        self, text: str, on_update: Callable[[Message], None] | None = None
    ) -> StreamingChatSession:
        """Run one chat turn and return its finished session.

        Configuration is validated first; ConfigMissing / ConfigIncomplete
        propagate without any request being made.
        """
        if not text.strip():
            raise ValueError("Message is empty")
        cfg = load_system_config(self.kv)
        llm = self.llm(cfg)

        session = StreamingChatSession(llm=llm, transcript=self.messages, on_update=on_update)
        reply = await session.run(text)
        assert session.user_message is not None
        self.messages.extend([session.user_message, reply])

        if session.state is SessionState.FAILED:
            self.notify("Request failed", str(session.error), "error")
            return session

        self.tasks.spawn(
            "preference",
            PreferenceExtractor(llm=llm, registry=self.registry).run(text),
            subject=session.user_message.id,
        )
        return session

    def is_saved(self, message: Message) -> bool:
        return message.role == "assistant" and self.store.contains(message.content)

    def save_message(self, message_id: str) -> bool:
        """Retain an assistant reply and start knowledge extraction for it.

        Returns: True when newly saved, False when ignored or a duplicate.
        """
        msg = self.find(message_id)
        if msg is None:
            raise KeyError(f"Unknown message id: {message_id}")
        if msg.role != "assistant" or not msg.content.strip():
            return False

        if not self.store.add(msg.content):
            self.notify("Already saved", "This reply has been saved before.", "info")
            return False

        self.notify("Saved", "Reply saved to local storage.", "info")
        self._spawn_extraction(msg.content, subject=msg.id)
        return True

    def extract_saved(self, index: int) -> asyncio.Task | None:
        """Re-run knowledge extraction for a stored reply."""
        saved = self.store.get(index)
        return self._spawn_extraction(saved.content, subject=f"saved:{index}")

    def _spawn_extraction(self, content: str, *, subject: str) -> asyncio.Task | None:
        # Saved-entry indexes shift on remove; guard on content.
        if content in self.processing:
            logger.info(f"Extraction already running for {subject}")
            return None
        self.processing.add(content)
        return self.tasks.spawn(
            "knowledge",
            self.extract_knowledge(content),
            subject=subject,
            on_done=lambda _record: self.processing.discard(content),
        )

    async def extract_knowledge(self, content: str) -> Extraction:
        extractor = KnowledgeExtractor(
            llm=self.llm(),
            registry=self.registry,
            refresh=self.graph.refresh,
            refresh_delay_s=self.settings.refresh_delay_s,
        )
        extraction = await extractor.run(content)
        self.notify(
            "Knowledge extracted",
            f"{len(extraction.entities)} entities, {len(extraction.relations)} relations",
            "info",
        )
        return extraction
