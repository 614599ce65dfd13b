from __future__ import annotations

import json

from ..logging_config import get_logger
from ..tools.registry import CapabilityRegistry, first_text
from .view import GraphView, build_view

logger = get_logger(__name__)


READ_GRAPH = "read_graph"


class GraphService:
    """Local projection of the external graph store.

    `refresh()` re-reads the whole graph and replaces `view`; the previous
    projection is discarded, never merged. Failures leave the last good
    view in place and are reported through `error`.
    """

    def __init__(self, registry: CapabilityRegistry):
        self.registry = registry
        self.view = GraphView()
        self.error: str | None = None
        self.is_loading = False
        self.refresh_count = 0

    @property
    def has_read_graph(self) -> bool:
        return self.registry.tool(READ_GRAPH) is not None

    async def refresh(self) -> GraphView | None:
        tool = self.registry.tool(READ_GRAPH)
        if not self.registry.is_connected or tool is None:
            self.error = "Capability provider not connected or read_graph unavailable"
            logger.warning(self.error)
            return None

        self.is_loading = True
        self.error = None
        try:
            result = await tool.execute({})
            text = first_text(result)
            if text is None:
                self.error = "read_graph returned no text content"
                logger.warning(self.error)
                return None
            try:
                data = json.loads(text)
            except json.JSONDecodeError as e:
                self.error = f"Failed to parse graph data: {e}"
                logger.warning(self.error)
                return None
            if not isinstance(data, dict) or "entities" not in data or "relations" not in data:
                self.error = "Graph data is missing entities or relations"
                logger.warning(self.error)
                return None

            self.view = build_view(data["entities"] or [], data["relations"] or [])
            self.refresh_count += 1
            logger.debug(f"Graph refreshed: {len(self.view.nodes)} nodes, {len(self.view.edges)} edges")
            return self.view
        except Exception as e:
            self.error = f"Failed to read graph: {e}"
            logger.warning(self.error)
            return None
        finally:
            self.is_loading = False
