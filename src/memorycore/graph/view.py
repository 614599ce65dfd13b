from __future__ import annotations

import html
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence


NODE_COLORS = {
    "person": "#3B82F6",
    "concept": "#8B5CF6",
    "event": "#EC4899",
    "location": "#10B981",
    "organization": "#F59E0B",
}
DEFAULT_NODE_COLOR = "#6B7280"

EDGE_COLORS = {
    "knows": "#60A5FA",
    "related_to": "#A78BFA",
    "located_in": "#34D399",
    "works_for": "#FBBF24",
    "created": "#F472B6",
}
DEFAULT_EDGE_COLOR = "#9CA3AF"


@dataclass(frozen=True)
class GraphNode:
    id: str
    label: str
    type: str
    color: str
    border: str
    title: str
    properties: dict[str, Any] = field(default_factory=dict)
    shape: str = "hexagon"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "type": self.type,
            "shape": self.shape,
            "color": {"background": self.color, "border": self.border},
            "title": self.title,
            "properties": self.properties,
        }


@dataclass(frozen=True)
class GraphEdge:
    id: str
    key: str
    from_: str
    to: str
    label: str
    color: str
    highlight: str
    title: str
    properties: dict[str, Any] = field(default_factory=dict)
    arrows: str = "to"
    width: int = 2

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "key": self.key,
            "from": self.from_,
            "to": self.to,
            "label": self.label,
            "arrows": self.arrows,
            "color": {"color": self.color, "highlight": self.highlight},
            "width": self.width,
            "title": self.title,
            "properties": self.properties,
        }


@dataclass(frozen=True)
class GraphView:
    nodes: list[GraphNode] = field(default_factory=list)
    edges: list[GraphEdge] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"nodes": [n.to_dict() for n in self.nodes], "edges": [e.to_dict() for e in self.edges]}

    def node(self, node_id: str) -> GraphNode | None:
        for n in self.nodes:
            if n.id == node_id:
                return n
        return None

    def display_name(self, node_id: str) -> str:
        # Relations may point at names that are not (yet) entities.
        n = self.node(node_id)
        return n.label if n is not None else node_id


def node_color(entity_type: str | None) -> str:
    return NODE_COLORS.get((entity_type or "").lower(), DEFAULT_NODE_COLOR)


def edge_color(relation_type: str | None) -> str:
    return EDGE_COLORS.get((relation_type or "").lower(), DEFAULT_EDGE_COLOR)


def lighter(color: str, amount: int = 40) -> str:
    """Brighten each RGB channel of a #RRGGBB color, capped at 255."""
    hex_part = color.lstrip("#")
    if len(hex_part) != 6:
        return color
    try:
        channels = [int(hex_part[i : i + 2], 16) for i in (0, 2, 4)]
    except ValueError:
        return color
    return "#" + "".join(f"{min(255, c + amount):02X}" for c in channels)


def relation_key(from_: str, relation_type: str, to: str) -> str:
    return f"{from_}|{relation_type}|{to}"


def _format_properties(properties: Mapping[str, Any]) -> str:
    out = "<div>Properties:</div><ul>"
    for k, v in properties.items():
        value = ", ".join(str(x) for x in v) if isinstance(v, (list, tuple)) else str(v)
        out += f"<li>{html.escape(str(k))}: {html.escape(value)}</li>"
    return out + "</ul>"


def node_tooltip(label: str, entity_type: str, properties: Mapping[str, Any]) -> str:
    out = f"<div><strong>{html.escape(label)}</strong>"
    if entity_type:
        out += f"<div>Type: {html.escape(entity_type)}</div>"
    out += _format_properties(properties)
    return out + "</div>"


def edge_tooltip(label: str, properties: Mapping[str, Any]) -> str:
    out = f"<div><strong>{html.escape(label or 'Relation')}</strong>"
    out += _format_properties(properties)
    return out + "</div>"


def build_view(entities: Sequence[Mapping[str, Any]], relations: Sequence[Mapping[str, Any]]) -> GraphView:
    """Project graph-store entities/relations onto renderable nodes and edges.

    Pure and order-preserving: node ids are entity names, edge ids are
    positional (`e0`, `e1`, ...). Duplicate names are passed through.
    """
    nodes: list[GraphNode] = []
    for ent in entities:
        name = str(ent.get("name", ""))
        etype = str(ent.get("entityType") or "")
        observations = [str(o) for o in (ent.get("observations") or [])]
        props = {"observations": observations}
        bg = node_color(etype)
        nodes.append(
            GraphNode(
                id=name,
                label=name,
                type=etype,
                color=bg,
                border=lighter(bg),
                title=node_tooltip(name, etype, props),
                properties=props,
            )
        )

    edges: list[GraphEdge] = []
    for i, rel in enumerate(relations):
        src = str(rel.get("from", ""))
        dst = str(rel.get("to", ""))
        rtype = str(rel.get("relationType") or "")
        col = edge_color(rtype)
        edges.append(
            GraphEdge(
                id=f"e{i}",
                key=relation_key(src, rtype, dst),
                from_=src,
                to=dst,
                label=rtype,
                color=col,
                highlight=lighter(col),
                title=edge_tooltip(rtype, {}),
                properties={},
            )
        )

    return GraphView(nodes=nodes, edges=edges)
