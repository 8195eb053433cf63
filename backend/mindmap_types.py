"""Type definitions and helpers for conversation mindmaps."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass
from typing import Any, NotRequired, TypedDict

NODE_TYPES = ("topic", "subtopic", "detail", "summary")

LEVEL_COLORS = {1: "#4A90E2", 2: "#50C878", 3: "#FFB347"}
LEVEL_SIZES = {1: 20, 2: 18, 3: 15}
EDGE_COLOR = "#888888"
EDGE_TYPE = "hierarchical"
SUMMARY_COLOR = "#9B9B9B"
SUMMARY_SIZE = 15


class NodeMetadata(TypedDict, total=False):
    firstMentioned: float
    speaker: str
    transcriptIndices: list[int]
    summarizedNodes: list[str]


class Node(TypedDict):
    """Node in the conversation mindmap."""
    id: str
    label: str
    type: str
    level: int
    color: NotRequired[str]
    size: NotRequired[int]
    metadata: NotRequired[NodeMetadata]
    expandable: NotRequired[bool]


# 'from' is a keyword, so Edge uses the functional syntax.
Edge = TypedDict(
    "Edge",
    {
        "id": str,
        "from": str,
        "to": str,
        "type": NotRequired[str],
        "color": NotRequired[str],
    },
)


class GraphMetadata(TypedDict):
    sessionId: str | None
    lastUpdated: int | None
    version: int
    totalTranscripts: int
    error: NotRequired[str]
    warning: NotRequired[str]


class Graph(TypedDict):
    """Complete mindmap snapshot."""
    nodes: list[Node]
    edges: list[Edge]
    metadata: GraphMetadata


class Delta(TypedDict, total=False):
    nodes: list[dict]
    edges: list[dict]


@dataclass
class TranscriptTurn:
    speaker: str
    text: str
    start_at: Any = None

    @classmethod
    def from_row(cls, row: Any) -> "TranscriptTurn":
        if isinstance(row, TranscriptTurn):
            return row
        if isinstance(row, dict):
            return cls(
                speaker=str(row.get("speaker") or ""),
                text=str(row.get("text") or ""),
                start_at=row.get("start_at"),
            )
        return cls(
            speaker=str(getattr(row, "speaker", "") or ""),
            text=str(getattr(row, "text", "") or ""),
            start_at=getattr(row, "start_at", None),
        )


def now_ms() -> int:
    return int(time.time() * 1000)


def generate_id(prefix: str) -> str:
    return f"{prefix}-{now_ms()}-{uuid.uuid4().hex[:9]}"


def empty_graph(session_id: str | None) -> Graph:
    return {
        "nodes": [],
        "edges": [],
        "metadata": {
            "sessionId": session_id,
            "lastUpdated": None,
            "version": 0,
            "totalTranscripts": 0,
        },
    }


def graph_version(graph: dict | None) -> int:
    try:
        return int(((graph or {}).get("metadata") or {}).get("version") or 0)
    except (TypeError, ValueError):
        return 0


def node_level(node: dict) -> int:
    try:
        level = int(node.get("level") or 1)
    except (TypeError, ValueError):
        return 1
    return level if level >= 1 else 1


def first_mentioned(node: dict) -> float:
    meta = node.get("metadata")
    if not isinstance(meta, dict):
        return 0
    try:
        return float(meta.get("firstMentioned") or 0)
    except (TypeError, ValueError):
        return 0


def dangling_edges(graph: dict) -> list[dict]:
    """Return edges whose endpoints are not nodes of the same graph."""
    ids = {n.get("id") for n in graph.get("nodes") or []}
    return [e for e in graph.get("edges") or [] if e.get("from") not in ids or e.get("to") not in ids]


def sanitize_candidate(data: dict) -> tuple[list[Node], list[Edge]]:
    """
    Make generated nodes/edges safe to commit.

    Non-dict entries are dropped and missing ids are generated. Duplicate node ids keep the
    first occurrence, unknown node types follow the level, and edges pointing at unknown
    node ids are dropped.
    """
    nodes: list[Node] = []
    seen_ids: set[str] = set()
    for raw in data.get("nodes") or []:
        if not isinstance(raw, dict):
            continue
        node = dict(raw)
        node_id = str(node.get("id") or "").strip() or generate_id("node")
        if node_id in seen_ids:
            continue
        seen_ids.add(node_id)
        node["id"] = node_id
        node["label"] = str(node.get("label") or "")
        node["level"] = node_level(node)
        if node.get("type") not in NODE_TYPES:
            node["type"] = NODE_TYPES[min(node["level"], 3) - 1]
        nodes.append(node)  # type: ignore[arg-type]

    edges: list[Edge] = []
    edge_ids: set[str] = set()
    for raw in data.get("edges") or []:
        if not isinstance(raw, dict):
            continue
        edge = dict(raw)
        src = str(edge.get("from") or "")
        dst = str(edge.get("to") or "")
        if src not in seen_ids or dst not in seen_ids:
            continue
        edge_id = str(edge.get("id") or "").strip()
        if not edge_id or edge_id in edge_ids:
            edge_id = generate_id("edge")
        edge_ids.add(edge_id)
        edge.update({"id": edge_id, "from": src, "to": dst})
        edges.append(edge)  # type: ignore[arg-type]
    return nodes, edges
