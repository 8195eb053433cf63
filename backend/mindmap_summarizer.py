"""Graph size bounding (collapsing the oldest nodes into summary nodes)."""

from __future__ import annotations

import logging

from backend.mindmap_types import SUMMARY_COLOR, SUMMARY_SIZE, Graph, first_mentioned, node_level, now_ms

logger = logging.getLogger(__name__)


def create_summary_nodes(older_nodes: list[dict], *, taken_ids: set[str] | None = None) -> list[dict]:
    """One summary node per level, in ascending level order."""
    taken = set(taken_ids or ())
    by_level: dict[int, list[dict]] = {}
    for node in older_nodes:
        by_level.setdefault(node_level(node), []).append(node)

    stamp = now_ms()
    summaries = []
    for level in sorted(by_level):
        group = by_level[level]
        summary_id = f"summary-{level}-{stamp}"
        suffix = 1
        while summary_id in taken:
            summary_id = f"summary-{level}-{stamp}-{suffix}"
            suffix += 1
        taken.add(summary_id)
        summaries.append(
            {
                "id": summary_id,
                "label": f"{len(group)} {group[0].get('type') or 'items'}",
                "type": "summary",
                "level": level,
                "color": SUMMARY_COLOR,
                "size": SUMMARY_SIZE,
                "metadata": {
                    "summarizedNodes": [n.get("id") for n in group],
                    "firstMentioned": min(first_mentioned(n) for n in group),
                },
                "expandable": True,
            }
        )
    return summaries


def rewrite_edges(edges: list[dict], older_ids: set[str], recent_ids: set[str], summaries: list[dict]) -> list[dict]:
    """Re-point edges at summary nodes; drop anything that would dangle."""
    owner: dict[str, str] = {}
    for summary in summaries:
        for node_id in summary["metadata"]["summarizedNodes"]:
            owner.setdefault(node_id, summary["id"])

    out = []
    for edge in edges:
        src, dst = edge.get("from"), edge.get("to")
        src_old, dst_old = src in older_ids, dst in older_ids
        if src_old and dst_old:
            continue
        if src_old:
            if src in owner and dst in recent_ids:
                out.append({**edge, "from": owner[src]})
        elif dst_old:
            if dst in owner and src in recent_ids:
                out.append({**edge, "to": owner[dst]})
        elif src in recent_ids and dst in recent_ids:
            out.append(edge)
    return out


def summarize_older_nodes(graph: Graph | dict, max_nodes: int = 200) -> Graph:
    """
    Keep at most `max_nodes` of the most recently mentioned nodes; collapse the rest.

    Returns `graph` itself when it is already within bounds.
    """
    nodes = list(graph.get("nodes") or [])
    if len(nodes) <= max_nodes:
        return graph  # type: ignore[return-value]

    ordered = sorted(nodes, key=first_mentioned)
    split = len(ordered) - max_nodes
    older, recent = ordered[:split], ordered[split:]
    older_ids = {n.get("id") for n in older}
    recent_ids = {n.get("id") for n in recent}

    summaries = create_summary_nodes(older, taken_ids=recent_ids | older_ids)
    edges = rewrite_edges(list(graph.get("edges") or []), older_ids, recent_ids, summaries)
    logger.info(
        f"Summarized {len(older)} older nodes into {len(summaries)} summary nodes "
        f"({len(nodes)} -> {len(recent) + len(summaries)} nodes)"
    )
    return {
        "nodes": recent + summaries,
        "edges": edges,
        "metadata": graph.get("metadata"),
    }  # type: ignore[return-value]
