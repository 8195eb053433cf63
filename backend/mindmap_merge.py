"""Fuzzy node deduplication and delta merging for mindmaps."""

from __future__ import annotations

import copy
import logging

from backend.mindmap_types import Delta, Graph, generate_id, graph_version, now_ms

logger = logging.getLogger(__name__)

SIMILARITY_THRESHOLD = 0.5


def _normalize_label(label: object) -> str:
    if label is None:
        return ""
    return " ".join(str(label).lower().split())


def similar(label_a: object, label_b: object, *, threshold: float = SIMILARITY_THRESHOLD) -> bool:
    """
    Cheap label similarity, biased toward merging.

    True on case-insensitive equality, when one label contains the other, or when the
    shared word ratio |A & B| / max(|A|, |B|) exceeds `threshold`. Empty labels never match.
    """
    a = _normalize_label(label_a)
    b = _normalize_label(label_b)
    if not a or not b:
        return False
    if a == b:
        return True
    if a in b or b in a:
        return True
    words_a = set(a.split())
    words_b = set(b.split())
    overlap = len(words_a & words_b) / max(len(words_a), len(words_b))
    return overlap > threshold


def merge_delta(existing: Graph | dict, delta: Delta | dict) -> Graph:
    """
    Merge a partial `{nodes, edges}` delta into a copy of `existing`.

    Incoming nodes similar to a node already present are folded into it (transcript
    indices concatenated, identity and visuals kept); the rest are appended. Edges are
    appended unless the same (from, to) pair exists. Version and lastUpdated always move.
    """
    existing = existing or {}
    delta = delta or {}
    merged_nodes: list[dict] = copy.deepcopy(list(existing.get("nodes") or []))
    merged_edges: list[dict] = copy.deepcopy(list(existing.get("edges") or []))
    metadata = dict(existing.get("metadata") or {})
    metadata["version"] = graph_version(existing) + 1
    metadata["lastUpdated"] = now_ms()

    # Delta node id -> id of the node it landed as (itself or the node it merged into).
    aliases: dict[str, str] = {}

    for raw in delta.get("nodes") or []:
        if not isinstance(raw, dict):
            continue
        incoming = copy.deepcopy(raw)
        target = next((n for n in merged_nodes if similar(n.get("label"), incoming.get("label"))), None)
        if target is None:
            incoming["id"] = str(incoming.get("id") or "").strip() or generate_id("node")
            if any(n.get("id") == incoming["id"] for n in merged_nodes):
                incoming["id"] = generate_id("node")
            merged_nodes.append(incoming)
            if raw.get("id"):
                aliases[str(raw["id"])] = incoming["id"]
            continue

        if raw.get("id"):
            aliases[str(raw["id"])] = target["id"]
        incoming_meta = incoming.get("metadata") if isinstance(incoming.get("metadata"), dict) else {}
        indices = incoming_meta.get("transcriptIndices")
        if indices:
            target_meta = target.get("metadata")
            if not isinstance(target_meta, dict):
                target_meta = {}
                target["metadata"] = target_meta
            target_meta["transcriptIndices"] = list(target_meta.get("transcriptIndices") or []) + list(indices)
        logger.debug(f"Merged node '{incoming.get('label')}' into '{target.get('label')}' ({target['id']})")

    node_ids = {n.get("id") for n in merged_nodes}
    pairs = {(e.get("from"), e.get("to")) for e in merged_edges}
    for raw in delta.get("edges") or []:
        if not isinstance(raw, dict):
            continue
        src = aliases.get(str(raw.get("from")), raw.get("from"))
        dst = aliases.get(str(raw.get("to")), raw.get("to"))
        if src not in node_ids or dst not in node_ids:
            continue
        if src == dst and raw.get("from") != raw.get("to"):
            continue
        if (src, dst) in pairs:
            continue
        edge = copy.deepcopy(raw)
        edge.update({"id": edge.get("id") or generate_id("edge"), "from": src, "to": dst})
        merged_edges.append(edge)
        pairs.add((src, dst))

    return {"nodes": merged_nodes, "edges": merged_edges, "metadata": metadata}  # type: ignore[return-value]
