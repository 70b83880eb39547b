"""Prerequisite forest: normalization of LLM output and pure tree operations.

A forest is a list of node dicts ({id, label, description, completed,
children?}) at most two levels deep. Nothing here mutates its input and
nothing here raises on an unknown id.
"""
import logging

logger = logging.getLogger(__name__)

MAX_DEPTH = 2

# === Normalization ===

def _normalize_node(raw, position, depth):
    node_id = raw.get("id")
    node_id = str(node_id) if node_id not in (None, "") else position
    label = raw.get("label")
    node = {
        "id": node_id,
        "label": str(label) if label else node_id,
        "description": str(raw.get("description") or ""),
        "completed": False,
    }
    children = raw.get("children")
    if depth + 1 < MAX_DEPTH and isinstance(children, list) and children:
        node["children"] = _normalize_nodes(children, position, depth + 1)
    elif children:
        logger.warning("Dropping children below max depth for node %r", node_id)
    return node

def _normalize_nodes(raw_nodes, prefix, depth):
    nodes = []
    for i, raw in enumerate(raw_nodes, start=1):
        if not isinstance(raw, dict):
            continue
        position = f"{prefix}.{i}" if prefix else str(i)
        nodes.append(_normalize_node(raw, position, depth))
    return nodes

def normalize_forest(raw):
    """Turn whatever the LLM returned for `prerequisites` into a forest."""
    if not isinstance(raw, list):
        if raw is not None:
            logger.warning("prerequisites was %s, not a list; using []", type(raw).__name__)
        return []
    return _normalize_nodes(raw, "", 0)

def normalize_solution(raw):
    """Turn whatever the LLM returned for `similarSolution` into a step list."""
    if not isinstance(raw, list):
        if raw is not None:
            logger.warning("similarSolution was %s, not a list; using []", type(raw).__name__)
        return []
    steps = []
    for raw_step in raw:
        if not isinstance(raw_step, dict):
            continue
        ids = raw_step.get("prerequisiteIds")
        steps.append({
            "step": str(raw_step.get("step") or ""),
            "explanation": str(raw_step.get("explanation") or ""),
            "prerequisiteIds": [str(i) for i in ids] if isinstance(ids, list) else [],
        })
    return steps

# === Tree operations ===

def _copy_node(node):
    copy = dict(node)
    if "children" in node and node["children"] is not None:
        copy["children"] = [_copy_node(c) for c in node["children"]]
    return copy

def _toggle_first(nodes, node_id):
    updated = []
    found = False
    for node in nodes:
        if found:
            updated.append(_copy_node(node))
        elif node.get("id") == node_id:
            copy = _copy_node(node)
            copy["completed"] = not node.get("completed", False)
            updated.append(copy)
            found = True
        elif node.get("children"):
            children, found = _toggle_first(node["children"], node_id)
            copy = dict(node)
            copy["children"] = children
            updated.append(copy)
        else:
            updated.append(_copy_node(node))
    return updated, found

def toggle(forest, node_id):
    """Return a copy of `forest` with the first node matching `node_id` flipped.

    Search is depth-first pre-order, so with duplicate ids only the first one
    encountered changes. An unknown id gives back an equal copy.
    """
    updated, _ = _toggle_first(forest, node_id)
    return updated

def find_label(forest, node_id):
    """Label of the first node (pre-order) with `node_id`, or None."""
    for node in forest:
        if node.get("id") == node_id:
            return node.get("label")
        if node.get("children"):
            found = find_label(node["children"], node_id)
            if found is not None:
                return found
    return None

def label_or_id(forest, node_id):
    label = find_label(forest, node_id)
    return label if label is not None else node_id

def all_completed(forest):
    # A root with no children only needs its own flag.
    return all(
        node.get("completed") and all(c.get("completed") for c in node.get("children") or [])
        for node in forest
    )

def iter_nodes(forest):
    """Yield every node, roots before their children."""
    for node in forest:
        yield node
        yield from node.get("children") or []

def progress(forest):
    nodes = list(iter_nodes(forest))
    done = sum(1 for n in nodes if n.get("completed"))
    return {"completed": done, "total": len(nodes)}
