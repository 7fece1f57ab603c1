"""
Tree Kernel — Patch Applier

Pure function: (tree, patch) → ApplyResult

Path grammar:
  /root                    → tree["root"] (value must be a string key)
  /nodes/<key>             → whole node, replaced or deleted
  /nodes/<key>/<subpath>   → nested item inside an existing node

Copy-on-write: every applied patch returns a new tree dict with a new
top-level nodes map. Only the containers along the written path are copied;
every other node keeps its identity, so consumers can compare snapshots by
reference. A dropped patch returns the input tree object itself.
"""

from __future__ import annotations

import copy
import logging
from typing import Any

from treeengine.kernel.types import (
    NODES_PREFIX,
    PATCH_OPS,
    ROOT_PATH,
    ApplyResult,
    Patch,
    empty_tree,
    unescape_segment,
)

logger = logging.getLogger(__name__)

__all__ = ["apply", "apply_patch", "apply_all", "empty_tree"]


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _reject(tree: dict, reason: str) -> ApplyResult:
    return ApplyResult(tree=tree, applied=False, reason=reason)


def _ok(tree: dict) -> ApplyResult:
    return ApplyResult(tree=tree, applied=True)


def _nodes(tree: dict) -> dict[str, Any]:
    nodes = tree.get("nodes")
    return nodes if isinstance(nodes, dict) else {}


def _with_nodes(tree: dict, nodes: dict[str, Any]) -> dict[str, Any]:
    return {**tree, "nodes": nodes}


def _list_index(segment: str, length: int) -> int | None:
    """Resolve a list segment. `-` and `length` both mean append."""
    if segment == "-":
        return length
    if not (segment.isascii() and segment.isdigit()):
        return None
    index = int(segment)
    if index > length:
        return None
    return index


def _write_in(container: Any, segments: list[str], value: Any, remove: bool) -> tuple[Any, bool]:
    """
    Return a copy of container with value written (or removed) at segments.

    Containers along the path are shallow-copied; missing intermediate dicts
    are created on write. Returns (container, False) when the path crosses a
    primitive or an index that doesn't exist.
    """
    head, rest = segments[0], segments[1:]

    if isinstance(container, dict):
        if rest:
            child = container.get(head)
            if child is None:
                if remove:
                    return container, False
                child = {}
            elif not isinstance(child, (dict, list)):
                return container, False
            new_child, ok = _write_in(child, rest, value, remove)
            if not ok:
                return container, False
            copied = dict(container)
            copied[head] = new_child
            return copied, True

        copied = dict(container)
        if remove:
            if head not in copied:
                return container, False
            del copied[head]
        else:
            copied[head] = value
        return copied, True

    if isinstance(container, list):
        index = _list_index(head, len(container))
        if index is None:
            return container, False
        if rest:
            if index >= len(container):
                return container, False
            child = container[index]
            if not isinstance(child, (dict, list)):
                return container, False
            new_child, ok = _write_in(child, rest, value, remove)
            if not ok:
                return container, False
            copied = list(container)
            copied[index] = new_child
            return copied, True

        copied = list(container)
        if remove:
            if index >= len(copied):
                return container, False
            del copied[index]
        elif index == len(copied):
            copied.append(value)
        else:
            copied[index] = value
        return copied, True

    return container, False


# ---------------------------------------------------------------------------
# Path handlers
# ---------------------------------------------------------------------------


def _apply_root(tree: dict, patch: Patch) -> ApplyResult:
    if patch.op == "remove":
        return _ok({**tree, "root": None})
    if not isinstance(patch.value, str):
        return _reject(tree, "INVALID_ROOT_VALUE: /root requires a string key")
    return _ok({**tree, "root": patch.value})


def _apply_whole_node(tree: dict, key: str, patch: Patch) -> ApplyResult:
    nodes = _nodes(tree)
    if patch.op == "remove":
        if key not in nodes:
            return _reject(tree, f"UNRESOLVED_TARGET: no node {key!r} to remove")
        new_nodes = dict(nodes)
        del new_nodes[key]
        return _ok(_with_nodes(tree, new_nodes))

    new_nodes = dict(nodes)
    new_nodes[key] = copy.deepcopy(patch.value)
    return _ok(_with_nodes(tree, new_nodes))


def _apply_subpath(tree: dict, key: str, subpath: list[str], patch: Patch) -> ApplyResult:
    nodes = _nodes(tree)
    node = nodes.get(key)
    if node is None:
        # Generators always set a whole node before patching into it, but a
        # slow network doesn't guarantee we see that order. Drop.
        logger.debug("applier: dropping %s %s, node %r not created yet", patch.op, patch.path, key)
        return _reject(tree, f"UNRESOLVED_TARGET: node {key!r} does not exist")

    remove = patch.op == "remove"
    value = None if remove else copy.deepcopy(patch.value)
    new_node, ok = _write_in(node, subpath, value, remove)
    if not ok:
        return _reject(tree, f"UNRESOLVED_TARGET: cannot resolve {patch.path}")

    new_nodes = dict(nodes)
    new_nodes[key] = new_node
    return _ok(_with_nodes(tree, new_nodes))


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def apply(tree: dict[str, Any], patch: Patch) -> ApplyResult:
    """
    Apply one patch to the current tree.
    Returns ApplyResult with the new tree + applied flag.

    Pure function. Input tree is never modified. Never raises: unknown ops,
    unknown paths and unresolvable targets come back with applied=False.
    """
    if patch.op not in PATCH_OPS:
        return _reject(tree, f"UNKNOWN_OP: {patch.op}")

    if patch.path == ROOT_PATH:
        return _apply_root(tree, patch)

    if not patch.path.startswith(NODES_PREFIX):
        return _reject(tree, f"UNKNOWN_PATH: {patch.path}")

    segments = [unescape_segment(s) for s in patch.path[len(NODES_PREFIX) :].split("/")]
    key, subpath = segments[0], segments[1:]
    if not key or any(seg == "" for seg in subpath):
        return _reject(tree, f"UNKNOWN_PATH: {patch.path}")

    if not subpath:
        return _apply_whole_node(tree, key, patch)
    return _apply_subpath(tree, key, subpath, patch)


def apply_patch(tree: dict[str, Any], patch: Patch) -> dict[str, Any]:
    """Apply one patch and return the resulting tree (unchanged on a drop)."""
    return apply(tree, patch).tree


def apply_all(tree: dict[str, Any], patches: list[Patch]) -> dict[str, Any]:
    """
    Apply a sequence of patches to a tree.
    Dropped patches are silently skipped.
    Returns the final tree.
    """
    for patch in patches:
        tree = apply(tree, patch).tree
    return tree
