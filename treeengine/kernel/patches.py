"""
Tree Kernel — Patch Construction

Factory functions for creating well-formed patches.
Used by the mock generator to build replay streams, and by tests to build
patch sequences concisely.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from typing import Any

from treeengine.kernel.types import NODES_PREFIX, ROOT_PATH, Patch, escape_segment


def make_patch(op: str, path: str, value: Any = None) -> Patch:
    return Patch(op=op, path=path, value=value)


def set_root(key: str) -> Patch:
    return Patch(op="set", path=ROOT_PATH, value=key)


def set_node(
    key: str,
    type: str,
    props: dict[str, Any] | None = None,
    children: list[str] | None = None,
    *,
    op: str = "set",
) -> Patch:
    """
    Build a whole-node patch. `children` is left out of the node when None,
    matching what generators emit for leaf nodes.
    """
    node: dict[str, Any] = {"key": key, "type": type, "props": props or {}}
    if children is not None:
        node["children"] = list(children)
    return Patch(op=op, path=node_path(key), value=node)


def set_prop(key: str, subpath: str, value: Any, *, op: str = "set") -> Patch:
    """Patch into an existing node, e.g. set_prop("card1", "props/title", "Bye")."""
    return Patch(op=op, path=f"{node_path(key)}/{subpath.strip('/')}", value=value)


def remove_node(key: str) -> Patch:
    return Patch(op="remove", path=node_path(key))


def node_path(key: str) -> str:
    return f"{NODES_PREFIX}{escape_segment(key)}"


def tree_to_patches(tree: dict[str, Any]) -> list[Patch]:
    """
    Express a whole tree as the patch sequence a generator would emit:
    root first, then every node in map order.
    """
    patches: list[Patch] = []
    if tree.get("root") is not None:
        patches.append(set_root(tree["root"]))
    for key, node in tree.get("nodes", {}).items():
        patches.append(Patch(op="set", path=node_path(key), value=node))
    return patches


def to_jsonl(patches: Iterable[Patch]) -> str:
    """Serialize patches one per line, newline-terminated."""
    return "".join(json.dumps(p.to_dict(), separators=(",", ":")) + "\n" for p in patches)
