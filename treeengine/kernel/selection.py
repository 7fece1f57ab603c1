"""
Tree Kernel — Selection Matcher

Maps an element the user picked in the rendered output back to a node key.

Best effort, not a bijection: rendered text and node props drift apart, and
several nodes can tie. Ties go to the first node in `nodes` insertion order,
which is generation order, not necessarily display order.

The chain is a tuple of strategies tried in order; the first non-None answer
wins. Pass a different chain to `match` to change the policy.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from typing import Any

from treeengine.kernel.types import TEXT_PROPS, SelectorDescriptor

Strategy = Callable[[dict[str, Any], SelectorDescriptor], "str | None"]

_HEADING_TAG_RE = re.compile(r"^h[1-6]$")


def _iter_nodes(tree: dict[str, Any]):
    nodes = tree.get("nodes")
    if not isinstance(nodes, dict):
        return
    for key, node in nodes.items():
        if isinstance(node, dict):
            yield key, node


def _type_of(node: dict[str, Any]) -> str:
    node_type = node.get("type")
    return node_type.lower() if isinstance(node_type, str) else ""


def _is_button_like(node_type: str) -> bool:
    return node_type.endswith("button")


def _is_heading_like(node_type: str) -> bool:
    return node_type.endswith("heading")


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


def match_by_text(tree: dict[str, Any], selector: SelectorDescriptor) -> str | None:
    """Exact match of the trimmed element text against label / text / title."""
    text = (selector.text_content or "").strip()
    if not text:
        return None
    for key, node in _iter_nodes(tree):
        props = node.get("props")
        if not isinstance(props, dict):
            continue
        for prop in TEXT_PROPS:
            if props.get(prop) == text:
                return key
    return None


def match_by_tag_family(tree: dict[str, Any], selector: SelectorDescriptor) -> str | None:
    """A <button> picks a button-like node, an <h1>..<h6> a heading-like node."""
    tag = (selector.tag_name or "").lower()
    if tag == "button":
        predicate = _is_button_like
    elif _HEADING_TAG_RE.match(tag):
        predicate = _is_heading_like
    else:
        return None
    for key, node in _iter_nodes(tree):
        if predicate(_type_of(node)):
            return key
    return None


def match_root(tree: dict[str, Any], selector: SelectorDescriptor) -> str | None:
    root = tree.get("root")
    nodes = tree.get("nodes")
    if isinstance(root, str) and isinstance(nodes, dict) and root in nodes:
        return root
    return None


DEFAULT_CHAIN: tuple[Strategy, ...] = (match_by_text, match_by_tag_family, match_root)


def match(
    tree: dict[str, Any] | None,
    selector: SelectorDescriptor | None,
    chain: tuple[Strategy, ...] = DEFAULT_CHAIN,
) -> str | None:
    if tree is None or selector is None:
        return None
    for strategy in chain:
        key = strategy(tree, selector)
        if key is not None:
            return key
    return None
