"""
Tree Kernel — Shared Types

Data classes used across the applier, diff, selection and the stream layer.
These are the contracts that bind the kernel together.

Trees and nodes stay plain JSON-shaped dicts (they come off the wire and go
back out to renderers unchanged):

    Tree = {"root": str | None, "nodes": {key: Node}}
    Node = {"key": str, "type": str, "props": {...}, "children": [key, ...]}

Patches, diff lines and selector descriptors are small records built here.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

# ---------------------------------------------------------------------------
# Patch grammar
# ---------------------------------------------------------------------------

PATCH_OPS: set[str] = {"set", "add", "replace", "remove"}

# Ops that write a value at the target path
WRITE_OPS: set[str] = {"set", "add", "replace"}

ROOT_PATH = "/root"
NODES_PREFIX = "/nodes/"

# Props the selection matcher compares against rendered text
TEXT_PROPS: tuple[str, ...] = ("label", "text", "title")

DiffKind = Literal["added", "removed", "unchanged"]


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Patch:
    """
    One atomic mutation instruction, one per line of a patch stream.

    `value` is ignored for `remove`. Patches are immutable once decoded.
    """

    op: str
    path: str
    value: Any = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"op": self.op, "path": self.path}
        if self.op != "remove":
            d["value"] = self.value
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Patch | None:
        """Build a Patch from a decoded JSON object. Returns None if it isn't patch-shaped."""
        op = d.get("op")
        path = d.get("path")
        if not isinstance(op, str) or not isinstance(path, str):
            return None
        return cls(op=op, path=path, value=d.get("value"))


@dataclass
class ApplyResult:
    """
    Result of applying one patch to a tree.
    The applier never throws; it always returns one of these.
    """

    tree: dict[str, Any]
    applied: bool
    reason: str | None = None


@dataclass(frozen=True)
class DiffLine:
    line_number: int
    content: str
    kind: DiffKind

    def to_dict(self) -> dict[str, Any]:
        return {"lineNumber": self.line_number, "content": self.content, "kind": self.kind}


@dataclass
class TreeDiff:
    """Line-level comparison of two canonical tree serializations."""

    lines: list[DiffLine] = field(default_factory=list)
    has_changes: bool = False

    @property
    def added(self) -> int:
        return sum(1 for line in self.lines if line.kind == "added")

    @property
    def removed(self) -> int:
        return sum(1 for line in self.lines if line.kind == "removed")

    def summary(self) -> str:
        if not self.has_changes:
            return "no changes"
        return f"+{self.added} -{self.removed}"


@dataclass(frozen=True)
class SelectorDescriptor:
    """
    Describes a concrete rendered element picked by the user.
    Transient, one per interaction.
    """

    tag_name: str
    text_content: str | None = None
    class_name: str | None = None
    id: str | None = None

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> SelectorDescriptor:
        # Selection sources report DOM-style camelCase keys
        return cls(
            tag_name=d.get("tagName", d.get("tag_name", "")),
            text_content=d.get("textContent", d.get("text_content")),
            class_name=d.get("className", d.get("class_name")),
            id=d.get("id"),
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def empty_tree() -> dict[str, Any]:
    """The initial tree for a from-scratch generation: no root, no nodes."""
    return {"root": None, "nodes": {}}


def unescape_segment(segment: str) -> str:
    """Undo JSON Pointer escaping for one path segment (~1 → /, ~0 → ~)."""
    return segment.replace("~1", "/").replace("~0", "~")


def escape_segment(segment: str) -> str:
    return segment.replace("~", "~0").replace("/", "~1")
