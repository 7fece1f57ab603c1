"""
Tree Kernel — Snapshot Diff

Compares two trees by their canonical serialization (indented JSON, sorted
keys) and reports each line as added, removed or unchanged.

The alignment is a forward two-cursor scan with lookahead into the remaining
tail of the other side. It is cheap and reads well for review, but it is not
a minimal edit script: a moved block can show up as remove + add, and
repeated lines (closing braces) can pair with a later occurrence.
"""

from __future__ import annotations

import json
from typing import Any

from treeengine.kernel.types import DiffKind, DiffLine, TreeDiff


def canonical_lines(tree: dict[str, Any] | None) -> list[str]:
    """Deterministic line-oriented form of a tree. None serializes to no lines."""
    if tree is None:
        return []
    text = json.dumps(tree, indent=2, sort_keys=True, ensure_ascii=False)
    return text.split("\n")


def _index_from(lines: list[str], start: int, target: str) -> int:
    """Offset of target within lines[start:], or -1."""
    try:
        return lines.index(target, start) - start
    except ValueError:
        return -1


def diff_trees(previous: dict[str, Any] | None, updated: dict[str, Any]) -> TreeDiff:
    old_lines = canonical_lines(previous)
    new_lines = canonical_lines(updated)

    result: list[DiffLine] = []
    has_changes = False
    old_idx = 0
    new_idx = 0

    def emit(content: str, kind: DiffKind) -> None:
        result.append(DiffLine(line_number=len(result) + 1, content=content, kind=kind))

    while old_idx < len(old_lines) or new_idx < len(new_lines):
        if old_idx >= len(old_lines):
            emit(new_lines[new_idx], "added")
            has_changes = True
            new_idx += 1
            continue
        if new_idx >= len(new_lines):
            emit(old_lines[old_idx], "removed")
            has_changes = True
            old_idx += 1
            continue

        old_line = old_lines[old_idx]
        new_line = new_lines[new_idx]

        if old_line == new_line:
            emit(new_line, "unchanged")
            old_idx += 1
            new_idx += 1
            continue

        has_changes = True
        old_in_new = _index_from(new_lines, new_idx, old_line)
        new_in_old = _index_from(old_lines, old_idx, new_line)

        if old_in_new == -1 and new_in_old == -1:
            # Neither side recurs: a replacement
            emit(old_line, "removed")
            emit(new_line, "added")
            old_idx += 1
            new_idx += 1
        elif old_in_new != -1 and (new_in_old == -1 or old_in_new <= new_in_old):
            # Old line shows up later in new: lines were inserted ahead of it
            emit(new_line, "added")
            new_idx += 1
        else:
            emit(old_line, "removed")
            old_idx += 1

    return TreeDiff(lines=result, has_changes=has_changes)
