"""
Tree Kernel — the pure engine.

Four components:
  applier    — (tree, patch) → tree  (pure, deterministic, never raises)
  patches    — factories for well-formed patches and JSONL streams
  diff       — line-level comparison of two tree snapshots
  selection  — rendered element → node key, via a heuristic chain
"""

from treeengine.kernel.applier import apply, apply_all, apply_patch
from treeengine.kernel.diff import canonical_lines, diff_trees
from treeengine.kernel.selection import DEFAULT_CHAIN, match
from treeengine.kernel.types import (
    ApplyResult,
    DiffLine,
    Patch,
    SelectorDescriptor,
    TreeDiff,
    empty_tree,
)

__all__ = [
    "apply",
    "apply_all",
    "apply_patch",
    "empty_tree",
    "canonical_lines",
    "diff_trees",
    "match",
    "DEFAULT_CHAIN",
    "ApplyResult",
    "DiffLine",
    "Patch",
    "SelectorDescriptor",
    "TreeDiff",
]
