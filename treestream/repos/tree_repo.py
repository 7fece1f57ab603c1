"""
Tree persistence collaborator.

Sessions read a tree only at start (to seed follow-up generations) and write
only at completion (to checkpoint the final snapshot). Nothing is written
mid-stream.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Any


@dataclass
class SaveResult:
    success: bool
    message: str


class TreeRepo:
    """
    Abstract storage interface.
    Implement against real storage in the host application, or in-memory for tests.
    """

    async def load_tree(self, tree_id: str) -> dict[str, Any] | None:
        """Fetch a persisted tree. Returns None if not found."""
        raise NotImplementedError

    async def save_tree(self, tree: dict[str, Any], tree_id: str) -> SaveResult:
        """Persist a completed tree under tree_id."""
        raise NotImplementedError


class MemoryTreeRepo(TreeRepo):
    """In-memory storage for tests and the replay service."""

    def __init__(self) -> None:
        self.trees: dict[str, dict[str, Any]] = {}

    async def load_tree(self, tree_id: str) -> dict[str, Any] | None:
        tree = self.trees.get(tree_id)
        return copy.deepcopy(tree) if tree is not None else None

    async def save_tree(self, tree: dict[str, Any], tree_id: str) -> SaveResult:
        if not tree_id:
            return SaveResult(success=False, message="tree_id is required")
        self.trees[tree_id] = copy.deepcopy(tree)
        return SaveResult(success=True, message=f"saved {len(tree.get('nodes', {}))} nodes to {tree_id}")
