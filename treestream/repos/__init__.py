"""
Persistence collaborators.

Plain async interfaces over whatever storage the host application uses.
"""

from treestream.repos.tree_repo import MemoryTreeRepo, SaveResult, TreeRepo

__all__ = ["TreeRepo", "MemoryTreeRepo", "SaveResult"]
